"""fletcher-jax: Fletcher's exact penalty for equality-constrained problems in JAX.

This package turns ``min f(x) s.t. c(x) = 0`` into an unconstrained problem
through Fletcher's exact penalty function and exposes the penalty's value,
gradient, Hessian and Hessian-vector product for use by any unconstrained
optimizer. Each evaluation solves structured saddle-point systems built
from the constraint Jacobian, with interchangeable dense, factorized, sparse
and matrix-free Krylov strategies.
"""

from fletcher_jax.errors import (
    DimensionError,
    FletcherPenaltyError,
    LinearSolverError,
    NonConvergenceError,
    NonFiniteValueError,
    SingularSystemError,
)
from fletcher_jax.krylov import KrylovResult, cg, cgls, minres
from fletcher_jax.model import (
    AbstractNLPModel,
    ADNLPModel,
    Counters,
    JacobianOperator,
    NLPModelMeta,
)
from fletcher_jax.penalty import (
    FletcherPenaltyNLP,
    PenaltyParameters,
    oblique_projector,
)
from fletcher_jax.saddle import (
    DenseSolver,
    DirectSparseSolver,
    EigenFactorizedSolver,
    IterativeSolver,
    LUFactorizedSolver,
    SaddlePointSolver,
)
from fletcher_jax.types import (
    ConstraintFn,
    ConstraintHVPFn,
    GradFn,
    HessianApprox,
    HVPFn,
    JacobianFn,
    ObjectiveFn,
)

__all__ = [
    # Penalty model
    "FletcherPenaltyNLP",
    "PenaltyParameters",
    "HessianApprox",
    "oblique_projector",
    # Saddle-point strategies
    "SaddlePointSolver",
    "IterativeSolver",
    "DenseSolver",
    "EigenFactorizedSolver",
    "LUFactorizedSolver",
    "DirectSparseSolver",
    # Underlying models
    "AbstractNLPModel",
    "ADNLPModel",
    "Counters",
    "JacobianOperator",
    "NLPModelMeta",
    # Krylov solvers
    "KrylovResult",
    "cg",
    "cgls",
    "minres",
    # Types
    "ObjectiveFn",
    "ConstraintFn",
    "GradFn",
    "JacobianFn",
    "HVPFn",
    "ConstraintHVPFn",
    # Errors
    "FletcherPenaltyError",
    "DimensionError",
    "LinearSolverError",
    "SingularSystemError",
    "NonConvergenceError",
    "NonFiniteValueError",
]
