"""Type definitions for fletcher-jax.

This module contains type aliases and small enumerations used throughout
the package. Array types use jaxtyping for runtime type checking with
beartype.
"""

import enum
from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type: takes parameters and args, returns a scalar
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Equality constraint function type: c(x) = 0
ConstraintFn = Callable[[Vector, Any], Float[Array, " m"]]

# Gradient function type: grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Jacobian function type: jac_fn(x, args) -> J(x) where J[i, j] = dc_i/dx_j
JacobianFn = Callable[[Vector, Any], Float[Array, "m n"]]

# Hessian-vector product of the objective: hvp_fn(x, v, args) -> H_f(x) @ v
HVPFn = Callable[[Vector, Vector, Any], Vector]

# Hessian-vector products of the constraints, stacked so that row i is
# H_{c_i}(x) @ v: constraint_hvp_fn(x, v, args) -> (m, n)
ConstraintHVPFn = Callable[[Vector, Vector, Any], Float[Array, "m n"]]


class HessianApprox(enum.IntEnum):
    """Which curvature terms enter the penalty Hessian.

    ``SENSITIVITY`` (level 1) adds the second-order sensitivity of the dual
    estimate, at the price of two auxiliary Krylov solves per product.
    ``PROJECTED`` (level 2) keeps only the projected Lagrangian Hessian.
    """

    SENSITIVITY = 1
    PROJECTED = 2
