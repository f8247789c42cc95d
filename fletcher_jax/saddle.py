"""Saddle-point solvers for the Fletcher penalty.

Every evaluation of the penalty solves one or two systems with the same
block matrix

    K = [[I,  A^T     ],
         [A,  -delta I]]

where A = J(x) is the constraint Jacobian at the query point. A solver
strategy receives the penalty model (for its underlying ``model`` and its
``delta``), the point, and one or two right-hand sides of length
``nvar + ncon``, and must reuse a single Jacobian (and factorization where
it forms one) for both.

Available strategies:

- ``IterativeSolver``: eliminates the primal block and solves
  ``(A A^T + delta I) q = A b - d`` with CG or MINRES through the
  matrix-free Jacobian, then recovers ``p = b - A^T q``.
- ``DenseSolver``: dense ``jnp.linalg.solve`` per right-hand side.
- ``EigenFactorizedSolver``: one symmetric eigendecomposition, then
  back-substitution per right-hand side.
- ``LUFactorizedSolver``: one dense LU factorization.
- ``DirectSparseSolver``: assembles K in coordinate form and factorizes it
  with SuperLU or, optionally, QDLDL.

Failures raise ``SingularSystemError`` or ``NonConvergenceError`` instead
of returning a degraded solution.
"""

import abc
import logging
from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax.numpy as jnp
import jax.scipy.linalg as jsl
import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from fletcher_jax.errors import NonConvergenceError, SingularSystemError
from fletcher_jax.krylov import cg, default_tolerances, minres
from fletcher_jax.utils import check_finite, check_length

try:
    import qdldl

    HAS_QDLDL = True
except ImportError:
    HAS_QDLDL = False

logger = logging.getLogger(__name__)

Solution = Float[Array, " nvar_ncon"]


@jaxtyped(typechecker=beartype)
def assemble_saddle_matrix(
    A: Float[Array, "m n"],
    delta: float,
) -> Float[Array, "n_plus_m n_plus_m"]:
    """Build the dense block matrix ``[[I, A^T], [A, -delta I]]``."""
    m, n = A.shape
    top = jnp.concatenate([jnp.eye(n, dtype=A.dtype), A.T], axis=1)
    bottom = jnp.concatenate([A, -delta * jnp.eye(m, dtype=A.dtype)], axis=1)
    return jnp.concatenate([top, bottom], axis=0)


def saddle_coordinates(
    nvar: int,
    ncon: int,
    jac_rows: np.ndarray,
    jac_cols: np.ndarray,
    jac_vals: np.ndarray,
    delta: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Lower triangle of the saddle matrix in coordinate form.

    The ``nvar + nnzj + ncon`` entries are, in order: the identity block,
    the Jacobian block shifted down by ``nvar`` rows, and the ``-delta``
    diagonal of the constraint block.
    """
    diag_var = np.arange(nvar)
    diag_con = nvar + np.arange(ncon)
    rows = np.concatenate([diag_var, nvar + np.asarray(jac_rows), diag_con])
    cols = np.concatenate([diag_var, np.asarray(jac_cols), diag_con])
    vals = np.concatenate(
        [np.ones(nvar), np.asarray(jac_vals, dtype=np.float64), np.full(ncon, -delta)]
    )
    return rows, cols, vals


def _optional_float(value):
    return None if value is None else float(value)


def _optional_int(value):
    return None if value is None else int(value)


def _relative_cutoff(cutoff, size, dtype):
    if cutoff is not None:
        return cutoff
    return 100.0 * size * float(np.finfo(dtype).eps)


def _check_residual(name, residual_norm, matrix_norm, sol_norm, rhs_norm, dtype):
    tol = float(np.sqrt(np.finfo(dtype).eps)) * (matrix_norm * sol_norm + rhs_norm)
    if not np.isfinite(residual_norm) or residual_norm > tol:
        logger.debug(
            "%s: residual %.3e exceeds tolerance %.3e", name, residual_norm, tol
        )
        raise SingularSystemError(
            f"{name}: saddle system is numerically singular "
            f"(residual {residual_norm:.3e} > {tol:.3e})",
            residual_norm=residual_norm,
        )


class SaddlePointSolver(eqx.Module):
    """Interface shared by all saddle-point strategies."""

    @abc.abstractmethod
    def solve(
        self,
        nlp: Any,
        x: Float[Array, " n"],
        rhs1: Solution,
        rhs2: Optional[Solution] = None,
    ) -> tuple[Solution, Optional[Solution]]:
        """Solve ``K sol = rhs`` for one or two right-hand sides.

        Args:
            nlp: Penalty model exposing ``model`` (the underlying NLP) and
                ``delta``.
            x: Point at which the Jacobian is evaluated.
            rhs1: First right-hand side, length ``nvar + ncon``.
            rhs2: Optional second right-hand side sharing the same Jacobian.

        Returns:
            ``(sol1, sol2)``; ``sol2`` is None when ``rhs2`` is None.
        """

    def _check_rhs(self, nlp, rhs1, rhs2):
        size = nlp.model.meta.nvar + nlp.model.meta.ncon
        check_length("rhs1", rhs1, size)
        if rhs2 is not None:
            check_length("rhs2", rhs2, size)


class IterativeSolver(SaddlePointSolver):
    """Matrix-free solver through the constraint Gram system.

    Attributes:
        method: ``"cg"`` (default) or ``"minres"``, applied to
            ``A A^T + delta I``.
        precond: Optional function applying an SPD approximation of
            ``(A A^T + delta I)^{-1}`` to a constraint-space vector.
        atol: Absolute tolerance (default sqrt(eps)).
        rtol: Relative tolerance (default sqrt(eps)).
        max_iter: Iteration cap (default ``5 * (nvar + ncon)``).
    """

    method: str = eqx.field(static=True, default="cg")
    precond: Optional[Callable] = eqx.field(static=True, default=None)
    atol: Optional[float] = eqx.field(default=None, converter=_optional_float)
    rtol: Optional[float] = eqx.field(default=None, converter=_optional_float)
    max_iter: Optional[int] = eqx.field(
        static=True, default=None, converter=_optional_int
    )

    def __check_init__(self):
        if self.method not in ("cg", "minres"):
            raise ValueError(f"method must be 'cg' or 'minres', got {self.method!r}")
        for name in ("atol", "rtol"):
            value = getattr(self, name)
            if value is not None and not value >= 0.0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        if self.max_iter is not None and self.max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {self.max_iter}")

    def solve(self, nlp, x, rhs1, rhs2=None):
        self._check_rhs(nlp, rhs1, rhs2)
        nvar, ncon = nlp.model.meta.nvar, nlp.model.meta.ncon
        max_iter = self.max_iter if self.max_iter is not None else 5 * (nvar + ncon)
        krylov = cg if self.method == "cg" else minres
        jac = nlp.model.jacobian_operator(x)
        delta = float(nlp.delta)

        def solve_one(rhs):
            b, d = rhs[:nvar], rhs[nvar:]
            gram_rhs = jac.mv(b) - d
            result = krylov(
                jac.gram_mv,
                gram_rhs,
                shift=delta,
                precond=self.precond,
                atol=self.atol,
                rtol=self.rtol,
                max_iter=max_iter,
            )
            q = result.x
            # Recurrence residuals drift on singular systems; confirm with the true one
            atol, rtol = default_tolerances(gram_rhs.dtype, self.atol, self.rtol)
            limit = 10.0 * (atol + rtol * float(jnp.linalg.norm(gram_rhs)))
            residual = float(jnp.linalg.norm(jac.gram_mv(q) + delta * q - gram_rhs))
            if not bool(result.converged) or not residual <= limit:
                iterations = int(result.iterations)
                logger.debug(
                    "%s did not converge in %d iterations (residual %.3e)",
                    self.method,
                    iterations,
                    residual,
                )
                raise NonConvergenceError(
                    f"{self.method} did not converge on the saddle system "
                    f"after {iterations} iterations (residual {residual:.3e})",
                    iterations=iterations,
                    residual_norm=residual,
                )
            p = b - jac.rmv(q)
            sol = jnp.concatenate([p, q])
            check_finite("saddle solution", sol)
            return sol

        sol1 = solve_one(rhs1)
        sol2 = None if rhs2 is None else solve_one(rhs2)
        return sol1, sol2


class DenseSolver(SaddlePointSolver):
    """Dense solve of the explicit saddle matrix, one call per right-hand side."""

    def solve(self, nlp, x, rhs1, rhs2=None):
        self._check_rhs(nlp, rhs1, rhs2)
        K = assemble_saddle_matrix(nlp.model.jacobian(x), float(nlp.delta))
        K_norm = float(jnp.linalg.norm(K))

        def solve_one(rhs):
            sol = jnp.linalg.solve(K, rhs)
            if not bool(jnp.all(jnp.isfinite(sol))):
                raise SingularSystemError("dense solve produced non-finite values")
            _check_residual(
                "dense solve",
                float(jnp.linalg.norm(K @ sol - rhs)),
                K_norm,
                float(jnp.linalg.norm(sol)),
                float(jnp.linalg.norm(rhs)),
                K.dtype,
            )
            return sol

        sol1 = solve_one(rhs1)
        sol2 = None if rhs2 is None else solve_one(rhs2)
        return sol1, sol2


class EigenFactorizedSolver(SaddlePointSolver):
    """Symmetric eigendecomposition ``K = Q diag(w) Q^T`` reused for both solves.

    Attributes:
        cutoff: Eigenvalues with ``|w| <= cutoff * max |w|`` mark the system
            as singular (default ``100 * size * eps``).
    """

    cutoff: Optional[float] = eqx.field(default=None, converter=_optional_float)

    def solve(self, nlp, x, rhs1, rhs2=None):
        self._check_rhs(nlp, rhs1, rhs2)
        K = assemble_saddle_matrix(nlp.model.jacobian(x), float(nlp.delta))
        w, Q = jnp.linalg.eigh(K)
        abs_w = jnp.abs(w)
        cutoff = _relative_cutoff(self.cutoff, K.shape[0], K.dtype)
        if not bool(jnp.all(jnp.isfinite(w))) or bool(
            jnp.min(abs_w) <= cutoff * jnp.max(abs_w)
        ):
            logger.debug("eigenvalues of the saddle matrix: %s", w)
            raise SingularSystemError(
                "saddle matrix has a (numerically) zero eigenvalue"
            )

        def solve_one(rhs):
            return Q @ ((Q.T @ rhs) / w)

        sol1 = solve_one(rhs1)
        sol2 = None if rhs2 is None else solve_one(rhs2)
        return sol1, sol2


class LUFactorizedSolver(SaddlePointSolver):
    """Dense LU factorization with partial pivoting reused for both solves.

    Attributes:
        cutoff: Pivots with ``|u_ii| <= cutoff * max |u_ii|`` mark the system
            as singular (default ``100 * size * eps``).
    """

    cutoff: Optional[float] = eqx.field(default=None, converter=_optional_float)

    def solve(self, nlp, x, rhs1, rhs2=None):
        self._check_rhs(nlp, rhs1, rhs2)
        K = assemble_saddle_matrix(nlp.model.jacobian(x), float(nlp.delta))
        lu, piv = jsl.lu_factor(K)
        pivots = jnp.abs(jnp.diag(lu))
        cutoff = _relative_cutoff(self.cutoff, K.shape[0], K.dtype)
        if not bool(jnp.all(jnp.isfinite(pivots))) or bool(
            jnp.min(pivots) <= cutoff * jnp.max(pivots)
        ):
            raise SingularSystemError("LU factorization of the saddle matrix broke down")
        K_norm = float(jnp.linalg.norm(K))

        def solve_one(rhs):
            sol = jsl.lu_solve((lu, piv), rhs)
            _check_residual(
                "LU solve",
                float(jnp.linalg.norm(K @ sol - rhs)),
                K_norm,
                float(jnp.linalg.norm(sol)),
                float(jnp.linalg.norm(rhs)),
                K.dtype,
            )
            return sol

        sol1 = solve_one(rhs1)
        sol2 = None if rhs2 is None else solve_one(rhs2)
        return sol1, sol2


class DirectSparseSolver(SaddlePointSolver):
    """Sparse direct solver on the coordinate form of the saddle matrix.

    The lower triangle is assembled from the model's Jacobian structure and
    values (``nvar + nnzj + ncon`` entries), mirrored to the full symmetric
    matrix and factorized once.

    With ``factorization="lu"`` (default) the matrix goes to SuperLU. With
    ``factorization="ldl"`` its upper triangle goes to the QDLDL symmetric
    ``L D L^T`` factorization, which needs the ``qdldl`` package and is
    reliable when ``delta > 0`` makes K quasi-definite.

    Attributes:
        factorization: ``"lu"`` or ``"ldl"``.
        permc_spec: Column ordering passed to ``scipy.sparse.linalg.splu``.
        cutoff: Relative pivot threshold on the diagonal of U (default
            ``100 * size * eps``). Unused by ``"ldl"``, which relies on the
            residual check.
    """

    factorization: str = eqx.field(static=True, default="lu")
    permc_spec: str = eqx.field(static=True, default="MMD_AT_PLUS_A")
    cutoff: Optional[float] = eqx.field(default=None, converter=_optional_float)

    def __check_init__(self):
        if self.factorization not in ("lu", "ldl"):
            raise ValueError(
                f"factorization must be 'lu' or 'ldl', got {self.factorization!r}"
            )
        if self.factorization == "ldl" and not HAS_QDLDL:
            raise ImportError("factorization='ldl' requires the qdldl package")

    def _factorize_lu(self, K, size):
        try:
            factor = spla.splu(K, permc_spec=self.permc_spec)
        except RuntimeError as err:
            logger.debug("splu failed on the saddle matrix: %s", err)
            raise SingularSystemError(f"sparse factorization failed: {err}") from err

        pivots = np.abs(factor.U.diagonal())
        cutoff = _relative_cutoff(self.cutoff, size, np.float64)
        if pivots.min() <= cutoff * pivots.max():
            raise SingularSystemError("sparse factorization has a negligible pivot")
        return factor.solve

    def _factorize_ldl(self, K):
        try:
            factor = qdldl.Solver(sp.triu(K, format="csc"))
        except (RuntimeError, ValueError) as err:
            logger.debug("qdldl failed on the saddle matrix: %s", err)
            raise SingularSystemError(f"LDL factorization failed: {err}") from err
        return factor.solve

    def solve(self, nlp, x, rhs1, rhs2=None):
        self._check_rhs(nlp, rhs1, rhs2)
        model = nlp.model
        nvar, ncon = model.meta.nvar, model.meta.ncon
        size = nvar + ncon
        jac_rows, jac_cols = model.jacobian_structure()
        jac_vals = np.asarray(model.jacobian_coord(x))
        rows, cols, vals = saddle_coordinates(
            nvar, ncon, jac_rows, jac_cols, jac_vals, float(nlp.delta)
        )
        lower = sp.coo_matrix((vals, (rows, cols)), shape=(size, size)).tocsc()
        K = (lower + lower.T - sp.diags(lower.diagonal())).tocsc()
        if not np.all(np.isfinite(K.data)):
            raise SingularSystemError("saddle matrix has non-finite entries")

        if self.factorization == "ldl":
            backsolve = self._factorize_ldl(K)
        else:
            backsolve = self._factorize_lu(K, size)
        K_norm = float(spla.norm(K))

        def solve_one(rhs):
            b = np.asarray(rhs, dtype=np.float64)
            sol = np.asarray(backsolve(b), dtype=np.float64)
            _check_residual(
                f"sparse {self.factorization} solve",
                float(np.linalg.norm(K @ sol - b)),
                K_norm,
                float(np.linalg.norm(sol)),
                float(np.linalg.norm(b)),
                np.float64,
            )
            return jnp.asarray(sol, dtype=rhs.dtype)

        sol1 = solve_one(rhs1)
        sol2 = None if rhs2 is None else solve_one(rhs2)
        return sol1, sol2
