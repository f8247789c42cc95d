"""Fletcher's exact penalty for equality-constrained problems.

Given a model of

    min_x f(x)   s.t.   c(x) = 0

the penalty function is

    phi(x) = f(x) - c(x)^T ys(x) + (rho / 2) ||c(x)||^2

where the dual estimate ys(x) is the constraint block of the solution of

    [[I, A^T], [A, -delta I]] [gs; ys] = [g; sigma c]

with A = J(x) and g = ∇f(x), i.e. the minimizer of
``0.5 ||A^T y - g||^2 + sigma c^T y + 0.5 delta ||y||^2``. Minimizers of
phi are (for sigma large enough) solutions of the constrained problem, so
phi can be handed to any unconstrained optimizer through
:class:`FletcherPenaltyNLP`, which exposes its value, gradient, Hessian and
Hessian-vector product.

The Hessian uses the oblique projector ``Pt = A^T (A A^T + tau I)^{-1} A``
with ``tau = max(delta, 1e-14)``:

    H = (I - Pt) Hs - Hs Pt + 2 sigma Pt  [+ H_c(rho c) + rho A^T A]

where ``Hs`` is the Lagrangian Hessian at the multiplier ``-ys``. With
``HessianApprox.SENSITIVITY`` the second-order sensitivity of ys is added as
well.
"""

import logging
from typing import NamedTuple, Optional

import equinox as eqx
import jax.numpy as jnp
import jax.scipy.linalg as jsl
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from fletcher_jax.errors import NonConvergenceError, SingularSystemError
from fletcher_jax.krylov import KrylovResult, cgls, minres
from fletcher_jax.model import AbstractNLPModel, Counters, NLPModelMeta
from fletcher_jax.saddle import IterativeSolver, SaddlePointSolver
from fletcher_jax.types import HessianApprox
from fletcher_jax.utils import check_finite, check_length

logger = logging.getLogger(__name__)

# Smallest regularization used whenever delta guards an inverse
TAU_FLOOR = 1e-14


class PenaltyParameters(eqx.Module):
    """Fixed parameters of one penalty instance.

    Attributes:
        sigma: Penalty weight (> 0) of the dual least-squares fit.
        rho: Quadratic penalty weight (>= 0); zero disables the term.
        delta: Tikhonov weight (>= 0) of the dual estimate.
        hessian_approx: Curvature terms used by the Hessian routines.
    """

    sigma: float = eqx.field(default=1.0, converter=float)
    rho: float = eqx.field(default=0.0, converter=float)
    delta: float = eqx.field(default=0.0, converter=float)
    hessian_approx: HessianApprox = eqx.field(
        static=True, default=HessianApprox.PROJECTED, converter=HessianApprox
    )

    def __check_init__(self):
        if not self.sigma > 0.0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")
        if not self.rho >= 0.0:
            raise ValueError(f"rho must be non-negative, got {self.rho}")
        if not self.delta >= 0.0:
            raise ValueError(f"delta must be non-negative, got {self.delta}")

    @property
    def tau(self) -> float:
        return max(self.delta, TAU_FLOOR)


@jaxtyped(typechecker=beartype)
def oblique_projector(
    A: Float[Array, "m n"],
    tau: float,
) -> tuple[Float[Array, "n n"], Float[Array, "m n"]]:
    """Compute ``Pt = A^T (A A^T + tau I)^{-1} A``.

    The Gram matrix is factorized once by Cholesky and solved against the
    columns of A; no inverse is formed.

    Returns:
        ``(Pt, G)`` with ``G = (A A^T + tau I)^{-1} A``. Both contain NaNs if
        the factorization broke down.
    """
    m = A.shape[0]
    gram = A @ A.T + tau * jnp.eye(m, dtype=A.dtype)
    factor = jsl.cho_factor(gram, lower=True)
    G = jsl.cho_solve(factor, A)
    return A.T @ G, G


def lower_triangle_structure(n: int) -> tuple[np.ndarray, np.ndarray]:
    """Indices ``i >= j`` of an n x n matrix, column by column."""
    cols, rows = np.triu_indices(n)
    return rows, cols


class _HprodTerms(NamedTuple):
    """Products shared by every Hessian-vector branch."""

    Hsv: Float[Array, " n"]
    Ptv: Float[Array, " n"]
    PtHsv: Float[Array, " n"]
    HsPtv: Float[Array, " n"]


class FletcherPenaltyNLP:
    """Unconstrained surrogate of an equality-constrained model.

    The surrogate has the variables of ``model`` and no constraints. Each
    evaluation queries the underlying model (whose counters increase as
    well) and solves one to three saddle-point systems with ``solver``.

    The attributes ``fx``, ``cx``, ``gx`` and ``ys`` cache the last values
    computed by a successful evaluation, at whatever point it was made;
    they are left untouched when an evaluation fails. ``gradient`` does not
    evaluate f and so leaves ``fx`` as it was.

    Args:
        model: The underlying model (kept by reference).
        sigma: Penalty weight, > 0.
        rho: Quadratic penalty weight, >= 0.
        delta: Tikhonov weight, >= 0.
        solver: Saddle-point strategy (default ``IterativeSolver()``).
        hessian_approx: 1 or 2, see :class:`HessianApprox`.

    Example:
        >>> import jax.numpy as jnp
        >>> from fletcher_jax import ADNLPModel, DenseSolver, FletcherPenaltyNLP
        >>>
        >>> model = ADNLPModel(
        ...     lambda x, args: jnp.sum(x**2),
        ...     lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
        ...     x0=jnp.array([1.0, 0.0]),
        ... )
        >>> nlp = FletcherPenaltyNLP(model, sigma=1.0, solver=DenseSolver())
        >>> value = nlp.objective(model.meta.x0)
    """

    def __init__(
        self,
        model: AbstractNLPModel,
        sigma: float = 1.0,
        rho: float = 0.0,
        delta: float = 0.0,
        solver: Optional[SaddlePointSolver] = None,
        hessian_approx: int = HessianApprox.PROJECTED,
    ):
        if model.meta.ncon < 1:
            raise ValueError("the Fletcher penalty needs at least one constraint")
        self.model = model
        self.params = PenaltyParameters(
            sigma=sigma, rho=rho, delta=delta, hessian_approx=hessian_approx
        )
        self.solver = IterativeSolver() if solver is None else solver

        nvar = model.meta.nvar
        self.meta = NLPModelMeta(
            nvar=nvar,
            ncon=0,
            nnzj=0,
            nnzh=nvar * (nvar + 1) // 2,
            x0=model.meta.x0,
            name=f"Fletcher penalization of {model.meta.name}",
            minimize=True,
        )
        self.counters = Counters()
        self._hess_rows, self._hess_cols = lower_triangle_structure(nvar)

        self.fx = jnp.nan
        self.cx = jnp.zeros(0)
        self.gx = jnp.zeros(0)
        self.ys = jnp.zeros(0)

        branches = {
            (HessianApprox.PROJECTED, False): self._hprod_projected,
            (HessianApprox.PROJECTED, True): self._hprod_projected_quadratic,
            (HessianApprox.SENSITIVITY, False): self._hprod_sensitivity,
            (HessianApprox.SENSITIVITY, True): self._hprod_sensitivity_quadratic,
        }
        self._hprod_branch = branches[(self.params.hessian_approx, self.params.rho > 0.0)]
        logger.debug(
            "%s: sigma=%g, rho=%g, delta=%g, hessian_approx=%d, solver=%s",
            self.meta.name,
            self.sigma,
            self.rho,
            self.delta,
            self.hessian_approx,
            type(self.solver).__name__,
        )

    @property
    def sigma(self) -> float:
        return self.params.sigma

    @property
    def rho(self) -> float:
        return self.params.rho

    @property
    def delta(self) -> float:
        return self.params.delta

    @property
    def hessian_approx(self) -> HessianApprox:
        return self.params.hessian_approx

    @property
    def nvar(self) -> int:
        return self.meta.nvar

    def reset_counters(self) -> None:
        self.counters.reset()

    # ------------------------------------------------------------------
    # Shared building blocks
    # ------------------------------------------------------------------

    def _as_vector(self, name, value, size):
        value = jnp.asarray(value)
        check_length(name, value, size)
        if not jnp.issubdtype(value.dtype, jnp.floating):
            value = value.astype(jnp.result_type(float))
        return value

    def _check_out(self, out, size):
        if out is not None:
            check_length("out", out, size)

    def _write(self, value, out):
        if out is None:
            return value
        out[...] = np.asarray(value)
        return out

    def _evaluate(self, x, with_objective=True):
        f = None
        if with_objective:
            f = self.model.objective(x)
            check_finite("objective", f)
        c = self.model.constraints(x)
        check_finite("constraints", c)
        g = self.model.gradient(x)
        check_finite("gradient", g)
        return f, c, g

    def _split(self, sol):
        nvar = self.meta.nvar
        return sol[:nvar], sol[nvar:]

    def _solve(self, x, rhs1, rhs2=None):
        sol1, sol2 = self.solver.solve(self, x, rhs1, rhs2)
        check_finite("saddle solution", sol1)
        if sol2 is not None:
            check_finite("saddle solution", sol2)
        return sol1, sol2

    def _dual_rhs(self, c, g):
        return jnp.concatenate([g, self.sigma * c])

    def _sensitivity_rhs(self, c):
        return jnp.concatenate([jnp.zeros(self.meta.nvar, dtype=c.dtype), c])

    def _penalty_value(self, f, c, ys):
        value = f - jnp.dot(c, ys)
        if self.rho > 0.0:
            value = value + 0.5 * self.rho * jnp.dot(c, c)
        return value

    def _penalty_gradient(self, x, c, g):
        sol1, sol2 = self._solve(x, self._dual_rhs(c, g), self._sensitivity_rhs(c))
        gs, ys = self._split(sol1)
        v, w = self._split(sol2)

        # Ys c = H(x, -ys) v - sigma v - sum_j w_j H_j gs
        Hsv = self.model.hessian_vector(x, -ys, v, obj_weight=1.0)
        Sstw = self.model.hessian_vector(x, w, gs, obj_weight=0.0)
        Ysc = Hsv - self.sigma * v - Sstw

        grad = gs - Ysc
        if self.rho > 0.0:
            grad = grad + self.model.jacobian_transpose_vector(x, self.rho * c)
        return ys, grad

    def _update_cache(self, c, g, ys, f=None):
        if f is not None:
            self.fx = f
        self.cx = c
        self.gx = g
        self.ys = ys

    # ------------------------------------------------------------------
    # Value and gradient
    # ------------------------------------------------------------------

    def objective(self, x: Float[Array, " n"]) -> Float[Array, ""]:
        """Penalty value ``f - c^T ys + (rho / 2) ||c||^2`` (one saddle solve)."""
        x = self._as_vector("x", x, self.meta.nvar)
        self.counters.increment("neval_obj")

        f, c, g = self._evaluate(x)
        sol1, _ = self._solve(x, self._dual_rhs(c, g))
        _, ys = self._split(sol1)
        value = self._penalty_value(f, c, ys)
        check_finite("penalty value", value)

        self._update_cache(c, g, ys, f=f)
        return value

    def gradient(self, x: Float[Array, " n"], out: Optional[np.ndarray] = None):
        """Penalty gradient (two saddle solves sharing one Jacobian).

        Args:
            x: Query point.
            out: Optional NumPy buffer of length nvar filled in place.
        """
        x = self._as_vector("x", x, self.meta.nvar)
        self._check_out(out, self.meta.nvar)
        self.counters.increment("neval_grad")

        _, c, g = self._evaluate(x, with_objective=False)
        ys, grad = self._penalty_gradient(x, c, g)
        check_finite("penalty gradient", grad)

        self._update_cache(c, g, ys)
        return self._write(grad, out)

    def objective_and_gradient(
        self, x: Float[Array, " n"], out: Optional[np.ndarray] = None
    ):
        """Value and gradient from a single pair of saddle solves.

        Returns:
            ``(value, gradient)``; the gradient is written to ``out`` when
            given.
        """
        x = self._as_vector("x", x, self.meta.nvar)
        self._check_out(out, self.meta.nvar)
        self.counters.increment("neval_obj")
        self.counters.increment("neval_grad")

        f, c, g = self._evaluate(x)
        ys, grad = self._penalty_gradient(x, c, g)
        value = self._penalty_value(f, c, ys)
        check_finite("penalty value", value)
        check_finite("penalty gradient", grad)

        self._update_cache(c, g, ys, f=f)
        return value, self._write(grad, out)

    # ------------------------------------------------------------------
    # Hessian assembly
    # ------------------------------------------------------------------

    def hessian_structure(self) -> tuple[np.ndarray, np.ndarray]:
        """Rows and columns of the dense lower triangle, column by column."""
        return self._hess_rows.copy(), self._hess_cols.copy()

    def _dense_hessian(self, x):
        model = self.model
        f, c, g = self._evaluate(x)
        A = model.jacobian(x)
        sol1, _ = self._solve(x, self._dual_rhs(c, g))
        gs, ys = self._split(sol1)

        Hs = model.hessian(x, -ys, obj_weight=1.0)
        Hs = 0.5 * (Hs + Hs.T)
        Pt, G = oblique_projector(A, self.params.tau)
        if not bool(jnp.all(jnp.isfinite(G))):
            logger.debug("Cholesky factorization of A A^T + tau I failed")
            raise SingularSystemError(
                f"A A^T + {self.params.tau:g} I is numerically singular"
            )

        H = Hs - Pt @ Hs - Hs @ Pt + 2.0 * self.sigma * Pt
        if self.rho > 0.0:
            H = H + model.hessian(x, self.rho * c, obj_weight=0.0)
            H = H + self.rho * A.T @ A
        if self.hessian_approx == HessianApprox.SENSITIVITY:
            # Row j of Ss is gs^T H_j
            Ss = jnp.stack(
                [gs @ model.per_constraint_hessian(x, j) for j in range(model.meta.ncon)]
            )
            T = G.T @ Ss
            H = H - T - T.T
        check_finite("penalty Hessian", H)
        return H, (f, c, g, ys)

    def hessian_coord(self, x: Float[Array, " n"], out: Optional[np.ndarray] = None):
        """Lower triangle of the penalty Hessian in the order of :meth:`hessian_structure`.

        Args:
            x: Query point.
            out: Optional NumPy buffer of length nnzh filled in place.
        """
        x = self._as_vector("x", x, self.meta.nvar)
        self._check_out(out, self.meta.nnzh)
        self.counters.increment("neval_hess")

        H, (f, c, g, ys) = self._dense_hessian(x)
        vals = H[self._hess_rows, self._hess_cols]

        self._update_cache(c, g, ys, f=f)
        return self._write(vals, out)

    def hessian_coord_with_multipliers(
        self,
        x: Float[Array, " n"],
        y: Float[Array, " 0"],
        out: Optional[np.ndarray] = None,
    ):
        """Constrained-model signature of :meth:`hessian_coord`; ``y`` must be empty."""
        check_length("y", jnp.asarray(y), self.meta.ncon)
        return self.hessian_coord(x, out=out)

    def hessian(self, x: Float[Array, " n"]) -> Float[Array, "n n"]:
        """Dense symmetric penalty Hessian rebuilt from :meth:`hessian_coord`."""
        vals = self.hessian_coord(x)
        n = self.meta.nvar
        lower = jnp.zeros((n, n), dtype=vals.dtype).at[self._hess_rows, self._hess_cols].set(vals)
        return lower + lower.T - jnp.diag(jnp.diag(lower))

    # ------------------------------------------------------------------
    # Hessian-vector product
    # ------------------------------------------------------------------

    def _projected_terms(self, x, ys, v):
        Hsv = self.model.hessian_vector(x, -ys, v, obj_weight=1.0)
        nvar, ncon = self.meta.nvar, self.model.meta.ncon
        zeros = jnp.zeros(ncon, dtype=v.dtype)
        # Solving with (u, 0) gives u - Pt u in the primal block
        sol_v, sol_Hsv = self._solve(
            x, jnp.concatenate([v, zeros]), jnp.concatenate([Hsv, zeros])
        )
        Ptv = v - sol_v[:nvar]
        PtHsv = Hsv - sol_Hsv[:nvar]
        HsPtv = self.model.hessian_vector(x, -ys, Ptv, obj_weight=1.0)
        return _HprodTerms(Hsv=Hsv, Ptv=Ptv, PtHsv=PtHsv, HsPtv=HsPtv)

    def _base_hprod(self, terms):
        return terms.Hsv - terms.PtHsv - terms.HsPtv + 2.0 * self.sigma * terms.Ptv

    def _quadratic_hprod(self, x, c, v):
        Jv = self.model.jacobian_vector(x, v)
        JtJv = self.model.jacobian_transpose_vector(x, Jv)
        Hcv = self.model.hessian_vector(x, c, v, obj_weight=0.0)
        return self.rho * (Hcv + JtJv)

    def _require_convergence(self, name, result: KrylovResult):
        if not bool(result.converged):
            iterations = int(result.iterations)
            residual = float(result.residual_norm)
            logger.debug(
                "%s stopped after %d iterations (residual %.3e)", name, iterations, residual
            )
            raise NonConvergenceError(
                f"{name} did not converge after {iterations} iterations "
                f"(residual {residual:.3e})",
                iterations=iterations,
                residual_norm=residual,
            )

    def _sensitivity_hprod(self, x, gs, v):
        """Second-order sensitivity of ys applied to v.

        Returns ``J^T (J J^T + tau I)^{-1} Ss v + Ss^T (J J^T + tau I)^{-1} J v``
        where row j of Ss is ``gs^T H_j``.
        """
        model = self.model
        tau = self.params.tau
        jac = model.jacobian_operator(x)

        # (J J^T + tau I)^{-1} J v as the least-squares problem min ||J^T y - v||
        ls = cgls(jac.rmv, jac.mv, v, model.meta.ncon, lam=tau)
        self._require_convergence("cgls", ls)
        SstGJv = model.hessian_vector(x, ls.x, gs, obj_weight=0.0)

        Ssv = model.constraint_hessian_products(x, gs, v)
        mr = minres(jac.gram_mv, Ssv, shift=tau)
        self._require_convergence("minres", mr)
        JtGSsv = model.jacobian_transpose_vector(x, mr.x)
        return JtGSsv + SstGJv

    def _hprod_projected(self, x, v, c, gs, terms):
        return self._base_hprod(terms)

    def _hprod_projected_quadratic(self, x, v, c, gs, terms):
        return self._base_hprod(terms) + self._quadratic_hprod(x, c, v)

    def _hprod_sensitivity(self, x, v, c, gs, terms):
        return self._base_hprod(terms) - self._sensitivity_hprod(x, gs, v)

    def _hprod_sensitivity_quadratic(self, x, v, c, gs, terms):
        return (
            self._base_hprod(terms)
            + self._quadratic_hprod(x, c, v)
            - self._sensitivity_hprod(x, gs, v)
        )

    def hessian_vector(
        self,
        x: Float[Array, " n"],
        v: Float[Array, " n"],
        out: Optional[np.ndarray] = None,
    ):
        """Matrix-free product of the penalty Hessian with v.

        Performs three saddle solves (the dual estimate, then the projector
        applied to v and to ``Hs v``) and, for ``HessianApprox.SENSITIVITY``,
        one CGLS and one MINRES solve against the Gram operator ``J J^T``.

        Args:
            x: Query point.
            v: Direction.
            out: Optional NumPy buffer of length nvar filled in place.
        """
        x = self._as_vector("x", x, self.meta.nvar)
        v = self._as_vector("v", v, self.meta.nvar)
        self._check_out(out, self.meta.nvar)
        self.counters.increment("neval_hprod")

        f, c, g = self._evaluate(x)
        sol1, _ = self._solve(x, self._dual_rhs(c, g))
        gs, ys = self._split(sol1)
        terms = self._projected_terms(x, ys, v)
        Hv = self._hprod_branch(x, v, c, gs, terms)
        check_finite("penalty Hessian-vector product", Hv)

        self._update_cache(c, g, ys, f=f)
        return self._write(Hv, out)

    def hessian_vector_with_multipliers(
        self,
        x: Float[Array, " n"],
        y: Float[Array, " 0"],
        v: Float[Array, " n"],
        out: Optional[np.ndarray] = None,
    ):
        """Constrained-model signature of :meth:`hessian_vector`; ``y`` must be empty."""
        check_length("y", jnp.asarray(y), self.meta.ncon)
        return self.hessian_vector(x, v, out=out)
