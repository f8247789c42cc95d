"""Matrix-free Krylov solvers.

This module implements the generic linear-solver primitives used by the
penalty engine:

- ``cg``: preconditioned conjugate gradient for ``(A + shift I) x = b``
  with A symmetric positive semidefinite.
- ``cgls``: conjugate gradient on the normal equations of the regularized
  least-squares problem ``min ||K x - b||^2 + lam ||x||^2``.
- ``minres``: preconditioned MINRES (Paige & Saunders, 1975) for symmetric
  ``(A + shift I) x = b``.

Operators are accessed only through matrix-vector product closures, and
every loop is a ``jax.lax.while_loop``, so the solvers never form a matrix.
Each solver stops either when ``||r|| <= atol + rtol * ||r_0||`` or after
``max_iter`` iterations; a run that hits the cap or breaks down is reported
through ``converged = False`` instead of raising, so that the caller decides
what a failed solve means.
"""

from collections.abc import Callable
from typing import NamedTuple

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped


class KrylovResult(NamedTuple):
    """Result from a Krylov solve.

    Attributes:
        x: Approximate solution.
        converged: Whether the stopping test was met.
        iterations: Number of iterations performed.
        residual_norm: Norm of the (possibly preconditioned) final residual.
    """

    x: Float[Array, " n"]
    converged: Bool[Array, ""]
    iterations: Int[Array, ""]
    residual_norm: Float[Array, ""]


def default_tolerances(dtype, atol, rtol):
    """Fill unset tolerances with sqrt(eps) of ``dtype``."""
    sqrt_eps = float(np.sqrt(jnp.finfo(dtype).eps))
    return (
        sqrt_eps if atol is None else atol,
        sqrt_eps if rtol is None else rtol,
    )


def _identity(v):
    return v


def _safe(denominator):
    return jnp.where(denominator == 0.0, 1.0, denominator)


class _CGState(NamedTuple):
    x: Float[Array, " n"]
    r: Float[Array, " n"]
    p: Float[Array, " n"]
    rz: Float[Array, ""]
    iteration: Int[Array, ""]
    converged: Bool[Array, ""]
    breakdown: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def cg(
    matvec: Callable,
    b: Float[Array, " n"],
    shift: float = 0.0,
    precond: Callable | None = None,
    atol: float | None = None,
    rtol: float | None = None,
    max_iter: int | None = None,
) -> KrylovResult:
    """Solve ``(A + shift I) x = b`` by preconditioned conjugate gradient.

    Args:
        matvec: Function v -> A @ v, A symmetric positive semidefinite.
        b: Right-hand side.
        shift: Non-negative diagonal shift added to A.
        precond: Function r -> M @ r with M an SPD approximation of the
            inverse of ``A + shift I`` (identity when None).
        atol: Absolute residual tolerance (default sqrt(eps)).
        rtol: Relative residual tolerance (default sqrt(eps)).
        max_iter: Iteration cap (default 5 * n).

    Returns:
        KrylovResult. The loop also stops on non-positive curvature, which
        leaves ``converged`` False unless the residual test already holds.
    """
    n = b.shape[0]
    atol, rtol = default_tolerances(b.dtype, atol, rtol)
    if max_iter is None:
        max_iter = 5 * n
    psolve = _identity if precond is None else precond

    def apply(v):
        return matvec(v) + shift * v

    tol = atol + rtol * jnp.linalg.norm(b)
    z0 = psolve(b)

    init = _CGState(
        x=jnp.zeros_like(b),
        r=b,
        p=z0,
        rz=jnp.dot(b, z0),
        iteration=jnp.array(0),
        converged=jnp.linalg.norm(b) <= tol,
        breakdown=jnp.array(False),
    )

    def cond_fn(state):
        return ~state.converged & ~state.breakdown & (state.iteration < max_iter)

    def body_fn(state):
        q = apply(state.p)
        pq = jnp.dot(state.p, q)
        breakdown = pq <= 0.0
        alpha = state.rz / _safe(pq)

        x_new = state.x + alpha * state.p
        r_new = state.r - alpha * q
        z_new = psolve(r_new)
        rz_new = jnp.dot(r_new, z_new)
        beta = rz_new / _safe(state.rz)
        p_new = z_new + beta * state.p

        # Keep the last valid iterate on breakdown
        x_new = jnp.where(breakdown, state.x, x_new)
        r_new = jnp.where(breakdown, state.r, r_new)
        p_new = jnp.where(breakdown, state.p, p_new)
        rz_new = jnp.where(breakdown, state.rz, rz_new)

        return _CGState(
            x=x_new,
            r=r_new,
            p=p_new,
            rz=rz_new,
            iteration=state.iteration + 1,
            converged=jnp.linalg.norm(r_new) <= tol,
            breakdown=breakdown,
        )

    final = jax.lax.while_loop(cond_fn, body_fn, init)
    return KrylovResult(
        x=final.x,
        converged=final.converged,
        iterations=final.iteration,
        residual_norm=jnp.linalg.norm(final.r),
    )


class _CGLSState(NamedTuple):
    x: Float[Array, " n"]
    r: Float[Array, " m"]
    p: Float[Array, " n"]
    gamma: Float[Array, ""]
    iteration: Int[Array, ""]
    converged: Bool[Array, ""]
    breakdown: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def cgls(
    matvec: Callable,
    rmatvec: Callable,
    b: Float[Array, " m"],
    n: int,
    lam: float = 0.0,
    atol: float | None = None,
    rtol: float | None = None,
    max_iter: int | None = None,
) -> KrylovResult:
    """Solve ``min ||K x - b||^2 + lam ||x||^2`` by CGLS.

    The iteration is CG applied to the normal equations
    ``(K^T K + lam I) x = K^T b`` without forming ``K^T K``. The stopping
    test uses the normal-equation residual ``s = K^T r - lam x``.

    Args:
        matvec: Function v -> K @ v, mapping R^n to R^m.
        rmatvec: Function u -> K^T @ u, mapping R^m to R^n.
        b: Right-hand side in R^m.
        n: Number of columns of K.
        lam: Non-negative Tikhonov weight.
        atol: Absolute tolerance (default sqrt(eps)).
        rtol: Relative tolerance on ``||K^T b||`` (default sqrt(eps)).
        max_iter: Iteration cap (default 5 * (m + n)).

    Returns:
        KrylovResult whose ``residual_norm`` is ``||s||``.
    """
    m = b.shape[0]
    atol, rtol = default_tolerances(b.dtype, atol, rtol)
    if max_iter is None:
        max_iter = 5 * (m + n)

    s0 = rmatvec(b)
    gamma0 = jnp.dot(s0, s0)
    tol = atol + rtol * jnp.sqrt(gamma0)

    init = _CGLSState(
        x=jnp.zeros(n, dtype=b.dtype),
        r=b,
        p=s0,
        gamma=gamma0,
        iteration=jnp.array(0),
        converged=jnp.sqrt(gamma0) <= tol,
        breakdown=jnp.array(False),
    )

    def cond_fn(state):
        return ~state.converged & ~state.breakdown & (state.iteration < max_iter)

    def body_fn(state):
        q = matvec(state.p)
        delta = jnp.dot(q, q) + lam * jnp.dot(state.p, state.p)
        breakdown = delta <= 0.0
        alpha = state.gamma / _safe(delta)

        x_new = state.x + alpha * state.p
        r_new = state.r - alpha * q
        s_new = rmatvec(r_new) - lam * x_new
        gamma_new = jnp.dot(s_new, s_new)
        beta = gamma_new / _safe(state.gamma)
        p_new = s_new + beta * state.p

        x_new = jnp.where(breakdown, state.x, x_new)
        r_new = jnp.where(breakdown, state.r, r_new)
        p_new = jnp.where(breakdown, state.p, p_new)
        gamma_new = jnp.where(breakdown, state.gamma, gamma_new)

        return _CGLSState(
            x=x_new,
            r=r_new,
            p=p_new,
            gamma=gamma_new,
            iteration=state.iteration + 1,
            converged=jnp.sqrt(gamma_new) <= tol,
            breakdown=breakdown,
        )

    final = jax.lax.while_loop(cond_fn, body_fn, init)
    return KrylovResult(
        x=final.x,
        converged=final.converged,
        iterations=final.iteration,
        residual_norm=jnp.sqrt(final.gamma),
    )


class _MinresState(NamedTuple):
    x: Float[Array, " n"]
    r1: Float[Array, " n"]
    r2: Float[Array, " n"]
    y: Float[Array, " n"]
    w: Float[Array, " n"]
    w2: Float[Array, " n"]
    beta: Float[Array, ""]
    oldb: Float[Array, ""]
    dbar: Float[Array, ""]
    epsln: Float[Array, ""]
    phibar: Float[Array, ""]
    cs: Float[Array, ""]
    sn: Float[Array, ""]
    iteration: Int[Array, ""]
    converged: Bool[Array, ""]


@jaxtyped(typechecker=beartype)
def minres(
    matvec: Callable,
    b: Float[Array, " n"],
    shift: float = 0.0,
    precond: Callable | None = None,
    atol: float | None = None,
    rtol: float | None = None,
    max_iter: int | None = None,
) -> KrylovResult:
    """Solve the symmetric system ``(A + shift I) x = b`` by MINRES.

    Uses the Lanczos process with Givens rotations; the residual norm is
    available for free as ``|phibar|`` at every iteration. A may be
    indefinite or singular, in which case MINRES returns a least-squares
    solution when the iteration cap allows it.

    Args:
        matvec: Function v -> A @ v, A symmetric.
        b: Right-hand side.
        shift: Diagonal shift added to A.
        precond: Function r -> M @ r with M symmetric positive definite
            (identity when None).
        atol: Absolute residual tolerance (default sqrt(eps)).
        rtol: Relative residual tolerance (default sqrt(eps)).
        max_iter: Iteration cap (default 5 * n).

    Returns:
        KrylovResult with ``residual_norm = |phibar|``.
    """
    n = b.shape[0]
    atol, rtol = default_tolerances(b.dtype, atol, rtol)
    if max_iter is None:
        max_iter = 5 * n
    psolve = _identity if precond is None else precond
    eps = jnp.finfo(b.dtype).eps

    def scalar(value):
        return jnp.asarray(value, dtype=b.dtype)

    y0 = psolve(b)
    beta1 = jnp.sqrt(jnp.maximum(jnp.dot(b, y0), 0.0))
    tol = atol + rtol * beta1

    init = _MinresState(
        x=jnp.zeros_like(b),
        r1=b,
        r2=b,
        y=y0,
        w=jnp.zeros_like(b),
        w2=jnp.zeros_like(b),
        beta=beta1,
        oldb=scalar(0.0),
        dbar=scalar(0.0),
        epsln=scalar(0.0),
        phibar=beta1,
        cs=scalar(-1.0),
        sn=scalar(0.0),
        iteration=jnp.array(0),
        converged=beta1 <= tol,
    )

    def cond_fn(state):
        # beta == 0 means the Krylov space is exhausted
        return ~state.converged & (state.beta > 0.0) & (state.iteration < max_iter)

    def body_fn(state):
        # Lanczos step
        v = state.y / state.beta
        y = matvec(v) + shift * v
        coeff = jnp.where(state.iteration > 0, state.beta / _safe(state.oldb), 0.0)
        y = y - coeff * state.r1
        alfa = jnp.dot(v, y)
        y = y - (alfa / state.beta) * state.r2
        r1 = state.r2
        r2 = y
        y = psolve(r2)
        oldb = state.beta
        beta = jnp.sqrt(jnp.maximum(jnp.dot(r2, y), 0.0))

        # Apply the previous rotation, then compute the next one
        oldeps = state.epsln
        delta = state.cs * state.dbar + state.sn * alfa
        gbar = state.sn * state.dbar - state.cs * alfa
        epsln = state.sn * beta
        dbar = -state.cs * beta
        gamma = jnp.maximum(jnp.sqrt(gbar**2 + beta**2), eps)
        cs = gbar / gamma
        sn = beta / gamma
        phi = cs * state.phibar
        phibar = sn * state.phibar

        # Update the solution along the new search direction
        w1 = state.w2
        w2 = state.w
        w = (v - oldeps * w1 - delta * w2) / gamma
        x = state.x + phi * w

        return _MinresState(
            x=x,
            r1=r1,
            r2=r2,
            y=y,
            w=w,
            w2=w2,
            beta=beta,
            oldb=oldb,
            dbar=dbar,
            epsln=epsln,
            phibar=phibar,
            cs=cs,
            sn=sn,
            iteration=state.iteration + 1,
            converged=jnp.abs(phibar) <= tol,
        )

    final = jax.lax.while_loop(cond_fn, body_fn, init)
    return KrylovResult(
        x=final.x,
        converged=final.converged,
        iterations=final.iteration,
        residual_norm=jnp.abs(final.phibar),
    )
