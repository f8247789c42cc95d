"""Smooth equality-constrained NLP models.

The penalty engine only talks to the underlying problem through
:class:`AbstractNLPModel`:

    min_x f(x)   s.t.   c(x) = 0

Every public evaluation validates the length of its inputs and bumps the
matching entry of the model's :class:`Counters`. :class:`ADNLPModel` is a
concrete model built from plain JAX functions; derivatives are taken from
user-supplied functions when present and from automatic differentiation
otherwise.
"""

import abc
import dataclasses
import logging
from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from fletcher_jax.types import (
    ConstraintFn,
    ConstraintHVPFn,
    GradFn,
    HVPFn,
    JacobianFn,
    ObjectiveFn,
)
from fletcher_jax.utils import args_closure, check_length

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Counters:
    """Evaluation counters of a model."""

    neval_obj: int = 0
    neval_cons: int = 0
    neval_grad: int = 0
    neval_jac: int = 0
    neval_jprod: int = 0
    neval_jtprod: int = 0
    neval_hess: int = 0
    neval_hprod: int = 0
    neval_jhess: int = 0
    neval_ghjv: int = 0

    def increment(self, name: str) -> None:
        if not hasattr(self, name):
            raise AttributeError(f"unknown counter {name!r}")
        setattr(self, name, getattr(self, name) + 1)

    def reset(self) -> None:
        for field in dataclasses.fields(self):
            setattr(self, field.name, 0)

    def total(self) -> int:
        return sum(getattr(self, field.name) for field in dataclasses.fields(self))


class NLPModelMeta(eqx.Module):
    """Problem metadata.

    Attributes:
        nvar: Number of variables.
        ncon: Number of equality constraints.
        nnzj: Number of stored Jacobian entries.
        nnzh: Number of stored Hessian entries (lower triangle).
        x0: Initial point.
        name: Problem name.
        minimize: Whether the objective is minimized.
    """

    nvar: int = eqx.field(static=True)
    ncon: int = eqx.field(static=True)
    nnzj: int = eqx.field(static=True)
    nnzh: int = eqx.field(static=True)
    x0: Float[Array, " nvar"]
    name: str = eqx.field(static=True, default="Generic")
    minimize: bool = eqx.field(static=True, default=True)


class JacobianOperator(eqx.Module):
    """Matrix-free constraint Jacobian at a fixed point.

    ``mv`` and ``rmv`` are pure JAX functions, so Krylov loops can close over
    them. Products through the operator are not counted.
    """

    jvp_fn: Callable
    vjp_fn: Callable
    shape: tuple[int, int] = eqx.field(static=True)

    def mv(self, v: Float[Array, " n"]) -> Float[Array, " m"]:
        return self.jvp_fn(v)

    def rmv(self, u: Float[Array, " m"]) -> Float[Array, " n"]:
        return self.vjp_fn(u)[0]

    def gram_mv(self, u: Float[Array, " m"]) -> Float[Array, " m"]:
        """Apply ``J J^T`` to a constraint-space vector."""
        return self.mv(self.rmv(u))


class AbstractNLPModel(abc.ABC):
    """Interface of the smooth model wrapped by the penalty engine."""

    meta: NLPModelMeta
    counters: Counters

    @property
    def nvar(self) -> int:
        return self.meta.nvar

    @property
    def ncon(self) -> int:
        return self.meta.ncon

    def _check_x(self, x) -> None:
        check_length("x", x, self.meta.nvar)

    def reset_counters(self) -> None:
        self.counters.reset()

    @abc.abstractmethod
    def objective(self, x: Float[Array, " n"]) -> Float[Array, ""]:
        """Objective value f(x)."""

    @abc.abstractmethod
    def constraints(self, x: Float[Array, " n"]) -> Float[Array, " m"]:
        """Constraint residual c(x)."""

    @abc.abstractmethod
    def gradient(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        """Objective gradient."""

    @abc.abstractmethod
    def jacobian(self, x: Float[Array, " n"]) -> Float[Array, "m n"]:
        """Dense constraint Jacobian."""

    @abc.abstractmethod
    def jacobian_vector(
        self, x: Float[Array, " n"], v: Float[Array, " n"]
    ) -> Float[Array, " m"]:
        """J(x) @ v."""

    @abc.abstractmethod
    def jacobian_transpose_vector(
        self, x: Float[Array, " n"], u: Float[Array, " m"]
    ) -> Float[Array, " n"]:
        """J(x)^T @ u."""

    @abc.abstractmethod
    def hessian_vector(
        self,
        x: Float[Array, " n"],
        y: Float[Array, " m"],
        v: Float[Array, " n"],
        obj_weight: float = 1.0,
    ) -> Float[Array, " n"]:
        """(obj_weight * H_f(x) + sum_i y_i H_{c_i}(x)) @ v."""

    @abc.abstractmethod
    def hessian(
        self, x: Float[Array, " n"], y: Float[Array, " m"], obj_weight: float = 1.0
    ) -> Float[Array, "n n"]:
        """Dense obj_weight * H_f(x) + sum_i y_i H_{c_i}(x)."""

    @abc.abstractmethod
    def per_constraint_hessian(self, x: Float[Array, " n"], j: int) -> Float[Array, "n n"]:
        """Dense Hessian of the constraint c_j."""

    @abc.abstractmethod
    def constraint_hessian_products(
        self, x: Float[Array, " n"], g: Float[Array, " n"], v: Float[Array, " n"]
    ) -> Float[Array, " m"]:
        """The vector whose entry j is g^T H_{c_j}(x) v."""

    @abc.abstractmethod
    def jacobian_operator(self, x: Float[Array, " n"]) -> JacobianOperator:
        """Matrix-free Jacobian at x."""

    def jacobian_structure(self) -> tuple[np.ndarray, np.ndarray]:
        """Row and column indices of the stored Jacobian entries (dense by default)."""
        rows, cols = np.indices((self.meta.ncon, self.meta.nvar))
        return rows.ravel(), cols.ravel()

    def jacobian_coord(self, x: Float[Array, " n"]) -> Float[Array, " nnzj"]:
        """Jacobian values in the order of :meth:`jacobian_structure`."""
        rows, cols = self.jacobian_structure()
        return self.jacobian(x)[rows, cols]


class ADNLPModel(AbstractNLPModel):
    """Equality-constrained model defined by JAX functions.

    Derivatives follow the same rules as a user-supplied-or-AD solver:

    - gradient: ``grad_fn`` or ``jax.grad``.
    - Jacobian: ``jac_fn`` or ``jax.jacrev``.
    - Lagrangian HVP: ``obj_hvp_fn`` for the objective part and
      ``constraint_hvp_fn`` for the constraint part, each falling back to
      forward-over-reverse AD on its own term. With neither given, AD runs
      on the whole weighted Lagrangian.
    - Dense Hessians: ``jax.hessian`` when no HVP function is given,
      otherwise the HVPs above applied to the unit vectors.
      ``per_constraint_hessian`` and ``constraint_hessian_products`` also
      go through ``constraint_hvp_fn`` when it is given.

    Example:
        >>> import jax.numpy as jnp
        >>> from fletcher_jax import ADNLPModel
        >>>
        >>> model = ADNLPModel(
        ...     lambda x, args: jnp.sum(x**2),
        ...     lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
        ...     x0=jnp.array([1.0, 0.0]),
        ... )
    """

    def __init__(
        self,
        objective_fn: ObjectiveFn,
        constraint_fn: ConstraintFn,
        x0: Float[Array, " n"],
        ncon: Optional[int] = None,
        args: Any = None,
        name: str = "Generic",
        grad_fn: Optional[GradFn] = None,
        jac_fn: Optional[JacobianFn] = None,
        obj_hvp_fn: Optional[HVPFn] = None,
        constraint_hvp_fn: Optional[ConstraintHVPFn] = None,
    ):
        x0 = jnp.asarray(x0)
        if x0.ndim != 1:
            raise ValueError(f"x0 must be a vector, got shape {x0.shape}")
        nvar = x0.shape[0]
        if ncon is None:
            ncon = jax.eval_shape(constraint_fn, x0, args).shape[0]
        self.objective_fn = objective_fn
        self.constraint_fn = constraint_fn
        self.args = args
        self.grad_fn = grad_fn
        self.jac_fn = jac_fn
        self.obj_hvp_fn = obj_hvp_fn
        self.constraint_hvp_fn = constraint_hvp_fn
        self.meta = NLPModelMeta(
            nvar=nvar,
            ncon=ncon,
            nnzj=nvar * ncon,
            nnzh=nvar * (nvar + 1) // 2,
            x0=x0,
            name=name,
        )
        self.counters = Counters()
        logger.debug("Built ADNLPModel %r with nvar=%d, ncon=%d", name, nvar, ncon)

    def _f(self, x):
        return self.objective_fn(x, self.args)

    def _c(self, x):
        return self.constraint_fn(x, self.args)

    def _objective_hvp(self, x, v):
        if self.obj_hvp_fn is not None:
            return self.obj_hvp_fn(x, v, self.args)
        _, hv = jax.jvp(jax.grad(self._f), (x,), (v,))
        return hv

    def _constraint_hvp(self, x, y, v):
        if self.constraint_hvp_fn is not None:
            return y @ self.constraint_hvp_fn(x, v, self.args)

        def weighted_cons(z):
            return jnp.dot(y, self._c(z))

        _, hv = jax.jvp(jax.grad(weighted_cons), (x,), (v,))
        return hv

    def _has_user_hvp(self):
        return self.obj_hvp_fn is not None or self.constraint_hvp_fn is not None

    def _lagrangian_hvp(self, x, y, v, obj_weight):
        if self._has_user_hvp():
            return obj_weight * self._objective_hvp(x, v) + self._constraint_hvp(x, y, v)

        def lagrangian(z):
            return obj_weight * self._f(z) + jnp.dot(y, self._c(z))

        _, hv = jax.jvp(jax.grad(lagrangian), (x,), (v,))
        return hv

    def objective(self, x):
        self._check_x(x)
        self.counters.increment("neval_obj")
        return self._f(x)

    def constraints(self, x):
        self._check_x(x)
        self.counters.increment("neval_cons")
        return self._c(x)

    def gradient(self, x):
        self._check_x(x)
        self.counters.increment("neval_grad")
        if self.grad_fn is not None:
            return self.grad_fn(x, self.args)
        return jax.grad(self._f)(x)

    def jacobian(self, x):
        self._check_x(x)
        self.counters.increment("neval_jac")
        if self.jac_fn is not None:
            return self.jac_fn(x, self.args)
        return jax.jacrev(args_closure(self.constraint_fn, self.args))(x)

    def jacobian_vector(self, x, v):
        self._check_x(x)
        check_length("v", v, self.meta.nvar)
        self.counters.increment("neval_jprod")
        if self.jac_fn is not None:
            return self.jac_fn(x, self.args) @ v
        _, jv = jax.jvp(self._c, (x,), (v,))
        return jv

    def jacobian_transpose_vector(self, x, u):
        self._check_x(x)
        check_length("u", u, self.meta.ncon)
        self.counters.increment("neval_jtprod")
        if self.jac_fn is not None:
            return self.jac_fn(x, self.args).T @ u
        _, vjp_fn = jax.vjp(self._c, x)
        return vjp_fn(u)[0]

    def hessian_vector(self, x, y, v, obj_weight=1.0):
        self._check_x(x)
        check_length("y", y, self.meta.ncon)
        check_length("v", v, self.meta.nvar)
        self.counters.increment("neval_hprod")
        return self._lagrangian_hvp(x, y, v, obj_weight)

    def hessian(self, x, y, obj_weight=1.0):
        self._check_x(x)
        check_length("y", y, self.meta.ncon)
        self.counters.increment("neval_hess")
        if self._has_user_hvp():
            # Column i is the Lagrangian HVP with e_i
            basis = jnp.eye(self.meta.nvar, dtype=x.dtype)
            columns = jax.vmap(lambda e: self._lagrangian_hvp(x, y, e, obj_weight))(basis)
            return columns.T

        def lagrangian(z):
            return obj_weight * self._f(z) + jnp.dot(y, self._c(z))

        return jax.hessian(lagrangian)(x)

    def per_constraint_hessian(self, x, j):
        self._check_x(x)
        if not 0 <= j < self.meta.ncon:
            raise IndexError(f"constraint index {j} out of range [0, {self.meta.ncon})")
        self.counters.increment("neval_jhess")
        if self.constraint_hvp_fn is not None:
            basis = jnp.eye(self.meta.nvar, dtype=x.dtype)
            columns = jax.vmap(lambda e: self.constraint_hvp_fn(x, e, self.args)[j])(basis)
            return columns.T
        return jax.hessian(lambda z: self._c(z)[j])(x)

    def constraint_hessian_products(self, x, g, v):
        self._check_x(x)
        check_length("g", g, self.meta.nvar)
        check_length("v", v, self.meta.nvar)
        self.counters.increment("neval_ghjv")
        if self.constraint_hvp_fn is not None:
            return self.constraint_hvp_fn(x, v, self.args) @ g

        # d/dx [J(x) g] in direction v has entries g^T H_{c_j} v.
        def jac_times_g(z):
            return jax.jvp(self._c, (z,), (g,))[1]

        _, out = jax.jvp(jac_times_g, (x,), (v,))
        return out

    def jacobian_operator(self, x):
        self._check_x(x)
        if self.jac_fn is not None:
            jac = self.jac_fn(x, self.args)
            return JacobianOperator(
                jvp_fn=lambda v: jac @ v,
                vjp_fn=lambda u: (jac.T @ u,),
                shape=(self.meta.ncon, self.meta.nvar),
            )
        _, jvp_fn = jax.linearize(self._c, x)
        _, vjp_fn = jax.vjp(self._c, x)
        return JacobianOperator(
            jvp_fn=jvp_fn,
            vjp_fn=vjp_fn,
            shape=(self.meta.ncon, self.meta.nvar),
        )
