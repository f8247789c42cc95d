from typing import Any, Callable, TypeVar

import jax
import jax.numpy as jnp

from fletcher_jax.errors import DimensionError, NonFiniteValueError

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def check_length(name: str, array: Any, expected: int) -> None:
    """Raise ``DimensionError`` unless ``array`` is a vector of ``expected`` entries."""
    shape = getattr(array, "shape", None)
    if shape is None or len(shape) != 1 or shape[0] != expected:
        raise DimensionError(
            f"{name} must have shape ({expected},), got {shape}"
        )


def check_finite(name: str, value: Any) -> None:
    """Raise ``NonFiniteValueError`` if ``value`` holds a NaN or an Inf."""
    if not bool(jnp.all(jnp.isfinite(jnp.asarray(value)))):
        raise NonFiniteValueError(f"non-finite values in {name}")
