"""Ready-made ODE models."""

from .decay import exponential_decay, exponential_decay_func
from .lotka_volterra import lotka_volterra, lotka_volterra_func

__all__ = [
    "exponential_decay",
    "exponential_decay_func",
    "lotka_volterra",
    "lotka_volterra_func",
]
