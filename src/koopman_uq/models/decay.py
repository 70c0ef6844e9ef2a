from __future__ import annotations

import numpy as np

from ..model import OdeModel


def exponential_decay_func(t, u, k):
    """du/dt = -k u; broadcasts over batched states (1, B) and rates (B,)."""
    return -k * np.asarray(u)


def exponential_decay(
    *, u0: float = 1.0, tspan=(0.0, 1.0), name: str = "exponential decay"
) -> OdeModel:
    """Return a one-state decay model with closed form u(t) = u0 exp(-k t).

    Handy as an analytically solvable check of the whole pipeline.
    """
    return (
        OdeModel.from_function(
            exponential_decay_func, states=("u",), u0=(u0,), tspan=tspan, name=name
        )
        .bound(k=(0.0, None))
    )
