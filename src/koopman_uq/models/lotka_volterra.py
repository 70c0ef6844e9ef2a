from __future__ import annotations

import numpy as np

from ..model import OdeModel


def lotka_volterra_func(t, u, alpha, beta, gamma, delta):
    """Predator-prey rates; broadcasts over batched states (2, B) and parameters (B,)."""
    x, y = u[0], u[1]
    return np.array([alpha * x - beta * x * y, -gamma * y + delta * x * y])


def lotka_volterra(
    *,
    u0=(1.0, 1.0),
    tspan=(0.0, 10.0),
    name: str = "lotka-volterra",
) -> OdeModel:
    """Return the Lotka-Volterra predator-prey model with the tutorial priors.

    States
    ------
    prey, predator

    Parameters in the model
    -----------------------
    alpha : prey growth rate        ~ N(1.5, 0.5) on [0.5, 2.5]
    beta  : predation rate          ~ N(1.2, 0.5) on [0, 2]
    gamma : predator death rate     ~ N(3.0, 0.5) on [1, 4]
    delta : predator growth per prey ~ N(1.0, 0.5) on [0, 2]
    sigma : observation noise       ~ InverseGamma(2, 3)

    The usual ground truth is alpha=1.5, beta=1, gamma=3, delta=1.
    """
    return (
        OdeModel.from_function(
            lotka_volterra_func,
            states=("prey", "predator"),
            u0=u0,
            tspan=tspan,
            name=name,
        )
        .bound(alpha=(0.5, 2.5), beta=(0.0, 2.0), gamma=(1.0, 4.0), delta=(0.0, 2.0))
        .prior(
            alpha=("normal", 1.5, 0.5),
            beta=("normal", 1.2, 0.5),
            gamma=("normal", 3.0, 0.5),
            delta=("normal", 1.0, 0.5),
        )
    )
