"""Exception types raised across the pipeline."""

from __future__ import annotations

from typing import Any, Optional

import numpy as np


__all__ = [
    "ConfigurationError",
    "SolverError",
    "SamplingError",
    "BatchingUnavailable",
]


class ConfigurationError(ValueError):
    """Mismatched dimensions or settings, detected before any solve."""


class SolverError(RuntimeError):
    """The ODE integrator failed at a specific parameter point."""

    def __init__(
        self,
        message: str,
        *,
        params: Optional[Any] = None,
        stage: str = "",
    ):
        self.params = None if params is None else np.array(params, dtype=float)
        self.stage = stage
        where = f" [{stage}]" if stage else ""
        at = "" if self.params is None else f" at params={self.params.tolist()}"
        super().__init__(f"ODE solve failed{where}{at}: {message}")


class SamplingError(RuntimeError):
    """A sampling engine raised while producing one chain."""

    def __init__(self, message: str, *, chain: int, sampler: str):
        self.chain = int(chain)
        self.sampler = sampler
        super().__init__(f"sampler {sampler!r} failed on chain {chain}: {message}")


class BatchingUnavailable(RuntimeError):
    """Vectorised ensemble execution is not possible for this model."""
