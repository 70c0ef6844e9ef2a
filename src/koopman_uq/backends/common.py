from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol, Sequence

import numpy as np


@dataclass(frozen=True)
class SamplerResult:
    """Normalized result returned by any sampler for one chain."""

    samples: np.ndarray  # posterior draws of the free parameters, shape (num_samples, P)
    success: bool = True
    message: str = ""
    stats: Dict[str, Any] = field(default_factory=dict)


class Sampler(Protocol):
    """Sampler protocol: produce one chain of posterior draws."""

    name: str

    def sample(
        self,
        *,
        log_likelihood: Callable[[np.ndarray], float],
        priors: Sequence[Any],
        free_names: List[str],
        num_samples: int,
        p0: np.ndarray,
        options: Dict[str, Any],
        rng: np.random.Generator,
    ) -> SamplerResult: ...
