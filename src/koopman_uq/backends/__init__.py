"""Sampler implementations + registry."""

from __future__ import annotations

from typing import Dict

from .common import Sampler, SamplerResult
from .emcee_backend import EmceeSampler
from .ultranest_backend import UltraNestSampler

_SAMPLERS: Dict[str, Sampler] = {
    "emcee": EmceeSampler(),
    "ultranest": UltraNestSampler(),
}


def get_sampler(name: str) -> Sampler:
    """Return a sampler implementation by name."""
    try:
        return _SAMPLERS[name]
    except KeyError as e:
        from ..errors import ConfigurationError

        raise ConfigurationError(
            f"Unknown sampler {name!r}. Available: {tuple(_SAMPLERS.keys())}"
        ) from e


AVAILABLE_SAMPLERS = tuple(_SAMPLERS.keys())

__all__ = ["AVAILABLE_SAMPLERS", "Sampler", "SamplerResult", "get_sampler"]
