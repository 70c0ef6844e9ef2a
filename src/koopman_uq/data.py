from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .solver import Trajectory
from .util import as_generator


__all__ = ["ObservationSet", "add_noise", "simulate_data"]


@dataclass(frozen=True, eq=False)
class ObservationSet:
    """Observed state values at a set of times.

    y has shape (n_observed_states, n_times); rows follow `state_names`.
    """

    t: np.ndarray
    y: np.ndarray
    state_names: Tuple[str, ...]
    label: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        t = np.array(self.t, dtype=float).reshape(-1)
        y = np.array(self.y, dtype=float)
        if y.ndim == 1:
            y = y[None, :]
        if t.size == 0:
            raise ConfigurationError("Observation times are empty.")
        if t.size > 1 and np.any(np.diff(t) <= 0):
            raise ConfigurationError("Observation times must be strictly increasing.")
        if y.ndim != 2 or y.shape[1] != t.size:
            raise ConfigurationError(
                f"Observations have shape {y.shape}; expected (n_states, {t.size})."
            )
        names = tuple(str(n) for n in self.state_names)
        if len(names) != y.shape[0]:
            raise ConfigurationError(
                f"{len(names)} state names given for {y.shape[0]} observed rows."
            )
        if len(set(names)) != len(names):
            raise ConfigurationError("Duplicate observed state names.")
        t.setflags(write=False)
        y.setflags(write=False)
        object.__setattr__(self, "t", t)
        object.__setattr__(self, "y", y)
        object.__setattr__(self, "state_names", names)

    @staticmethod
    def from_arrays(
        t: Any, y: Any, state_names: Optional[Sequence[str]] = None, *, label: Optional[str] = None
    ) -> "ObservationSet":
        """Build from plain arrays; y may be (n_times,) for a single observed state."""
        y = np.asarray(y, dtype=float)
        if y.ndim == 1:
            y = y[None, :]
        if state_names is None:
            state_names = tuple(f"u{i}" for i in range(y.shape[0]))
        return ObservationSet(t=t, y=y, state_names=tuple(state_names), label=label)

    @property
    def n_times(self) -> int:
        return int(self.t.shape[0])

    @property
    def n_states(self) -> int:
        return int(self.y.shape[0])

    def __getitem__(self, name: str) -> np.ndarray:
        try:
            return self.y[self.state_names.index(name)]
        except ValueError:
            raise KeyError(name) from None

    def subset(self, states: Sequence[str]) -> "ObservationSet":
        """Keep only the given observed states (in the given order)."""
        rows = []
        for s in states:
            if s not in self.state_names:
                raise KeyError(s)
            rows.append(self.state_names.index(s))
        return ObservationSet(
            t=self.t,
            y=self.y[rows],
            state_names=tuple(states),
            label=self.label,
            meta=dict(self.meta),
        )


def _draw_noise(noise: Any, shape: Tuple[int, ...], rng: np.random.Generator) -> np.ndarray:
    # scipy.stats frozen distributions (or anything with .rvs)
    if hasattr(noise, "rvs"):
        return np.asarray(noise.rvs(size=shape, random_state=rng), dtype=float).reshape(shape)

    scale = np.asarray(noise, dtype=float)
    if scale.ndim == 1 and len(shape) == 2 and scale.shape[0] == shape[0]:
        # one scale per observed state
        scale = scale[:, None]
    try:
        scale = np.broadcast_to(scale, shape)
    except ValueError as exc:
        raise ConfigurationError(
            f"Noise scale of shape {np.shape(noise)} does not broadcast to observations {shape}."
        ) from exc
    if not np.all(np.isfinite(scale)) or np.any(scale < 0):
        raise ConfigurationError("Noise scale must be finite and non-negative.")
    return rng.normal(size=shape) * scale


def add_noise(
    trajectory: Trajectory,
    noise: Any,
    *,
    rng: Any = None,
    states: Optional[Sequence[str]] = None,
) -> ObservationSet:
    """Return noisy observations of a trajectory.

    `noise` is a standard deviation (scalar, per-state, or full array) for
    additive Normal noise, or a distribution with `.rvs(size=, random_state=)`.
    A zero scale reproduces the trajectory exactly.
    """
    if not trajectory.success:
        raise ConfigurationError(
            f"Cannot observe a failed trajectory: {trajectory.message}"
        )
    names = tuple(trajectory.state_names) if states is None else tuple(states)
    rows = []
    for s in names:
        if s not in trajectory.state_names:
            raise ConfigurationError(
                f"State {s!r} is not in the trajectory {trajectory.state_names}."
            )
        rows.append(trajectory.state_names.index(s))

    clean = np.asarray(trajectory.y, dtype=float)[rows]
    eps = _draw_noise(noise, clean.shape, as_generator(rng))
    return ObservationSet(t=trajectory.t, y=clean + eps, state_names=names)


def simulate_data(
    model: Any,
    params: Any,
    t_eval: Any,
    noise: Any,
    *,
    rng: Any = None,
    states: Optional[Sequence[str]] = None,
    u0: Optional[Any] = None,
) -> ObservationSet:
    """Solve `model` at `params`, sample at `t_eval`, and add observation noise."""
    if t_eval is None:
        raise ConfigurationError("simulate_data needs explicit observation times t_eval.")
    traj = model.simulate(params, t_eval=t_eval, u0=u0, strict=True)
    obs = add_noise(traj, noise, rng=rng, states=states)
    return ObservationSet(
        t=obs.t,
        y=obs.y,
        state_names=obs.state_names,
        label=getattr(model, "name", None),
        meta={"true_params": np.array(traj.params, dtype=float)},
    )
