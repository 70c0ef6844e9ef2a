from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy.integrate import solve_ivp

from .errors import SolverError


__all__ = ["SolverOptions", "Trajectory", "solve"]


@dataclass(frozen=True)
class SolverOptions:
    """Integration settings forwarded to scipy.integrate.solve_ivp."""

    method: str = "RK45"
    rtol: float = 1e-6
    atol: float = 1e-9
    max_step: float = np.inf
    first_step: Optional[float] = None

    def as_kwargs(self) -> Dict[str, Any]:
        kw: Dict[str, Any] = {
            "method": self.method,
            "rtol": float(self.rtol),
            "atol": float(self.atol),
            "max_step": float(self.max_step),
        }
        if self.first_step is not None:
            kw["first_step"] = float(self.first_step)
        return kw


def _readonly(a: Any) -> np.ndarray:
    out = np.array(a, dtype=float)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class Trajectory:
    """Solution samples of one ODE integration.

    y has shape (n_states, n_times), following solve_ivp.
    """

    t: np.ndarray
    y: np.ndarray
    state_names: Tuple[str, ...]
    params: np.ndarray
    success: bool = True
    message: str = ""
    stats: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "t", _readonly(self.t))
        object.__setattr__(self, "y", _readonly(np.atleast_2d(self.y)))
        object.__setattr__(self, "params", _readonly(self.params))

    def __getitem__(self, key):
        """traj["prey"] / traj[0] -> one state series; traj[0, -1] -> numpy indexing."""
        if isinstance(key, str):
            try:
                i = self.state_names.index(key)
            except ValueError:
                raise KeyError(key) from None
            return self.y[i]
        return self.y[key]

    def __len__(self) -> int:
        return int(self.t.shape[0])

    @property
    def final(self) -> np.ndarray:
        """State at the last saved time."""
        return self.y[:, -1]

    def at(self, t: float) -> np.ndarray:
        """State at a saved time point (exact grid lookup)."""
        hits = np.flatnonzero(np.isclose(self.t, float(t), rtol=0.0, atol=1e-12 * max(1.0, abs(float(t)))))
        if hits.size == 0:
            raise KeyError(f"t={t!r} is not a saved time; pass it in t_eval.")
        return self.y[:, int(hits[0])]


def _integrate(
    func: Any,
    y0: np.ndarray,
    tspan: Tuple[float, float],
    t_eval: Optional[np.ndarray],
    params: np.ndarray,
    options: SolverOptions,
    state_names: Tuple[str, ...],
) -> Trajectory:
    # Own copy per call: concurrent solves never share a parameter buffer.
    p = tuple(float(v) for v in np.array(params, dtype=float))

    def rhs(t, u):
        return func(t, u, *p)

    sol = solve_ivp(
        rhs,
        (float(tspan[0]), float(tspan[1])),
        np.array(y0, dtype=float),
        t_eval=t_eval,
        **options.as_kwargs(),
    )
    success = bool(sol.success)
    message = str(sol.message)
    if success and not np.all(np.isfinite(sol.y)):
        success = False
        message = "non-finite state encountered"
    return Trajectory(
        t=sol.t,
        y=sol.y,
        state_names=tuple(state_names),
        params=np.asarray(p, dtype=float),
        success=success,
        message=message,
        stats={"nfev": int(sol.nfev), "status": int(sol.status)},
    )


def solve(
    model: Any,
    params: Any = None,
    *,
    u0: Optional[Any] = None,
    tspan: Optional[Tuple[float, float]] = None,
    t_eval: Optional[Any] = None,
    options: Optional[SolverOptions] = None,
    strict: bool = False,
) -> Trajectory:
    """Integrate `model` once at a fixed parameter vector.

    Inputs are validated against the model before the solver runs, so a bad
    time span or mismatched vector lengths raise ConfigurationError up front.
    With strict=True a solver failure raises SolverError instead of returning
    a Trajectory with success=False.
    """
    p = model.param_vector(params)
    y0 = model.initial_state(u0)
    span = model.time_span(tspan)
    grid = model.time_grid(t_eval, span)
    opts = model.solver if options is None else options

    traj = _integrate(model.func, y0, span, grid, p, opts, model.state_names)
    if strict and not traj.success:
        raise SolverError(traj.message, params=p, stage="solve")
    return traj
