from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
import logging
from typing import Any, List, Mapping, Optional, Sequence, Tuple
from warnings import warn

import numpy as np
from scipy.integrate import solve_ivp

from .errors import BatchingUnavailable, ConfigurationError, SolverError
from .solver import SolverOptions, Trajectory, _integrate

logger = logging.getLogger(__name__)


__all__ = ["ENSEMBLE_BACKENDS", "solve_many", "supports_vectorized"]

ENSEMBLE_BACKENDS = ("serial", "threads", "processes", "vectorized")


def _param_matrix(model: Any, params: Any) -> np.ndarray:
    if isinstance(params, np.ndarray) and params.dtype != object:
        arr = np.asarray(params, dtype=float)
        if arr.ndim == 1:
            arr = arr[None, :]
        if arr.ndim != 2 or arr.shape[1] != model.n_params:
            raise ConfigurationError(
                f"Parameter matrix has shape {arr.shape}; expected (n_points, {model.n_params})."
            )
        if not np.all(np.isfinite(arr)):
            raise ConfigurationError("Parameter matrix contains non-finite values.")
        return arr
    rows = [model.param_vector(p) for p in params]
    if not rows:
        raise ConfigurationError("solve_many needs at least one parameter point.")
    return np.vstack(rows)


def _solve_one(args: Tuple[Any, ...]) -> Trajectory:
    func, y0, span, grid, p, opts, names = args
    return _integrate(func, y0, span, grid, p, opts, names)


def supports_vectorized(model: Any, params: Any, *, u0: Optional[Any] = None) -> bool:
    """True if the right-hand side broadcasts over a batch of parameter columns."""
    try:
        _probe_vectorized(model, _param_matrix(model, params), model.initial_state(u0))
    except BatchingUnavailable:
        return False
    return True


def _probe_vectorized(model: Any, P: np.ndarray, y0: np.ndarray) -> None:
    """Call the rhs once with states (n_states, k) and parameter rows (k,) and
    compare against k single calls."""
    k = 2
    Q = P[:k] if P.shape[0] >= k else np.vstack([P[0], P[0]])
    t0 = model.time_span()[0]
    U = np.repeat(y0[:, None], k, axis=1)
    cols = tuple(Q[:, j].copy() for j in range(Q.shape[1]))
    try:
        du = np.asarray(model.func(t0, U, *cols), dtype=float)
    except Exception as exc:
        raise BatchingUnavailable(
            f"right-hand side of {model.name!r} failed on batched input: {exc}"
        ) from exc
    if du.shape != (model.n_states, k):
        raise BatchingUnavailable(
            f"right-hand side of {model.name!r} returned shape {du.shape} for a batch of {k}; "
            f"expected ({model.n_states}, {k})."
        )
    ref = np.column_stack([np.asarray(model.func(t0, y0, *Q[i]), dtype=float) for i in range(k)])
    if not np.allclose(du, ref, rtol=1e-10, atol=1e-12):
        raise BatchingUnavailable(
            f"right-hand side of {model.name!r} does not broadcast over parameter columns."
        )


def _solve_stacked(
    model: Any,
    P: np.ndarray,
    y0: np.ndarray,
    span: Tuple[float, float],
    grid: Optional[np.ndarray],
    opts: SolverOptions,
) -> List[Trajectory]:
    """Integrate B members as one stacked system of n_states * B equations."""
    B = P.shape[0]
    n = model.n_states
    cols = tuple(P[:, j].copy() for j in range(P.shape[1]))
    func = model.func

    def rhs(t, z):
        du = np.asarray(func(t, z.reshape(n, B), *cols), dtype=float)
        return du.reshape(-1)

    # Error control uses the RMS norm of the whole stack; shrink tolerances so
    # each member still meets its own.
    shrink = 1.0 / np.sqrt(B)
    kw = opts.as_kwargs()
    kw["rtol"] = max(kw["rtol"] * shrink, 100 * np.finfo(float).eps)
    kw["atol"] = kw["atol"] * shrink

    sol = solve_ivp(
        rhs,
        (float(span[0]), float(span[1])),
        np.repeat(y0[:, None], B, axis=1).reshape(-1),
        t_eval=grid,
        **kw,
    )
    Y = np.asarray(sol.y, dtype=float).reshape(n, B, -1)
    out = []
    for b in range(B):
        yb = Y[:, b, :]
        ok = bool(sol.success) and bool(np.all(np.isfinite(yb)))
        msg = str(sol.message)
        if sol.success and not ok:
            msg = "non-finite state encountered"
        out.append(
            Trajectory(
                t=sol.t,
                y=yb,
                state_names=model.state_names,
                params=P[b],
                success=ok,
                message=msg,
                stats={"nfev": int(sol.nfev), "status": int(sol.status), "batch": B},
            )
        )
    return out


def solve_many(
    model: Any,
    params: Any,
    *,
    backend: str = "serial",
    u0: Optional[Any] = None,
    tspan: Optional[Tuple[float, float]] = None,
    t_eval: Optional[Any] = None,
    options: Optional[SolverOptions] = None,
    max_workers: Optional[int] = None,
    batch_size: Optional[int] = None,
    strict: bool = False,
    fallback: bool = True,
) -> List[Trajectory]:
    """Solve `model` at many independent parameter points; results keep input order.

    params: array (n_points, n_params), or a sequence of vectors / mappings.

    Backends:
    - "serial": one solve after another
    - "threads" / "processes": concurrent.futures pools (processes need a
      picklable, module-level right-hand side)
    - "vectorized": one stacked solve per batch; requires a right-hand side
      that broadcasts over parameter columns (u has shape (n_states, B) and
      each parameter shape (B,)). If it does not, BatchingUnavailable is
      raised, or with fallback=True a UserWarning is issued and the serial
      backend is used.

    With strict=True the first failed member raises SolverError.
    """
    if backend not in ENSEMBLE_BACKENDS:
        raise ConfigurationError(
            f"Unknown ensemble backend {backend!r}. Available: {ENSEMBLE_BACKENDS}"
        )
    P = _param_matrix(model, params)
    y0 = model.initial_state(u0)
    span = model.time_span(tspan)
    grid = model.time_grid(t_eval, span)
    opts = model.solver if options is None else options
    B = P.shape[0]

    if backend == "vectorized":
        try:
            _probe_vectorized(model, P, y0)
        except BatchingUnavailable as exc:
            if not fallback:
                raise
            warn(f"{exc} Falling back to serial ensemble solves.", UserWarning)
            backend = "serial"

    logger.debug("solve_many: %d point(s) on %s backend", B, backend)

    if backend == "vectorized":
        size = B if batch_size is None else max(1, int(batch_size))
        trajs: List[Trajectory] = []
        for start in range(0, B, size):
            chunk = P[start:start + size]
            part = _solve_stacked(model, chunk, y0, span, grid, opts)
            if not all(t.success for t in part) and fallback:
                # One stiff member stalls the stack; retry members one by one.
                logger.debug("stacked solve failed for points %d..%d; retrying serially", start, start + len(chunk) - 1)
                part = [_integrate(model.func, y0, span, grid, p, opts, model.state_names) for p in chunk]
            trajs.extend(part)
    else:
        jobs = [(model.func, y0, span, grid, P[i], opts, model.state_names) for i in range(B)]
        if backend == "serial":
            trajs = [_solve_one(j) for j in jobs]
        elif backend == "threads":
            with ThreadPoolExecutor(max_workers=max_workers) as ex:
                trajs = list(ex.map(_solve_one, jobs))
        else:
            with ProcessPoolExecutor(max_workers=max_workers) as ex:
                trajs = list(ex.map(_solve_one, jobs))

    if strict:
        for i, tr in enumerate(trajs):
            if not tr.success:
                raise SolverError(tr.message, params=P[i], stage=f"solve_many[{i}]")
    return trajs
