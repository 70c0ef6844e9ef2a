from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np
from scipy.optimize import minimize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MapEstimate:
    theta: np.ndarray
    cov: Optional[np.ndarray]
    success: bool
    message: str
    log_posterior: float


def _numdiff_hessian(func, x0, lo, hi, step):
    x0 = np.asarray(x0, dtype=float)
    npar = int(x0.shape[0])
    step = 1e-4 if step is None else float(step)
    eps = step * (np.abs(x0) + 1.0)

    for i in range(npar):
        if np.isfinite(lo[i]):
            eps[i] = min(eps[i], 0.5 * max(0.0, x0[i] - lo[i]))
        if np.isfinite(hi[i]):
            eps[i] = min(eps[i], 0.5 * max(0.0, hi[i] - x0[i]))
        if eps[i] <= 0.0:
            return None

    f0 = float(func(x0))
    hess = np.zeros((npar, npar), dtype=float)
    for i in range(npar):
        ei = np.zeros(npar, dtype=float)
        ei[i] = eps[i]
        hess[i, i] = (float(func(x0 + ei)) - 2.0 * f0 + float(func(x0 - ei))) / (eps[i] ** 2)
        for j in range(i + 1, npar):
            ej = np.zeros(npar, dtype=float)
            ej[j] = eps[j]
            fpp = float(func(x0 + ei + ej))
            fpm = float(func(x0 + ei - ej))
            fmp = float(func(x0 - ei + ej))
            fmm = float(func(x0 - ei - ej))
            hij = (fpp - fpm - fmp + fmm) / (4.0 * eps[i] * eps[j])
            hess[i, j] = hij
            hess[j, i] = hij
    if not np.all(np.isfinite(hess)):
        return None
    return hess


def find_map(
    log_posterior: Callable[[np.ndarray], float],
    p0: np.ndarray,
    priors: Sequence[Any],
    options: Optional[Dict[str, Any]] = None,
) -> MapEstimate:
    """Maximise the log posterior with scipy.optimize.minimize.

    Options:
    - method: optimizer name (default: L-BFGS-B)
    - options: dict forwarded to scipy.optimize.minimize
    - cov_step: relative step size for the numeric Hessian (default: 1e-4)
    - cov_jitter: diagonal jitter before inverting the Hessian (default: 1e-8)
    """
    options = dict(options or {})
    method = str(options.get("method", "L-BFGS-B"))
    scipy_opts = options.get("options", None) or {}
    cov_step = options.get("cov_step", None)
    cov_jitter = float(options.get("cov_jitter", 1e-8))

    lo = np.array([pr.lower for pr in priors], dtype=float)
    hi = np.array([pr.upper for pr in priors], dtype=float)
    scipy_bounds = [
        (None if not math.isfinite(a) else a, None if not math.isfinite(b) else b)
        for a, b in zip(lo, hi)
    ]

    def objective(theta: np.ndarray) -> float:
        lp = float(log_posterior(np.asarray(theta, dtype=float)))
        # large finite penalty keeps L-BFGS-B line searches well defined
        return -lp if np.isfinite(lp) else 1e300

    res = minimize(
        objective,
        np.asarray(p0, dtype=float),
        method=method,
        bounds=scipy_bounds,
        options=scipy_opts,
    )
    theta = np.asarray(res.x, dtype=float)
    best = -float(res.fun)
    logger.debug("MAP search (%s): success=%s logp=%.6g", method, res.success, best)

    cov = None
    hess = _numdiff_hessian(objective, theta, lo, hi, cov_step)
    if hess is not None:
        if cov_jitter > 0.0:
            hess = hess + cov_jitter * np.eye(hess.shape[0])
        cov = np.linalg.pinv(hess)
        if not np.all(np.isfinite(cov)) or np.any(np.diag(cov) <= 0):
            cov = None

    return MapEstimate(
        theta=theta,
        cov=cov,
        success=bool(res.success) and np.isfinite(best),
        message=str(res.message),
        log_posterior=best,
    )
