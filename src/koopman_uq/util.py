from __future__ import annotations

import inspect
import math
from typing import Any, Callable, Optional, Tuple

import numpy as np


def normal_cdf(z: float) -> float:
    """Standard Normal CDF Φ(z)."""
    return 0.5 * (1.0 + math.erf(z / math.sqrt(2.0)))


def level_to_conf_int(level: float) -> Tuple[float, float]:
    """Central interval for a Normal-equivalent ±level sigma."""
    lo = normal_cdf(-float(level))
    hi = normal_cdf(+float(level))
    return (lo, hi)


def infer_param_names(func: Callable[..., Any]) -> Tuple[str, ...]:
    """Infer ODE parameter names from a right-hand-side signature.

    Conventions:
    - first arg is time t
    - second arg is the state vector u
    - remaining positional/keyword parameters are model parameters

    No *args/**kwargs: parameters must be named.
    """
    sig = inspect.signature(func)
    params = list(sig.parameters.values())

    if len(params) < 3:
        raise TypeError("ODE right-hand side must have at least (t, u, p1, ...).")

    bad_kinds = {inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD}
    for p in params:
        if p.kind in bad_kinds:
            raise TypeError("*args/**kwargs are not supported in ODE right-hand sides.")

    names = [p.name for p in params[2:]]
    if len(set(names)) != len(names):
        raise TypeError("Duplicate parameter names in function signature.")
    return tuple(names)


def as_generator(rng: Any = None) -> np.random.Generator:
    """Return a numpy Generator from None, an int seed or an existing Generator."""
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def check_time_grid(
    t_eval: Optional[Any], tspan: Tuple[float, float], *, what: str = "t_eval"
) -> Optional[np.ndarray]:
    """Validate an output time grid against a time span.

    Returns a float array, or None if `t_eval` is None.
    """
    from .errors import ConfigurationError

    if t_eval is None:
        return None
    t = np.asarray(t_eval, dtype=float).reshape(-1)
    if t.size == 0:
        raise ConfigurationError(f"{what} is empty.")
    if not np.all(np.isfinite(t)):
        raise ConfigurationError(f"{what} contains non-finite values.")
    if t.size > 1 and np.any(np.diff(t) <= 0):
        raise ConfigurationError(f"{what} must be strictly increasing.")
    t0, t1 = float(tspan[0]), float(tspan[1])
    # small slack for grids built with linspace/arange round-off
    tol = 1e-12 * max(1.0, abs(t0), abs(t1))
    if t[0] < t0 - tol or t[-1] > t1 + tol:
        raise ConfigurationError(
            f"{what} spans [{t[0]:g}, {t[-1]:g}] which lies outside tspan ({t0:g}, {t1:g})."
        )
    return np.clip(t, t0, t1)


def uncertainty_to_string(
    x: float, err: float, precision: int | str | None = 1
) -> str:
    """Format a value with uncertainty as a compact string.

    Returns the shortest string representation of x +/- err as either
    x.xx(ee)e+xx or xxx.xx(ee). Use precision="auto" to follow the
    common 1-or-2 significant-digit rule for the uncertainty.
    """
    auto = precision is None or (
        isinstance(precision, str) and precision.lower() == "auto"
    )
    x = float(x)
    err = float(err)

    if math.isnan(x) or math.isnan(err):
        return "NaN"
    if math.isinf(x) or math.isinf(err):
        return "inf"

    err = abs(err)
    if err == 0.0:
        if auto:
            precision = 1
        precision = max(1, int(precision))  # type: ignore[arg-type]
        return f"{x:.{precision}g}(0)"

    err_exp = int(math.floor(math.log10(err)))
    if auto:
        leading = int(err / (10 ** err_exp) + 1e-12)
        precision = 2 if leading == 1 else 1
    precision = max(1, int(precision))  # type: ignore[arg-type]

    if x == 0.0 or abs(x) < err:
        x_exp = err_exp
    else:
        x_exp = int(math.floor(math.log10(abs(x))))

    un_exp = err_exp - precision + 1
    un_int = round(err * 10 ** (-un_exp))

    no_exp = un_exp
    no_int = round(x * 10 ** (-no_exp))

    fieldw = x_exp - no_exp
    fmt = f"%.{fieldw}f"
    result1 = (fmt + "(%.0f)e%d") % (no_int * 10 ** (-fieldw), un_int, x_exp)

    fieldw = max(0, -no_exp)
    fmt = f"%.{fieldw}f"
    result2 = (fmt + "(%.0f)") % (no_int * 10 ** no_exp, un_int * 10 ** max(0, un_exp))

    return result2 if len(result2) <= len(result1) else result1
