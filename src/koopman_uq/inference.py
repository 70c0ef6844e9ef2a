from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import scipy.stats

from .errors import ConfigurationError
from .params import ParameterSpec
from .solver import _integrate


def _frozen(kind: str, args: Tuple[Any, ...], name: str):
    """Map a ("kind", *args) prior tuple to a frozen scipy.stats distribution."""

    def need(n: int, usage: str) -> Tuple[float, ...]:
        if len(args) != n:
            raise ConfigurationError(f"{kind} prior for {name!r} expects {usage}.")
        return tuple(float(a) for a in args)

    if kind == "uniform":
        lo, hi = need(2, "('uniform', lo, hi)")
        if not hi > lo:
            raise ConfigurationError(f"uniform prior for {name!r} requires lo < hi.")
        return scipy.stats.uniform(loc=lo, scale=hi - lo)
    if kind == "loguniform":
        lo, hi = need(2, "('loguniform', lo, hi)")
        if lo <= 0 or hi <= lo:
            raise ConfigurationError(f"loguniform prior for {name!r} requires 0 < lo < hi.")
        return scipy.stats.loguniform(lo, hi)
    if kind == "normal":
        mu, sig = need(2, "('normal', mean, sigma)")
        if sig <= 0:
            raise ConfigurationError(f"normal prior for {name!r} requires sigma > 0.")
        return scipy.stats.norm(mu, sig)
    if kind == "lognormal":
        mu, sig = need(2, "('lognormal', mu, sigma) of the underlying normal")
        if sig <= 0:
            raise ConfigurationError(f"lognormal prior for {name!r} requires sigma > 0.")
        return scipy.stats.lognorm(s=sig, scale=np.exp(mu))
    if kind == "halfnormal":
        (sig,) = need(1, "('halfnormal', sigma)")
        if sig <= 0:
            raise ConfigurationError(f"halfnormal prior for {name!r} requires sigma > 0.")
        return scipy.stats.halfnorm(scale=sig)
    if kind == "gamma":
        k, theta = need(2, "('gamma', shape, scale)")
        if k <= 0 or theta <= 0:
            raise ConfigurationError(f"gamma prior for {name!r} requires shape, scale > 0.")
        return scipy.stats.gamma(a=k, scale=theta)
    if kind == "invgamma":
        a, b = need(2, "('invgamma', shape, scale)")
        if a <= 0 or b <= 0:
            raise ConfigurationError(f"invgamma prior for {name!r} requires shape, scale > 0.")
        return scipy.stats.invgamma(a, scale=b)
    raise ConfigurationError(
        f"Unsupported prior kind {kind!r} for {name!r}. "
        f"Available: {PRIOR_KINDS}"
    )


PRIOR_KINDS = ("uniform", "loguniform", "normal", "lognormal", "halfnormal", "gamma", "invgamma")


@dataclass(frozen=True)
class Prior:
    """A scipy.stats distribution truncated to [lower, upper]."""

    name: str
    kind: str
    args: Tuple[float, ...]
    rv: Any
    lower: float
    upper: float
    c_lo: float
    c_hi: float

    @property
    def mass(self) -> float:
        return self.c_hi - self.c_lo

    def logpdf(self, x: Any) -> Any:
        x = np.asarray(x, dtype=float)
        inside = (x >= self.lower) & (x <= self.upper)
        with np.errstate(divide="ignore"):
            lp = np.where(inside, self.rv.logpdf(x) - np.log(self.mass), -np.inf)
        return float(lp) if lp.ndim == 0 else lp

    def ppf(self, q: Any) -> Any:
        """Inverse CDF of the truncated distribution (the nested-sampling transform)."""
        q = np.asarray(q, dtype=float)
        x = np.clip(self.rv.ppf(self.c_lo + q * self.mass), self.lower, self.upper)
        return float(x) if x.ndim == 0 else x

    def rvs(self, size: Any, rng: np.random.Generator) -> np.ndarray:
        return np.asarray(self.ppf(rng.uniform(size=size)), dtype=float)

    def median(self) -> float:
        return float(self.ppf(0.5))


def build_prior(spec: ParameterSpec) -> Prior:
    """Build the (possibly truncated) prior of one free parameter.

    Without an explicit prior, finite bounds give Uniform(bounds).
    """
    bounds = spec.bounds or (None, None)
    lo_b = -np.inf if bounds[0] is None else float(bounds[0])
    hi_b = np.inf if bounds[1] is None else float(bounds[1])

    if spec.prior is None:
        if not (np.isfinite(lo_b) and np.isfinite(hi_b)):
            raise ConfigurationError(
                f"No prior for {spec.name!r}. Set .prior({spec.name}=...) "
                f"or finite bounds via .bound({spec.name}=(lo, hi))."
            )
        kind, args = "uniform", (lo_b, hi_b)
    else:
        kind, args = spec.prior
        kind = str(kind).lower()
        args = tuple(args)

    rv = _frozen(kind, args, spec.name)
    s_lo, s_hi = (float(v) for v in rv.support())
    lower = max(lo_b, s_lo)
    upper = min(hi_b, s_hi)
    if not lower < upper:
        raise ConfigurationError(
            f"Bounds {bounds!r} for {spec.name!r} do not overlap the {kind} prior support."
        )
    c_lo = float(rv.cdf(lower)) if np.isfinite(lower) else 0.0
    c_hi = float(rv.cdf(upper)) if np.isfinite(upper) else 1.0
    if not c_hi - c_lo > 0.0:
        raise ConfigurationError(
            f"The {kind} prior for {spec.name!r} has no mass inside bounds {bounds!r}."
        )
    return Prior(
        name=spec.name,
        kind=kind,
        args=tuple(float(a) for a in args),
        rv=rv,
        lower=lower,
        upper=upper,
        c_lo=c_lo,
        c_hi=c_hi,
    )


def build_log_prior(priors: Sequence[Prior]) -> Callable[[np.ndarray], float]:
    """Joint log prior of independent truncated priors."""
    priors = list(priors)

    def log_prior(theta: np.ndarray) -> float:
        total = 0.0
        for j, pr in enumerate(priors):
            lp = pr.logpdf(float(theta[j]))
            if not np.isfinite(lp):
                return -np.inf
            total += lp
        return float(total)

    return log_prior


def build_prior_transform(priors: Sequence[Prior]) -> Callable[[np.ndarray], np.ndarray]:
    """UltraNest-style prior transform: cube in [0,1]^P -> physical params."""
    priors = list(priors)

    def transform(cube: np.ndarray):
        cube = np.asarray(cube, dtype=float)
        if cube.ndim == 1:
            out = np.empty((len(priors),), dtype=float)
            for j, pr in enumerate(priors):
                out[j] = float(pr.ppf(float(cube[j])))
            return out
        if cube.ndim == 2:
            out = np.empty_like(cube, dtype=float)
            for j, pr in enumerate(priors):
                out[:, j] = pr.ppf(cube[:, j])
            return out
        raise ValueError("cube must have shape (P,) or (N,P).")

    return transform


class GaussianLogLike:
    """Isotropic Normal likelihood of observations around the ODE solution.

      log L = -1/2 Σ ((u_model - y)/σ)^2 - N log σ - (N/2) log(2π)

    θ holds the free parameters (ODE parameters in model order, then the
    noise scale if free). A failed integration gives -inf and is counted in
    `n_failures`; exceptions raised by the right-hand side propagate.
    """

    def __init__(
        self,
        *,
        model: Any,
        y: np.ndarray,
        free_names: Sequence[str],
        fixed_map: Mapping[str, float],
        u0: np.ndarray,
        tspan: Tuple[float, float],
        t_eval: np.ndarray,
        obs_index: np.ndarray,
    ):
        self.model = model
        self.y = np.asarray(y, dtype=float)
        self.free_names = tuple(free_names)
        self.fixed_map = dict(fixed_map)
        self.u0 = np.asarray(u0, dtype=float)
        self.tspan = tspan
        self.t_eval = np.asarray(t_eval, dtype=float)
        self.obs_index = np.asarray(obs_index, dtype=int)
        self.n_calls = 0
        self.n_failures = 0

        order = list(model.param_names) + [model.noise_name]
        self._slots: List[Tuple[int, Optional[int], float]] = []
        for i, n in enumerate(order):
            if n in self.fixed_map:
                self._slots.append((i, None, float(self.fixed_map[n])))
            else:
                self._slots.append((i, self.free_names.index(n), np.nan))
        self._log_2pi = float(np.log(2.0 * np.pi))

    def split(self, theta: np.ndarray) -> Tuple[np.ndarray, float]:
        """Return (ODE parameter vector, noise scale) for a free-parameter vector."""
        full = np.empty((len(self._slots),), dtype=float)
        for i, j, v in self._slots:
            full[i] = v if j is None else float(theta[j])
        return full[:-1], float(full[-1])

    def __call__(self, theta: np.ndarray) -> float:
        self.n_calls += 1
        p, sigma = self.split(np.asarray(theta, dtype=float))
        if not (np.isfinite(sigma) and sigma > 0.0):
            return -np.inf

        traj = _integrate(
            self.model.func,
            self.u0,
            self.tspan,
            self.t_eval,
            p,
            self.model.solver,
            self.model.state_names,
        )
        if not traj.success or traj.y.shape[1] != self.t_eval.shape[0]:
            self.n_failures += 1
            return -np.inf

        resid = traj.y[self.obs_index] - self.y
        n = float(resid.size)
        chi2 = float(np.sum(resid * resid)) / (sigma * sigma)
        return float(-0.5 * chi2 - n * np.log(sigma) - 0.5 * n * self._log_2pi)


def build_gaussian_loglike(
    *,
    model: Any,
    data: Any,
    free_names: Sequence[str],
    fixed_map: Dict[str, float],
    u0: np.ndarray,
    tspan: Tuple[float, float],
    t_eval: np.ndarray,
    obs_index: np.ndarray,
) -> GaussianLogLike:
    return GaussianLogLike(
        model=model,
        y=data.y,
        free_names=free_names,
        fixed_map=fixed_map,
        u0=u0,
        tspan=tspan,
        t_eval=t_eval,
        obs_index=obs_index,
    )


def build_log_posterior(
    log_prior: Callable[[np.ndarray], float],
    log_likelihood: Callable[[np.ndarray], float],
) -> Callable[[np.ndarray], float]:
    """log p(θ|y) up to a constant; skips the solve outside the prior support."""

    def log_posterior(theta: np.ndarray) -> float:
        lp = log_prior(theta)
        if not np.isfinite(lp):
            return -np.inf
        return float(lp + log_likelihood(theta))

    return log_posterior
