from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Any, Optional, Sequence, Tuple

import numpy as np
from scipy.integrate import trapezoid
from scipy.stats import gaussian_kde

from .errors import ConfigurationError
from .util import as_generator

logger = logging.getLogger(__name__)


__all__ = [
    "PointMass",
    "KernelDensity",
    "ScipyDistribution",
    "ProductDistribution",
    "JointKernelDensity",
    "estimate_density",
    "marginal_densities",
    "as_distribution",
]

_GRID = 2049


def _column(samples: Any) -> np.ndarray:
    x = np.asarray(samples, dtype=float).reshape(-1)
    if x.size == 0:
        raise ConfigurationError("Cannot estimate a density from zero samples.")
    if not np.all(np.isfinite(x)):
        raise ConfigurationError("Samples contain non-finite values.")
    return x


@dataclass(frozen=True)
class PointMass:
    """Degenerate distribution at `value` (all samples identical)."""

    value: float

    @property
    def support(self) -> Tuple[float, float]:
        return (self.value, self.value)

    def pdf(self, x: Any) -> np.ndarray:
        # Density is a delta; integration code handles point masses explicitly.
        return np.where(np.asarray(x, dtype=float) == self.value, np.inf, 0.0)

    def cdf(self, x: Any) -> np.ndarray:
        return np.where(np.asarray(x, dtype=float) >= self.value, 1.0, 0.0)

    def rvs(self, size: Any = None, rng: Any = None) -> np.ndarray:
        return np.full(size if size is not None else (), self.value, dtype=float)

    def mean(self) -> float:
        return float(self.value)

    def std(self) -> float:
        return 0.0

    def mode(self) -> float:
        return float(self.value)


@dataclass(frozen=True, eq=False)
class KernelDensity:
    """Gaussian kernel density of one parameter, truncated to a finite support.

    The support is [min - cut*bw, max + cut*bw]; pdf integrates to 1 over it.
    """

    kde: gaussian_kde = field(repr=False)
    support: Tuple[float, float]
    bandwidth: float
    n_samples: int
    mass: float = field(repr=False)

    def pdf(self, x: Any) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        lo, hi = self.support
        inside = (x >= lo) & (x <= hi)
        vals = self.kde(x.reshape(-1)).reshape(x.shape) / self.mass
        return np.where(inside, vals, 0.0)

    def logpdf(self, x: Any) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.log(self.pdf(x))

    def cdf(self, x: Any) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        lo, hi = self.support
        xc = np.clip(x, lo, hi).reshape(-1)
        out = np.array([self.kde.integrate_box_1d(lo, v) for v in xc], dtype=float) / self.mass
        return np.clip(out, 0.0, 1.0).reshape(x.shape)

    def rvs(self, size: Any = None, rng: Any = None) -> np.ndarray:
        """Draw from the truncated density (rejection outside the support)."""
        rng = as_generator(rng)
        shape = () if size is None else size
        n = int(np.prod(shape))
        lo, hi = self.support
        out = np.empty((0,), dtype=float)
        while out.size < n:
            draw = self.kde.resample(max(n - out.size, 16), seed=rng).reshape(-1)
            out = np.concatenate([out, draw[(draw >= lo) & (draw <= hi)]])
        return out[:n].reshape(shape)

    def _grid(self) -> Tuple[np.ndarray, np.ndarray]:
        xs = np.linspace(self.support[0], self.support[1], _GRID)
        return xs, self.pdf(xs)

    def mean(self) -> float:
        xs, ps = self._grid()
        return float(trapezoid(xs * ps, xs) / trapezoid(ps, xs))

    def std(self) -> float:
        xs, ps = self._grid()
        z = trapezoid(ps, xs)
        m = trapezoid(xs * ps, xs) / z
        return float(np.sqrt(max(trapezoid((xs - m) ** 2 * ps, xs) / z, 0.0)))

    def mode(self) -> float:
        xs, ps = self._grid()
        return float(xs[int(np.argmax(ps))])


@dataclass(frozen=True, eq=False)
class ScipyDistribution:
    """A scipy.stats frozen distribution restricted to a finite support.

    Unbounded distributions are cut at the `tail` and `1 - tail` quantiles.
    """

    rv: Any = field(repr=False)
    support: Tuple[float, float] = (np.nan, np.nan)
    mass: float = field(default=1.0, repr=False)

    @staticmethod
    def from_frozen(rv: Any, *, tail: float = 1e-10) -> "ScipyDistribution":
        lo, hi = (float(v) for v in rv.support())
        if not np.isfinite(lo):
            lo = float(rv.ppf(tail))
        if not np.isfinite(hi):
            hi = float(rv.ppf(1.0 - tail))
        if not hi > lo:
            raise ConfigurationError(f"Distribution {rv!r} has an empty support.")
        mass = float(rv.cdf(hi) - rv.cdf(lo))
        return ScipyDistribution(rv=rv, support=(lo, hi), mass=mass)

    def pdf(self, x: Any) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        lo, hi = self.support
        return np.where((x >= lo) & (x <= hi), self.rv.pdf(x) / self.mass, 0.0)

    def cdf(self, x: Any) -> np.ndarray:
        lo, _ = self.support
        return np.clip((self.rv.cdf(x) - self.rv.cdf(lo)) / self.mass, 0.0, 1.0)

    def rvs(self, size: Any = None, rng: Any = None) -> np.ndarray:
        rng = as_generator(rng)
        lo, hi = self.support
        c_lo = self.rv.cdf(lo)
        q = c_lo + rng.uniform(size=size) * self.mass
        return np.clip(np.asarray(self.rv.ppf(q), dtype=float), lo, hi)

    def mean(self) -> float:
        return float(self.rv.mean())

    def std(self) -> float:
        return float(self.rv.std())

    def mode(self) -> float:
        xs = np.linspace(self.support[0], self.support[1], _GRID)
        return float(xs[int(np.argmax(self.pdf(xs)))])


def as_distribution(obj: Any) -> Any:
    """Coerce a number, scipy.stats frozen distribution or density into a 1D distribution."""
    if isinstance(obj, (PointMass, KernelDensity, ScipyDistribution)):
        return obj
    if isinstance(obj, (int, float, np.number)):
        return PointMass(float(obj))
    if hasattr(obj, "rvs") and hasattr(obj, "pdf") and hasattr(obj, "ppf"):
        return ScipyDistribution.from_frozen(obj)
    raise TypeError(
        f"Cannot use {type(obj).__name__} as a parameter distribution; "
        "pass a number, a scipy.stats frozen distribution or a KernelDensity."
    )


def estimate_density(
    samples: Any, *, bandwidth: Any = None, cut: float = 3.0
) -> Any:
    """Continuous density of one parameter's draws.

    `bandwidth` is forwarded to gaussian_kde's bw_method ("scott", "silverman"
    or a scalar factor). Identical draws give a PointMass.
    """
    x = _column(samples)
    if x.size < 2 or float(np.ptp(x)) == 0.0:
        return PointMass(float(x[0]))
    if cut < 0:
        raise ConfigurationError("cut must be >= 0.")

    kde = gaussian_kde(x, bw_method=bandwidth)
    bw = float(np.sqrt(kde.covariance[0, 0]))
    lo = float(np.min(x) - cut * bw)
    hi = float(np.max(x) + cut * bw)
    mass = float(kde.integrate_box_1d(lo, hi))
    return KernelDensity(kde=kde, support=(lo, hi), bandwidth=bw, n_samples=int(x.size), mass=mass)


@dataclass(frozen=True, eq=False)
class ProductDistribution:
    """Joint distribution of independent one-dimensional components.

    Independence discards the posterior correlations in the chain. This is
    a modelling choice; use JointKernelDensity to keep them.
    """

    components: Tuple[Any, ...]
    names: Tuple[str, ...]

    def __post_init__(self):
        comps = tuple(as_distribution(c) for c in self.components)
        if len(comps) != len(self.names):
            raise ConfigurationError(
                f"{len(comps)} components given for {len(self.names)} names."
            )
        object.__setattr__(self, "components", comps)
        object.__setattr__(self, "names", tuple(self.names))

    @property
    def ndim(self) -> int:
        return len(self.components)

    def __getitem__(self, name: str) -> Any:
        return self.components[self.names.index(name)]

    @property
    def fixed_mask(self) -> np.ndarray:
        return np.array([isinstance(c, PointMass) for c in self.components], dtype=bool)

    def fixed_values(self) -> np.ndarray:
        return np.array(
            [c.value if isinstance(c, PointMass) else np.nan for c in self.components],
            dtype=float,
        )

    def support(self) -> Tuple[np.ndarray, np.ndarray]:
        lo = np.array([c.support[0] for c in self.components], dtype=float)
        hi = np.array([c.support[1] for c in self.components], dtype=float)
        return lo, hi

    def pdf(self, x: Any) -> np.ndarray:
        """Joint density over the non-degenerate coordinates; x has shape (m, ndim)."""
        x = np.atleast_2d(np.asarray(x, dtype=float))
        out = np.ones((x.shape[0],), dtype=float)
        for j, c in enumerate(self.components):
            if not isinstance(c, PointMass):
                out = out * c.pdf(x[:, j])
        return out

    def rvs(self, size: int, rng: Any = None) -> np.ndarray:
        rng = as_generator(rng)
        return np.column_stack([c.rvs(int(size), rng) for c in self.components]).reshape(int(size), self.ndim)

    def mean(self) -> np.ndarray:
        return np.array([c.mean() for c in self.components], dtype=float)


@dataclass(frozen=True, eq=False)
class JointKernelDensity:
    """Multivariate Gaussian KDE of the chain, keeping parameter correlations.

    Constant columns are held fixed. pdf is normalised over the support box
    only approximately; expectation code divides by the integrated mass.
    """

    samples: np.ndarray = field(repr=False)
    names: Tuple[str, ...]
    bandwidth: Any = None
    cut: float = 3.0
    kde: Optional[gaussian_kde] = field(default=None, init=False, repr=False)
    _lo: np.ndarray = field(default=None, init=False, repr=False)
    _hi: np.ndarray = field(default=None, init=False, repr=False)
    _fixed: np.ndarray = field(default=None, init=False, repr=False)

    def __post_init__(self):
        s = np.asarray(self.samples, dtype=float)
        if s.ndim != 2 or s.shape[1] != len(self.names):
            raise ConfigurationError(
                f"samples must have shape (n, {len(self.names)}); got {s.shape}."
            )
        if s.shape[0] == 0 or not np.all(np.isfinite(s)):
            raise ConfigurationError("Samples must be non-empty and finite.")
        fixed = np.ptp(s, axis=0) == 0.0
        lo = s.min(axis=0).astype(float)
        hi = s.max(axis=0).astype(float)
        kde = None
        free = ~fixed
        if np.any(free):
            if int(free.sum()) >= s.shape[0]:
                raise ConfigurationError("Need more samples than free dimensions for a joint KDE.")
            kde = gaussian_kde(s[:, free].T, bw_method=self.bandwidth)
            bw = np.sqrt(np.diag(np.atleast_2d(kde.covariance)))
            lo[free] = lo[free] - self.cut * bw
            hi[free] = hi[free] + self.cut * bw
        object.__setattr__(self, "samples", s)
        object.__setattr__(self, "names", tuple(self.names))
        object.__setattr__(self, "kde", kde)
        object.__setattr__(self, "_lo", lo)
        object.__setattr__(self, "_hi", hi)
        object.__setattr__(self, "_fixed", fixed)

    @property
    def ndim(self) -> int:
        return len(self.names)

    @property
    def fixed_mask(self) -> np.ndarray:
        return self._fixed.copy()

    def fixed_values(self) -> np.ndarray:
        return np.where(self._fixed, self.samples[0], np.nan)

    def support(self) -> Tuple[np.ndarray, np.ndarray]:
        return self._lo.copy(), self._hi.copy()

    def pdf(self, x: Any) -> np.ndarray:
        x = np.atleast_2d(np.asarray(x, dtype=float))
        if self.kde is None:
            return np.ones((x.shape[0],), dtype=float)
        inside = np.all((x >= self._lo) & (x <= self._hi), axis=1)
        return np.where(inside, self.kde(x[:, ~self._fixed].T), 0.0)

    def rvs(self, size: int, rng: Any = None) -> np.ndarray:
        rng = as_generator(rng)
        out = np.tile(self.samples[0], (int(size), 1))
        if self.kde is not None:
            out[:, ~self._fixed] = self.kde.resample(int(size), seed=rng).T
        return np.clip(out, self._lo, self._hi)

    def mean(self) -> np.ndarray:
        return np.mean(self.samples, axis=0)


def marginal_densities(
    samples: Any,
    names: Optional[Sequence[str]] = None,
    *,
    bandwidth: Any = None,
    cut: float = 3.0,
    max_workers: Optional[int] = None,
) -> ProductDistribution:
    """One density per parameter column of a chain, combined independently.

    `samples` is a Chain or an array of shape (n_draws, n_params). Columns are
    independent, so `max_workers` > 1 estimates them on a thread pool.
    """
    if hasattr(samples, "flat") and hasattr(samples, "names"):
        names = tuple(samples.names) if names is None else tuple(names)
        arr = samples.flat()
    else:
        arr = np.asarray(samples, dtype=float)
        if arr.ndim == 1:
            arr = arr[:, None]
        if names is None:
            names = tuple(f"p{j}" for j in range(arr.shape[1]))
    if arr.ndim != 2 or arr.shape[1] != len(names):
        raise ConfigurationError(
            f"samples of shape {arr.shape} do not match {len(names)} names."
        )

    def one(j: int) -> Any:
        return estimate_density(arr[:, j], bandwidth=bandwidth, cut=cut)

    if max_workers is not None and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as ex:
            comps = list(ex.map(one, range(arr.shape[1])))
    else:
        comps = [one(j) for j in range(arr.shape[1])]
    logger.debug("estimated %d marginal densities from %d draws", len(comps), arr.shape[0])
    return ProductDistribution(components=tuple(comps), names=tuple(names))
