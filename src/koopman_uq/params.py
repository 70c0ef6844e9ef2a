from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import uncertainties
from uncertainties import unumpy as unp


__all__ = [
    "ParameterSpec",
    "ParamView",
    "ParamsView",
    "MultiParamView",
]


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    fixed: bool = False
    fixed_value: Optional[float] = None
    bounds: Optional[Tuple[Optional[float], Optional[float]]] = None
    # Starting point for samplers (walker ball centre / MAP start)
    guess: Optional[float] = None
    # ("normal", mu, sigma), ("invgamma", a, b), ... ; truncated to bounds
    prior: Optional[Tuple[str, Tuple[Any, ...]]] = None


@dataclass
class _UncContext:
    """Posterior means + covariance shared by the views of one Results."""

    values: Mapping[str, float]
    cov: Optional[np.ndarray]
    free_names: Tuple[str, ...]
    _cache: Optional[Dict[str, Any]] = field(default=None, init=False, repr=False)

    def _build_cache(self) -> None:
        if self._cache is not None or self.cov is None:
            return
        cov_arr = np.asarray(self.cov, dtype=float)
        n = len(self.free_names)
        if cov_arr.shape != (n, n):
            return
        vals = [float(self.values[name]) for name in self.free_names]
        try:
            corr = uncertainties.correlated_values(vals, cov_arr)
        except Exception:
            return
        self._cache = dict(zip(self.free_names, corr))

    def u_for(self, name: str) -> Optional[Any]:
        if name not in self.free_names:
            return None
        self._build_cache()
        if self._cache is None:
            return None
        return self._cache.get(name)

    def u_for_many(self, names: Sequence[str]) -> Optional[np.ndarray]:
        names = tuple(names)
        if any(n not in self.free_names for n in names):
            return None
        self._build_cache()
        if self._cache is None:
            return None
        return np.array([self._cache[n] for n in names], dtype=object)


@dataclass(frozen=True)
class ParamView:
    """Posterior summary of a single parameter (mean ± std)."""

    name: str
    value: Any
    stderr: Any = None
    fixed: bool = False
    bounds: Optional[Tuple[Optional[float], Optional[float]]] = None
    _context: Optional[_UncContext] = field(
        default=None, repr=False, compare=False
    )

    @property
    def error(self) -> Any:
        return self.stderr

    @property
    def u(self):
        """Return an uncertainties ufloat, correlated with the other free parameters."""
        if self.stderr is None:
            raise ValueError(f"No stderr available for parameter {self.name!r}.")
        if not np.isfinite(float(self.stderr)):
            raise ValueError(f"stderr for {self.name!r} is not finite.")
        if self._context is not None:
            correlated = self._context.u_for(self.name)
            if correlated is not None:
                return correlated
        return uncertainties.ufloat(float(self.value), float(self.stderr))

    def __getitem__(self, key: str) -> Any:
        if key == "value":
            return self.value
        if key in ("error", "stderr"):
            return self.stderr
        if key == "fixed":
            return self.fixed
        if key == "bounds":
            return self.bounds
        raise KeyError(key)


@dataclass(frozen=True)
class MultiParamView:
    """View over multiple parameters at once; value/stderr have shape (len(names),)."""

    names: Tuple[str, ...]
    value: Any
    stderr: Any = None
    _context: Optional[_UncContext] = field(
        default=None, repr=False, compare=False
    )

    @property
    def u(self):
        if self.stderr is None:
            raise ValueError("No stderr available for MultiParamView.u.")
        if self._context is not None:
            correlated = self._context.u_for_many(self.names)
            if correlated is not None:
                return correlated
        return unp.uarray(self.value, self.stderr)


class ParamsView(Mapping[str, ParamView]):
    """Mapping name -> ParamView, with index and multi-name access."""

    def __init__(
        self,
        items: Mapping[str, ParamView],
        *,
        _context: Optional[_UncContext] = None,
    ):
        self._items = dict(items)
        self._names = tuple(self._items.keys())
        self._context = _context

    def __getitem__(self, key):  # type: ignore[override]
        if isinstance(key, str):
            return self._items[key]

        if (
            isinstance(key, (tuple, list))
            and key
            and all(isinstance(k, str) for k in key)
        ):
            return self._multi_by_names(tuple(key))

        if isinstance(key, int):
            return self._items[self._names[key]]

        if isinstance(key, slice):
            return self._multi_by_names(self._names[key])

        raise KeyError(key)

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    def items(self):
        return self._items.items()

    def as_dict(self) -> Dict[str, Any]:
        """Return name->value (extracting .value)."""
        return {k: v.value for k, v in self._items.items()}

    def _multi_by_names(self, names: Sequence[str]) -> MultiParamView:
        names = tuple(names)
        if not names:
            raise ValueError("MultiParamView requires at least one parameter name.")

        values = [float(self._items[n].value) for n in names]
        errs = [self._items[n].stderr for n in names]
        stderr = None
        if all(e is not None for e in errs):
            stderr = np.asarray(errs, dtype=float)
        return MultiParamView(
            names=names,
            value=np.asarray(values, dtype=float),
            stderr=stderr,
            _context=self._context,
        )
