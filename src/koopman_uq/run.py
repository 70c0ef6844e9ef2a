from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from .params import ParamsView
from .util import as_generator, level_to_conf_int


@dataclass(frozen=True)
class Band:
    """Pointwise predictive quantiles; arrays have shape (n_states, n_times)."""

    t: np.ndarray
    low: np.ndarray
    high: np.ndarray
    median: Optional[np.ndarray] = None
    state_names: Tuple[str, ...] = ()

    def __getitem__(self, name: str) -> "Band":
        i = self.state_names.index(name)
        return Band(
            t=self.t,
            low=self.low[i],
            high=self.high[i],
            median=None if self.median is None else self.median[i],
            state_names=(name,),
        )


@dataclass(frozen=True)
class Results:
    params: ParamsView
    cov: Optional[np.ndarray] = None
    sampler: str = ""
    rhat: Dict[str, float] = field(default_factory=dict)
    ess: Dict[str, float] = field(default_factory=dict)
    # Sampler-specific extras
    stats: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key):
        """res["alpha"] -> ParamView; res["alpha", "beta"] -> MultiParamView."""
        return self.params[key]

    def summary(self, digits: int = 4) -> str:
        """Return a human-readable summary string for the results."""
        lines = [f"Results(sampler={self.sampler!r})"]
        for name, pv in self.params.items():
            v = pv.value
            e = pv.error
            tag = " (fixed)" if pv.fixed else ""
            diag = ""
            if name in self.rhat:
                diag = f"  rhat={self.rhat[name]:.3f} ess={self.ess.get(name, float('nan')):.0f}"
            if e is None:
                lines.append(f"  {name:>12s}: {float(v):.{digits}g}{tag}")
            else:
                lines.append(
                    f"  {name:>12s}: {float(v):.{digits}g} ± {float(e):.{digits}g}{diag}"
                )
        return "\n".join(lines)


@dataclass(frozen=True)
class Run:
    model: Any  # OdeModel
    data: Any  # ObservationSet
    chain: Any  # Chain
    results: Results
    sampler: str

    @property
    def success(self) -> bool:
        return all(d.success for d in self.chain.diagnostics)

    @property
    def params(self) -> ParamsView:
        return self.results.params

    def __getitem__(self, key):
        return self.results[key]

    def summary(self, digits: int = 4) -> str:
        return self.chain.summary(digits=digits)

    # ---- posterior draws as ODE parameter vectors -------------------------
    def posterior_params(
        self, nsamples: Optional[int] = None, *, rng: Any = None
    ) -> np.ndarray:
        """Posterior draws mapped to full ODE parameter vectors, shape (S, n_params).

        Fixed parameters are filled in; the noise scale is dropped.
        """
        flat = self.chain.flat()
        S = flat.shape[0]
        if nsamples is not None:
            take = int(nsamples)
            if take <= 0:
                raise ValueError("nsamples must be >= 1.")
            if take < S:
                idx = as_generator(rng).choice(S, size=take, replace=False)
                flat = flat[idx]
        names = list(self.chain.names)
        out = np.empty((flat.shape[0], self.model.n_params), dtype=float)
        for k, spec in enumerate(self.model.params):
            if spec.name in names:
                out[:, k] = flat[:, names.index(spec.name)]
            else:
                out[:, k] = float(spec.fixed_value)
        return out

    def _point(self, which: str) -> np.ndarray:
        theta = self.posterior_params()
        if which == "mean":
            return np.mean(theta, axis=0)
        if which == "median":
            return np.median(theta, axis=0)
        raise ValueError(f"Unknown value for 'which': {which!r}")

    def predict(
        self,
        t: Any,
        *,
        which: Literal["mean", "median"] = "mean",
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Solve the model at `t` using the posterior mean/median (or explicit params)."""
        p = self._point(which) if params is None else params
        return self.model.simulate(p, t_eval=t)

    def band(
        self,
        t: Any,
        *,
        nsamples: int = 400,
        level: Optional[float] = None,
        conf_int: Optional[Tuple[float, float]] = None,
        ensemble: str = "serial",
        rng: Optional[np.random.Generator] = None,
    ) -> Band:
        """Pointwise predictive band of the states from posterior draws."""
        from .ensemble import solve_many

        if level is None and conf_int is None:
            level = 2.0
        if level is not None and conf_int is not None:
            raise ValueError("Provide only one of level= or conf_int=.")

        if conf_int is None:
            qlo, qhi = level_to_conf_int(float(level))
        else:
            qlo, qhi = conf_int

        theta = self.posterior_params(nsamples, rng=rng)
        trajs = solve_many(self.model, theta, backend=ensemble, t_eval=t)
        ok = [tr.y for tr in trajs if tr.success]
        if not ok:
            raise ValueError("No posterior draw could be solved for band().")
        preds = np.stack(ok, axis=0)  # (S, n_states, n_t)

        return Band(
            t=np.asarray(trajs[0].t, dtype=float),
            low=np.quantile(preds, qlo, axis=0),
            high=np.quantile(preds, qhi, axis=0),
            median=np.quantile(preds, 0.5, axis=0),
            state_names=tuple(self.model.state_names),
        )

    # ---- densities and expectations ---------------------------------------
    def marginals(self, *, bandwidth: Any = None, cut: float = 3.0, max_workers: Optional[int] = None):
        """Kernel density of every sampled parameter (noise scale included)."""
        from .density import marginal_densities

        return marginal_densities(
            self.chain, bandwidth=bandwidth, cut=cut, max_workers=max_workers
        )

    def parameter_distributions(
        self,
        *,
        correlated: bool = False,
        bandwidth: Any = None,
        cut: float = 3.0,
        max_workers: Optional[int] = None,
    ):
        """Distribution over the ODE parameters (model order) built from the chain.

        correlated=False multiplies independent marginal densities and so
        drops posterior correlations; correlated=True uses one joint KDE.
        """
        from .density import JointKernelDensity, marginal_densities

        theta = self.posterior_params()
        names = tuple(self.model.param_names)
        if correlated:
            return JointKernelDensity(samples=theta, names=names, bandwidth=bandwidth, cut=cut)
        return marginal_densities(
            theta, names, bandwidth=bandwidth, cut=cut, max_workers=max_workers
        )

    def expectation(
        self,
        observable: Any,
        *,
        correlated: bool = False,
        bandwidth: Any = None,
        **kwargs: Any,
    ):
        """E[observable(solution)] under the posterior; kwargs go to koopman.expectation."""
        from .koopman import expectation

        dist = self.parameter_distributions(correlated=correlated, bandwidth=bandwidth)
        return expectation(observable, self.model, dist, **kwargs)

    # ---- plotting ----------------------------------------------------------
    def plot(self, *, ax: Optional[Any] = None, **kwargs: Any) -> Tuple[Any, Any]:
        """Plot data, posterior mean trajectory and band.

        Convenience wrapper around `koopman_uq.plotting.plot_run`.
        """
        from .plotting import plot_run

        return plot_run(run=self, ax=ax, **kwargs)

    def plot_trace(self, *, names: Optional[Sequence[str]] = None, **kwargs: Any) -> Tuple[Any, Any]:
        from .plotting import plot_trace

        return plot_trace(self.chain, names=names, **kwargs)
