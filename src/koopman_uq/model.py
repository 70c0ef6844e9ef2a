from __future__ import annotations

from dataclasses import dataclass, field, replace
import inspect
import logging
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

import numpy as np
from warnings import warn

from .backends import get_sampler
from .chain import Chain, ChainDiagnostics
from .data import ObservationSet
from .errors import ConfigurationError, SamplingError, SolverError
from .inference import build_gaussian_loglike, build_prior
from .params import ParameterSpec, ParamView, ParamsView, _UncContext
from .run import Results, Run
from .solver import SolverOptions, Trajectory, solve
from .util import as_generator, check_time_grid, infer_param_names

logger = logging.getLogger(__name__)

# Observation noise prior used by the worked Lotka-Volterra example.
DEFAULT_NOISE_PRIOR = ("invgamma", (2.0, 3.0))


@dataclass(frozen=True)
class OdeModel:
    """An ODE system du/dt = func(t, u, *params) plus its inference metadata.

    Builders (fix, bound, prior, ...) are pure and return new models.
    """

    name: str
    func: Callable[..., Any]
    state_names: Tuple[str, ...]
    param_names: Tuple[str, ...]
    params: Tuple[ParameterSpec, ...]
    u0: Optional[Tuple[float, ...]] = None
    tspan: Optional[Tuple[float, float]] = None
    noise: ParameterSpec = field(
        default_factory=lambda: ParameterSpec(
            name="sigma", bounds=(0.0, None), prior=DEFAULT_NOISE_PRIOR
        )
    )
    solver: SolverOptions = field(default_factory=SolverOptions)

    # ---- constructor ----
    @staticmethod
    def from_function(
        func: Callable[..., Any],
        *,
        states: Sequence[str] | int,
        u0: Optional[Sequence[float]] = None,
        tspan: Optional[Tuple[float, float]] = None,
        name: Optional[str] = None,
        noise_name: str = "sigma",
        solver: Optional[SolverOptions] = None,
    ) -> "OdeModel":
        """Construct a model from a plain right-hand side `func(t, u, p1, p2, ...)`."""
        names = infer_param_names(func)

        if isinstance(states, int):
            state_names = tuple(f"u{i}" for i in range(int(states)))
        else:
            state_names = tuple(str(s) for s in states)
        if not state_names:
            raise ConfigurationError("A model needs at least one state.")
        if len(set(state_names)) != len(state_names):
            raise ConfigurationError("Duplicate state names.")
        if noise_name in names:
            raise ConfigurationError(
                f"Noise parameter name {noise_name!r} clashes with an ODE parameter."
            )

        # Numeric defaults in the signature become starting guesses.
        sig = inspect.signature(func)
        specs = []
        for n in names:
            p = sig.parameters[n]
            g = None
            if p.default is not inspect._empty:
                d = p.default
                if isinstance(d, (int, float, np.number)) and not isinstance(d, bool):
                    g = float(d)
            specs.append(ParameterSpec(name=n, guess=g))

        model = OdeModel(
            name=name or getattr(func, "__name__", "model"),
            func=func,
            state_names=state_names,
            param_names=names,
            params=tuple(specs),
            noise=ParameterSpec(
                name=noise_name, bounds=(0.0, None), prior=DEFAULT_NOISE_PRIOR
            ),
            solver=solver or SolverOptions(),
        )
        if u0 is not None:
            model = model.with_u0(u0)
        if tspan is not None:
            model = model.with_tspan(tspan)
        return model

    # ---- shape / validation helpers ----
    @property
    def n_states(self) -> int:
        return len(self.state_names)

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    @property
    def noise_name(self) -> str:
        return self.noise.name

    def param_vector(self, values: Any = None) -> np.ndarray:
        """Return a parameter vector ordered as `param_names`.

        Accepts a mapping (missing entries filled from fixed values), a
        sequence of length n_params, or None (fixed values, then guesses).
        """
        if values is None:
            out = []
            missing = []
            for spec in self.params:
                if spec.fixed:
                    out.append(float(spec.fixed_value))
                elif spec.guess is not None:
                    out.append(float(spec.guess))
                else:
                    missing.append(spec.name)
            if missing:
                raise ConfigurationError(
                    f"No parameter values given and no fixed/guess value for: {missing}"
                )
            p = np.asarray(out, dtype=float)
        elif isinstance(values, Mapping):
            unknown = [k for k in values if k not in self.param_names and k != self.noise_name]
            if unknown:
                raise ConfigurationError(
                    f"Unknown parameter names {unknown}; model has {self.param_names}."
                )
            out = []
            missing = []
            for spec in self.params:
                if spec.name in values:
                    v = values[spec.name]
                    out.append(float(getattr(v, "value", v)))
                elif spec.fixed:
                    out.append(float(spec.fixed_value))
                else:
                    missing.append(spec.name)
            if missing:
                raise ConfigurationError(f"Missing parameter values for: {missing}")
            p = np.asarray(out, dtype=float)
        else:
            p = np.asarray(values, dtype=float).reshape(-1)
            if p.shape[0] != self.n_params:
                raise ConfigurationError(
                    f"Parameter vector has length {p.shape[0]} but model "
                    f"{self.name!r} has {self.n_params} parameters {self.param_names}."
                )
        if not np.all(np.isfinite(p)):
            raise ConfigurationError(f"Parameter vector contains non-finite values: {p.tolist()}")
        return p

    def initial_state(self, u0: Optional[Any] = None) -> np.ndarray:
        """Return the validated initial state (argument overrides the model's u0)."""
        src = self.u0 if u0 is None else u0
        if src is None:
            raise ConfigurationError(
                f"Model {self.name!r} has no initial state; use .with_u0(...) or pass u0=."
            )
        y0 = np.asarray(src, dtype=float).reshape(-1)
        if y0.shape[0] != self.n_states:
            raise ConfigurationError(
                f"Initial state has length {y0.shape[0]} but model "
                f"{self.name!r} has {self.n_states} states {self.state_names}."
            )
        if not np.all(np.isfinite(y0)):
            raise ConfigurationError("Initial state contains non-finite values.")
        return y0

    def time_span(self, tspan: Optional[Tuple[float, float]] = None) -> Tuple[float, float]:
        """Return the validated (t0, t1) span (argument overrides the model's tspan)."""
        src = self.tspan if tspan is None else tspan
        if src is None:
            raise ConfigurationError(
                f"Model {self.name!r} has no time span; use .with_tspan(...) or pass tspan=."
            )
        try:
            t0, t1 = (float(v) for v in src)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"tspan must be a pair (t0, t1); got {src!r}.") from exc
        if not (np.isfinite(t0) and np.isfinite(t1)):
            raise ConfigurationError(f"tspan must be finite; got ({t0}, {t1}).")
        if t1 <= t0:
            raise ConfigurationError(
                f"tspan end must be after its start; got ({t0:g}, {t1:g})."
            )
        return (t0, t1)

    def time_grid(
        self, t_eval: Optional[Any], tspan: Optional[Tuple[float, float]] = None
    ) -> Optional[np.ndarray]:
        return check_time_grid(t_eval, self.time_span(tspan))

    def check(self, params: Any = None, *, u0: Optional[Any] = None) -> None:
        """Evaluate the right-hand side once and check the derivative's shape."""
        p = self.param_vector(params)
        y0 = self.initial_state(u0)
        t0 = self.time_span()[0]
        du = np.asarray(self.func(t0, y0, *p), dtype=float)
        if du.shape != (self.n_states,):
            raise ConfigurationError(
                f"Right-hand side of {self.name!r} returned shape {du.shape}; "
                f"expected ({self.n_states},) to match states {self.state_names}."
            )

    # ---- builders (pure; return new model) ----
    def _update_specs(self, changes: Mapping[str, Callable[[ParameterSpec], ParameterSpec]]) -> "OdeModel":
        m = {p.name: p for p in self.params}
        noise = self.noise
        for k, fn in changes.items():
            if k == noise.name:
                noise = fn(noise)
            elif k in m:
                m[k] = fn(m[k])
            else:
                raise KeyError(k)
        return replace(self, params=tuple(m[n] for n in self.param_names), noise=noise)

    def fix(self, **fixed: float) -> "OdeModel":
        """Return a new model with parameters (or the noise scale) fixed to values."""
        return self._update_specs(
            {k: (lambda s, v=v: replace(s, fixed=True, fixed_value=float(v))) for k, v in fixed.items()}
        )

    def free(self, *names: str) -> "OdeModel":
        """Undo .fix(...) for the given names."""
        return self._update_specs(
            {k: (lambda s: replace(s, fixed=False, fixed_value=None)) for k in names}
        )

    def bound(self, **bounds: Tuple[Optional[float], Optional[float]]) -> "OdeModel":
        """Return a new model with parameter bounds applied (priors are truncated to them)."""
        changes = {}
        for k, b in bounds.items():
            lo, hi = b
            if lo is not None and hi is not None and float(hi) <= float(lo):
                raise ConfigurationError(f"Bounds for {k!r} need lo < hi; got {b!r}.")
            changes[k] = lambda s, lo=lo, hi=hi: replace(s, bounds=(lo, hi))
        return self._update_specs(changes)

    def guess(self, **guesses: float) -> "OdeModel":
        """Return a new model with sampler starting guesses."""
        return self._update_specs(
            {k: (lambda s, g=g: replace(s, guess=float(g))) for k, g in guesses.items()}
        )

    def prior(self, **priors: Tuple[Any, ...]) -> "OdeModel":
        """Return a new model with Bayesian priors, e.g. .prior(alpha=("normal", 1.5, 0.5))."""
        changes = {}
        for k, p in priors.items():
            if not isinstance(p, tuple) or len(p) < 1:
                raise TypeError("prior must be like ('normal', 0, 1) etc.")
            kind = str(p[0])
            args = tuple(p[1:])
            changes[k] = lambda s, kind=kind, args=args: replace(s, prior=(kind, args))
        return self._update_specs(changes)

    def with_u0(self, u0: Sequence[float]) -> "OdeModel":
        y0 = np.asarray(u0, dtype=float).reshape(-1)
        if y0.shape[0] != self.n_states:
            raise ConfigurationError(
                f"Initial state has length {y0.shape[0]} but model has {self.n_states} states."
            )
        return replace(self, u0=tuple(float(v) for v in y0))

    def with_tspan(self, tspan: Tuple[float, float]) -> "OdeModel":
        span = self.time_span(tspan)
        return replace(self, tspan=span)

    def with_solver(self, options: Optional[SolverOptions] = None, **kwargs: Any) -> "OdeModel":
        """Return a new model with different integration settings."""
        opts = self.solver if options is None else options
        if kwargs:
            opts = replace(opts, **kwargs)
        return replace(self, solver=opts)

    # ---- evaluation ----
    def simulate(
        self,
        params: Any = None,
        *,
        t_eval: Optional[Any] = None,
        u0: Optional[Any] = None,
        tspan: Optional[Tuple[float, float]] = None,
        options: Optional[SolverOptions] = None,
        strict: bool = True,
    ) -> Trajectory:
        """Integrate once; raises SolverError on failure unless strict=False."""
        return solve(
            self,
            params,
            u0=u0,
            tspan=tspan,
            t_eval=t_eval,
            options=options,
            strict=strict,
        )

    def state_indices(self, names: Sequence[str]) -> np.ndarray:
        idx = []
        for n in names:
            if n not in self.state_names:
                raise ConfigurationError(
                    f"Observed state {n!r} is not a state of model {self.name!r} {self.state_names}."
                )
            idx.append(self.state_names.index(n))
        return np.asarray(idx, dtype=int)

    # ---- inference ----
    def fit(
        self,
        data: ObservationSet,
        *,
        sampler: str = "emcee",
        num_samples: int = 1000,
        n_chains: int = 3,
        sampler_options: Optional[Dict[str, Any]] = None,
        rng: Any = None,
        rhat_threshold: float = 1.1,
    ) -> Run:
        """Sample the posterior of the free parameters given noisy observations.

        Each of the `n_chains` chains is an independent sampler run with its own
        child RNG. Per-chain diagnostics are kept on `run.chain.diagnostics`;
        a failed chain or a split R-hat above `rhat_threshold` raises a
        UserWarning rather than an error, so the run can still be inspected.

        Sampler notes:
        - "emcee": affine-invariant ensemble MCMC; options n_walkers, burn,
          thin, init ("prior" | "map" | "ball"), ball_scale, moves, progress
        - "ultranest": nested sampling; posterior draws are resampled to
          num_samples; options log_dir, resume, sampler_kwargs, run_kwargs
        """
        if not isinstance(data, ObservationSet):
            raise TypeError("fit() expects an ObservationSet; see koopman_uq.simulate_data / ObservationSet.from_arrays.")
        num_samples = int(num_samples)
        n_chains = int(n_chains)
        if num_samples < 1:
            raise ConfigurationError("num_samples must be >= 1.")
        if n_chains < 1:
            raise ConfigurationError("n_chains must be >= 1.")

        # ---- configuration checks (before any solve) -----------------------
        y0 = self.initial_state()
        span = self.time_span()
        t_obs = check_time_grid(data.t, span, what="data.t")
        obs_idx = self.state_indices(data.state_names)

        specs = self.params + (self.noise,)
        free_names, fixed_map = _free_and_fixed(specs)
        if not free_names:
            raise ConfigurationError("All parameters are fixed; nothing to sample.")

        priors = [build_prior(spec) for spec in specs if not spec.fixed]
        p0 = _starting_point(specs, priors)
        self.check(_ode_vector(self, free_names, fixed_map, p0))

        backend = get_sampler(sampler)
        rng = as_generator(rng)
        chain_rngs = rng.spawn(n_chains)
        opts = dict(sampler_options or {})

        logger.info(
            "fitting %r with %s: %d chain(s) x %d draws, free=%s",
            self.name, sampler, n_chains, num_samples, free_names,
        )

        P = len(free_names)
        samples = np.empty((n_chains, num_samples, P), dtype=float)
        diagnostics: List[ChainDiagnostics] = []

        for i, chain_rng in enumerate(chain_rngs):
            loglike = build_gaussian_loglike(
                model=self,
                data=data,
                free_names=free_names,
                fixed_map=fixed_map,
                u0=y0,
                tspan=span,
                t_eval=t_obs,
                obs_index=obs_idx,
            )
            logger.debug("chain %d: starting %s", i, sampler)
            try:
                r = backend.sample(
                    log_likelihood=loglike,
                    priors=priors,
                    free_names=list(free_names),
                    num_samples=num_samples,
                    p0=p0,
                    options=dict(opts),
                    rng=chain_rng,
                )
            except (ConfigurationError, SolverError):
                raise
            except Exception as exc:
                raise SamplingError(str(exc), chain=i, sampler=sampler) from exc

            draws = np.asarray(r.samples, dtype=float)
            if draws.shape != (num_samples, P):
                raise SamplingError(
                    f"expected samples of shape {(num_samples, P)}, got {draws.shape}",
                    chain=i,
                    sampler=sampler,
                )
            samples[i] = draws
            diagnostics.append(
                ChainDiagnostics(
                    chain=i,
                    sampler=sampler,
                    success=bool(r.success),
                    message=str(r.message),
                    acceptance_fraction=r.stats.get("acceptance_fraction"),
                    autocorr_time=r.stats.get("autocorr_time"),
                    n_evaluations=int(loglike.n_calls),
                    n_solver_failures=int(loglike.n_failures),
                    stats=dict(r.stats),
                )
            )
            logger.debug(
                "chain %d: done (success=%s, evals=%d, solver failures=%d)",
                i, r.success, loglike.n_calls, loglike.n_failures,
            )

        chain = Chain(samples=samples, names=tuple(free_names), diagnostics=tuple(diagnostics))
        _warn_if_unconverged(chain, rhat_threshold)

        results = _posterior_results(self, chain, fixed_map, sampler)
        return Run(model=self, data=data, chain=chain, results=results, sampler=sampler)


def _free_and_fixed(
    params: Tuple[ParameterSpec, ...]
) -> Tuple[List[str], Dict[str, float]]:
    """Split parameters into free names and fixed name->value mapping."""
    free: List[str] = []
    fixed: Dict[str, float] = {}
    for p in params:
        if p.fixed:
            if p.fixed_value is None:
                raise ConfigurationError(f"Parameter {p.name} is fixed but has no fixed_value.")
            fixed[p.name] = float(p.fixed_value)
        else:
            free.append(p.name)
    return free, fixed


def _starting_point(specs: Tuple[ParameterSpec, ...], priors: Sequence[Any]) -> np.ndarray:
    """Sampler start for the free parameters: guess if inside the prior, else prior median."""
    free_specs = [s for s in specs if not s.fixed]
    out = np.empty((len(free_specs),), dtype=float)
    for j, (spec, prior) in enumerate(zip(free_specs, priors)):
        g = spec.guess
        if g is not None and np.isfinite(prior.logpdf(float(g))):
            out[j] = float(g)
        else:
            out[j] = float(prior.median())
    return out


def _ode_vector(
    model: OdeModel, free_names: Sequence[str], fixed_map: Mapping[str, float], theta: np.ndarray
) -> np.ndarray:
    vals = dict(fixed_map)
    for j, n in enumerate(free_names):
        vals[n] = float(theta[j])
    return np.asarray([vals[n] for n in model.param_names], dtype=float)


def _warn_if_unconverged(chain: Chain, rhat_threshold: float) -> None:
    failed = [d for d in chain.diagnostics if not d.success]
    if failed:
        msgs = "; ".join(f"chain {d.chain}: {d.message}" for d in failed)
        warn(f"Sampler reported problems: {msgs}", UserWarning)

    rhat = chain.rhat()
    bad = {n: r for n, r in rhat.items() if r > rhat_threshold}
    if bad:
        desc = ", ".join(f"{n}={r:.3f}" for n, r in bad.items())
        warn(
            f"Chains have not converged (split R-hat > {rhat_threshold}): {desc}. "
            "Increase num_samples/burn or inspect run.chain.diagnostics.",
            UserWarning,
        )


def _posterior_results(
    model: OdeModel, chain: Chain, fixed_map: Mapping[str, float], sampler: str
) -> Results:
    """Summarise the pooled chain as ParamViews (mean ± std, correlated via cov)."""
    free_names = tuple(chain.names)
    mean = chain.mean()
    std = chain.std()
    cov = chain.cov()

    values_map: Dict[str, float] = {}
    ctx = _UncContext(values=values_map, cov=cov, free_names=free_names)
    items: Dict[str, ParamView] = {}
    for spec in model.params + (model.noise,):
        n = spec.name
        if n in fixed_map:
            v = float(fixed_map[n])
            e = None
        else:
            j = free_names.index(n)
            v = float(mean[j])
            e = float(std[j])
        values_map[n] = v
        items[n] = ParamView(
            name=n,
            value=v,
            stderr=e,
            fixed=spec.fixed,
            bounds=spec.bounds,
            _context=ctx,
        )

    return Results(
        params=ParamsView(items, _context=ctx),
        cov=cov,
        sampler=sampler,
        rhat=chain.rhat(),
        ess=chain.ess(),
        stats={
            "free_names": free_names,
            "n_chains": chain.n_chains,
            "n_draws": chain.n_draws,
        },
    )
