from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Sequence

import numpy as np

from ..inference import build_log_posterior, build_log_prior
from .common import SamplerResult
from .scipy_minimize import find_map

logger = logging.getLogger(__name__)

# Below this mean acceptance the ensemble is considered stuck.
MIN_ACCEPTANCE = 0.05


class EmceeSampler:
    name = "emcee"

    def sample(
        self,
        *,
        log_likelihood: Callable[[np.ndarray], float],
        priors: Sequence[Any],
        free_names: List[str],
        num_samples: int,
        p0: np.ndarray,
        options: Dict[str, Any],
        rng: np.random.Generator,
    ) -> SamplerResult:
        """Affine-invariant ensemble MCMC for one chain.

        The chain is the last `num_samples` draws of the flattened ensemble
        (step-major), after discarding `burn` steps and thinning by `thin`.

        Options:
        - n_walkers: ensemble size (default: max(16, 2P + 2))
        - burn: steps discarded per walker (default: 500)
        - thin: keep every thin-th step (default: 1)
        - init: "map" (default), "ball" around p0, or "prior" draws
        - ball_scale: relative walker spread for map/ball init (default: 1e-2)
        - moves: forwarded to emcee.EnsembleSampler
        - map_options: forwarded to the MAP search
        - progress: show emcee's progress bar (default: False)
        """
        import emcee

        opts = dict(options or {})
        P = len(free_names)
        n_walkers = int(opts.pop("n_walkers", max(16, 2 * P + 2)))
        burn = int(opts.pop("burn", 500))
        thin = int(opts.pop("thin", 1))
        init = str(opts.pop("init", "map")).lower()
        ball_scale = float(opts.pop("ball_scale", 1e-2))
        moves = opts.pop("moves", None)
        map_options = dict(opts.pop("map_options", {}) or {})
        progress = bool(opts.pop("progress", False))
        if opts:
            raise ValueError(f"Unknown emcee options: {sorted(opts)}")
        if n_walkers < 2 * P:
            raise ValueError(f"emcee needs n_walkers >= 2 * n_params ({2 * P}); got {n_walkers}.")
        if burn < 0 or thin < 1:
            raise ValueError("burn must be >= 0 and thin >= 1.")

        log_prior = build_log_prior(priors)
        log_prob = build_log_posterior(log_prior, log_likelihood)

        start = _initial_walkers(
            init=init,
            p0=np.asarray(p0, dtype=float),
            priors=priors,
            n_walkers=n_walkers,
            ball_scale=ball_scale,
            log_prob=log_prob,
            map_options=map_options,
            rng=rng,
        )

        per_walker = -(-num_samples // n_walkers)
        n_steps = burn + thin * per_walker
        seed = int(rng.integers(0, 2**32 - 1))
        logger.debug(
            "emcee: walkers=%d steps=%d (burn=%d thin=%d) init=%s", n_walkers, n_steps, burn, thin, init
        )

        sampler = emcee.EnsembleSampler(n_walkers, P, log_prob, moves=moves)
        # emcee restores its move RNG from a RandomState state tuple.
        state = emcee.State(start, random_state=np.random.RandomState(seed).get_state())
        sampler.run_mcmc(state, n_steps, progress=progress)

        flat = sampler.get_chain(discard=burn, thin=thin, flat=True)
        samples = np.asarray(flat[-num_samples:], dtype=float)

        acceptance = float(np.mean(sampler.acceptance_fraction))
        tau = np.asarray(
            emcee.autocorr.integrated_time(
                sampler.get_chain(discard=burn, thin=thin), quiet=True
            ),
            dtype=float,
        )

        finite = bool(np.all(np.isfinite(samples)))
        success = finite and acceptance >= MIN_ACCEPTANCE
        if not finite:
            message = "non-finite draws"
        elif not success:
            message = f"low acceptance fraction {acceptance:.3f}"
        else:
            message = "ok"

        return SamplerResult(
            samples=samples,
            success=success,
            message=message,
            stats={
                "backend": "emcee",
                "acceptance_fraction": acceptance,
                "autocorr_time": tau,
                "n_walkers": n_walkers,
                "n_steps": n_steps,
                "burn": burn,
                "thin": thin,
                "init": init,
            },
        )


def _initial_walkers(
    *,
    init: str,
    p0: np.ndarray,
    priors: Sequence[Any],
    n_walkers: int,
    ball_scale: float,
    log_prob: Callable[[np.ndarray], float],
    map_options: Dict[str, Any],
    rng: np.random.Generator,
) -> np.ndarray:
    P = p0.shape[0]
    if init == "prior":
        return np.column_stack([pr.rvs(n_walkers, rng) for pr in priors]).reshape(n_walkers, P)

    if init == "map":
        est = find_map(log_prob, p0, priors, map_options)
        centre = est.theta if np.isfinite(est.log_posterior) else p0
    elif init == "ball":
        centre = p0
    else:
        raise ValueError(f"Unknown emcee init {init!r}; use 'map', 'ball' or 'prior'.")

    lo = np.array([pr.lower for pr in priors], dtype=float)
    hi = np.array([pr.upper for pr in priors], dtype=float)
    scale = ball_scale * (np.abs(centre) + 1e-3)
    walkers = centre[None, :] + scale[None, :] * rng.normal(size=(n_walkers, P))
    # Reflect stragglers back inside the prior support.
    for _ in range(10):
        bad = np.any(walkers <= lo, axis=1) | np.any(walkers >= hi, axis=1)
        if not np.any(bad):
            break
        walkers[bad] = centre[None, :] + 0.5 * scale[None, :] * rng.normal(size=(int(bad.sum()), P))
    return np.clip(walkers, np.nextafter(lo, np.inf), np.nextafter(hi, -np.inf))
