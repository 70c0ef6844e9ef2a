from __future__ import annotations

import logging
import tempfile
from typing import Any, Callable, Dict, List, Sequence

import numpy as np

from ..inference import build_prior_transform
from .common import SamplerResult

logger = logging.getLogger(__name__)


class UltraNestSampler:
    name = "ultranest"

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
        """Nested sampling for one chain; equal-weight posterior draws are
        resampled (with replacement) to `num_samples`.

        UltraNest draws its live points from the global numpy RNG, so `rng`
        only controls the resampling step. Seed `np.random` for repeatable
        runs.

        Options:
        - log_dir: UltraNest output directory (default: a temporary directory)
        - resume: UltraNest resume mode (default: "subfolder")
        - sampler_kwargs: forwarded to ReactiveNestedSampler
        - run_kwargs: forwarded to ReactiveNestedSampler.run
        Any leftover keys are treated as run() kwargs.
        """
        import ultranest  # local import (optional dependency)

        # Sampler options parsing/merging lives HERE (not in OdeModel.fit).
        sampler_options = dict(options or {})
        log_dir = sampler_options.pop("log_dir", None)
        resume = sampler_options.pop("resume", "subfolder")
        sampler_kwargs = dict(sampler_options.pop("sampler_kwargs", {}) or {})
        run_kwargs = dict(sampler_options.pop("run_kwargs", {}) or {})
        for k, v in list(sampler_options.items()):
            run_kwargs.setdefault(k, v)
        run_kwargs.setdefault("show_status", False)
        run_kwargs.setdefault("viz_callback", False)

        transform = build_prior_transform(priors)

        def loglike(theta: np.ndarray) -> float:
            # UltraNest rejects -inf; a very low finite value marks failed solves.
            ll = float(log_likelihood(theta))
            return ll if np.isfinite(ll) else -1e300

        temp_dir = None
        if log_dir is None:
            temp_dir = tempfile.TemporaryDirectory(prefix="ultranest_")
            log_dir = temp_dir.name

        try:
            sampler = ultranest.ReactiveNestedSampler(
                list(free_names),
                loglike,
                transform=transform,
                log_dir=log_dir,
                resume=resume,
                **sampler_kwargs,
            )
            result = sampler.run(**run_kwargs)
        finally:
            if temp_dir is not None:
                temp_dir.cleanup()

        posterior = np.asarray(result.get("samples", []), dtype=float)
        if posterior.ndim != 2 or posterior.shape[1] != len(free_names) or posterior.shape[0] == 0:
            raise RuntimeError("UltraNest returned no posterior samples.")

        idx = rng.integers(0, posterior.shape[0], size=num_samples)
        samples = posterior[idx]
        logger.debug("ultranest: logz=%.4g over %d posterior points", result.get("logz", np.nan), posterior.shape[0])

        mww = dict(result.get("insertion_order_MWW_test") or {})
        finite = bool(np.all(np.isfinite(samples)))
        mww_ok = bool(mww.get("converged", True))
        if not finite:
            message = "non-finite draws"
        elif not mww_ok:
            message = (
                "insertion order test failed after "
                f"{mww.get('independent_iterations')} iterations"
            )
        else:
            message = "ok"

        return SamplerResult(
            samples=samples,
            success=finite and mww_ok,
            message=message,
            stats={
                "backend": "ultranest",
                "logz": float(result.get("logz", np.nan)),
                "logzerr": float(result.get("logzerr", np.nan)),
                "ess": float(result.get("ess", np.nan)),
                "insertion_order_MWW_test": mww,
                "ncall": int(result.get("ncall", 0)),
                "n_posterior": int(posterior.shape[0]),
            },
        )
