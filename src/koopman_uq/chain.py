from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np


__all__ = [
    "Chain",
    "ChainDiagnostics",
    "split_rhat",
    "effective_sample_size",
]


def split_rhat(x: Any) -> float:
    """Split-chain potential scale reduction (Gelman et al.) of draws (n_chains, n_draws)."""
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[None, :]
    n = x.shape[1] // 2
    if n < 2:
        return float("nan")
    # first and last half of every chain become separate chains
    parts = np.concatenate([x[:, :n], x[:, x.shape[1] - n:]], axis=0)
    W = float(np.mean(np.var(parts, axis=1, ddof=1)))
    B = float(n * np.var(np.mean(parts, axis=1), ddof=1))
    if W == 0.0:
        return 1.0 if B == 0.0 else float("inf")
    var_hat = (n - 1) / n * W + B / n
    return float(np.sqrt(var_hat / W))


def effective_sample_size(x: Any) -> float:
    """Pooled effective sample size of draws (n_chains, n_draws), via emcee's τ estimate."""
    import emcee

    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[None, :]
    total = float(x.size)
    if x.shape[1] < 2 or np.all(x == x.flat[0]):
        return total
    # emcee expects (n_steps, n_walkers); chains play the walkers' role
    tau = float(np.asarray(emcee.autocorr.integrated_time(x.T, quiet=True)).reshape(-1)[0])
    if not np.isfinite(tau) or tau <= 0:
        return float("nan")
    return total / max(tau, 1.0)


@dataclass(frozen=True)
class ChainDiagnostics:
    """What one sampler run reported about itself."""

    chain: int
    sampler: str
    success: bool
    message: str = ""
    acceptance_fraction: Optional[float] = None
    autocorr_time: Optional[np.ndarray] = None
    n_evaluations: int = 0
    n_solver_failures: int = 0
    stats: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True, eq=False)
class Chain:
    """Posterior draws with shape (n_chains, n_draws, n_params), one column per name."""

    samples: np.ndarray
    names: Tuple[str, ...]
    diagnostics: Tuple[ChainDiagnostics, ...] = ()

    def __post_init__(self):
        s = np.array(self.samples, dtype=float)
        if s.ndim == 2:
            s = s[None, :, :]
        if s.ndim != 3 or s.shape[2] != len(self.names):
            raise ValueError(
                f"samples must have shape (n_chains, n_draws, {len(self.names)}); got {s.shape}."
            )
        s.setflags(write=False)
        object.__setattr__(self, "samples", s)
        object.__setattr__(self, "names", tuple(self.names))
        object.__setattr__(self, "diagnostics", tuple(self.diagnostics))

    @property
    def n_chains(self) -> int:
        return int(self.samples.shape[0])

    @property
    def n_draws(self) -> int:
        return int(self.samples.shape[1])

    @property
    def n_params(self) -> int:
        return int(self.samples.shape[2])

    def _index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(name) from None

    def __getitem__(self, name: str) -> np.ndarray:
        """Draws of one parameter, shape (n_chains, n_draws)."""
        return self.samples[:, :, self._index(name)]

    def column(self, name: str) -> np.ndarray:
        """Pooled draws of one parameter, shape (n_chains * n_draws,)."""
        return self[name].reshape(-1)

    def flat(self) -> np.ndarray:
        """Pooled draws, shape (n_chains * n_draws, n_params)."""
        return self.samples.reshape(-1, self.n_params)

    def mean(self) -> np.ndarray:
        return np.mean(self.flat(), axis=0)

    def std(self) -> np.ndarray:
        ddof = 1 if self.flat().shape[0] > 1 else 0
        return np.std(self.flat(), axis=0, ddof=ddof)

    def cov(self) -> np.ndarray:
        flat = self.flat()
        if flat.shape[0] < 2:
            return np.zeros((self.n_params, self.n_params))
        return np.atleast_2d(np.cov(flat.T, ddof=1))

    def quantile(self, q: Any) -> np.ndarray:
        return np.quantile(self.flat(), q, axis=0)

    def rhat(self) -> Dict[str, float]:
        return {n: split_rhat(self.samples[:, :, j]) for j, n in enumerate(self.names)}

    def ess(self) -> Dict[str, float]:
        return {n: effective_sample_size(self.samples[:, :, j]) for j, n in enumerate(self.names)}

    def converged(self, threshold: float = 1.1) -> bool:
        """True if every chain succeeded and every split R-hat is below `threshold`."""
        if not all(d.success for d in self.diagnostics):
            return False
        # nan (too few draws to split) does not count against convergence
        return not any(r > threshold for r in self.rhat().values())

    def select(self, chains: Sequence[int]) -> "Chain":
        """Keep a subset of chains (e.g. drop one that got stuck)."""
        idx = [int(c) for c in chains]
        diags = tuple(d for d in self.diagnostics if d.chain in idx)
        return Chain(samples=self.samples[idx], names=self.names, diagnostics=diags)

    def concat(self, other: "Chain") -> "Chain":
        """Stack the chains of two runs of the same parameters."""
        if other.names != self.names:
            raise ValueError(f"Cannot concatenate chains over {self.names} and {other.names}.")
        if other.n_draws != self.n_draws:
            raise ValueError("Cannot concatenate chains with different numbers of draws.")
        return Chain(
            samples=np.concatenate([self.samples, other.samples], axis=0),
            names=self.names,
            diagnostics=self.diagnostics + other.diagnostics,
        )

    def summary(self, digits: int = 4) -> str:
        """Per-parameter table: mean, std, 2.5/50/97.5% quantiles, R-hat, ESS."""
        q = self.quantile([0.025, 0.5, 0.975])
        mean = self.mean()
        std = self.std()
        rhat = self.rhat()
        ess = self.ess()
        header = ["param", "mean", "std", "2.5%", "50%", "97.5%", "rhat", "ess"]
        rows = []
        for j, n in enumerate(self.names):
            rows.append(
                [n]
                + [f"{v:.{digits}g}" for v in (mean[j], std[j], q[0, j], q[1, j], q[2, j])]
                + [f"{rhat[n]:.3f}", f"{ess[n]:.0f}"]
            )
        widths = [max(len(r[i]) for r in rows + [header]) for i in range(len(header))]
        lines = ["  ".join(h.rjust(w) for h, w in zip(header, widths))]
        for r in rows:
            lines.append("  ".join(c.rjust(w) for c, w in zip(r, widths)))
        lines.append(f"chains={self.n_chains} draws/chain={self.n_draws}")
        for d in self.diagnostics:
            acc = "" if d.acceptance_fraction is None else f" acceptance={d.acceptance_fraction:.3f}"
            lines.append(
                f"chain {d.chain}: {d.message}{acc} solver_failures={d.n_solver_failures}"
            )
        return "\n".join(lines)
