from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence, Tuple
from warnings import warn

import numpy as np

from .util import uncertainty_to_string


def plot_run(
    *,
    run: Any,
    ax: Optional[Any] = None,
    states: Optional[Sequence[str]] = None,
    t: Optional[Any] = None,
    which: str = "mean",
    band: bool = True,
    band_options: Optional[Mapping[str, Any]] = None,
    band_kwargs: Optional[Mapping[str, Any]] = None,
    data_kwargs: Optional[Mapping[str, Any]] = None,
    line_kwargs: Optional[Mapping[str, Any]] = None,
    show_params: bool = False,
    param_names: Optional[Sequence[str]] = None,
    param_digits: int | str | None = "auto",
    text_kwargs: Optional[Mapping[str, Any]] = None,
) -> Tuple[Any, Any]:
    """Plot observations, the posterior trajectory and an optional band.

    Parameters
    ----------
    run : Run
        Result of OdeModel.fit().
    ax : matplotlib.axes.Axes, optional
        If None, a new figure/axes is created.
    states : sequence of str, optional
        States to draw. Defaults to the observed states.
    t : array-like, optional
        Grid for the trajectory. Defaults to 400 points over the data range.
    which : {"mean", "median"}
        Posterior summary used for the line.
    band : bool
        If True, draw the predictive band from run.band().
    band_options : dict, optional
        Keyword options forwarded to run.band().
    band_kwargs, data_kwargs, line_kwargs, text_kwargs : dict, optional
        Styling kwargs for fill_between, plot (data), plot (line), and text.
    show_params : bool
        If True, annotate posterior parameters on the plot.
    param_digits : int | "auto"
        Significant digits for parameter uncertainty formatting.
    """
    import matplotlib.pyplot as plt

    if ax is None:
        fig, ax = plt.subplots()
    else:
        fig = ax.figure

    data_kwargs = dict(data_kwargs or {})
    line_kwargs = dict(line_kwargs or {})
    band_options = dict(band_options or {})
    band_kwargs = dict(band_kwargs or {})
    text_kwargs = dict(text_kwargs or {})

    data = run.data
    states = tuple(data.state_names) if states is None else tuple(states)
    if t is None:
        t = np.linspace(float(data.t[0]), float(data.t[-1]), 400)

    traj = run.predict(t, which=which)
    band_obj = None
    if band:
        try:
            band_obj = run.band(t, **band_options)
        except ValueError as exc:
            warn(f"plot_run: could not compute band: {exc}", UserWarning)

    data_kwargs.setdefault("marker", "o")
    data_kwargs.setdefault("linestyle", "none")
    data_kwargs.setdefault("ms", 3)
    data_kwargs.setdefault("alpha", 0.6)
    band_kwargs.setdefault("alpha", 0.2)

    for k, name in enumerate(states):
        color = f"C{k}"
        if name in data.state_names:
            ax.plot(data.t, data[name], color=color, **data_kwargs)
        kw = dict(line_kwargs)
        kw.setdefault("label", name)
        kw.setdefault("color", color)
        ax.plot(traj.t, traj[name], **kw)
        if band_obj is not None:
            b = band_obj[name]
            ax.fill_between(b.t, b.low, b.high, color=color, **band_kwargs)

    ax.set_xlabel("t")
    ax.legend()

    if show_params:
        params = run.results.params
        if param_names is None:
            names = [n for n, pv in params.items() if not pv.fixed]
        else:
            names = list(param_names)

        lines = []
        for name in names:
            pv = params[name]
            val = float(pv.value)
            if pv.stderr is None:
                lines.append(f"{name}={val:.4g}")
            else:
                lines.append(
                    f"{name}={uncertainty_to_string(val, float(pv.stderr), precision=param_digits)}"
                )

        if lines:
            text_kwargs.setdefault("ha", "left")
            text_kwargs.setdefault("va", "top")
            text_kwargs.setdefault("fontsize", 9)
            text_kwargs.setdefault("transform", ax.transAxes)
            text_kwargs.setdefault(
                "bbox",
                {"boxstyle": "round", "facecolor": "white", "alpha": 0.7, "edgecolor": "none"},
            )
            ax.text(0.02, 0.98, "\n".join(lines), **text_kwargs)

    return fig, ax


def plot_trace(
    chain: Any,
    *,
    names: Optional[Sequence[str]] = None,
    axs: Optional[Any] = None,
    line_kwargs: Optional[Mapping[str, Any]] = None,
) -> Tuple[Any, Any]:
    """One trace panel per parameter, one line per chain."""
    import matplotlib.pyplot as plt

    names = list(chain.names) if names is None else list(names)
    if axs is None:
        fig, axs = plt.subplots(len(names), 1, sharex=True, squeeze=False)
        axs = axs[:, 0]
    else:
        axs = np.atleast_1d(axs)
        fig = axs[0].figure
    if len(axs) < len(names):
        raise ValueError(f"Need {len(names)} axes for the trace plot; got {len(axs)}.")

    line_kwargs = dict(line_kwargs or {})
    line_kwargs.setdefault("lw", 0.7)
    for ax, name in zip(axs, names):
        draws = chain[name]
        for c in range(draws.shape[0]):
            ax.plot(draws[c], label=f"chain {c}", **line_kwargs)
        ax.set_ylabel(name)
    axs[-1].set_xlabel("draw")
    axs[0].legend(fontsize=8)
    return fig, axs


def plot_marginals(
    dist: Any,
    *,
    names: Optional[Sequence[str]] = None,
    axs: Optional[Any] = None,
    truth: Optional[Mapping[str, float]] = None,
    line_kwargs: Optional[Mapping[str, Any]] = None,
) -> Tuple[Any, Any]:
    """Plot the 1D densities of a ProductDistribution (e.g. run.marginals())."""
    import matplotlib.pyplot as plt

    from .density import PointMass

    names = list(dist.names) if names is None else list(names)
    if axs is None:
        fig, axs = plt.subplots(1, len(names), squeeze=False, figsize=(3 * len(names), 2.6))
        axs = axs[0]
    else:
        axs = np.atleast_1d(axs)
        fig = axs[0].figure

    line_kwargs = dict(line_kwargs or {})
    for ax, name in zip(axs, names):
        comp = dist[name]
        if isinstance(comp, PointMass):
            ax.axvline(comp.value, **line_kwargs)
        else:
            xs = np.linspace(comp.support[0], comp.support[1], 400)
            ax.plot(xs, comp.pdf(xs), **line_kwargs)
        if truth is not None and name in truth:
            ax.axvline(float(truth[name]), color="k", ls="--", lw=1)
        ax.set_xlabel(name)
    return fig, axs
