import numpy as np
import pytest

from koopman_uq import Chain, Run, simulate_data
from koopman_uq.model import _posterior_results
from koopman_uq.models import lotka_volterra
from koopman_uq.plotting import plot_marginals


@pytest.fixture
def lv_run():
    model = lotka_volterra()
    truth = np.array([1.5, 1.0, 3.0, 1.0])
    data = simulate_data(model, truth, np.linspace(0.0, 10.0, 41), 0.3, rng=0)
    rng = np.random.default_rng(1)
    samples = np.concatenate([truth, [0.3]]) + 0.01 * rng.normal(size=(2, 100, 5))
    chain = Chain(samples=samples, names=("alpha", "beta", "gamma", "delta", "sigma"))
    results = _posterior_results(model, chain, {}, "emcee")
    return Run(model=model, data=data, chain=chain, results=results, sampler="emcee")


@pytest.fixture
def plt():
    matplotlib = pytest.importorskip("matplotlib")
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as plt

    yield plt
    plt.close("all")


def test_plot_run_draws_data_line_and_band(lv_run, plt):
    fig, ax = lv_run.plot(band_options={"nsamples": 20, "rng": 0}, show_params=True)

    # data + posterior line per state
    assert len(ax.lines) == 4
    assert len(ax.collections) == 2
    assert ax.get_xlabel() == "t"
    assert any("alpha=" in t.get_text() for t in ax.texts)


def test_plot_run_on_given_axes_without_band(lv_run, plt):
    fig, ax = plt.subplots()
    out_fig, out_ax = lv_run.plot(ax=ax, band=False, states=["prey"])
    assert out_ax is ax
    assert out_fig is fig
    assert len(ax.collections) == 0
    assert [ln.get_label() for ln in ax.lines if not ln.get_label().startswith("_")] == ["prey"]


def test_plot_trace_and_marginals(lv_run, plt):
    fig, axs = lv_run.plot_trace(names=["alpha", "sigma"])
    assert len(axs) == 2
    assert len(axs[0].lines) == 2  # one per chain
    assert axs[1].get_ylabel() == "sigma"

    fig, axs = plot_marginals(lv_run.marginals(), truth={"alpha": 1.5})
    assert len(axs) == 5
    assert len(axs[0].lines) == 2
