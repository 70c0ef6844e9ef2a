import numpy as np
import pytest

from koopman_uq import JointKernelDensity, ProductDistribution, simulate_data
from koopman_uq.models import exponential_decay, lotka_volterra

pytest.importorskip("emcee")


@pytest.fixture(scope="module")
def decay_run():
    model = (
        exponential_decay(u0=2.0, tspan=(0.0, 3.0))
        .prior(k=("uniform", 0.05, 3.0), sigma=("halfnormal", 0.2))
    )
    data = simulate_data(model, [0.8], np.linspace(0.0, 3.0, 30), 0.05, rng=0)
    return model.fit(
        data, num_samples=300, n_chains=2, sampler_options={"n_walkers": 12, "burn": 150}, rng=1
    )


def test_results_indexing_and_params_view(decay_run):
    res = decay_run.results

    assert res.params[0].name == "k"
    assert res.params[1].name == "sigma"
    assert res["k"] is res.params["k"]
    assert decay_run["k"] is res.params["k"]

    multi = res.params["k", "sigma"]
    assert multi.names == ("k", "sigma")
    assert multi.value.shape == (2,)
    np.testing.assert_allclose(multi.value, decay_run.chain.mean())

    assert res.params.as_dict()["k"] == res["k"].value
    assert "rhat=" in res.summary()
    assert "ess" in decay_run.summary()


def test_posterior_params_fill_fixed_and_drop_noise(decay_run):
    theta = decay_run.posterior_params()
    assert theta.shape == (600, 1)
    np.testing.assert_array_equal(theta[:, 0], decay_run.chain.column("k"))

    sub = decay_run.posterior_params(50, rng=0)
    assert sub.shape == (50, 1)


def test_predict_and_band(decay_run):
    t = np.linspace(0.0, 3.0, 16)
    traj = decay_run.predict(t)
    np.testing.assert_allclose(traj["u"], 2.0 * np.exp(-decay_run["k"].value * t), rtol=1e-5)

    med = decay_run.predict(t, which="median")
    assert med.y.shape == (1, 16)
    with pytest.raises(ValueError):
        decay_run.predict(t, which="mode")

    band = decay_run.band(t, nsamples=60, rng=0)
    assert band.low.shape == (1, 16)
    assert np.all(band.low <= band.median + 1e-12)
    assert np.all(band.median <= band.high + 1e-12)
    u_band = band["u"]
    assert u_band.low.shape == (16,)
    with pytest.raises(ValueError):
        decay_run.band(t, level=1.0, conf_int=(0.1, 0.9))


def test_parameter_distributions(decay_run):
    marg = decay_run.marginals()
    assert marg.names == ("k", "sigma")

    dist = decay_run.parameter_distributions()
    assert isinstance(dist, ProductDistribution)
    assert dist.names == ("k",)
    assert dist["k"].mode() == pytest.approx(decay_run["k"].value, abs=0.05)

    joint = decay_run.parameter_distributions(correlated=True)
    assert isinstance(joint, JointKernelDensity)


def test_expectation_under_the_posterior(decay_run):
    res = decay_run.expectation(lambda sol: sol["u"][-1], t_eval=[3.0], rtol=1e-6)
    mc = decay_run.expectation(
        lambda sol: sol["u"][-1], t_eval=[3.0], method="montecarlo", n_samples=300, rng=0
    )

    assert res.converged
    assert res.value == pytest.approx(mc.value, abs=5 * mc.residual + 1e-6)
    # posterior concentrated near k = 0.8
    assert res.value == pytest.approx(2.0 * np.exp(-2.4), rel=0.2)


def test_lotka_volterra_defaults():
    model = lotka_volterra()
    assert model.state_names == ("prey", "predator")
    assert model.param_names == ("alpha", "beta", "gamma", "delta")
    assert model.u0 == (1.0, 1.0)
    assert model.tspan == (0.0, 10.0)
    assert model.noise.prior == ("invgamma", (2.0, 3.0))
    assert model.params[2].prior == ("normal", (3.0, 0.5))
