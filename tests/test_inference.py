import numpy as np
import pytest
from scipy.integrate import trapezoid

from koopman_uq import ConfigurationError, simulate_data
from koopman_uq.inference import (
    build_gaussian_loglike,
    build_log_prior,
    build_prior,
    build_prior_transform,
)
from koopman_uq.params import ParameterSpec


def test_truncated_normal_prior():
    pr = build_prior(ParameterSpec(name="alpha", bounds=(0.5, 2.5), prior=("normal", (1.5, 0.5))))

    assert pr.lower == 0.5 and pr.upper == 2.5
    assert pr.logpdf(0.4) == -np.inf
    assert pr.logpdf(2.6) == -np.inf
    assert np.isfinite(pr.logpdf(1.0))
    assert pr.median() == pytest.approx(1.5)

    q = np.linspace(0.0, 1.0, 11)
    x = pr.ppf(q)
    assert np.all((x >= 0.5) & (x <= 2.5))
    assert np.all(np.diff(x) > 0)

    # normalised over the truncation interval
    xs = np.linspace(0.5, 2.5, 4001)
    assert trapezoid(np.exp(pr.logpdf(xs)), xs) == pytest.approx(1.0, rel=1e-4)


def test_bounds_only_give_uniform_and_support_clips_bounds():
    pr = build_prior(ParameterSpec(name="k", bounds=(0.0, 2.0)))
    assert pr.kind == "uniform"
    assert pr.logpdf(1.0) == pytest.approx(np.log(0.5))

    sig = build_prior(ParameterSpec(name="sigma", bounds=(0.0, None), prior=("invgamma", (2.0, 3.0))))
    assert sig.lower == 0.0 and sig.upper == np.inf
    assert sig.logpdf(-1.0) == -np.inf


@pytest.mark.parametrize(
    "spec, match",
    [
        (ParameterSpec(name="k"), "No prior"),
        (ParameterSpec(name="k", prior=("cauchy", (0.0, 1.0))), "Unsupported prior"),
        (ParameterSpec(name="k", prior=("normal", (0.0,))), "expects"),
        (ParameterSpec(name="k", prior=("normal", (0.0, -1.0))), "sigma > 0"),
        (ParameterSpec(name="k", bounds=(5.0, 6.0), prior=("uniform", (0.0, 1.0))), "do not overlap"),
    ],
)
def test_bad_priors(spec, match):
    with pytest.raises(ConfigurationError, match=match):
        build_prior(spec)


def test_prior_transform_and_log_prior():
    priors = [
        build_prior(ParameterSpec(name="a", prior=("uniform", (1.0, 3.0)))),
        build_prior(ParameterSpec(name="b", prior=("loguniform", (1e-2, 1e2)))),
    ]
    transform = build_prior_transform(priors)
    np.testing.assert_allclose(transform(np.array([0.5, 0.5])), [2.0, 1.0])
    out = transform(np.array([[0.0, 0.0], [1.0, 1.0]]))
    np.testing.assert_allclose(out, [[1.0, 1e-2], [3.0, 1e2]])

    log_prior = build_log_prior(priors)
    assert np.isfinite(log_prior(np.array([2.0, 1.0])))
    assert log_prior(np.array([4.0, 1.0])) == -np.inf


def _loglike(model, data, free, fixed):
    span = model.time_span()
    return build_gaussian_loglike(
        model=model,
        data=data,
        free_names=free,
        fixed_map=fixed,
        u0=model.initial_state(),
        tspan=span,
        t_eval=data.t,
        obs_index=model.state_indices(data.state_names),
    )


def test_gaussian_loglike_matches_manual_formula(decay_model):
    t = np.linspace(0.0, 3.0, 25)
    data = simulate_data(decay_model, [0.8], t, 0.05, rng=0)
    loglike = _loglike(decay_model, data, ["k", "sigma"], {})

    k, sigma = 0.9, 0.07
    pred = 2.0 * np.exp(-k * t)
    resid = pred - data["u"]
    n = t.size
    expected = -0.5 * np.sum(resid**2) / sigma**2 - n * np.log(sigma) - 0.5 * n * np.log(2 * np.pi)

    assert loglike(np.array([k, sigma])) == pytest.approx(expected, rel=1e-6)
    assert loglike(np.array([k, -1.0])) == -np.inf
    assert loglike.n_calls == 2
    assert loglike.n_failures == 0

    # the truth scores better than a distant point
    assert loglike(np.array([0.8, 0.05])) > loglike(np.array([1.6, 0.05]))


def test_gaussian_loglike_with_fixed_noise_and_counted_failures():
    from koopman_uq import OdeModel

    def blowup(t, u, k):
        return k * np.asarray(u) ** 2

    model = OdeModel.from_function(blowup, states=("u",), u0=[1.0], tspan=(0.0, 1.0)).fix(sigma=0.1)
    data = simulate_data(model, [0.5], np.linspace(0.0, 1.0, 5), 0.0)
    loglike = _loglike(model, data, ["k"], {"sigma": 0.1})

    assert np.isfinite(loglike(np.array([0.5])))
    assert loglike(np.array([3.0])) == -np.inf  # blows up at t=1/3
    assert loglike.n_failures == 1
    p, sigma = loglike.split(np.array([0.7]))
    np.testing.assert_array_equal(p, [0.7])
    assert sigma == 0.1
