import numpy as np
import pytest
import scipy.stats

from koopman_uq import (
    ConfigurationError,
    OdeModel,
    ProductDistribution,
    SolverError,
    estimate_density,
    expectation,
    solve,
)


def final_u(sol):
    return sol["u"][-1]


def _analytic_decay_mean(a, b, T, u0=2.0):
    # E[u0 exp(-k T)] for k ~ Uniform(a, b)
    return u0 * (np.exp(-a * T) - np.exp(-b * T)) / (T * (b - a))


def test_constant_observable_is_exact_with_zero_residual(lv_model):
    rng = np.random.default_rng(0)
    dist = ProductDistribution(
        components=(
            estimate_density(rng.normal(1.5, 0.05, 400)),
            1.0,
            estimate_density(rng.normal(3.0, 0.1, 400)),
            1.0,
        ),
        names=lv_model.param_names,
    )

    res = expectation(lambda sol: 5.0, lv_model, dist, t_eval=[10.0])

    assert res.value == 5.0
    assert res.residual == 0.0
    assert res.converged


def test_point_mass_equals_deterministic_solve(lv_model, lv_truth):
    dist = dict(zip(lv_model.param_names, lv_truth))
    ref = solve(lv_model, lv_truth, t_eval=[10.0])

    res = expectation(lambda sol: sol["prey"][-1], lv_model, dist, t_eval=[10.0])

    assert res.value == pytest.approx(ref["prey"][-1], rel=1e-12)
    assert res.residual == 0.0
    assert res.n_solves == 1


def test_decay_with_uniform_rate_matches_closed_form(decay_model):
    a, b, T = 0.5, 1.5, 3.0
    res = expectation(
        final_u, decay_model, [scipy.stats.uniform(a, b - a)], t_eval=[T], rtol=1e-8
    )

    assert res.converged
    assert res.value == pytest.approx(_analytic_decay_mean(a, b, T), rel=1e-6)
    assert abs(res.value - _analytic_decay_mean(a, b, T)) <= res.residual + 1e-8
    assert res.stats["rule"] == "gk21"


def test_two_dimensional_koopman_with_fixed_gaps():
    def two_rate(t, u, k1, k2, c):
        return np.array([-k1 * u[0], -k2 * u[1] + 0.0 * c])

    model = (
        OdeModel.from_function(two_rate, states=("x", "y"), u0=[1.0, 1.0], tspan=(0.0, 1.0))
        .fix(c=4.0)
        .with_solver(rtol=1e-10, atol=1e-12)
    )
    dist = {"k1": scipy.stats.uniform(0.0, 1.0), "k2": scipy.stats.uniform(1.0, 1.0)}

    res = expectation(lambda sol: sol["x"][-1] + sol["y"][-1], model, dist, t_eval=[1.0], rtol=1e-7)

    exact = (1.0 - np.exp(-1.0)) + (np.exp(-1.0) - np.exp(-2.0))
    assert res.stats["ndim"] == 2
    assert res.stats["rule"] == "genz-malik"
    assert res.value == pytest.approx(exact, rel=1e-5)


def test_montecarlo_agrees_within_its_standard_error(decay_model):
    a, b, T = 0.5, 1.5, 3.0
    res = expectation(
        final_u,
        decay_model,
        [scipy.stats.uniform(a, b - a)],
        t_eval=[T],
        method="montecarlo",
        n_samples=400,
        rng=1,
    )
    assert res.method == "montecarlo"
    assert res.n_solves == 400
    assert abs(res.value - _analytic_decay_mean(a, b, T)) < 5 * res.residual


def test_batched_ensemble_gives_the_same_answer(decay_model):
    dist = [scipy.stats.uniform(0.5, 1.0)]
    serial = expectation(final_u, decay_model, dist, t_eval=[3.0], rtol=1e-8)
    batched = expectation(
        final_u, decay_model, dist, t_eval=[3.0], rtol=1e-8, ensemble="vectorized", batch_size=8
    )
    threaded = expectation(
        final_u, decay_model, dist, t_eval=[3.0], rtol=1e-8, ensemble="threads", max_workers=2
    )

    assert batched.value == pytest.approx(serial.value, rel=1e-7)
    assert threaded.value == pytest.approx(serial.value, rel=1e-12)
    assert batched.n_batches > serial.n_batches


def test_unconverged_quadrature_is_reported(decay_model):
    dist = [scipy.stats.uniform(0.0, 1.0)]
    with pytest.warns(UserWarning, match="did not reach"):
        res = expectation(
            lambda sol: abs(sol["u"][-1] - 1.0),
            decay_model,
            dist,
            t_eval=[1.0],
            rtol=1e-14,
            atol=0.0,
            max_subdivisions=2,
        )
    assert res.status == "not_converged"
    assert not res.converged
    assert res.residual > 0.0


def test_solver_failure_at_a_node_names_the_point():
    def blowup(t, u, k):
        return k * np.asarray(u) ** 2

    model = OdeModel.from_function(blowup, states=("u",), u0=[1.0], tspan=(0.0, 1.5))
    with pytest.raises(SolverError, match=r"\[expectation\] at params="):
        expectation(final_u, model, [scipy.stats.uniform(0.1, 1.0)], t_eval=[1.5])


def test_configuration_errors(lv_model, decay_model):
    with pytest.raises(ConfigurationError, match="Unknown expectation method"):
        expectation(final_u, decay_model, [0.5], method="trapezoid")
    with pytest.raises(ConfigurationError, match="1 parameter distributions given"):
        expectation(final_u, lv_model, [0.5])
    with pytest.raises(ConfigurationError, match="No distribution given"):
        expectation(final_u, lv_model, {"alpha": 1.5})
    with pytest.raises(ConfigurationError, match="scalar"):
        expectation(lambda sol: sol.y, decay_model, [0.5], t_eval=[0.0, 1.0])
