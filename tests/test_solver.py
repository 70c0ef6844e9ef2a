import numpy as np
import pytest

from koopman_uq import ConfigurationError, OdeModel, SolverError, solve


def blowup(t, u, k):
    return k * np.asarray(u) ** 2


def test_decay_matches_closed_form(decay_model):
    t = np.linspace(0.0, 3.0, 31)
    traj = solve(decay_model, [0.7], t_eval=t)

    assert traj.success
    assert traj.y.shape == (1, t.size)
    np.testing.assert_allclose(traj["u"], 2.0 * np.exp(-0.7 * t), rtol=1e-7, atol=1e-10)
    np.testing.assert_allclose(traj.final, [2.0 * np.exp(-2.1)], rtol=1e-7)


def test_params_by_name_and_states_by_name(lv_model):
    t = np.linspace(0.0, 10.0, 101)
    a = lv_model.simulate({"alpha": 1.5, "beta": 1.0, "gamma": 3.0, "delta": 1.0}, t_eval=t)
    b = lv_model.simulate([1.5, 1.0, 3.0, 1.0], t_eval=t)

    np.testing.assert_array_equal(a.y, b.y)
    np.testing.assert_array_equal(a["prey"], a.y[0])
    np.testing.assert_array_equal(a.at(5.0), a.y[:, 50])
    with pytest.raises(KeyError):
        a.at(5.05)
    with pytest.raises(KeyError):
        a["wolves"]


def test_trajectory_is_read_only(decay_model):
    traj = solve(decay_model, [1.0], t_eval=[0.0, 1.0])
    with pytest.raises(ValueError):
        traj.y[0, 0] = 3.0


def test_time_span_end_before_start_fails_fast(decay_model):
    with pytest.raises(ConfigurationError, match="after its start"):
        solve(decay_model, [1.0], tspan=(1.0, 0.0))


def test_mismatched_lengths_fail_fast(lv_model):
    with pytest.raises(ConfigurationError, match="4 parameters"):
        solve(lv_model, [1.0, 2.0])
    with pytest.raises(ConfigurationError, match="2 states"):
        solve(lv_model, [1.5, 1.0, 3.0, 1.0], u0=[1.0, 1.0, 1.0])
    with pytest.raises(ConfigurationError, match="Missing parameter"):
        solve(lv_model, {"alpha": 1.0})
    with pytest.raises(ConfigurationError, match="Unknown parameter"):
        solve(lv_model, {"alpha": 1.0, "beta": 1.0, "gamma": 1.0, "delta": 1.0, "eta": 2.0})


def test_bad_time_grids(decay_model):
    with pytest.raises(ConfigurationError, match="outside tspan"):
        solve(decay_model, [1.0], t_eval=[0.0, 4.0])
    with pytest.raises(ConfigurationError, match="strictly increasing"):
        solve(decay_model, [1.0], t_eval=[0.0, 2.0, 1.0])
    with pytest.raises(ConfigurationError, match="empty"):
        solve(decay_model, [1.0], t_eval=[])


def test_missing_u0_or_tspan():
    model = OdeModel.from_function(blowup, states=("u",))
    with pytest.raises(ConfigurationError, match="initial state"):
        solve(model, [1.0], tspan=(0.0, 1.0))
    with pytest.raises(ConfigurationError, match="time span"):
        solve(model, [1.0], u0=[1.0])


def test_check_catches_wrong_derivative_shape():
    def bad(t, u, k):
        return np.array([-k * u[0], 0.0])

    model = OdeModel.from_function(bad, states=("u",), u0=[1.0], tspan=(0.0, 1.0))
    with pytest.raises(ConfigurationError, match="returned shape"):
        model.check([1.0])


def test_solver_failure_is_reported_or_raised():
    model = OdeModel.from_function(blowup, states=("u",), u0=[1.0], tspan=(0.0, 2.0))

    traj = solve(model, [1.0])
    assert not traj.success

    with pytest.raises(SolverError, match=r"\[solve\] at params=\[1.0\]") as info:
        solve(model, [1.0], strict=True)
    np.testing.assert_array_equal(info.value.params, [1.0])
    assert info.value.stage == "solve"


def test_signature_defaults_become_guesses():
    def rhs(t, u, k=0.3):
        return -k * u

    model = OdeModel.from_function(rhs, states=1, u0=[1.0], tspan=(0.0, 1.0))
    assert model.state_names == ("u0",)
    np.testing.assert_array_equal(model.param_vector(), [0.3])
    assert model.fix(k=0.5).param_vector().tolist() == [0.5]


def test_builders_are_pure(lv_model):
    bounded = lv_model.bound(alpha=(1.0, 2.0))
    assert lv_model.params[0].bounds == (0.5, 2.5)
    assert bounded.params[0].bounds == (1.0, 2.0)
    assert lv_model.fix(sigma=0.3).noise.fixed
    assert not lv_model.noise.fixed
    with pytest.raises(KeyError):
        lv_model.fix(eta=1.0)
    with pytest.raises(ConfigurationError, match="lo < hi"):
        lv_model.bound(alpha=(2.0, 1.0))
