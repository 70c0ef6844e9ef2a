import numpy as np
import pytest
import scipy.stats
from scipy.integrate import trapezoid

from koopman_uq import (
    Chain,
    ConfigurationError,
    JointKernelDensity,
    KernelDensity,
    PointMass,
    ProductDistribution,
    estimate_density,
    marginal_densities,
)


def test_mode_round_trip():
    rng = np.random.default_rng(0)
    draws = rng.normal(2.0, 0.5, size=5000)
    kd = estimate_density(draws)

    assert isinstance(kd, KernelDensity)
    assert kd.mode() == pytest.approx(2.0, abs=0.1)
    assert kd.mean() == pytest.approx(2.0, abs=0.05)
    assert kd.std() == pytest.approx(0.5, rel=0.1)

    xs = np.linspace(kd.support[0], kd.support[1], 4001)
    assert trapezoid(kd.pdf(xs), xs) == pytest.approx(1.0, rel=1e-3)


def test_support_cdf_and_sampling():
    rng = np.random.default_rng(1)
    draws = rng.gamma(3.0, 1.0, size=2000)
    kd = estimate_density(draws, cut=3.0)

    lo, hi = kd.support
    assert lo == pytest.approx(draws.min() - 3.0 * kd.bandwidth)
    assert hi == pytest.approx(draws.max() + 3.0 * kd.bandwidth)
    assert kd.pdf(lo - 1.0) == 0.0
    assert kd.pdf(hi + 1.0) == 0.0
    assert kd.logpdf(hi + 1.0) == -np.inf

    c = kd.cdf(np.linspace(lo, hi, 50))
    assert c[0] == pytest.approx(0.0, abs=1e-12)
    assert c[-1] == pytest.approx(1.0, abs=1e-9)
    assert np.all(np.diff(c) >= 0)

    new = kd.rvs(1000, rng=2)
    assert new.shape == (1000,)
    assert np.all((new >= lo) & (new <= hi))


def test_bandwidth_option():
    draws = np.random.default_rng(2).normal(size=500)
    narrow = estimate_density(draws, bandwidth=0.1)
    wide = estimate_density(draws, bandwidth=1.0)
    assert narrow.bandwidth < wide.bandwidth


def test_zero_variance_gives_point_mass():
    pm = estimate_density(np.full(100, 1.25))
    assert isinstance(pm, PointMass)
    assert pm.mean() == 1.25
    assert pm.std() == 0.0
    assert pm.support == (1.25, 1.25)
    np.testing.assert_array_equal(pm.rvs(3), [1.25, 1.25, 1.25])


def test_bad_samples():
    with pytest.raises(ConfigurationError, match="zero samples"):
        estimate_density([])
    with pytest.raises(ConfigurationError, match="non-finite"):
        estimate_density([1.0, np.nan])


def test_marginal_densities_from_chain_threads_match_serial():
    rng = np.random.default_rng(3)
    samples = np.stack(
        [np.column_stack([rng.normal(1.0, 0.1, 300), rng.normal(-2.0, 0.3, 300), np.full(300, 0.5)])
         for _ in range(2)]
    )
    chain = Chain(samples=samples, names=("a", "b", "c"))

    serial = marginal_densities(chain)
    threaded = marginal_densities(chain, max_workers=3)

    assert serial.names == ("a", "b", "c")
    np.testing.assert_array_equal(serial.fixed_mask, [False, False, True])
    x = np.array([[1.0, -2.0, 0.5], [1.1, -1.8, 0.5]])
    np.testing.assert_allclose(serial.pdf(x), threaded.pdf(x))
    assert serial["a"].mode() == pytest.approx(1.0, abs=0.05)


def test_product_distribution_from_scipy_and_numbers():
    dist = ProductDistribution(
        components=(scipy.stats.uniform(0.5, 1.0), 2.0, scipy.stats.norm(0.0, 1.0)),
        names=("k", "c", "z"),
    )
    lo, hi = dist.support()
    assert lo[0] == 0.5 and hi[0] == 1.5
    assert lo[1] == hi[1] == 2.0
    assert lo[2] < -6.0 and hi[2] > 6.0
    np.testing.assert_allclose(dist.mean(), [1.0, 2.0, 0.0], atol=1e-9)

    draws = dist.rvs(200, rng=0)
    assert draws.shape == (200, 3)
    np.testing.assert_array_equal(draws[:, 1], 2.0)

    with pytest.raises(TypeError):
        ProductDistribution(components=("nope",), names=("k",))


def test_joint_kde_keeps_correlation_and_fixed_columns():
    rng = np.random.default_rng(4)
    x = rng.normal(size=2000)
    samples = np.column_stack([x, x + 0.1 * rng.normal(size=2000), np.full(2000, 3.0)])
    joint = JointKernelDensity(samples=samples, names=("a", "b", "c"))

    np.testing.assert_array_equal(joint.fixed_mask, [False, False, True])
    on_ridge = joint.pdf([[0.5, 0.5, 3.0]])[0]
    off_ridge = joint.pdf([[0.5, -0.5, 3.0]])[0]
    assert on_ridge > 100 * off_ridge

    draws = joint.rvs(500, rng=1)
    assert np.corrcoef(draws[:, 0], draws[:, 1])[0, 1] > 0.9
    np.testing.assert_array_equal(draws[:, 2], 3.0)
