import numpy as np
import pytest

from koopman_uq import Chain, ChainDiagnostics
from koopman_uq.chain import effective_sample_size, split_rhat


def test_split_rhat_near_one_for_iid_chains():
    rng = np.random.default_rng(0)
    x = rng.normal(size=(4, 1000))
    assert split_rhat(x) == pytest.approx(1.0, abs=0.02)


def test_split_rhat_flags_disagreeing_chains():
    rng = np.random.default_rng(1)
    x = rng.normal(size=(3, 500))
    x[0] += 3.0
    assert split_rhat(x) > 1.1


def test_split_rhat_flags_a_trending_single_chain():
    x = np.linspace(0.0, 10.0, 400)[None, :] + np.random.default_rng(2).normal(size=(1, 400))
    assert split_rhat(x) > 1.1


def test_split_rhat_edge_cases():
    assert np.isnan(split_rhat(np.ones((2, 3))))
    assert split_rhat(np.ones((2, 100))) == 1.0


def test_effective_sample_size():
    rng = np.random.default_rng(3)
    iid = rng.normal(size=(4, 1000))
    assert effective_sample_size(iid) > 2000

    # strongly autocorrelated AR(1) chains carry far fewer independent draws
    ar = np.zeros((4, 1000))
    for i in range(1, 1000):
        ar[:, i] = 0.95 * ar[:, i - 1] + rng.normal(size=4)
    assert effective_sample_size(ar) < 0.25 * effective_sample_size(iid)

    assert effective_sample_size(np.ones((2, 50))) == 100.0


def _chain(rng, n_chains=2, n_draws=200, success=True):
    samples = rng.normal(size=(n_chains, n_draws, 2)) + np.array([1.0, 5.0])
    diags = tuple(
        ChainDiagnostics(chain=i, sampler="emcee", success=success, message="ok", acceptance_fraction=0.4)
        for i in range(n_chains)
    )
    return Chain(samples=samples, names=("a", "b"), diagnostics=diags)


def test_chain_views_and_statistics():
    chain = _chain(np.random.default_rng(4))

    assert (chain.n_chains, chain.n_draws, chain.n_params) == (2, 200, 2)
    assert chain["a"].shape == (2, 200)
    assert chain.column("b").shape == (400,)
    assert chain.flat().shape == (400, 2)
    np.testing.assert_allclose(chain.mean(), [1.0, 5.0], atol=0.2)
    assert chain.cov().shape == (2, 2)
    assert set(chain.rhat()) == {"a", "b"}
    assert chain.converged()
    with pytest.raises(KeyError):
        chain["zeta"]
    with pytest.raises(ValueError):
        chain.samples[0, 0, 0] = 1.0


def test_failed_chain_is_not_converged_and_summary_lists_it():
    chain = _chain(np.random.default_rng(5), success=False)
    assert not chain.converged()
    text = chain.summary()
    assert "rhat" in text
    assert "chain 1:" in text
    assert "acceptance=0.400" in text


def test_select_and_concat():
    rng = np.random.default_rng(6)
    a = _chain(rng, n_chains=3)
    b = _chain(rng, n_chains=1)

    assert a.select([0, 2]).n_chains == 2
    both = a.concat(b)
    assert both.n_chains == 4
    assert len(both.diagnostics) == 4

    with pytest.raises(ValueError):
        a.concat(Chain(samples=np.zeros((1, 200, 1)), names=("a",)))
    with pytest.raises(ValueError, match="shape"):
        Chain(samples=np.zeros((1, 10, 3)), names=("a", "b"))
