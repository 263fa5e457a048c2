import numpy as np
import pytest
from scipy import stats

from debkiss_infer.priors import Prior
from debkiss_infer.proposals import ProposalKernel


def test_prior_validation():
    with pytest.raises(ValueError):
        Prior("cauchy", {"loc": 0.0, "scale": 1.0})
    with pytest.raises(ValueError):
        Prior("unif", {"min": 1.0, "max": 1.0})
    with pytest.raises(ValueError):
        Prior("norm", {"mean": 0.0})
    with pytest.raises(ValueError):
        Prior("lnorm", {"meanlog": 0.0, "sdlog": -1.0})


def test_uniform_prior_support():
    p = Prior("unif", {"min": 0.0, "max": 2.0})
    assert p.logpdf(1.0) == pytest.approx(-np.log(2.0))
    assert p.logpdf(-0.1) == -np.inf
    assert p.logpdf(2.5) == -np.inf
    assert p.logpdf(np.nan) == -np.inf
    assert p.support() == (0.0, 2.0)


def test_lognormal_prior_matches_r_parameterisation():
    p = Prior("lnorm", {"meanlog": 1.0, "sdlog": 0.1})
    x = 2.9
    assert p.logpdf(x) == pytest.approx(stats.norm(1.0, 0.1).logpdf(np.log(x)) - np.log(x))
    assert p.logpdf(-1.0) == -np.inf
    assert p.mean == pytest.approx(np.exp(1.0 + 0.5 * 0.01))


def test_gamma_prior_uses_rate():
    p = Prior("gamma", {"shape": 2.0, "rate": 4.0})
    assert p.mean == pytest.approx(0.5)
    draws = p.sample(np.random.default_rng(0), size=5)
    assert draws.shape == (5,)
    assert np.all(draws > 0)


def test_proposal_validation():
    with pytest.raises(ValueError):
        ProposalKernel("rw", 0.0)
    with pytest.raises(ValueError):
        ProposalKernel("rw", (1.0, 2.0))
    with pytest.raises(ValueError):
        ProposalKernel("rw-unif", (2.0, 1.0))
    with pytest.raises(ValueError):
        ProposalKernel("rw-unif", 0.5)
    with pytest.raises(ValueError):
        ProposalKernel("slice", 1.0)


def test_gaussian_random_walk_is_symmetric():
    k = ProposalKernel("rw", 0.25)
    rng = np.random.default_rng(1)
    steps = np.array([k.propose(1.0, rng)[0] - 1.0 for _ in range(4000)])
    assert k.symmetric
    assert k.propose(3.0, rng)[1] == 0.0
    assert np.std(steps) == pytest.approx(0.5, rel=0.05)
    assert k.log_density(1.3, 1.0) == pytest.approx(k.log_density(1.0, 1.3))


def test_multiplicative_uniform_stays_positive_and_in_range():
    k = ProposalKernel("rw-unif", (4.0, 5.0))
    rng = np.random.default_rng(2)
    x = 0.7
    for _ in range(500):
        x_new, _ = k.propose(x, rng)
        assert 0.7 * 4.0 / 5.0 <= x_new <= 0.7 * 5.0 / 4.0
    assert not k.symmetric


def test_multiplicative_uniform_correction_is_density_ratio():
    k = ProposalKernel("rw-unif", (1.0, 2.0))
    rng = np.random.default_rng(3)
    for x in (0.05, 1.0, 37.0, -2.0):
        for _ in range(20):
            x_new, corr = k.propose(x, rng)
            assert np.sign(x_new) == np.sign(x)
            want = k.log_density(x, x_new) - k.log_density(x_new, x)
            assert corr == pytest.approx(want, rel=1e-9, abs=1e-12)


def test_multiplicative_uniform_degenerate_at_zero():
    k = ProposalKernel("rw-unif", (1.0, 2.0))
    x_new, corr = k.propose(0.0, np.random.default_rng(0))
    assert np.isnan(x_new)
    assert corr == -np.inf
