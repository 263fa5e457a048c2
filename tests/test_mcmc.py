import os

import numpy as np
import pytest

from debkiss_infer.mcmc import (
    MCMCConfig,
    MCMCInitializationError,
    SampleTrace,
    chain_seeds,
    metropolis_accept,
    run_chains,
    run_mcmc,
)
from debkiss_infer.parameters import Parameter, setup_parameters
from debkiss_infer.priors import Prior
from debkiss_infer.proposals import ProposalKernel

TOY_MEAN = 2.0
TOY_SD = 0.5


def _identity_model(values):
    return values["theta"]


def _gaussian_loglike(traj, obs, values):
    return -0.5 * ((traj - TOY_MEAN) / TOY_SD) ** 2


def _flat_loglike(traj, obs, values):
    return 0.0


def _toy_params(value=0.0, var=1.0):
    return setup_parameters(
        Parameter(
            "theta",
            "de",
            value,
            fixed=False,
            prior=Prior("norm", {"mean": 0.0, "sd": 100.0}),
            proposal=ProposalKernel("rw", var),
        )
    )


def _run_toy(seed=0, n=2000):
    return run_mcmc(
        n_iterations=n,
        parameters=_toy_params(),
        forward_model=_identity_model,
        log_likelihood=_gaussian_loglike,
        observations=None,
        seed=seed,
    )


def test_random_walk_recovers_gaussian_posterior():
    trace = run_mcmc(
        n_iterations=20000,
        parameters=_toy_params(),
        forward_model=_identity_model,
        log_likelihood=_gaussian_loglike,
        observations=None,
        seed=11,
    )
    x = trace.window(burnin=1000)[:, 0]
    # prior N(0, 100^2) barely shifts the likelihood
    prec = 1.0 / TOY_SD**2 + 1.0 / 100.0**2
    mean = (TOY_MEAN / TOY_SD**2) / prec
    sd = np.sqrt(1.0 / prec)
    assert np.mean(x) == pytest.approx(mean, abs=0.05)
    assert np.std(x) == pytest.approx(sd, rel=0.1)
    assert 0.0 < trace.acceptance_rate < 1.0


def test_multiplicative_uniform_kernel_preserves_target():
    params = setup_parameters(
        Parameter(
            "sigma",
            "obs",
            1.0,
            fixed=False,
            prior=Prior("lnorm", {"meanlog": 0.0, "sdlog": 0.5}),
            proposal=ProposalKernel("rw-unif", (1.0, 2.0)),
        )
    )
    trace = run_mcmc(
        n_iterations=20000,
        parameters=params,
        forward_model=lambda values: None,
        log_likelihood=_flat_loglike,
        observations=None,
        seed=5,
    )
    logx = np.log(trace.window(burnin=1000)[:, 0])
    assert np.all(np.isfinite(logx))
    assert np.mean(logx) == pytest.approx(0.0, abs=0.05)
    assert np.std(logx) == pytest.approx(0.5, rel=0.1)


def test_out_of_support_proposals_are_rejected():
    params = setup_parameters(
        Parameter(
            "p",
            "de",
            0.5,
            fixed=False,
            prior=Prior("unif", {"min": 0.0, "max": 1.0}),
            proposal=ProposalKernel("rw", 4.0),
        )
    )
    trace = run_mcmc(
        n_iterations=2000,
        parameters=params,
        forward_model=lambda values: values["p"],
        log_likelihood=_flat_loglike,
        observations=None,
        seed=3,
    )
    x = trace.column("p")
    assert np.all((x >= 0.0) & (x <= 1.0))
    assert 0.0 < trace.acceptance_rate < 0.5
    assert np.all(np.isfinite(trace.log_posterior))


def test_same_seed_gives_identical_trace():
    a = _run_toy(seed=7)
    b = _run_toy(seed=7)
    c = _run_toy(seed=8)
    assert np.array_equal(a.samples, b.samples)
    assert np.array_equal(a.log_posterior, b.log_posterior)
    assert np.array_equal(a.n_accepted, b.n_accepted)
    assert not np.array_equal(a.samples, c.samples)


def test_invalid_start_raises():
    params = setup_parameters(
        Parameter(
            "p",
            "de",
            2.0,
            fixed=False,
            prior=Prior("unif", {"min": 0.0, "max": 1.0}),
            proposal=ProposalKernel("rw", 0.1),
        )
    )
    with pytest.raises(MCMCInitializationError):
        run_mcmc(
            n_iterations=10,
            parameters=params,
            forward_model=lambda values: values["p"],
            log_likelihood=_flat_loglike,
            observations=None,
        )
    with pytest.raises(MCMCInitializationError):
        run_mcmc(
            n_iterations=10,
            parameters=_toy_params(),
            forward_model=_identity_model,
            log_likelihood=lambda traj, obs, values: -np.inf,
            observations=None,
        )


def test_no_free_parameters_raises():
    params = setup_parameters(Parameter("theta", "de", 1.0))
    with pytest.raises(ValueError):
        run_mcmc(
            n_iterations=10,
            parameters=params,
            forward_model=_identity_model,
            log_likelihood=_gaussian_loglike,
            observations=None,
        )


def test_observation_only_updates_reuse_trajectory():
    calls = []

    def model(values):
        calls.append(dict(values))
        return values["theta"]

    def loglike(traj, obs, values):
        return -0.5 * ((traj - TOY_MEAN) / values["sigma"]) ** 2 - np.log(values["sigma"])

    sigma = Parameter(
        "sigma",
        "obs",
        1.0,
        fixed=False,
        prior=Prior("lnorm", {"meanlog": 0.0, "sdlog": 1.0}),
        proposal=ProposalKernel("rw-unif", (4.0, 5.0)),
    )
    params = setup_parameters(Parameter("theta", "de", 1.0), sigma)
    trace = run_mcmc(n_iterations=300, parameters=params, forward_model=model, log_likelihood=loglike, observations=None)
    assert len(calls) == 1
    assert trace.names == ("sigma",)

    params = setup_parameters(*_toy_params().values(), sigma)
    calls.clear()
    run_mcmc(n_iterations=300, parameters=params, forward_model=model, log_likelihood=loglike, observations=None)
    assert len(calls) == 301


def test_joint_block_accepts_together():
    kernel = ProposalKernel("rw", 0.05)
    prior = Prior("norm", {"mean": 0.0, "sd": 10.0})
    params = setup_parameters(
        Parameter("a", "de", 0.0, fixed=False, prior=prior, proposal=kernel, block="ab"),
        Parameter("b", "de", 0.0, fixed=False, prior=prior, proposal=kernel, block="ab"),
    )
    trace = run_mcmc(
        n_iterations=500,
        parameters=params,
        forward_model=lambda values: values["a"] + values["b"],
        log_likelihood=lambda traj, obs, values: -0.5 * (traj - 1.0) ** 2,
        observations=None,
        seed=4,
    )
    assert trace.meta["blocks"] == [["a", "b"]]
    assert trace.n_accepted[0] == trace.n_accepted[1]
    assert trace.n_proposed.tolist() == [500, 500]


def test_metropolis_accept_edge_cases():
    rng = np.random.default_rng(0)
    assert metropolis_accept(0.5, rng)
    assert not metropolis_accept(-np.inf, rng)
    assert not metropolis_accept(np.nan, rng)
    assert not any(metropolis_accept(-50.0, rng) for _ in range(100))


def test_run_chains_seeds_are_independent_and_reproducible():
    kwargs = dict(
        n_chains=3,
        n_iterations=300,
        parameters=_toy_params(),
        forward_model=_identity_model,
        log_likelihood=_gaussian_loglike,
        observations=None,
        seed=42,
    )
    a = run_chains(**kwargs)
    b = run_chains(**kwargs)
    assert len(a) == 3
    assert [t.meta["chain_id"] for t in a] == [0, 1, 2]
    for ta, tb in zip(a, b):
        assert np.array_equal(ta.samples, tb.samples)
    assert not np.array_equal(a[0].samples, a[1].samples)
    assert not np.array_equal(a[1].samples, a[2].samples)
    assert len({s.entropy for s in chain_seeds(42, 3)}) == 1
    assert len({tuple(s.spawn_key) for s in chain_seeds(42, 3)}) == 3


def test_run_chains_explicit_seeds_and_starts():
    traces = run_chains(
        n_chains=2,
        n_iterations=50,
        parameters=_toy_params(),
        forward_model=_identity_model,
        log_likelihood=_gaussian_loglike,
        observations=None,
        seeds=[1, 2],
        initial_values=[{"theta": -1.0}, {"theta": 5.0}],
    )
    assert [t.seed for t in traces] == [1, 2]
    assert [t.meta["initial_values"]["theta"] for t in traces] == [-1.0, 5.0]
    with pytest.raises(ValueError):
        run_chains(
            n_chains=2,
            n_iterations=5,
            parameters=_toy_params(),
            forward_model=_identity_model,
            log_likelihood=_gaussian_loglike,
            observations=None,
            seeds=[1],
        )


@pytest.mark.skipif(not hasattr(os, "fork"), reason="process pool requires fork")
def test_run_chains_pool_matches_serial():
    kwargs = dict(
        n_chains=2,
        n_iterations=200,
        parameters=_toy_params(),
        forward_model=_identity_model,
        log_likelihood=_gaussian_loglike,
        observations=None,
        seed=9,
    )
    serial = run_chains(**kwargs)
    pooled = run_chains(n_processes=2, **kwargs)
    for ts, tp in zip(serial, pooled):
        assert np.array_equal(ts.samples, tp.samples)


def test_config_validation():
    MCMCConfig(iterations=100, burnin=10, thin=2)
    with pytest.raises(ValueError):
        MCMCConfig(iterations=0)
    with pytest.raises(ValueError):
        MCMCConfig(iterations=100, burnin=100)
    with pytest.raises(ValueError):
        MCMCConfig(iterations=100, thin=0)
    with pytest.raises(ValueError):
        MCMCConfig(iterations=100, solver_method="dopri")
    with pytest.raises(ValueError):
        MCMCConfig(iterations=100, step_size=-0.1)


def test_trace_window_indices():
    trace = SampleTrace(
        names=("x",),
        samples=np.arange(10.0)[:, None],
        log_posterior=np.zeros(10),
        log_likelihood=np.zeros(10),
        n_proposed=np.array([10]),
        n_accepted=np.array([4]),
    )
    assert trace.window_indices(burnin=2, thin=3).tolist() == [2, 5, 8]
    assert trace.window(burnin=9).ravel().tolist() == [9.0]
    assert trace.acceptance_rates == {"x": 0.4}
    with pytest.raises(ValueError):
        trace.window_indices(burnin=10)
    with pytest.raises(ValueError):
        SampleTrace(
            names=("x", "y"),
            samples=np.zeros((3, 1)),
            log_posterior=np.zeros(3),
            log_likelihood=np.zeros(3),
            n_proposed=np.array([1]),
            n_accepted=np.array([1]),
        )
