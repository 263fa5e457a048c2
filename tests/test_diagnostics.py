import numpy as np
import pytest

from debkiss_infer.diagnostics import (
    effective_sample_size,
    gelman_rubin,
    integrated_time,
    pool_traces,
    summarize_trace,
)
from debkiss_infer.mcmc import SampleTrace


def _trace(samples, names=("a", "b")):
    samples = np.asarray(samples, dtype=float)
    n = samples.shape[0]
    return SampleTrace(
        names=names,
        samples=samples,
        log_posterior=np.zeros(n),
        log_likelihood=np.zeros(n),
        n_proposed=np.full(len(names), n),
        n_accepted=np.full(len(names), n // 3),
    )


def test_gelman_rubin_near_one_for_same_distribution():
    rng = np.random.default_rng(0)
    traces = [_trace(rng.normal(size=(2000, 2))) for _ in range(4)]
    rhat = gelman_rubin(traces, burnin=100)
    assert set(rhat) == {"a", "b"}
    assert all(1.0 - 0.02 < v < 1.05 for v in rhat.values())


def test_gelman_rubin_large_for_separated_chains():
    rng = np.random.default_rng(1)
    traces = [_trace(rng.normal(loc=5.0 * c, size=(1000, 2))) for c in range(3)]
    rhat = gelman_rubin(traces)
    assert all(v > 2.0 for v in rhat.values())
    with pytest.raises(ValueError):
        gelman_rubin(traces[:1])


def test_ess_of_independent_draws():
    rng = np.random.default_rng(2)
    x = rng.normal(size=5000)
    assert integrated_time(x) >= 1.0
    assert 2500 < effective_sample_size(x) <= 5000
    assert np.isnan(integrated_time(np.ones(100)))


def test_ess_drops_for_correlated_chain():
    rng = np.random.default_rng(3)
    x = np.empty(5000)
    x[0] = 0.0
    for i in range(1, x.size):
        x[i] = 0.95 * x[i - 1] + rng.normal()
    assert effective_sample_size(x) < 1000


def test_summary_table_and_pooling():
    rng = np.random.default_rng(4)
    traces = [_trace(rng.normal(size=(400, 2))) for _ in range(2)]
    df = summarize_trace(traces[0], burnin=100, thin=2)
    assert list(df.index) == ["a", "b"]
    for col in ("mean", "sd", "naive_se", "ess", "acceptance", "q2.5", "q50", "q97.5"):
        assert col in df.columns
    assert np.all(df["q2.5"] < df["q97.5"])
    assert df.loc["a", "acceptance"] == pytest.approx(133 / 400)

    pooled = pool_traces(traces, burnin=100, thin=2)
    assert len(pooled) == 2 * 150
    assert sorted(pooled["chain"].unique()) == [0, 1]
    assert pooled["iteration"].min() == 100
