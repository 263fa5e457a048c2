from __future__ import annotations

import warnings
from typing import Sequence

import emcee
import numpy as np
import pandas as pd

from .mcmc import SampleTrace


def integrated_time(x: np.ndarray) -> float:
    """Integrated autocorrelation time of a 1D chain (NaN for a constant chain).

    Uses emcee's windowed estimator in quiet mode; short chains therefore give
    a (warned-about) lower bound rather than an exception.
    """
    x = np.asarray(x, dtype=float)
    if x.ndim != 1 or x.size < 2:
        raise ValueError("x must be a 1D chain with at least 2 samples.")
    if not np.all(np.isfinite(x)) or float(np.std(x)) == 0.0:
        return float("nan")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        tau = emcee.autocorr.integrated_time(x, quiet=True)
    tau = float(np.asarray(tau, dtype=float).ravel()[0])
    # Treat tau < 1 (anti-correlated chains) as independent draws.
    return max(tau, 1.0) if np.isfinite(tau) else float("nan")


def effective_sample_size(x: np.ndarray) -> float:
    tau = integrated_time(x)
    if not np.isfinite(tau):
        return float("nan")
    return float(np.asarray(x).size / tau)


def gelman_rubin(traces: Sequence[SampleTrace], *, burnin: int = 0, thin: int = 1) -> dict[str, float]:
    """Potential scale reduction factor per parameter (Gelman & Rubin 1992).

    R-hat = sqrt(V/W) with V = (n-1)/n W + B/n; values < 1.1 indicate
    approximate convergence. Chains are truncated to a common length.
    """
    if len(traces) < 2:
        raise ValueError("gelman_rubin needs at least 2 chains.")
    names = traces[0].names
    if any(t.names != names for t in traces):
        raise ValueError("All chains must sample the same parameters.")
    windows = [t.window(burnin=burnin, thin=thin) for t in traces]
    n = min(w.shape[0] for w in windows)
    if n < 2:
        raise ValueError("Need at least 2 retained samples per chain.")
    chains = np.stack([w[:n] for w in windows], axis=0)  # (m, n, d)

    chain_means = np.mean(chains, axis=1)
    chain_vars = np.var(chains, axis=1, ddof=1)
    W = np.mean(chain_vars, axis=0)
    B = n * np.var(chain_means, axis=0, ddof=1)
    V = (n - 1) / n * W + B / n
    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.sqrt(V / W)
    return {name: float(rhat[i]) for i, name in enumerate(names)}


def summarize_trace(
    trace: SampleTrace,
    *,
    burnin: int = 0,
    thin: int = 1,
    probs: Sequence[float] = (0.025, 0.25, 0.5, 0.75, 0.975),
) -> pd.DataFrame:
    """Posterior summary table, one row per free parameter."""
    draws = trace.window(burnin=burnin, thin=thin)
    rates = trace.acceptance_rates
    rows = []
    for i, name in enumerate(trace.names):
        x = draws[:, i]
        ess = effective_sample_size(x) if x.size >= 2 else float("nan")
        sd = float(np.std(x, ddof=1)) if x.size > 1 else 0.0
        row = {
            "parameter": name,
            "mean": float(np.mean(x)),
            "sd": sd,
            "naive_se": sd / np.sqrt(x.size),
            "ess": ess,
            "acceptance": rates[name],
        }
        for p, q in zip(probs, np.quantile(x, np.asarray(probs, dtype=float)), strict=True):
            row[f"q{100 * p:g}"] = float(q)
        rows.append(row)
    return pd.DataFrame(rows).set_index("parameter")


def pool_traces(traces: Sequence[SampleTrace], *, burnin: int = 0, thin: int = 1) -> pd.DataFrame:
    """Concatenate post-burn-in draws of several chains with a ``chain`` column."""
    frames = []
    for c, t in enumerate(traces):
        df = t.to_frame(burnin=burnin, thin=thin)
        df.insert(0, "chain", c)
        frames.append(df)
    return pd.concat(frames).reset_index()
