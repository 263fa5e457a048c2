from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import time
from typing import Any, Callable, Mapping, Sequence

import numpy as np
import pandas as pd

from .debkiss import DEBKissModel
from .integrate import SOLVER_METHODS
from .parameters import ParameterSet


ForwardModelFn = Callable[[Mapping[str, float]], Any]
LogLikelihoodFn = Callable[[Any, Any, Mapping[str, float]], float]


class MCMCInitializationError(RuntimeError):
    """Raised when the starting parameter vector has zero posterior density."""


def _safe_log(msg: str) -> None:
    try:
        print(str(msg), flush=True)
    except BrokenPipeError:
        # A closed downstream pipe (e.g. `| head`) must not kill a long chain.
        return


@dataclass(frozen=True)
class MCMCConfig:
    """Run settings shared by the sampler, post-processing and the CLI."""

    iterations: int
    time_horizon: float | None = None
    burnin: int = 0
    thin: int = 1
    solver_method: str = "rk4"
    step_size: float = 0.1
    progress: bool = False
    progress_every: int = 500

    def __post_init__(self) -> None:
        if int(self.iterations) < 1:
            raise ValueError("iterations must be >= 1.")
        if not (0 <= int(self.burnin) < int(self.iterations)):
            raise ValueError("burnin must satisfy 0 <= burnin < iterations.")
        if int(self.thin) < 1:
            raise ValueError("thin must be >= 1.")
        if self.solver_method not in SOLVER_METHODS:
            raise ValueError(f"solver_method must be one of {SOLVER_METHODS} (got {self.solver_method!r}).")
        if not (np.isfinite(self.step_size) and self.step_size > 0):
            raise ValueError("step_size must be finite and positive.")
        if self.time_horizon is not None and not (np.isfinite(self.time_horizon) and self.time_horizon > 0):
            raise ValueError("time_horizon must be finite and positive.")
        if int(self.progress_every) < 1:
            raise ValueError("progress_every must be >= 1.")


@dataclass
class MCMCState:
    """Mutable per-chain state; never shared between chains."""

    values: dict[str, float]
    log_posterior: float
    log_likelihood: float
    log_prior: float
    trajectory: Any
    iteration: int = 0
    n_proposed: dict[str, int] = field(default_factory=dict)
    n_accepted: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SampleTrace:
    """Samples of the free parameters, one row per iteration."""

    names: tuple[str, ...]
    samples: np.ndarray
    log_posterior: np.ndarray
    log_likelihood: np.ndarray
    n_proposed: np.ndarray
    n_accepted: np.ndarray
    seed: int | None = None
    meta: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        samples = np.array(self.samples, dtype=float)
        n_iter = samples.shape[0] if samples.ndim == 2 else -1
        if samples.ndim != 2 or samples.shape[1] != len(self.names):
            raise ValueError("samples must have shape (n_iter, n_free).")
        arrays = {
            "samples": samples,
            "log_posterior": np.array(self.log_posterior, dtype=float),
            "log_likelihood": np.array(self.log_likelihood, dtype=float),
            "n_proposed": np.array(self.n_proposed, dtype=int),
            "n_accepted": np.array(self.n_accepted, dtype=int),
        }
        if arrays["log_posterior"].shape != (n_iter,) or arrays["log_likelihood"].shape != (n_iter,):
            raise ValueError("log_posterior/log_likelihood must have shape (n_iter,).")
        if arrays["n_proposed"].shape != (len(self.names),) or arrays["n_accepted"].shape != (len(self.names),):
            raise ValueError("acceptance counters must have one entry per free parameter.")
        for key, arr in arrays.items():
            arr.setflags(write=False)
            object.__setattr__(self, key, arr)
        object.__setattr__(self, "names", tuple(self.names))

    @property
    def n_iterations(self) -> int:
        return int(self.samples.shape[0])

    @property
    def acceptance_rate(self) -> float:
        total = int(np.sum(self.n_proposed))
        return float(np.sum(self.n_accepted)) / total if total > 0 else float("nan")

    @property
    def acceptance_rates(self) -> dict[str, float]:
        out = {}
        for i, name in enumerate(self.names):
            n = int(self.n_proposed[i])
            out[name] = float(self.n_accepted[i]) / n if n > 0 else float("nan")
        return out

    def column(self, name: str) -> np.ndarray:
        return self.samples[:, self.names.index(name)]

    def window_indices(self, *, burnin: int = 0, thin: int = 1) -> np.ndarray:
        """Indices kept after discarding ``burnin`` rows and keeping every ``thin``-th."""
        burnin = int(burnin)
        thin = int(thin)
        if burnin < 0 or thin < 1:
            raise ValueError("burnin must be >= 0 and thin >= 1.")
        if burnin >= self.n_iterations:
            raise ValueError(f"burnin={burnin} discards all {self.n_iterations} samples.")
        return np.arange(burnin, self.n_iterations, thin)

    def window(self, *, burnin: int = 0, thin: int = 1) -> np.ndarray:
        return self.samples[self.window_indices(burnin=burnin, thin=thin)]

    def to_frame(self, *, burnin: int = 0, thin: int = 1) -> pd.DataFrame:
        idx = self.window_indices(burnin=burnin, thin=thin)
        df = pd.DataFrame(self.samples[idx], columns=list(self.names), index=idx)
        df["log_posterior"] = self.log_posterior[idx]
        df.index.name = "iteration"
        return df

    def save_npz(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(
            path,
            names=np.array(self.names),
            samples=self.samples,
            log_posterior=self.log_posterior,
            log_likelihood=self.log_likelihood,
            n_proposed=self.n_proposed,
            n_accepted=self.n_accepted,
        )


def metropolis_accept(log_alpha: float, rng: np.random.Generator) -> bool:
    """Accept with probability min(1, exp(log_alpha)); NaN and -inf always reject."""
    if not np.isfinite(log_alpha):
        return bool(log_alpha == np.inf)
    if log_alpha >= 0.0:
        return True
    return bool(np.log(rng.random()) < log_alpha)


def _evaluate(
    values: Mapping[str, float],
    *,
    parameters: ParameterSet,
    forward_model: ForwardModelFn,
    log_likelihood: LogLikelihoodFn,
    observations: Any,
    trajectory: Any = None,
) -> tuple[float, float, float, Any]:
    """(log_post, log_like, log_prior, trajectory); skips the solve when the prior is zero."""
    lp = parameters.log_prior(values)
    if not np.isfinite(lp):
        return -np.inf, -np.inf, lp, trajectory
    if trajectory is None:
        trajectory = forward_model(values)
    ll = float(log_likelihood(trajectory, observations, values))
    if np.isnan(ll):
        ll = -np.inf
    return lp + ll, ll, lp, trajectory


def run_mcmc(
    *,
    n_iterations: int,
    parameters: ParameterSet,
    forward_model: ForwardModelFn,
    log_likelihood: LogLikelihoodFn,
    observations: Any,
    seed: int | np.random.SeedSequence | None = 0,
    progress: bool = False,
    progress_every: int = 500,
    chain_id: int = 0,
) -> SampleTrace:
    """Metropolis-within-Gibbs sampler over the free parameters.

    Free parameters are updated one proposal block at a time. A block that only
    contains observation-model parameters reuses the current trajectory; any
    block touching a "de" or "init" parameter re-solves the forward model.
    """
    n_iterations = int(n_iterations)
    if n_iterations < 1:
        raise ValueError("n_iterations must be >= 1.")
    progress_every = max(1, int(progress_every))
    names = tuple(parameters.free_names)
    if not names:
        raise ValueError("No free parameters to sample.")
    blocks = parameters.proposal_blocks()
    needs_solve = {b: any(parameters[n].role in ("de", "init") for n in b) for b in blocks}
    rng = np.random.default_rng(seed)

    values = parameters.as_values()
    lpost, ll, lprior, traj = _evaluate(
        values,
        parameters=parameters,
        forward_model=forward_model,
        log_likelihood=log_likelihood,
        observations=observations,
    )
    if not np.isfinite(lpost):
        raise MCMCInitializationError(
            f"Initial parameters give a non-finite log posterior "
            f"(log_prior={lprior}, log_likelihood={ll}); choose a valid starting point."
        )
    state = MCMCState(
        values=values,
        log_posterior=lpost,
        log_likelihood=ll,
        log_prior=lprior,
        trajectory=traj,
        n_proposed={n: 0 for n in names},
        n_accepted={n: 0 for n in names},
    )
    if progress:
        _safe_log(f"[mcmc] chain={chain_id} start: free={list(names)} logpost={lpost:.4f} iters={n_iterations}")

    samples = np.empty((n_iterations, len(names)), dtype=float)
    log_post = np.empty(n_iterations, dtype=float)
    log_like = np.empty(n_iterations, dtype=float)
    t0 = time.time()

    for it in range(n_iterations):
        for block in blocks:
            proposed = dict(state.values)
            log_corr = 0.0
            for name in block:
                kernel = parameters[name].proposal
                x_new, corr = kernel.propose(state.values[name], rng)
                proposed[name] = x_new
                log_corr += corr
                state.n_proposed[name] += 1
            lp_new, ll_new, lprior_new, traj_new = _evaluate(
                proposed,
                parameters=parameters,
                forward_model=forward_model,
                log_likelihood=log_likelihood,
                observations=observations,
                trajectory=None if needs_solve[block] else state.trajectory,
            )
            if metropolis_accept(lp_new - state.log_posterior + log_corr, rng):
                state.values = proposed
                state.log_posterior = lp_new
                state.log_likelihood = ll_new
                state.log_prior = lprior_new
                state.trajectory = traj_new
                for name in block:
                    state.n_accepted[name] += 1
        state.iteration = it + 1
        samples[it] = [state.values[n] for n in names]
        log_post[it] = state.log_posterior
        log_like[it] = state.log_likelihood

        if progress and (state.iteration % progress_every == 0 or state.iteration == n_iterations):
            n_prop = sum(state.n_proposed.values())
            acc = sum(state.n_accepted.values()) / max(n_prop, 1)
            elapsed = time.time() - t0
            _safe_log(
                f"[mcmc] chain={chain_id} iter={state.iteration}/{n_iterations} "
                f"acc={acc:.3f} logpost={state.log_posterior:.4f} elapsed={elapsed:.1f}s"
            )

    return SampleTrace(
        names=names,
        samples=samples,
        log_posterior=log_post,
        log_likelihood=log_like,
        n_proposed=np.array([state.n_proposed[n] for n in names]),
        n_accepted=np.array([state.n_accepted[n] for n in names]),
        seed=int(seed) if isinstance(seed, (int, np.integer)) else None,
        meta={
            "chain_id": int(chain_id),
            "blocks": [list(b) for b in blocks],
            "initial_values": {n: float(parameters[n].value) for n in names},
            "elapsed_s": float(time.time() - t0),
        },
    )


# For multiprocessing: the worker must be a picklable top-level function, so the
# shared (read-only) chain inputs are stashed in a module global before forking.
_CHAIN_CTX: dict | None = None


def _chain_worker(task: tuple[int, Any, ParameterSet]) -> tuple[int, SampleTrace]:
    if _CHAIN_CTX is None:
        raise RuntimeError("Chain context not initialized (requires fork start method).")
    i, seed, params = task
    trace = run_mcmc(seed=seed, chain_id=int(i), parameters=params, **_CHAIN_CTX)
    return int(i), trace


def chain_seeds(seed: int, n_chains: int) -> list[np.random.SeedSequence]:
    """Independent per-chain seed sequences derived from one master seed."""
    return np.random.SeedSequence(int(seed)).spawn(int(n_chains))


def run_chains(
    *,
    n_chains: int,
    n_iterations: int,
    parameters: ParameterSet,
    forward_model: ForwardModelFn,
    log_likelihood: LogLikelihoodFn,
    observations: Any,
    seed: int = 0,
    seeds: Sequence[int] | None = None,
    initial_values: Sequence[Mapping[str, float]] | None = None,
    n_processes: int = 1,
    progress: bool = False,
    progress_every: int = 500,
) -> list[SampleTrace]:
    """Run independent chains; results are returned in chain order.

    Chains share nothing but the read-only inputs. With ``n_processes > 1`` they
    run in a fork-based process pool.
    """
    global _CHAIN_CTX
    n_chains = int(n_chains)
    if n_chains < 1:
        raise ValueError("n_chains must be >= 1.")
    if seeds is not None:
        if len(seeds) != n_chains:
            raise ValueError(f"Expected {n_chains} seeds, got {len(seeds)}.")
        chain_seed_list: list[Any] = [int(s) for s in seeds]
    else:
        chain_seed_list = list(chain_seeds(seed, n_chains))
    if initial_values is not None and len(initial_values) != n_chains:
        raise ValueError(f"Expected {n_chains} initial value sets, got {len(initial_values)}.")

    ctx = {
        "n_iterations": int(n_iterations),
        "forward_model": forward_model,
        "log_likelihood": log_likelihood,
        "observations": observations,
        "progress": bool(progress),
        "progress_every": int(progress_every),
    }

    def chain_params(i: int) -> ParameterSet:
        if initial_values is None:
            return parameters
        return parameters.with_values(initial_values[i])

    tasks = [(i, chain_seed_list[i], chain_params(i)) for i in range(n_chains)]
    traces: list[SampleTrace | None] = [None] * n_chains
    if n_processes > 1 and n_chains > 1:
        import multiprocessing as mp

        _CHAIN_CTX = ctx
        try:
            with mp.get_context("fork").Pool(processes=min(int(n_processes), n_chains)) as pool:
                for i, trace in pool.imap_unordered(_chain_worker, tasks, chunksize=1):
                    traces[i] = trace
        finally:
            _CHAIN_CTX = None
    else:
        for i, chain_seed, params in tasks:
            traces[i] = run_mcmc(seed=chain_seed, chain_id=i, parameters=params, **ctx)

    if any(t is None for t in traces):
        raise RuntimeError("Chain missing result (worker crash or early exit).")
    return [t for t in traces if t is not None]


def run_with_config(
    config: MCMCConfig,
    *,
    parameters: ParameterSet,
    observations: Any,
    log_likelihood: LogLikelihoodFn,
    seed: int = 0,
    n_chains: int = 1,
    n_processes: int = 1,
) -> list[SampleTrace]:
    """Build the DEBKiss forward model from ``config`` and run ``n_chains`` chains."""
    model = DEBKissModel.for_observations(
        observations.time,
        time_horizon=config.time_horizon,
        method=config.solver_method,
        step_size=config.step_size,
    )
    model.check_parameters(parameters)
    return run_chains(
        n_chains=n_chains,
        n_iterations=config.iterations,
        parameters=parameters,
        forward_model=model,
        log_likelihood=log_likelihood,
        observations=observations,
        seed=seed,
        n_processes=n_processes,
        progress=config.progress,
        progress_every=config.progress_every,
    )
