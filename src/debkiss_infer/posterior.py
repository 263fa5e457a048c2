from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from .debkiss import DEBKissModel, STATE_NAMES, Trajectory
from .mcmc import SampleTrace
from .parameters import ParameterSet


@dataclass(frozen=True)
class TrajectoryEnsemble:
    """Forward-model trajectories re-run at thinned posterior samples.

    Bands computed here are credible intervals of the *mean* trajectory (the
    deterministic model output). They do not include observation noise and so
    are narrower than posterior-predictive intervals for new observations.
    """

    times: np.ndarray
    states: np.ndarray
    state_names: tuple[str, ...]
    sample_indices: np.ndarray
    samples: np.ndarray
    sample_names: tuple[str, ...]
    probs: tuple[float, float] = (0.025, 0.975)

    def __post_init__(self) -> None:
        lo, hi = (float(p) for p in self.probs)
        if not (0.0 <= lo < hi <= 1.0):
            raise ValueError("probs must satisfy 0 <= lo < hi <= 1.")
        object.__setattr__(self, "probs", (lo, hi))

    @property
    def n_draws(self) -> int:
        return int(self.states.shape[0])

    @property
    def finite_mask(self) -> np.ndarray:
        return np.all(np.isfinite(self.states), axis=(1, 2))

    def values(self, name: str) -> np.ndarray:
        """(n_draws, n_times) array for a state variable."""
        return self.states[:, :, self.state_names.index(name)]

    def eggs(self, *, yBA: float, WB0: float) -> np.ndarray:
        return self.values("WR") * float(yBA) / float(WB0)

    def _finite(self, arr: np.ndarray) -> np.ndarray:
        mask = self.finite_mask
        if not np.any(mask):
            raise ValueError(f"All {self.n_draws} posterior trajectories are non-finite; no band can be computed.")
        return arr[mask]

    def mean(self, name: str) -> np.ndarray:
        return np.mean(self._finite(self.values(name)), axis=0)

    def quantiles(self, name: str, probs: Sequence[float] = (0.025, 0.975)) -> np.ndarray:
        """(len(probs), n_times) quantiles across finite draws, per time point."""
        return np.quantile(self._finite(self.values(name)), np.asarray(probs, dtype=float), axis=0)

    def band(self, name: str, probs: tuple[float, float] | None = None) -> dict[str, np.ndarray]:
        return _band(self._finite(self.values(name)), self.probs if probs is None else probs)

    def egg_band(self, *, yBA: float, WB0: float, probs: tuple[float, float] | None = None) -> dict[str, np.ndarray]:
        eggs = self._finite(self.eggs(yBA=yBA, WB0=WB0))
        return _band(eggs, self.probs if probs is None else probs)


def _band(draws: np.ndarray, probs: tuple[float, float]) -> dict[str, np.ndarray]:
    lo, hi = np.quantile(draws, np.asarray(probs, dtype=float), axis=0)
    return {"mean": np.mean(draws, axis=0), "lo": lo, "hi": hi}


def _simulate_sample(
    row: np.ndarray,
    names: tuple[str, ...],
    baseline: Mapping[str, float],
    forward_model,
) -> Trajectory:
    values = dict(baseline)
    values.update({n: float(v) for n, v in zip(names, row, strict=True)})
    return forward_model(values)


_PREDICT_CTX: dict | None = None


def _predict_worker(task: tuple[int, np.ndarray]) -> tuple[int, np.ndarray]:
    if _PREDICT_CTX is None:
        raise RuntimeError("Prediction context not initialized (requires fork start method).")
    i, row = task
    ctx = _PREDICT_CTX
    traj = _simulate_sample(row, ctx["names"], ctx["baseline"], ctx["forward_model"])
    return int(i), traj.states


def predict(
    trace: SampleTrace,
    *,
    thin: int,
    burnin: int,
    parameters: ParameterSet,
    time_grid: np.ndarray,
    forward_model=None,
    method: str = "rk4",
    step_size: float = 0.1,
    probs: tuple[float, float] = (0.025, 0.975),
    n_processes: int = 1,
) -> TrajectoryEnsemble:
    """Re-run the forward model over thinned posterior samples.

    The first ``burnin`` samples are discarded and every ``thin``-th of the
    remainder is kept (sample indices burnin, burnin+thin, ...). Each retained
    sample's free values are merged into the declared (fixed) values of
    ``parameters``. ``forward_model`` defaults to DEBKiss on ``time_grid``.
    """
    global _PREDICT_CTX
    idx = trace.window_indices(burnin=burnin, thin=thin)
    draws = trace.samples[idx]
    if forward_model is None:
        forward_model = DEBKissModel(time_grid=time_grid, method=method, step_size=step_size)
    grid = np.asarray(getattr(forward_model, "time_grid", time_grid), dtype=float)
    baseline = parameters.as_values()
    names = trace.names
    missing = [n for n in names if n not in baseline]
    if missing:
        raise ValueError(f"Trace parameters {missing} are not declared in the parameter set.")

    states = np.full((draws.shape[0], grid.size, len(STATE_NAMES)), np.nan)
    if n_processes > 1 and draws.shape[0] > 1:
        import multiprocessing as mp

        _PREDICT_CTX = {"names": names, "baseline": baseline, "forward_model": forward_model}
        try:
            with mp.get_context("fork").Pool(processes=int(n_processes)) as pool:
                for i, s in pool.imap_unordered(_predict_worker, list(enumerate(draws)), chunksize=8):
                    states[i] = s
        finally:
            _PREDICT_CTX = None
    else:
        for i, row in enumerate(draws):
            states[i] = _simulate_sample(row, names, baseline, forward_model).states

    return TrajectoryEnsemble(
        times=grid,
        states=states,
        state_names=STATE_NAMES,
        sample_indices=idx,
        samples=draws,
        sample_names=names,
        probs=probs,
    )
