from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import numpy as np

from .integrate import SOLVER_METHODS, check_time_grid, integrate
from .parameters import ParameterConfigError, ParameterSet


STATE_NAMES: tuple[str, ...] = ("WB", "Lw", "WR")
DE_PARAM_NAMES: tuple[str, ...] = (
    "deltaM",
    "f",
    "fb",
    "JAM",
    "yAX",
    "kappa",
    "logJMv",
    "yVA",
    "yAV",
    "dV",
    "Wp",
)


@dataclass(frozen=True)
class Trajectory:
    times: np.ndarray
    states: np.ndarray
    state_names: tuple[str, ...] = STATE_NAMES

    def __post_init__(self) -> None:
        times = np.asarray(self.times, dtype=float)
        states = np.asarray(self.states, dtype=float)
        if states.shape != (times.size, len(self.state_names)):
            raise ValueError(
                f"states shape {states.shape} does not match ({times.size}, {len(self.state_names)})."
            )
        times.setflags(write=False)
        states.setflags(write=False)
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "states", states)

    @property
    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.states)))

    def column(self, name: str) -> np.ndarray:
        return self.states[:, self.state_names.index(name)]

    def at(self, times: np.ndarray) -> "Trajectory":
        """Rows at the requested times (which must be on the trajectory grid)."""
        times = np.asarray(times, dtype=float)
        idx = np.searchsorted(self.times, times)
        idx = np.clip(idx, 0, self.times.size - 1)
        if not np.allclose(self.times[idx], times, rtol=0.0, atol=1e-9):
            raise ValueError("Requested times are not on the trajectory grid.")
        return Trajectory(times=self.times[idx], states=self.states[idx], state_names=self.state_names)


def debkiss_rhs(t: float, y: np.ndarray, p: Mapping[str, float]) -> np.ndarray:
    """DEBKiss model with embryo buffer, puberty threshold and starvation rules.

    State: WB (egg/embryo buffer), Lw (physical length), WR (reproduction buffer).
    Fluxes are in mass units per day; JMv is sampled on the log scale.
    """
    WB, Lw, WR = y[0], y[1], y[2]
    L = p["deltaM"] * Lw
    L2 = L * L
    L3 = L2 * L
    WV = p["dV"] * L3

    if WB > 0:
        JA = p["fb"] * p["JAM"] * L2
        dWB = -JA / p["yBA"]
    else:
        JA = p["f"] * p["JAM"] * L2
        dWB = 0.0

    JM = np.exp(p["logJMv"]) * L3
    kappa = p["kappa"]
    adult = WV >= p["Wp"]
    if kappa * JA >= JM:
        JV = p["yVA"] * (kappa * JA - JM)
        JR = (1.0 - kappa) * JA if adult else 0.0
    elif JA >= JM:
        # maintenance paid from the reproduction flux
        JV = 0.0
        JR = (JA - JM) if adult else 0.0
    else:
        # structure is burned to cover the maintenance deficit
        JV = -(JM - JA) / p["yAV"]
        JR = 0.0

    dLw = JV / (3.0 * p["dV"] * L2 * p["deltaM"])
    return np.array([dWB, dLw, JR], dtype=float)


def simulate(
    parameters: Mapping[str, float],
    initial_state: Mapping[str, float] | np.ndarray,
    time_grid: np.ndarray,
    *,
    method: str = "rk4",
    step_size: float = 0.1,
) -> Trajectory:
    """Solve the DEBKiss ODEs on ``time_grid``.

    Numerical blow-ups never raise: the returned trajectory is simply
    non-finite, which the likelihood maps to zero posterior density.
    """
    missing = [k for k in DE_PARAM_NAMES + ("yBA",) if k not in parameters]
    if missing:
        raise KeyError(f"Missing DEBKiss parameters: {missing}")
    p = {k: float(parameters[k]) for k in DE_PARAM_NAMES + ("yBA",)}
    if isinstance(initial_state, Mapping):
        y0 = np.array([float(initial_state[k]) for k in STATE_NAMES], dtype=float)
    else:
        y0 = np.asarray(initial_state, dtype=float)
        if y0.shape != (len(STATE_NAMES),):
            raise ValueError(f"initial_state must have {len(STATE_NAMES)} entries.")
    times = check_time_grid(time_grid)

    def rhs(t: float, y: np.ndarray) -> np.ndarray:
        return debkiss_rhs(t, y, p)

    states = integrate(rhs, y0, times, method=method, step_size=step_size)
    return Trajectory(times=times, states=states)


def egg_count(trajectory: Trajectory, *, yBA: float, WB0: float) -> np.ndarray:
    """Cumulative eggs produced: reproduction buffer converted at yield yBA, WB0 per egg."""
    return trajectory.column("WR") * float(yBA) / float(WB0)


@dataclass(frozen=True)
class DEBKissModel:
    """Forward model as seen by the sampler: full parameter values -> Trajectory.

    Initial-condition parameters (role "init") are looked up by state name.
    """

    time_grid: np.ndarray
    method: str = "rk4"
    step_size: float = 0.1

    def __post_init__(self) -> None:
        object.__setattr__(self, "time_grid", check_time_grid(self.time_grid))
        if self.method not in SOLVER_METHODS:
            raise ValueError(f"solver method must be one of {SOLVER_METHODS} (got {self.method!r}).")
        if not (np.isfinite(self.step_size) and self.step_size > 0):
            raise ValueError("step_size must be finite and positive.")

    @classmethod
    def for_observations(
        cls,
        data_times: np.ndarray,
        *,
        time_horizon: float | None = None,
        t0: float = 0.0,
        method: str = "rk4",
        step_size: float = 0.1,
    ) -> "DEBKissModel":
        """Grid covering t0, every observation time and the simulation horizon."""
        data_times = np.asarray(data_times, dtype=float)
        if data_times.size == 0:
            raise ValueError("data_times must be non-empty.")
        if np.min(data_times) < t0:
            raise ValueError("Observation times must not precede the initial time.")
        pts = [np.array([t0]), data_times]
        if time_horizon is not None:
            if time_horizon < np.max(data_times):
                raise ValueError("time_horizon must be >= the last observation time.")
            pts.append(np.array([float(time_horizon)]))
        grid = np.unique(np.concatenate(pts))
        if grid.size < 2:
            grid = np.array([t0, t0 + step_size])
        return cls(time_grid=grid, method=method, step_size=step_size)

    def check_parameters(self, parameters: ParameterSet) -> None:
        """Raise ParameterConfigError unless ``parameters`` fully specify this model."""
        init_names = set(parameters.by_role("init"))
        if init_names != set(STATE_NAMES):
            raise ParameterConfigError(
                f"Initial-condition parameters {sorted(init_names)} must match state variables {list(STATE_NAMES)}."
            )
        missing = [k for k in DE_PARAM_NAMES + ("yBA",) if k not in parameters]
        if missing:
            raise ParameterConfigError(f"Missing DEBKiss parameters: {missing}")
        # The sampler only re-solves for blocks holding "de"/"init" parameters,
        # so anything the ODEs read must carry one of those roles.
        wrong = [k for k in DE_PARAM_NAMES + ("yBA",) if parameters[k].role != "de"]
        if wrong:
            raise ParameterConfigError(f"Parameters {wrong} enter the DEBKiss ODEs and must have role 'de'.")

    def __call__(self, values: Mapping[str, float]) -> Trajectory:
        init = {k: values[k] for k in STATE_NAMES}
        return simulate(values, init, self.time_grid, method=self.method, step_size=self.step_size)
