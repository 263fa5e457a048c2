from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import numpy as np
import pandas as pd

from .debkiss import DEBKissModel, egg_count


REQUIRED_COLUMNS: tuple[str, ...] = ("time", "L", "Egg")


@dataclass(frozen=True)
class Observations:
    """Observed shell length and cumulative egg counts at increasing times."""

    time: np.ndarray
    length: np.ndarray
    eggs: np.ndarray
    meta: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        time = np.array(self.time, dtype=float)
        length = np.array(self.length, dtype=float)
        eggs = np.array(self.eggs, dtype=float)
        if time.ndim != 1 or time.size == 0:
            raise ValueError("Observation times must be a non-empty 1D array.")
        if length.shape != time.shape or eggs.shape != time.shape:
            raise ValueError("time, length and eggs must have the same shape.")
        for name, arr in (("time", time), ("length", length), ("eggs", eggs)):
            if not np.all(np.isfinite(arr)):
                raise ValueError(f"Observation column '{name}' contains non-finite values.")
        if np.any(time < 0):
            raise ValueError("Observation times must be non-negative.")
        if time.size > 1 and np.any(np.diff(time) <= 0):
            raise ValueError("Observation times must be strictly increasing (no duplicates).")
        if np.any(length <= 0):
            raise ValueError("Observed lengths must be positive.")
        if np.any(eggs < 0):
            raise ValueError("Observed egg counts must be non-negative.")
        for arr in (time, length, eggs):
            arr.setflags(write=False)
        object.__setattr__(self, "time", time)
        object.__setattr__(self, "length", length)
        object.__setattr__(self, "eggs", eggs)

    @property
    def n(self) -> int:
        return int(self.time.size)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"time": self.time, "L": self.length, "Egg": self.eggs})


def load_observations(path: str | Path) -> Observations:
    """Read a delimited ``time,L,Egg`` table (the cleaned snail dataset layout).

    Rows are sorted by time; every malformed input raises ``ValueError``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Observation file not found: {path}")
    try:
        df = pd.read_csv(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValueError(f"{path}: could not parse observation table ({e}).") from e
    df.columns = [str(c).strip() for c in df.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing required columns {missing} (found {list(df.columns)}).")
    if len(df) == 0:
        raise ValueError(f"{path}: observation table has no rows.")
    try:
        df = df[list(REQUIRED_COLUMNS)].astype(float)
    except ValueError as e:
        raise ValueError(f"{path}: non-numeric observation values ({e}).") from e
    df = df.sort_values("time", kind="mergesort")
    return Observations(
        time=df["time"].to_numpy(),
        length=df["L"].to_numpy(),
        eggs=df["Egg"].to_numpy(),
        meta={"source": str(path), "n": int(len(df)), "columns": list(REQUIRED_COLUMNS)},
    )


def synthesize_observations(
    values: Mapping[str, float],
    times: np.ndarray,
    *,
    sdlog_L: float,
    sdlog_E: float,
    seed: int = 0,
    method: str = "rk4",
    step_size: float = 0.1,
) -> Observations:
    """Simulate the model at ``times`` and add multiplicative log-normal noise.

    Egg counts are rounded to whole eggs, matching the observed data type.
    """
    times = np.asarray(times, dtype=float)
    model = DEBKissModel.for_observations(times, method=method, step_size=step_size)
    traj = model(values)
    if not traj.is_finite:
        raise ValueError("Cannot synthesize data from a non-finite trajectory.")
    at_obs = traj.at(times)
    rng = np.random.default_rng(seed)
    L_true = at_obs.column("Lw")
    E_true = egg_count(at_obs, yBA=values["yBA"], WB0=values["WB0"])
    L_obs = L_true * np.exp(rng.normal(0.0, float(sdlog_L), size=times.size))
    E_obs = np.round(np.clip(E_true, 0.0, None) * np.exp(rng.normal(0.0, float(sdlog_E), size=times.size)))
    return Observations(
        time=times,
        length=L_obs,
        eggs=E_obs,
        meta={"source": "synthetic", "seed": int(seed), "sdlog_L": float(sdlog_L), "sdlog_E": float(sdlog_E)},
    )
