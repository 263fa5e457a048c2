from __future__ import annotations

from typing import Mapping

import numpy as np

from .debkiss import Trajectory
from .observations import Observations


# Offset added to observed and predicted values so zero egg counts have a density.
OBS_EPS = 1e-6

_LOG_SQRT_2PI = 0.5 * np.log(2.0 * np.pi)


def lognormal_logpdf(x: np.ndarray, meanlog: np.ndarray, sdlog: float) -> np.ndarray:
    """Elementwise log density of LogNormal(meanlog, sdlog) at x > 0."""
    logx = np.log(x)
    z = (logx - meanlog) / sdlog
    return -0.5 * z * z - np.log(sdlog) - logx - _LOG_SQRT_2PI


def log_likelihood(
    trajectory: Trajectory,
    observations: Observations,
    observation_params: Mapping[str, float],
) -> float:
    """Log-normal observation model for shell length and cumulative eggs.

    Observed length L ~ LogNormal(log(Lw + eps), sdlog.L) and observed eggs
    Egg + eps ~ LogNormal(log(WR * yBA / WB0 + eps), sdlog.E), independently at
    each observation time. Returns -inf for a non-finite trajectory or a
    non-positive scale, never raises for bad parameter values.
    """
    sd_L = float(observation_params["sdlog.L"])
    sd_E = float(observation_params["sdlog.E"])
    yBA = float(observation_params["yBA"])
    WB0 = float(observation_params["WB0"])
    for v in (sd_L, sd_E, yBA, WB0):
        if not (np.isfinite(v) and v > 0.0):
            return -np.inf
    if not trajectory.is_finite:
        return -np.inf

    sim = trajectory.at(observations.time)

    with np.errstate(all="ignore"):
        L_pred = sim.column("Lw") + OBS_EPS
        E_pred = sim.column("WR") * yBA / WB0 + OBS_EPS
        if np.any(L_pred <= 0.0) or np.any(E_pred <= 0.0):
            return -np.inf
        ll_L = lognormal_logpdf(observations.length, np.log(L_pred), sd_L)
        ll_E = lognormal_logpdf(observations.eggs + OBS_EPS, np.log(E_pred), sd_E)
        total = float(np.sum(ll_L) + np.sum(ll_E))
    return total if np.isfinite(total) else -np.inf

