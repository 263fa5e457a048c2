from __future__ import annotations

from typing import Callable

import numpy as np
from scipy.integrate import solve_ivp


RHS = Callable[[float, np.ndarray], np.ndarray]

SOLVER_METHODS: tuple[str, ...] = ("rk4", "euler", "lsoda")


def _rk4_step(rhs: RHS, t: float, y: np.ndarray, h: float) -> np.ndarray:
    k1 = rhs(t, y)
    k2 = rhs(t + 0.5 * h, y + 0.5 * h * k1)
    k3 = rhs(t + 0.5 * h, y + 0.5 * h * k2)
    k4 = rhs(t + h, y + h * k3)
    return y + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)


def _euler_step(rhs: RHS, t: float, y: np.ndarray, h: float) -> np.ndarray:
    return y + h * rhs(t, y)


def check_time_grid(times: np.ndarray) -> np.ndarray:
    times = np.asarray(times, dtype=float)
    if times.ndim != 1 or times.size < 2:
        raise ValueError("time grid must be 1D with at least 2 points.")
    if not np.all(np.isfinite(times)):
        raise ValueError("time grid must be finite.")
    if np.any(np.diff(times) <= 0):
        raise ValueError("time grid must be strictly increasing.")
    return times


def integrate_fixed_step(
    rhs: RHS,
    y0: np.ndarray,
    times: np.ndarray,
    *,
    step_size: float,
    method: str = "rk4",
) -> np.ndarray:
    """Integrate dy/dt = rhs(t, y) and return states at ``times`` (n_t, n_y).

    Each output interval is split into the smallest number of equal sub-steps
    not exceeding ``step_size``, so output times are hit exactly. Once the state
    becomes non-finite the remaining rows are filled with NaN.
    """
    if method == "rk4":
        step = _rk4_step
    elif method == "euler":
        step = _euler_step
    else:
        raise ValueError(f"Unknown fixed-step method {method!r}.")
    step_size = float(step_size)
    if not (np.isfinite(step_size) and step_size > 0.0):
        raise ValueError("step_size must be finite and positive.")

    y = np.asarray(y0, dtype=float).copy()
    out = np.full((times.size, y.size), np.nan)
    out[0] = y
    if not np.all(np.isfinite(y)):
        return out
    with np.errstate(all="ignore"):
        for i in range(times.size - 1):
            t0 = float(times[i])
            span = float(times[i + 1]) - t0
            n_sub = max(1, int(np.ceil(span / step_size - 1e-9)))
            h = span / n_sub
            for j in range(n_sub):
                y = step(rhs, t0 + j * h, y, h)
            if not np.all(np.isfinite(y)):
                return out
            out[i + 1] = y
    return out


def integrate_lsoda(
    rhs: RHS,
    y0: np.ndarray,
    times: np.ndarray,
    *,
    rtol: float = 1e-6,
    atol: float = 1e-9,
) -> np.ndarray:
    """Adaptive LSODA integration via scipy; NaN rows on solver failure."""
    y0 = np.asarray(y0, dtype=float)
    out = np.full((times.size, y0.size), np.nan)
    with np.errstate(all="ignore"):
        # a non-finite start or initial slope cannot give a usable solution
        if not (np.all(np.isfinite(y0)) and np.all(np.isfinite(rhs(float(times[0]), y0)))):
            return out
        sol = solve_ivp(
            rhs,
            (float(times[0]), float(times[-1])),
            y0,
            method="LSODA",
            t_eval=times,
            rtol=rtol,
            atol=atol,
        )
    if not sol.success or sol.y.shape[1] != times.size:
        return out
    return np.ascontiguousarray(sol.y.T)


def integrate(
    rhs: RHS,
    y0: np.ndarray,
    times: np.ndarray,
    *,
    method: str = "rk4",
    step_size: float = 0.1,
) -> np.ndarray:
    times = check_time_grid(times)
    if method not in SOLVER_METHODS:
        raise ValueError(f"solver method must be one of {SOLVER_METHODS} (got {method!r}).")
    if method == "lsoda":
        return integrate_lsoda(rhs, y0, times)
    return integrate_fixed_step(rhs, y0, times, step_size=step_size, method=method)
