from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as np


ProposalKind = Literal["rw", "rw-unif"]


@dataclass(frozen=True)
class ProposalKernel:
    """Random-walk proposal for a single parameter.

    kind="rw":
        Gaussian step, x' = x + N(0, prop_var). Symmetric, no correction.
    kind="rw-unif":
        Multiplicative uniform step, x' ~ U(x*a/b, x*b/a) with prop_var=(a, b),
        0 < a < b. The proposal stays on the same side of zero as x, so a
        positive scale parameter can never be proposed negative. The forward
        density is 1/(|x|(b/a - a/b)), hence the log Hastings correction
        log q(x|x') - log q(x'|x) = log|x| - log|x'|.
    """

    kind: ProposalKind
    prop_var: float | tuple[float, float]

    def __post_init__(self) -> None:
        if self.kind == "rw":
            var = np.asarray(self.prop_var, dtype=float)
            if var.ndim != 0:
                raise ValueError("rw proposal requires a scalar prop_var.")
            var = float(var)
            if not (np.isfinite(var) and var > 0.0):
                raise ValueError("rw proposal requires a finite prop_var > 0.")
            object.__setattr__(self, "prop_var", var)
        elif self.kind == "rw-unif":
            pv = np.asarray(self.prop_var, dtype=float)
            if pv.shape != (2,):
                raise ValueError("rw-unif proposal requires prop_var=(a, b).")
            a, b = float(pv[0]), float(pv[1])
            if not (np.isfinite(a) and np.isfinite(b) and 0.0 < a < b):
                raise ValueError("rw-unif proposal requires finite 0 < a < b.")
            object.__setattr__(self, "prop_var", (a, b))
        else:
            raise ValueError(f"Unknown proposal kind {self.kind!r}; expected 'rw' or 'rw-unif'.")

    @property
    def symmetric(self) -> bool:
        return self.kind == "rw"

    def propose(self, x: float, rng: np.random.Generator) -> tuple[float, float]:
        """Draw x' given x; return (x', log Hastings correction)."""
        x = float(x)
        if self.kind == "rw":
            return x + float(rng.normal(0.0, np.sqrt(self.prop_var))), 0.0
        a, b = self.prop_var
        if x == 0.0 or not np.isfinite(x):
            # The multiplicative kernel is degenerate at zero; propose an
            # unreachable state so the move is rejected.
            return np.nan, -np.inf
        lo, hi = sorted((x * a / b, x * b / a))
        x_new = float(rng.uniform(lo, hi))
        return x_new, float(np.log(abs(x)) - np.log(abs(x_new)))

    def log_density(self, x_new: float, x: float) -> float:
        """log q(x_new | x), used to check detailed balance."""
        if self.kind == "rw":
            var = float(self.prop_var)
            return float(-0.5 * (x_new - x) ** 2 / var - 0.5 * np.log(2.0 * np.pi * var))
        a, b = self.prop_var
        if x == 0.0:
            return -np.inf
        lo, hi = sorted((x * a / b, x * b / a))
        if not (lo <= x_new <= hi):
            return -np.inf
        return float(-np.log(hi - lo))
