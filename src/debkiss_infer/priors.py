from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

import numpy as np
from scipy import stats


# family -> required hyperparameter names
PRIOR_HYPERS: dict[str, tuple[str, ...]] = {
    "unif": ("min", "max"),
    "norm": ("mean", "sd"),
    "lnorm": ("meanlog", "sdlog"),
    "gamma": ("shape", "rate"),
    "beta": ("shape1", "shape2"),
    "exp": ("rate",),
    "halfnorm": ("sd",),
}


@dataclass(frozen=True)
class Prior:
    """Univariate prior density, named after the R distribution families.

    Hyperparameter names follow the R conventions (``unif(min, max)``,
    ``norm(mean, sd)``, ``lnorm(meanlog, sdlog)``, ...) so that parameter
    declarations read the same as the manuscript.
    """

    family: str
    hypers: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.family not in PRIOR_HYPERS:
            raise ValueError(f"Unknown prior family {self.family!r}; expected one of {sorted(PRIOR_HYPERS)}.")
        required = PRIOR_HYPERS[self.family]
        missing = [k for k in required if k not in self.hypers]
        extra = [k for k in self.hypers if k not in required]
        if missing or extra:
            raise ValueError(
                f"Prior {self.family!r} requires hypers {list(required)} (missing={missing}, unexpected={extra})."
            )
        hypers = {k: float(v) for k, v in self.hypers.items()}
        if not all(np.isfinite(v) for v in hypers.values()):
            raise ValueError(f"Prior {self.family!r} hyperparameters must be finite.")
        object.__setattr__(self, "hypers", hypers)

        h = hypers
        if self.family == "unif" and not (h["max"] > h["min"]):
            raise ValueError("unif prior requires max > min.")
        if self.family == "norm" and h["sd"] <= 0:
            raise ValueError("norm prior requires sd > 0.")
        if self.family == "lnorm" and h["sdlog"] <= 0:
            raise ValueError("lnorm prior requires sdlog > 0.")
        if self.family == "gamma" and (h["shape"] <= 0 or h["rate"] <= 0):
            raise ValueError("gamma prior requires shape > 0 and rate > 0.")
        if self.family == "beta" and (h["shape1"] <= 0 or h["shape2"] <= 0):
            raise ValueError("beta prior requires shape1 > 0 and shape2 > 0.")
        if self.family == "exp" and h["rate"] <= 0:
            raise ValueError("exp prior requires rate > 0.")
        if self.family == "halfnorm" and h["sd"] <= 0:
            raise ValueError("halfnorm prior requires sd > 0.")

    @cached_property
    def dist(self) -> Any:
        """Frozen scipy.stats distribution equivalent to this prior."""
        h = self.hypers
        if self.family == "unif":
            return stats.uniform(loc=h["min"], scale=h["max"] - h["min"])
        if self.family == "norm":
            return stats.norm(loc=h["mean"], scale=h["sd"])
        if self.family == "lnorm":
            return stats.lognorm(s=h["sdlog"], scale=np.exp(h["meanlog"]))
        if self.family == "gamma":
            return stats.gamma(a=h["shape"], scale=1.0 / h["rate"])
        if self.family == "beta":
            return stats.beta(a=h["shape1"], b=h["shape2"])
        if self.family == "exp":
            return stats.expon(scale=1.0 / h["rate"])
        return stats.halfnorm(scale=h["sd"])

    def logpdf(self, x: float) -> float:
        x = float(x)
        if not np.isfinite(x):
            return -np.inf
        lp = float(self.dist.logpdf(x))
        return lp if np.isfinite(lp) else -np.inf

    @property
    def mean(self) -> float:
        return float(self.dist.mean())

    @property
    def std(self) -> float:
        return float(self.dist.std())

    def support(self) -> tuple[float, float]:
        lo, hi = self.dist.support()
        return float(lo), float(hi)

    def sample(self, rng: np.random.Generator, size: int | None = None) -> np.ndarray | float:
        return self.dist.rvs(size=size, random_state=rng)
