"""Reference values and parameter declarations for the pond snail case study.

Initial parameters follow the fits reported for the snail DEBKiss model at the
highest food level; the embryo buffer starts (almost) empty because the data
begin after egg laying.
"""

from __future__ import annotations

import numpy as np

from .parameters import Parameter, ParameterSet, setup_parameters
from .priors import Prior
from .proposals import ProposalKernel


SNAIL_INITIAL_STATE: dict[str, float] = {"WB": 0.000001, "Lw": 12.8, "WR": 0.0}

SNAIL_PARAMS: dict[str, float] = {
    "deltaM": 0.401,
    "f": 1.0,
    "fb": 0.8,
    "JAM": 0.11,
    "yAX": 0.8,
    "kappa": 0.89,
    "logJMv": float(np.log(0.008)),
    "yVA": 0.8,
    "yAV": 0.8,
    "dV": 0.1,
    "Wp": 70.0,
    "yBA": 0.95,
    "WB0": 0.15,
}

# Snail data span 0-148 days; trajectories are reported on a finer grid.
SNAIL_TIME_HORIZON = 160.0
SNAIL_ITERATIONS = 20000
SNAIL_BURNIN = 1000
SNAIL_THIN = 10


def reference_values(**overrides: float) -> dict[str, float]:
    """All model values (parameters and initial state) with optional overrides."""
    out = {**SNAIL_PARAMS, **SNAIL_INITIAL_STATE}
    for k, v in overrides.items():
        if k not in out:
            raise KeyError(f"Unknown reference value '{k}'.")
        out[k] = float(v)
    return out


def snail_parameters(
    *,
    kappa: float = SNAIL_PARAMS["kappa"],
    logJMv: float = SNAIL_PARAMS["logJMv"],
    sdlog_L: float = 1.0,
    sdlog_E: float = 1.0,
    free_observation_noise: bool = True,
) -> ParameterSet:
    """Declarations used for the snail inference.

    kappa and logJMv are estimated (JMv is small and positive, so it is sampled
    on the log scale); the two log-normal observation scales are estimated with
    the bounded multiplicative kernel. Wp and JAM carry priors but are fixed, as
    fitting them needs all food levels simultaneously.
    """
    p = SNAIL_PARAMS
    rw_unif = ProposalKernel("rw-unif", (4.0, 5.0))
    params = [
        # DEB parameters to estimate
        Parameter(
            "kappa",
            "de",
            kappa,
            fixed=False,
            prior=Prior("unif", {"min": 0.0, "max": 1.0}),
            proposal=ProposalKernel("rw", 0.001),
        ),
        Parameter(
            "logJMv",
            "de",
            logJMv,
            fixed=False,
            prior=Prior("norm", {"mean": 0.0, "sd": 10.0}),
            proposal=ProposalKernel("rw", 0.01),
        ),
        # observation parameters
        Parameter(
            "sdlog.L",
            "obs",
            sdlog_L,
            fixed=not free_observation_noise,
            prior=Prior("lnorm", {"meanlog": 0.0, "sdlog": 1.0}),
            proposal=rw_unif,
        ),
        Parameter(
            "sdlog.E",
            "obs",
            sdlog_E,
            fixed=not free_observation_noise,
            prior=Prior("lnorm", {"meanlog": 0.0, "sdlog": 1.0}),
            proposal=rw_unif,
        ),
        Parameter("Wp", "de", p["Wp"], prior=Prior("lnorm", {"meanlog": 1.0, "sdlog": 0.1}), proposal=rw_unif),
        Parameter("JAM", "de", p["JAM"], prior=Prior("lnorm", {"meanlog": 0.0, "sdlog": 0.1}), proposal=rw_unif),
    ]
    for name in ("deltaM", "f", "fb", "yAX", "yVA", "yAV", "dV"):
        params.append(Parameter(name, "de", p[name]))
    params.append(Parameter("WB0", "obs", p["WB0"]))
    # yBA also converts the embryo buffer, so changing it needs a re-solve
    params.append(Parameter("yBA", "de", p["yBA"]))
    for name, value in SNAIL_INITIAL_STATE.items():
        params.append(Parameter(name, "init", value))
    return setup_parameters(*params)
