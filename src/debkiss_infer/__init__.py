from .debkiss import DEBKissModel, Trajectory, egg_count, simulate
from .likelihoods import log_likelihood
from .mcmc import MCMCConfig, MCMCInitializationError, SampleTrace, run_chains, run_mcmc
from .observations import Observations, load_observations, synthesize_observations
from .parameters import Parameter, ParameterConfigError, ParameterSet, log_prior, register, setup_parameters, split
from .posterior import TrajectoryEnsemble, predict
from .priors import Prior
from .proposals import ProposalKernel

__all__ = [
    "DEBKissModel",
    "MCMCConfig",
    "MCMCInitializationError",
    "Observations",
    "Parameter",
    "ParameterConfigError",
    "ParameterSet",
    "Prior",
    "ProposalKernel",
    "SampleTrace",
    "Trajectory",
    "TrajectoryEnsemble",
    "egg_count",
    "load_observations",
    "log_likelihood",
    "log_prior",
    "predict",
    "register",
    "run_chains",
    "run_mcmc",
    "setup_parameters",
    "simulate",
    "split",
    "synthesize_observations",
]
