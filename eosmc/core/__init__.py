"""Parameter space, priors, likelihood and posterior evaluation.

Public API:
    Parameters: Named parameters with ranges
    make_prior: Build a prior from a configuration entry
    LogLikelihood: Sum of independent likelihood blocks
    LogPosterior: Log-likelihood plus log-priors over varied parameters
    GoodnessOfFit: Chi-square decomposition at a point
"""

from eosmc.core.goodness_of_fit import GoodnessOfFit
from eosmc.core.likelihood import (
    CallableBlock,
    GaussianObservableBlock,
    LogLikelihood,
    MultivariateGaussianBlock,
    make_likelihood_block,
)
from eosmc.core.parameters import Parameter, ParameterRange, ParameterRangeError, Parameters
from eosmc.core.posterior import (
    LogPosterior,
    OptimizationResult,
    ParameterDescription,
    build_log_posterior,
)
from eosmc.core.priors import FlatPrior, GaussianPrior, LogPrior, MultivariateGaussianPrior, make_prior

__all__ = [
    "CallableBlock",
    "FlatPrior",
    "GaussianObservableBlock",
    "GaussianPrior",
    "GoodnessOfFit",
    "LogLikelihood",
    "LogPosterior",
    "LogPrior",
    "MultivariateGaussianBlock",
    "MultivariateGaussianPrior",
    "OptimizationResult",
    "Parameter",
    "ParameterDescription",
    "ParameterRange",
    "ParameterRangeError",
    "Parameters",
    "build_log_posterior",
    "make_likelihood_block",
    "make_prior",
]
