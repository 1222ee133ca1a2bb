"""eosmc: Statistical Sampling of Parameter Posteriors
====================================================

Markov chain Monte Carlo with an R-value controlled prerun and population
Monte Carlo with mixture proposals, over posteriors assembled from priors
and likelihood blocks.

Quick Start:
    >>> from eosmc.config import ConfigManager
    >>> from eosmc.sampling import MarkovChainSampler
    >>>
    >>> config = ConfigManager("analysis.yaml")
    >>> posterior = config.build_posterior()
    >>> result = MarkovChainSampler(posterior, config.get_mcmc_config()).run()
    >>> print(result.converged, result.r_values)
"""

from eosmc._version import __version__
from eosmc.config import ConfigManager, ConfigurationError
from eosmc.core import LogPosterior, Parameters, build_log_posterior
from eosmc.sampling import (
    MarkovChainSampler,
    MarkovChainSamplerConfig,
    PopulationMonteCarloSampler,
    PopulationMonteCarloSamplerConfig,
)

__all__ = [
    "__version__",
    "ConfigManager",
    "ConfigurationError",
    "LogPosterior",
    "MarkovChainSampler",
    "MarkovChainSamplerConfig",
    "Parameters",
    "PopulationMonteCarloSampler",
    "PopulationMonteCarloSamplerConfig",
    "build_log_posterior",
]
