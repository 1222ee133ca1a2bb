"""Samplers over a log-posterior.

Public API:
    MarkovChainSampler: Multi-chain Metropolis-Hastings with an R-value prerun
    PopulationMonteCarloSampler: Adaptive importance sampling with a mixture proposal
    MixtureDensity: Gaussian / Student-t mixture used as PMC proposal
    MarkovChainSamplerConfig, PopulationMonteCarloSamplerConfig: Sampler options
"""

from eosmc.sampling.config import MarkovChainSamplerConfig, PopulationMonteCarloSamplerConfig
from eosmc.sampling.diagnostics import (
    check_convergence,
    compute_r_values,
    effective_sample_size,
    gelman_rubin_r_value,
    perplexity,
)
from eosmc.sampling.exceptions import (
    DegenerateMixtureError,
    DomainError,
    SamplingError,
    StorageError,
)
from eosmc.sampling.hierarchical_clustering import HierarchicalClustering, mixture_from_chains
from eosmc.sampling.markov_chain import MarkovChain
from eosmc.sampling.mcmc_sampler import MarkovChainSampler, MarkovChainSamplerResult
from eosmc.sampling.mixture import MixtureComponent, MixtureDensity
from eosmc.sampling.pmc_sampler import (
    PMCStatus,
    PopulationMonteCarloResult,
    PopulationMonteCarloSampler,
)
from eosmc.sampling.proposal import make_proposal

__all__ = [
    "DegenerateMixtureError",
    "DomainError",
    "HierarchicalClustering",
    "MarkovChain",
    "MarkovChainSampler",
    "MarkovChainSamplerConfig",
    "MarkovChainSamplerResult",
    "MixtureComponent",
    "MixtureDensity",
    "PMCStatus",
    "PopulationMonteCarloResult",
    "PopulationMonteCarloSampler",
    "PopulationMonteCarloSamplerConfig",
    "SamplingError",
    "StorageError",
    "check_convergence",
    "compute_r_values",
    "effective_sample_size",
    "gelman_rubin_r_value",
    "make_proposal",
    "mixture_from_chains",
    "perplexity",
]
