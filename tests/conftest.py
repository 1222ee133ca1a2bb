"""
Pytest Configuration and Fixtures for eosmc
===========================================

Shared fixtures, configuration, and test utilities for the entire test suite.
"""

import threading
from pathlib import Path

import numpy as np
import pytest
import yaml

from eosmc.core import (
    CallableBlock,
    FlatPrior,
    GaussianObservableBlock,
    ParameterRange,
    Parameters,
    build_log_posterior,
)
from eosmc.io import MemoryChunkStore
from eosmc.sampling import (
    MarkovChainSamplerConfig,
    MixtureComponent,
    MixtureDensity,
    PopulationMonteCarloSamplerConfig,
)

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests for workflows")
    config.addinivalue_line("markers", "mcmc: MCMC statistical tests")
    config.addinivalue_line("markers", "pmc: PMC statistical tests")
    config.addinivalue_line("markers", "slow: Slow tests (> 5 seconds)")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)


# ============================================================================
# Posterior Fixtures
# ============================================================================


def make_gaussian_posterior(central: float = 0.0, sigma: float = 1.0, width: float = 10.0):
    """Flat prior on ``x`` times a Gaussian measurement of ``x``."""
    return build_log_posterior(
        Parameters(),
        [(FlatPrior("x", ParameterRange(central - width, central + width)), False)],
        [GaussianObservableBlock("x-meas", "x", central - sigma, central, central + sigma)],
    )


@pytest.fixture
def gaussian_posterior():
    """One-dimensional standard normal posterior on [-10, 10]."""
    return make_gaussian_posterior()


@pytest.fixture
def shifted_posterior():
    """One-dimensional N(3, 1) posterior on [-17, 23]."""
    return make_gaussian_posterior(central=3.0, width=20.0)


@pytest.fixture
def two_dimensional_posterior():
    """Scan parameter ``x`` and nuisance parameter ``y``, independent normals."""
    return build_log_posterior(
        Parameters(),
        [
            (FlatPrior("x", ParameterRange(-10.0, 10.0)), False),
            (FlatPrior("y", ParameterRange(-10.0, 10.0)), True),
        ],
        [
            GaussianObservableBlock("x-meas", "x", -1.0, 0.0, 1.0),
            GaussianObservableBlock("y-meas", "y", 1.0, 2.0, 3.0),
        ],
    )


@pytest.fixture
def counting_posterior_factory():
    """Build a posterior that sets ``stop_event`` after ``limit`` evaluations."""

    def factory(stop_event: threading.Event, limit: int):
        calls = {"n": 0}

        def log_likelihood(values):
            calls["n"] += 1
            if calls["n"] >= limit:
                stop_event.set()
            return -0.5 * values["x"] ** 2

        return build_log_posterior(
            Parameters(),
            [(FlatPrior("x", ParameterRange(-10.0, 10.0)), False)],
            [CallableBlock("counting", log_likelihood)],
        )

    return factory


# ============================================================================
# Sampler Fixtures
# ============================================================================


@pytest.fixture
def memory_store():
    return MemoryChunkStore()


@pytest.fixture
def quick_mcmc_config():
    """Small MCMC configuration for fast tests."""
    return MarkovChainSamplerConfig(
        number_of_chains=2,
        chunk_size=100,
        chunks=2,
        prerun_iterations_min=200,
        prerun_iterations_max=1000,
        prerun_iterations_update=200,
        adaptation_window=200,
        seed=1,
    )


@pytest.fixture
def quick_pmc_config():
    """Small PMC configuration for fast tests."""
    return PopulationMonteCarloSamplerConfig(
        samples_per_component=200,
        final_samples=500,
        max_updates=4,
        minimum_steps=2,
        maximum_relative_std_deviation=0.05,
        seed=0,
    )


def make_random_mixture(seed: int) -> MixtureDensity:
    """Mixture with a random number of components, dimension, weights and covariances."""
    rng = np.random.default_rng(seed)
    ncomponents = int(rng.integers(3, 8))
    dimension = int(rng.integers(1, 5))
    components = []
    for _ in range(ncomponents):
        a = rng.normal(size=(dimension, dimension))
        covariance = a @ a.T + 0.1 * np.eye(dimension)
        mean = rng.normal(scale=3.0, size=dimension)
        components.append(MixtureComponent(rng.uniform(0.01, 1.0), mean, covariance))
    return MixtureDensity(components)


@pytest.fixture
def random_mixture_factory():
    """``factory(seed)`` for randomly generated mixture densities."""
    return make_random_mixture


# ============================================================================
# Configuration File Fixtures
# ============================================================================


ANALYSIS_CONFIG = {
    "metadata": {"config_version": "1.0", "description": "Gaussian test analysis"},
    "parameters": [
        {"name": "x", "value": 0.0, "min": -10.0, "max": 10.0},
        {"name": "z", "value": 1.0, "min": 0.0, "max": 5.0},
    ],
    "priors": [
        {"name": "x-prior", "type": "flat", "parameter": "x", "min": -10.0, "max": 10.0},
        {
            "name": "y-prior",
            "type": "gaussian",
            "parameter": "y",
            "min": -5.0,
            "max": 5.0,
            "lower": 1.0,
            "central": 2.0,
            "upper": 3.0,
            "nuisance": True,
        },
    ],
    "likelihoods": [
        {"name": "x-meas", "type": "observable", "observable": "x", "min": -1.0, "central": 0.0, "max": 1.0},
        {"name": "z-meas", "type": "observable", "observable": "z", "min": 0.5, "central": 1.0, "max": 1.5},
    ],
    "posteriors": [
        {"name": "x-only", "priors": ["x-prior"], "likelihoods": ["x-meas"]},
        {"name": "full", "priors": ["x-prior", "y-prior"], "likelihoods": ["x-meas", "z-meas"], "fix": {"z": 1.2}},
    ],
    "mcmc": {
        "number_of_chains": 2,
        "chunk_size": 100,
        "chunks": 2,
        "prerun_iterations_min": 400,
        "prerun_iterations_max": 2000,
        "prerun_iterations_update": 200,
        "adaptation_window": 200,
        "seed": 3,
    },
    "pmc": {
        "samples_per_component": 200,
        "final_samples": 500,
        "max_updates": 4,
        "minimum_steps": 2,
        "maximum_relative_std_deviation": 0.05,
        "patch_length": 50,
        "seed": 0,
    },
}


@pytest.fixture
def analysis_config_dict():
    """Deep copy of the test analysis configuration."""
    return yaml.safe_load(yaml.safe_dump(ANALYSIS_CONFIG))


@pytest.fixture
def analysis_config_file(tmp_path, analysis_config_dict) -> Path:
    """Test analysis configuration written as YAML."""
    path = tmp_path / "analysis.yaml"
    path.write_text(yaml.safe_dump(analysis_config_dict), encoding="utf-8")
    return path


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
def gaussian_posterior_factory():
    """``factory(central, sigma, width)`` for one-dimensional Gaussian posteriors."""
    return make_gaussian_posterior
