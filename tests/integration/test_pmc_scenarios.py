"""Statistical scenarios for the PMC sampler and the MCMC to PMC pipeline."""

import numpy as np
import pytest

from eosmc.core import FlatPrior, GaussianObservableBlock, ParameterRange, Parameters, build_log_posterior
from eosmc.io import HDF5ChunkStore, MemoryChunkStore
from eosmc.sampling import (
    MarkovChainSampler,
    MarkovChainSamplerConfig,
    MixtureComponent,
    MixtureDensity,
    PopulationMonteCarloSampler,
    PopulationMonteCarloSamplerConfig,
)
from eosmc.sampling.mcmc_sampler import PRERUN
from eosmc.sampling.pmc_sampler import FINAL_RECORD

pytestmark = pytest.mark.pmc


@pytest.fixture
def far_config():
    return PopulationMonteCarloSamplerConfig(
        samples_per_component=500,
        final_samples=2000,
        max_updates=20,
        minimum_steps=2,
        maximum_relative_std_deviation=0.05,
        seed=0,
    )


class TestFarInitialization:
    """A single component started away from the posterior mode."""

    def test_moves_to_posterior(self, shifted_posterior, far_config):
        """Test that the mixture moves to N(3, 1) and the run converges."""
        mixture = MixtureDensity([MixtureComponent(1.0, [0.0], [[4.0]])])
        result = PopulationMonteCarloSampler(shifted_posterior, far_config, mixture).run()
        assert result.converged
        assert np.sum(result.weights) == pytest.approx(1.0)
        assert result.weighted_mean()[0] == pytest.approx(3.0, abs=0.3)
        assert result.mixture.components[0].mean[0] == pytest.approx(3.0, abs=0.3)
        assert result.effective_sample_size / 2000 > 0.5

    def test_evidence(self, shifted_posterior, far_config):
        """Test the evidence of a normalised likelihood under a flat prior."""
        mixture = MixtureDensity([MixtureComponent(1.0, [0.0], [[4.0]])])
        result = PopulationMonteCarloSampler(shifted_posterior, far_config, mixture).run()
        assert result.log_evidence == pytest.approx(-np.log(40.0), abs=0.1)

    def test_student_t_components(self, shifted_posterior, far_config):
        """Test convergence with Student-t components."""
        config = far_config.with_options(degrees_of_freedom=5.0)
        mixture = MixtureDensity([MixtureComponent(1.0, [0.0], [[4.0]])])
        result = PopulationMonteCarloSampler(shifted_posterior, config, mixture).run()
        assert result.weighted_mean()[0] == pytest.approx(3.0, abs=0.3)


class TestBimodalPipeline:
    """MCMC prerun chains clustered into a two-component PMC proposal."""

    @pytest.fixture
    def bimodal_posterior(self):
        """Two measurements of |x| pulling towards x = -4 and x = +4."""
        return build_log_posterior(
            Parameters(),
            [(FlatPrior("x", ParameterRange(-10.0, 10.0)), False)],
            [GaussianObservableBlock("abs-x", lambda v: abs(v["x"]), 3.0, 4.0, 5.0)],
        )

    def test_both_modes_weighted(self, bimodal_posterior):
        """Test that PMC from clustered chains puts equal weight on both modes."""
        rng = np.random.default_rng(3)
        chains = [
            rng.normal(-4.0, 1.0, size=(800, 1)),
            rng.normal(-4.0, 1.0, size=(800, 1)),
            rng.normal(4.0, 1.0, size=(800, 1)),
            rng.normal(4.0, 1.0, size=(800, 1)),
        ]
        config = PopulationMonteCarloSamplerConfig(
            samples_per_component=500,
            final_samples=4000,
            max_updates=10,
            minimum_steps=2,
            maximum_relative_std_deviation=0.05,
            group_by_r_value=1.1,
            patch_length=100,
            seed=2,
        )
        sampler = PopulationMonteCarloSampler.from_chains(bimodal_posterior, config, chains)
        assert len(sampler.mixture) == 2
        result = sampler.run()
        positive = np.sum(result.weights[result.samples[:, 0] > 0.0])
        assert positive == pytest.approx(0.5, abs=0.1)
        assert result.weighted_mean()[0] == pytest.approx(0.0, abs=0.5)

    def test_prerun_chains_from_store(self, gaussian_posterior, tmp_path):
        """Test the stored-prerun to PMC hand-over through an HDF5 file."""
        mcmc_config = MarkovChainSamplerConfig.quick().with_options(
            store_prerun=True, need_main_run=False
        )
        chains_store = HDF5ChunkStore(tmp_path / "prerun.h5")
        MarkovChainSampler(gaussian_posterior, mcmc_config, chains_store).run()
        chains = [chains_store.read_samples(PRERUN, i).points for i in chains_store.indices(PRERUN)]

        pmc_config = PopulationMonteCarloSamplerConfig.quick().with_options(patch_length=50)
        store = MemoryChunkStore()
        result = PopulationMonteCarloSampler.from_chains(
            gaussian_posterior, pmc_config, chains, store=store
        ).run()
        assert store.has_record(FINAL_RECORD)
        assert result.weighted_mean()[0] == pytest.approx(0.0, abs=0.2)
