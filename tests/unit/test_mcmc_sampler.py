"""Unit tests for the MCMC orchestrator.

Tests for the prerun, the main run, storage failures, cancellation and the
R-value parameter selection.
"""

import logging
import threading

import numpy as np
import pytest

from eosmc.io import HDF5ChunkStore, MemoryChunkStore
from eosmc.sampling import MarkovChainSampler, SamplingError, StorageError
from eosmc.sampling.mcmc_sampler import DESCRIPTIONS_RECORD, MAIN, PRERUN, PRERUN_RECORD


class FailingStore(MemoryChunkStore):
    """Memory store that refuses every chunk of one chain."""

    def __init__(self, run_id, index):
        super().__init__()
        self.failing = (run_id, index)

    def _write_chunk(self, run_id, index, chunk, data):
        if (run_id, index) == self.failing:
            raise StorageError("disk full", operation="append")
        super()._write_chunk(run_id, index, chunk, data)


class TestRun:
    """Tests for a complete run."""

    def test_samples_per_chain(self, gaussian_posterior, quick_mcmc_config, memory_store):
        """Test that every chain stores chunks * chunk_size samples."""
        result = MarkovChainSampler(gaussian_posterior, quick_mcmc_config, memory_store).run()
        assert set(result.samples) == {0, 1}
        assert result.samples[0].shape == (200, 1)
        assert result.all_samples.shape == (400, 1)
        assert memory_store.list_chunks(MAIN, 0) == [0, 1]
        assert memory_store.has_record(PRERUN_RECORD)
        assert memory_store.indices(PRERUN) == []
        assert set(result.r_values) == {"x"}
        assert result.prerun_iterations >= quick_mcmc_config.prerun_iterations_min

    def test_store_prerun(self, gaussian_posterior, quick_mcmc_config, memory_store):
        """Test that prerun blocks are stored on request."""
        config = quick_mcmc_config.with_options(store_prerun=True)
        MarkovChainSampler(gaussian_posterior, config, memory_store).run()
        assert memory_store.indices(PRERUN) == [0, 1]

    def test_chain_seeds_differ(self, gaussian_posterior, quick_mcmc_config):
        """Test that chain i is seeded with seed + i."""
        result = MarkovChainSampler(gaussian_posterior, quick_mcmc_config).run()
        assert not np.array_equal(result.samples[0], result.samples[1])

    def test_reproducible(self, gaussian_posterior, quick_mcmc_config):
        """Test that equal seeds give equal samples."""
        a = MarkovChainSampler(gaussian_posterior, quick_mcmc_config).run()
        b = MarkovChainSampler(gaussian_posterior, quick_mcmc_config).run()
        np.testing.assert_array_equal(a.samples[1], b.samples[1])

    def test_without_prerun(self, gaussian_posterior, quick_mcmc_config):
        """Test a single chain main run without prerun."""
        config = quick_mcmc_config.with_options(need_prerun=False, number_of_chains=1)
        result = MarkovChainSampler(gaussian_posterior, config).run()
        assert result.prerun_converged is None
        assert set(result.samples) == {0}
        assert not result.converged

    def test_prerun_only(self, gaussian_posterior, quick_mcmc_config, memory_store):
        """Test that the main run can be skipped."""
        config = quick_mcmc_config.with_options(need_main_run=False)
        result = MarkovChainSampler(gaussian_posterior, config, memory_store).run()
        assert result.samples == {}
        assert memory_store.indices(MAIN) == []
        assert result.r_values

    def test_parallel_chains(self, gaussian_posterior, quick_mcmc_config):
        """Test that threaded chains give the same samples as sequential ones."""
        sequential = MarkovChainSampler(gaussian_posterior, quick_mcmc_config).run()
        parallel = MarkovChainSampler(
            gaussian_posterior, quick_mcmc_config.with_options(parallelize=True)
        ).run()
        np.testing.assert_array_equal(sequential.samples[0], parallel.samples[0])

    def test_zero_dimensional_posterior(self, quick_mcmc_config):
        """Test that a posterior without varied parameters is rejected."""
        from eosmc.core import LogLikelihood, LogPosterior, Parameters

        with pytest.raises(SamplingError):
            MarkovChainSampler(LogPosterior(LogLikelihood(Parameters())), quick_mcmc_config)


class TestPrerunConvergence:
    """Tests for the prerun decision."""

    @pytest.fixture
    def stuck_config(self, quick_mcmc_config):
        """Chains that barely move, so the R-value stays large."""
        return quick_mcmc_config.with_options(
            prerun_iterations_min=200, prerun_iterations_max=200, initial_scale=1e-8
        )

    def test_not_converged_is_flagged(self, gaussian_posterior, stuck_config):
        """Test that non-convergence is reported without raising."""
        result = MarkovChainSampler(gaussian_posterior, stuck_config).run()
        assert result.prerun_converged is False
        assert not result.converged
        assert result.prerun_iterations == 200
        assert result.samples

    def test_strict_raises(self, gaussian_posterior, stuck_config):
        """Test that strict mode turns non-convergence into an error."""
        with pytest.raises(SamplingError, match="did not converge"):
            MarkovChainSampler(gaussian_posterior, stuck_config.with_options(strict=True)).run()

    def test_strict_failure_logs_summary(self, gaussian_posterior, stuck_config, caplog):
        """Test that the run summary is logged before the strict-mode error."""
        caplog.set_level(logging.INFO, logger="eosmc")
        with pytest.raises(SamplingError):
            MarkovChainSampler(gaussian_posterior, stuck_config.with_options(strict=True)).run()
        assert "MCMC SUMMARY" in caplog.text
        assert "NOT converged" in caplog.text

    def test_diagnostic_indices(self, two_dimensional_posterior, quick_mcmc_config):
        """Test the strict and non-strict R-value parameter selection."""
        strict = MarkovChainSampler(two_dimensional_posterior, quick_mcmc_config)
        assert strict.diagnostic_indices == [0, 1]
        loose = MarkovChainSampler(
            two_dimensional_posterior,
            quick_mcmc_config.with_options(use_strict_rvalue_definition=False),
        )
        assert loose.diagnostic_indices == [0]


class TestFailures:
    """Tests for storage failures and cancellation."""

    def test_storage_failure_aborts_one_chain(self, gaussian_posterior, quick_mcmc_config):
        """Test that a failing chain is reported and the others finish."""
        config = quick_mcmc_config.with_options(number_of_chains=4)
        result = MarkovChainSampler(gaussian_posterior, config, FailingStore(MAIN, 1)).run()
        assert set(result.failed_chains) == {1}
        assert "disk full" in result.failed_chains[1]
        assert set(result.samples) == {0, 2, 3}

    def test_prerun_storage_failure_below_two_chains(self, gaussian_posterior, quick_mcmc_config):
        """Test that the prerun stops when fewer than two chains remain."""
        config = quick_mcmc_config.with_options(store_prerun=True)
        with pytest.raises(SamplingError, match="Fewer than two"):
            MarkovChainSampler(gaussian_posterior, config, FailingStore(PRERUN, 0)).run()

    def test_prerun_storage_failure_continues(self, gaussian_posterior, quick_mcmc_config):
        """Test that the prerun continues with the remaining healthy chains."""
        config = quick_mcmc_config.with_options(store_prerun=True, number_of_chains=3)
        result = MarkovChainSampler(gaussian_posterior, config, FailingStore(PRERUN, 2)).run()
        assert set(result.failed_chains) == {2}
        assert set(result.samples) == {0, 1}

    def test_cancelled_before_start(self, gaussian_posterior, quick_mcmc_config, memory_store):
        """Test that a set stop event returns without samples or records."""
        stop_event = threading.Event()
        stop_event.set()
        result = MarkovChainSampler(
            gaussian_posterior, quick_mcmc_config, memory_store, stop_event
        ).run()
        assert result.cancelled
        assert not result.converged
        assert result.samples == {}
        assert not memory_store.has_record(PRERUN_RECORD)

    def test_cancelled_during_prerun(self, counting_posterior_factory, quick_mcmc_config):
        """Test that the sampler stops after the block in flight."""
        stop_event = threading.Event()
        posterior = counting_posterior_factory(stop_event, limit=50)
        result = MarkovChainSampler(posterior, quick_mcmc_config, stop_event=stop_event).run()
        assert result.cancelled
        assert result.prerun_iterations == quick_mcmc_config.prerun_iterations_update

    def test_parameter_mismatch_on_resume(self, gaussian_posterior, quick_mcmc_config, memory_store):
        """Test that a store written for other parameters is rejected."""
        memory_store.write_record(DESCRIPTIONS_RECORD, {"names": ["q"]})
        with pytest.raises(StorageError, match="different parameters"):
            MarkovChainSampler(gaussian_posterior, quick_mcmc_config, memory_store).run()


class TestResume:
    """Tests for resuming from a store."""

    def test_main_run_extends_identically(self, gaussian_posterior, quick_mcmc_config):
        """Test that extending a run gives the samples of an uninterrupted run."""
        store = MemoryChunkStore()
        MarkovChainSampler(gaussian_posterior, quick_mcmc_config, store).run()
        resumed = MarkovChainSampler(
            gaussian_posterior, quick_mcmc_config.with_options(chunks=4), store
        ).run()
        fresh = MarkovChainSampler(
            gaussian_posterior, quick_mcmc_config.with_options(chunks=4)
        ).run()
        for index in (0, 1):
            np.testing.assert_array_equal(resumed.samples[index], fresh.samples[index])

    @pytest.fixture
    def prerun_config(self, quick_mcmc_config):
        """Prerun of at least three stored blocks without main run."""
        return quick_mcmc_config.with_options(
            store_prerun=True, need_main_run=False, prerun_iterations_min=600
        )

    def test_interrupted_prerun_continues(self, counting_posterior_factory, prerun_config, tmp_path):
        """Test that a prerun interrupted after one block continues from the stored chunks."""
        path = tmp_path / "prerun.h5"
        stop_event = threading.Event()
        interrupted = MarkovChainSampler(
            counting_posterior_factory(stop_event, limit=50),
            prerun_config,
            HDF5ChunkStore(path),
            stop_event,
        ).run()
        assert interrupted.cancelled
        store = HDF5ChunkStore(path)
        assert store.list_chunks(PRERUN, 0) == [0]
        assert not store.has_record(PRERUN_RECORD)

        never = threading.Event()
        resumed = MarkovChainSampler(
            counting_posterior_factory(never, limit=10**9), prerun_config, store
        ).run()
        fresh_store = MemoryChunkStore()
        fresh = MarkovChainSampler(
            counting_posterior_factory(never, limit=10**9), prerun_config, fresh_store
        ).run()

        assert not resumed.cancelled
        assert resumed.prerun_iterations == fresh.prerun_iterations
        assert store.has_record(PRERUN_RECORD)
        for index in (0, 1):
            chunks = store.list_chunks(PRERUN, index)
            assert chunks == fresh_store.list_chunks(PRERUN, index)
            assert len(chunks) * prerun_config.prerun_iterations_update == resumed.prerun_iterations
            np.testing.assert_array_equal(
                store.read_samples(PRERUN, index).points,
                fresh_store.read_samples(PRERUN, index).points,
            )

    def test_lagging_prerun_chain_is_failed(self, counting_posterior_factory, prerun_config):
        """Test that a chain with fewer stored blocks is not resumed."""
        config = prerun_config.with_options(number_of_chains=3)
        store = FailingStore(PRERUN, 2)
        stop_event = threading.Event()
        MarkovChainSampler(
            counting_posterior_factory(stop_event, limit=50), config, store, stop_event
        ).run()
        assert store.list_chunks(PRERUN, 2) == []

        result = MarkovChainSampler(
            counting_posterior_factory(threading.Event(), limit=10**9), config, store
        ).run()
        assert set(result.failed_chains) == {2}
        assert "0 of 1" in result.failed_chains[2]
        assert len(store.list_chunks(PRERUN, 0)) > 1
