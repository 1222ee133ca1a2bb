"""End-to-end command-line workflows on the test analysis file."""

import json

import numpy as np
import pytest

from eosmc.cli.commands import _mixture_from_mode
from eosmc.cli.main import main
from eosmc.config import ConfigManager
from eosmc.io import HDF5ChunkStore
from eosmc.sampling import PopulationMonteCarloSampler
from eosmc.sampling.mcmc_sampler import MAIN, PRERUN, PRERUN_RECORD
from eosmc.sampling.pmc_sampler import FINAL_RECORD, PMC


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "results"


def _run(command, config_file, output_dir, *extra):
    return main(
        [command, "--config", str(config_file), "--output-dir", str(output_dir), *map(str, extra)]
    )


class TestMCMCWorkflow:
    """The mcmc command."""

    def test_mcmc_to_hdf5(self, analysis_config_file, output_dir, tmp_path):
        """Test a full MCMC run stored in HDF5 with exported summaries."""
        store_path = tmp_path / "run.h5"
        assert _run("mcmc", analysis_config_file, output_dir, "--output-file", store_path) == 0

        summary = json.loads((output_dir / "mcmc_summary.json").read_text())
        assert summary["parameter_names"] == ["x"]
        assert summary["diagnostics"]["samples_per_chain"] == {"0": 200, "1": 200}
        with np.load(output_dir / "mcmc_samples.npz") as data:
            assert data["chain_0_samples"].shape == (200, 1)

        store = HDF5ChunkStore(store_path)
        assert store.has_record(PRERUN_RECORD)
        assert store.list_chunks(MAIN, 1) == [0, 1]

    def test_mcmc_extend_with_more_chunks(self, analysis_config_file, output_dir, tmp_path):
        """Test that rerunning with more chunks continues the stored chains."""
        store_path = tmp_path / "run.h5"
        assert _run("mcmc", analysis_config_file, output_dir, "--output-file", store_path) == 0
        assert _run(
            "mcmc", analysis_config_file, output_dir, "--output-file", store_path, "--chunks", 3
        ) == 0
        assert HDF5ChunkStore(store_path).list_chunks(MAIN, 0) == [0, 1, 2]

    def test_nuisance_posterior(self, analysis_config_file, output_dir):
        """Test sampling the posterior with a nuisance parameter."""
        assert _run(
            "mcmc", analysis_config_file, output_dir, "--posterior", "full",
            "--no-strict-rvalue", "--seed", 4,
        ) == 0
        summary = json.loads((output_dir / "mcmc_summary.json").read_text())
        assert summary["parameter_names"] == ["x", "y"]


class TestPMCWorkflow:
    """The pmc command and its initialisations."""

    def test_pmc_from_mode(self, analysis_config_file, output_dir):
        """Test PMC started from the posterior mode."""
        assert _run("pmc", analysis_config_file, output_dir) == 0
        summary = json.loads((output_dir / "pmc_summary.json").read_text())
        assert summary["parameters"]["x"]["mean"] == pytest.approx(0.0, abs=0.2)
        assert summary["diagnostics"]["final_samples"] == 500

    def test_prerun_then_pmc(self, analysis_config_file, output_dir, tmp_path):
        """Test the prerun-only MCMC to PMC hand-over through files."""
        prerun = tmp_path / "prerun.h5"
        pmc = tmp_path / "pmc.h5"
        assert _run(
            "mcmc", analysis_config_file, output_dir, "--prerun-only", "--output-file", prerun
        ) == 0
        prerun_store = HDF5ChunkStore(prerun)
        assert prerun_store.indices(PRERUN) == [0, 1]
        assert prerun_store.indices(MAIN) == []

        assert _run(
            "pmc", analysis_config_file, output_dir, "--chains-file", prerun,
            "--patch-length", 50, "--output-file", pmc,
        ) == 0
        assert HDF5ChunkStore(pmc).has_record(FINAL_RECORD)

        assert _run(
            "find-clusters", analysis_config_file, output_dir, "--chains-file", prerun,
            "--patch-length", 50,
        ) == 0
        clusters = json.loads((output_dir / "clusters.json").read_text())
        assert np.sum(clusters["weights"]) == pytest.approx(1.0)

    def test_update_interrupted_run(self, analysis_config_file, output_dir, tmp_path):
        """Test that --update continues a run that has no final samples yet."""
        store_path = tmp_path / "pmc.h5"
        manager = ConfigManager(analysis_config_file)
        posterior = manager.build_posterior("x-only")
        config = manager.get_pmc_config(output_file=str(store_path))
        sampler = PopulationMonteCarloSampler(posterior, config, _mixture_from_mode(posterior, None, 0))
        sampler.run_step()
        sampler.store.close()

        assert _run("pmc", analysis_config_file, output_dir, "--update", "--output-file", store_path) == 0
        store = HDF5ChunkStore(store_path)
        assert store.indices(PMC)[0] == 0
        assert len(store.indices(PMC)) >= 2
        assert store.has_record(FINAL_RECORD)

        # finished runs are not resumed
        assert _run("pmc", analysis_config_file, output_dir, "--update", "--output-file", store_path) == 1

    def test_draw_samples(self, analysis_config_file, output_dir, tmp_path):
        """Test storing one step of unweighted samples."""
        store_path = tmp_path / "draws.h5"
        assert _run(
            "pmc", analysis_config_file, output_dir, "--draw-samples", "--output-file", store_path
        ) == 0
        chunk = HDF5ChunkStore(store_path).last_chunk("pmc-draws", 0)
        assert chunk.points.shape == (200, 1)


class TestPointCommands:
    """The optimize and goodness-of-fit commands."""

    def test_optimize(self, analysis_config_file, output_dir):
        """Test that the mode and its goodness of fit are exported."""
        assert _run("optimize", analysis_config_file, output_dir, "--seed", 1) == 0
        mode = json.loads((output_dir / "mode.json").read_text())
        assert mode["point"][0] == pytest.approx(0.0, abs=1e-3)
        assert mode["goodness_of_fit"]["blocks"][0]["name"] == "x-meas"

    def test_optimize_from_point(self, analysis_config_file, output_dir):
        """Test an explicit starting point."""
        assert _run("optimize", analysis_config_file, output_dir, "--point", 4.0) == 0

    def test_goodness_of_fit_record(self, analysis_config_file, output_dir, tmp_path):
        """Test that the goodness of fit is stored as a record."""
        store_path = tmp_path / "gof.h5"
        assert _run(
            "goodness-of-fit", analysis_config_file, output_dir, "--point", 1.0,
            "--output-file", store_path,
        ) == 0
        assert HDF5ChunkStore(store_path).path.exists()
        summary = json.loads((output_dir / "goodness_of_fit.json").read_text())
        assert summary["total_chi_square"] == pytest.approx(1.0)
