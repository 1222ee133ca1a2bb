"""Unit tests for result summaries and NPZ exports."""

import json

import numpy as np
import pytest

from eosmc.io import (
    create_mcmc_summary_dict,
    create_pmc_summary_dict,
    save_mcmc_results,
    save_pmc_results,
    save_point_result,
)
from eosmc.io.json_utils import json_safe
from eosmc.sampling import MarkovChainSamplerResult, MixtureComponent, MixtureDensity
from eosmc.sampling.pmc_sampler import PMCStatus, PopulationMonteCarloResult


@pytest.fixture
def mcmc_result():
    rng = np.random.default_rng(0)
    samples = {0: rng.normal(size=(100, 2)), 1: rng.normal(size=(100, 2))}
    return MarkovChainSamplerResult(
        converged=False,
        prerun_converged=False,
        prerun_iterations=400,
        r_values={"x": 1.01, "y": 1.3},
        ess={"x": 150.0, "y": 20.0},
        acceptance_rates={0: 0.25, 1: 0.3},
        failed_chains={2: "disk full"},
        samples=samples,
        log_posteriors={i: np.zeros(100) for i in samples},
    )


@pytest.fixture
def pmc_result():
    mixture = MixtureDensity([MixtureComponent(1.0, [1.0], [[1.0]])])
    return PopulationMonteCarloResult(
        converged=True,
        status=PMCStatus.CONVERGED,
        mixture=mixture,
        samples=np.array([[0.0], [1.0], [2.0], [10.0]]),
        weights=np.array([0.25, 0.5, 0.25, 0.0]),
        log_posteriors=np.zeros(4),
        effective_sample_size=2.67,
        perplexity=0.7,
        log_evidence=-3.0,
    )


class TestMCMCResults:
    """Tests for MCMC summaries."""

    def test_summary_contents(self, mcmc_result):
        """Test diagnostics, statistics and the non-convergence warning."""
        summary = create_mcmc_summary_dict(mcmc_result, ["x", "y"])
        assert summary["method"] == "mcmc"
        assert summary["diagnostics"]["failed_chains"] == {"2": "disk full"}
        assert summary["diagnostics"]["samples_per_chain"] == {"0": 100, "1": 100}
        assert set(summary["parameters"]) == {"x", "y"}
        assert "warning" in summary

    def test_files_written(self, mcmc_result, tmp_path):
        """Test the JSON summary and the per-chain NPZ arrays."""
        summary_file = save_mcmc_results(mcmc_result, ["x", "y"], tmp_path)
        assert json.loads(summary_file.read_text())["parameter_names"] == ["x", "y"]
        with np.load(tmp_path / "mcmc_samples.npz") as data:
            assert set(data.files) == {
                "parameter_names",
                "chain_0_samples",
                "chain_0_log_posteriors",
                "chain_1_samples",
                "chain_1_log_posteriors",
            }
            assert data["chain_1_samples"].shape == (100, 2)


class TestPMCResults:
    """Tests for PMC summaries."""

    def test_weighted_statistics(self, pmc_result):
        """Test that parameter statistics use the importance weights."""
        summary = create_pmc_summary_dict(pmc_result, ["x"])
        statistics = summary["parameters"]["x"]
        assert statistics["mean"] == pytest.approx(1.0)
        assert statistics["std"] == pytest.approx(np.sqrt(0.5))
        assert summary["diagnostics"]["status"] == "converged"
        assert len(summary["mixture"]) == 1

    def test_files_written(self, pmc_result, tmp_path):
        """Test the NPZ export of weighted samples and the mixture."""
        save_pmc_results(pmc_result, ["x"], tmp_path)
        with np.load(tmp_path / "pmc_samples.npz") as data:
            np.testing.assert_array_equal(data["weights"], pmc_result.weights)
            assert data["mixture_means"].shape == (1, 1)


class TestPointResults:
    """Tests for single-point results."""

    def test_point_result(self, tmp_path):
        """Test that numpy payloads are written as JSON."""
        path = save_point_result("mode", {"point": np.array([1.0, 2.0]), "ok": np.bool_(True)}, tmp_path)
        payload = json.loads(path.read_text())
        assert payload["point"] == [1.0, 2.0]
        assert payload["ok"] is True
        assert "timestamp" in payload

    def test_json_safe_nested(self):
        """Test conversion of nested numpy values."""
        converted = json_safe({"a": (np.int64(1), np.float32(0.5)), "b": {"c": np.arange(2)}})
        assert converted == {"a": [1, 0.5], "b": {"c": [0, 1]}}
