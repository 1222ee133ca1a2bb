"""Unit tests for the goodness-of-fit report."""

import numpy as np
import pytest
from scipy import stats

from eosmc.core import (
    FlatPrior,
    GaussianObservableBlock,
    ParameterRange,
    Parameters,
    build_log_posterior,
)
from eosmc.core.goodness_of_fit import BlockChiSquare, GoodnessOfFit


@pytest.fixture
def three_measurements():
    """One varied parameter constrained by three measurements."""
    return build_log_posterior(
        Parameters(),
        [(FlatPrior("x", ParameterRange(-10.0, 10.0)), False)],
        [
            GaussianObservableBlock("m1", "x", -1.0, 0.0, 1.0),
            GaussianObservableBlock("m2", "x", 0.0, 1.0, 2.0),
            GaussianObservableBlock("m3", lambda v: 2.0 * v["x"], -2.0, 0.0, 2.0),
        ],
    )


class TestGoodnessOfFit:
    """Tests for chi-square decomposition and p-values."""

    def test_block_decomposition(self, three_measurements):
        """Test per-block chi-squares and their total."""
        gof = three_measurements.goodness_of_fit(np.array([0.5]))
        assert [b.name for b in gof.blocks] == ["m1", "m2", "m3"]
        np.testing.assert_allclose([b.chi_square for b in gof.blocks], [0.25, 0.25, 0.25])
        assert gof.total_chi_square == pytest.approx(0.75)

    def test_degrees_of_freedom_and_p_value(self, three_measurements):
        """Test dof = observations - varied parameters and the chi2 p-value."""
        gof = three_measurements.goodness_of_fit(np.array([0.5]))
        assert gof.number_of_observations == 3
        assert gof.degrees_of_freedom == 2
        assert gof.p_value == pytest.approx(stats.chi2.sf(0.75, 2))

    def test_no_degrees_of_freedom_gives_nan(self, gaussian_posterior):
        """Test that the p-value is NaN when dof <= 0."""
        gof = gaussian_posterior.goodness_of_fit(np.array([0.0]))
        assert gof.degrees_of_freedom == 0
        assert np.isnan(gof.p_value)
        gof.log_summary()

    def test_log_posterior_reported(self, three_measurements):
        """Test that the report carries the posterior value at the point."""
        point = np.array([0.2])
        gof = GoodnessOfFit.compute(three_measurements, point)
        assert gof.log_posterior == pytest.approx(three_measurements.evaluate(point))

    def test_to_dict(self, three_measurements):
        """Test the serialisable summary."""
        summary = three_measurements.goodness_of_fit(np.array([0.5])).to_dict()
        assert summary["parameter_names"] == ["x"]
        assert summary["degrees_of_freedom"] == 2
        assert len(summary["blocks"]) == 3
        assert summary["blocks"][0]["p_value"] == pytest.approx(stats.chi2.sf(0.25, 1))


class TestBlockChiSquare:
    """Tests for single-block p-values."""

    def test_p_value(self):
        """Test the chi2 survival function of a single block."""
        block = BlockChiSquare("b", 4.0, 2)
        assert block.p_value == pytest.approx(np.exp(-2.0))

    def test_zero_dof_is_nan(self):
        """Test that blocks without observations have no p-value."""
        assert np.isnan(BlockChiSquare("b", 1.0, 0).p_value)
