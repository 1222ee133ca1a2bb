"""Unit tests for likelihood blocks.

Tests for observable resolution, Gaussian and multivariate measurements,
callable blocks and the LogLikelihood container.
"""

import math

import numpy as np
import pytest

from eosmc.config import ConfigurationError
from eosmc.core import (
    CallableBlock,
    GaussianObservableBlock,
    LogLikelihood,
    MultivariateGaussianBlock,
    Parameters,
    make_likelihood_block,
)
from eosmc.core.likelihood import resolve_observable


def double_x(values):
    return 2.0 * values["x"]


class TestResolveObservable:
    """Tests for observable references."""

    def test_parameter_name(self):
        """Test that a plain string reads the parameter value."""
        observable = resolve_observable("x")
        assert observable({"x": 1.5}) == 1.5

    def test_module_reference(self):
        """Test that 'module:function' is imported."""
        observable = resolve_observable("math:fabs")
        assert observable is math.fabs

    def test_callable_passthrough(self):
        """Test that callables are returned unchanged."""
        assert resolve_observable(double_x) is double_x

    def test_unknown_module_reference(self):
        """Test that unresolvable references raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Unknown observable"):
            resolve_observable("no_such_module_xyz:f")


class TestGaussianObservableBlock:
    """Tests for single-observable measurements."""

    def test_log_likelihood_is_normal_density(self):
        """Test that a symmetric measurement is a normal log-density."""
        block = GaussianObservableBlock("m", resolve_observable("x"), -1.0, 0.0, 1.0)
        expected = -0.5 * np.log(2 * np.pi) - 0.5 * 0.5**2
        assert block.evaluate({"x": 0.5}) == pytest.approx(expected)
        assert block.chi_square({"x": 0.5}) == pytest.approx(0.25)
        assert block.degrees_of_freedom == 1

    def test_asymmetric_uncertainties(self):
        """Test that the width depends on the side of the central value."""
        block = GaussianObservableBlock("m", resolve_observable("x"), 1.0, 2.0, 4.0)
        assert block.chi_square({"x": 1.0}) == pytest.approx(1.0)
        assert block.chi_square({"x": 4.0}) == pytest.approx(1.0)

    def test_invalid_ordering_rejected(self):
        """Test that min < central < max is enforced."""
        with pytest.raises(ConfigurationError):
            GaussianObservableBlock("m", double_x, 1.0, 0.0, 2.0)


class TestMultivariateGaussianBlock:
    """Tests for correlated measurements."""

    def test_chi_square_identity_covariance(self):
        """Test that chi-square reduces to a sum of squares."""
        block = MultivariateGaussianBlock(
            "mv", [resolve_observable("a"), resolve_observable("b")], np.zeros(2), np.eye(2)
        )
        assert block.chi_square({"a": 1.0, "b": 2.0}) == pytest.approx(5.0)
        assert block.degrees_of_freedom == 2

    def test_dimension_mismatch_rejected(self):
        """Test that mean and covariance must match the observables."""
        with pytest.raises(ConfigurationError):
            MultivariateGaussianBlock("mv", [double_x], np.zeros(2), np.eye(2))


class TestCallableBlock:
    """Tests for user-supplied log-likelihood functions."""

    def test_default_chi_square(self):
        """Test that chi-square defaults to -2 log L."""
        block = CallableBlock("f", lambda v: -0.5 * v["x"] ** 2)
        assert block.chi_square({"x": 2.0}) == pytest.approx(4.0)

    def test_negative_degrees_of_freedom_rejected(self):
        """Test that degrees of freedom must be non-negative."""
        with pytest.raises(ConfigurationError):
            CallableBlock("f", double_x, degrees_of_freedom=-1)


class TestLogLikelihood:
    """Tests for the block container."""

    def test_sum_of_blocks(self):
        """Test that the log-likelihood is the sum of its blocks."""
        likelihood = LogLikelihood(Parameters())
        likelihood.add(CallableBlock("a", lambda v: -1.0, degrees_of_freedom=2))
        likelihood.add(CallableBlock("b", lambda v: -2.5))
        assert likelihood.evaluate({}) == pytest.approx(-3.5)
        assert likelihood.number_of_observations == 3
        assert len(likelihood) == 2

    def test_duplicate_block_rejected(self):
        """Test that block names are unique."""
        likelihood = LogLikelihood(Parameters())
        likelihood.add(CallableBlock("a", lambda v: 0.0))
        with pytest.raises(ConfigurationError):
            likelihood.add(CallableBlock("a", lambda v: 0.0))


class TestMakeLikelihoodBlock:
    """Tests for building blocks from configuration entries."""

    def test_observable_is_default_type(self):
        """Test that entries without a type are Gaussian observables."""
        block = make_likelihood_block({"name": "m", "observable": "x", "min": 0, "central": 1, "max": 2})
        assert isinstance(block, GaussianObservableBlock)

    def test_multivariate(self):
        """Test a multivariate Gaussian entry."""
        block = make_likelihood_block(
            {"name": "mv", "type": "multivariate_gaussian", "observables": ["a", "b"],
             "mean": [0, 0], "covariance": [[1, 0], [0, 1]]}
        )
        assert block.degrees_of_freedom == 2

    def test_callable(self):
        """Test a callable entry resolved from a module."""
        block = make_likelihood_block(
            {"name": "c", "type": "callable", "function": "math:fabs", "degrees_of_freedom": 0}
        )
        assert block.degrees_of_freedom == 0

    def test_missing_field(self):
        """Test that missing fields raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Missing field"):
            make_likelihood_block({"name": "m", "observable": "x"})

    def test_unknown_type(self):
        """Test that unknown types raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Unknown likelihood type"):
            make_likelihood_block({"name": "m", "type": "poisson"})
