"""Unit tests for proposal densities.

Tests for the Gaussian, Student-t and independence proposals, adaptation,
rescaling and serialisation.
"""

import numpy as np
import pytest

from eosmc.config import ConfigurationError
from eosmc.sampling import make_proposal
from eosmc.sampling.proposal import (
    IndependenceGaussianProposal,
    MultivariateGaussianProposal,
    MultivariateStudentTProposal,
    ProposalFunction,
)


class TestConstruction:
    """Tests for proposal construction and validation."""

    def test_default_scale(self):
        """Test that the default scale is 2.38^2 / dim."""
        proposal = MultivariateGaussianProposal(np.eye(3))
        assert proposal.scale == pytest.approx(2.38**2 / 3)

    def test_non_positive_definite_rejected(self):
        """Test that the covariance must be positive definite."""
        with pytest.raises(ConfigurationError, match="positive definite"):
            MultivariateGaussianProposal(np.array([[1.0, 2.0], [2.0, 1.0]]))

    def test_asymmetric_covariance_rejected(self):
        """Test that the covariance must be symmetric."""
        with pytest.raises(ConfigurationError, match="symmetric"):
            MultivariateGaussianProposal(np.array([[1.0, 0.5], [0.0, 1.0]]))

    def test_student_t_requires_positive_dof(self):
        """Test that the Student-t proposal needs positive degrees of freedom."""
        with pytest.raises(ConfigurationError):
            make_proposal("MultivariateStudentT", np.eye(2), degrees_of_freedom=None)

    def test_independence_requires_mean(self):
        """Test that the independence proposal needs a mean."""
        with pytest.raises(ConfigurationError, match="mean"):
            make_proposal("IndependenceGaussian", np.eye(2))

    def test_unknown_name(self):
        """Test that unknown proposal names are rejected."""
        with pytest.raises(ConfigurationError, match="Unknown proposal"):
            make_proposal("Hamiltonian", np.eye(2))


class TestDensities:
    """Tests for proposal draws and densities."""

    def test_gaussian_is_symmetric(self, rng):
        """Test that the random-walk proposal has no Hastings correction."""
        proposal = MultivariateGaussianProposal(np.eye(2))
        a, b = np.zeros(2), np.ones(2)
        assert proposal.hastings(a, b) == 0.0
        assert proposal.log_density(a, b) == pytest.approx(proposal.log_density(b, a))

    def test_gaussian_step_covariance(self, rng):
        """Test that steps have covariance scale * covariance."""
        cov = np.array([[2.0, 0.5], [0.5, 1.0]])
        proposal = MultivariateGaussianProposal(cov, scale=0.5)
        steps = np.array([proposal.propose(np.zeros(2), rng) for _ in range(20000)])
        np.testing.assert_allclose(np.cov(steps.T), 0.5 * cov, atol=0.05)

    def test_student_t_has_heavier_tails(self, rng):
        """Test that Student-t steps exceed 4 sigma more often than Gaussian ones."""
        gaussian = MultivariateGaussianProposal(np.eye(1), scale=1.0)
        student = MultivariateStudentTProposal(np.eye(1), degrees_of_freedom=2.0, scale=1.0)
        g = np.array([gaussian.propose(np.zeros(1), rng)[0] for _ in range(5000)])
        t = np.array([student.propose(np.zeros(1), rng)[0] for _ in range(5000)])
        assert np.mean(np.abs(t) > 4.0) > np.mean(np.abs(g) > 4.0)

    def test_independence_hastings_correction(self):
        """Test the Hastings term of the asymmetric independence proposal."""
        proposal = IndependenceGaussianProposal(np.eye(1), mean=np.zeros(1), scale=1.0)
        current, candidate = np.array([1.0]), np.array([2.0])
        # log q(current) - log q(candidate) = -(1 - 4) / 2
        assert proposal.hastings(current, candidate) == pytest.approx(1.5)


class TestAdaptation:
    """Tests for rescaling and covariance re-estimation."""

    def test_rescale(self):
        """Test multiplicative rescaling."""
        proposal = MultivariateGaussianProposal(np.eye(2), scale=1.0)
        proposal.rescale(1.5)
        proposal.rescale(1.5)
        assert proposal.scale == pytest.approx(2.25)

    def test_rescale_requires_positive_factor(self):
        """Test that non-positive factors raise ValueError."""
        with pytest.raises(ValueError):
            MultivariateGaussianProposal(np.eye(2)).rescale(0.0)

    def test_adapt_from_history(self, rng):
        """Test that adaptation adopts the history covariance."""
        proposal = MultivariateGaussianProposal(np.eye(2))
        history = rng.multivariate_normal(np.zeros(2), [[4.0, 1.0], [1.0, 2.0]], size=5000)
        assert proposal.adapt(history)
        np.testing.assert_allclose(proposal.covariance, [[4.0, 1.0], [1.0, 2.0]], atol=0.3)

    def test_adapt_degenerate_history_keeps_covariance(self):
        """Test that a stuck history leaves the proposal unchanged."""
        proposal = MultivariateGaussianProposal(np.eye(2))
        assert not proposal.adapt(np.zeros((2, 2)))
        np.testing.assert_array_equal(proposal.covariance, np.eye(2))

    def test_independence_adapt_moves_mean(self, rng):
        """Test that the independence proposal moves to the history mean."""
        proposal = IndependenceGaussianProposal(np.eye(1), mean=np.zeros(1))
        history = rng.normal(5.0, 1.0, size=(2000, 1))
        assert proposal.adapt(history)
        assert proposal.mean[0] == pytest.approx(5.0, abs=0.1)


class TestSerialisation:
    """Tests for to_dict / from_dict."""

    @pytest.mark.parametrize(
        "name,kwargs",
        [
            ("MultivariateGaussian", {}),
            ("MultivariateStudentT", {"degrees_of_freedom": 5.0}),
            ("IndependenceGaussian", {"mean": np.array([1.0, -1.0])}),
        ],
    )
    def test_restored_proposal_draws_identically(self, name, kwargs):
        """Test that a restored proposal produces the same candidates."""
        proposal = make_proposal(name, np.array([[2.0, 0.3], [0.3, 1.0]]), scale=0.7, **kwargs)
        restored = ProposalFunction.from_dict(proposal.to_dict())
        a = proposal.propose(np.zeros(2), np.random.default_rng(1))
        b = restored.propose(np.zeros(2), np.random.default_rng(1))
        np.testing.assert_array_equal(a, b)
        assert restored.name == name
