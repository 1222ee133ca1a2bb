"""Proposal densities for Metropolis-Hastings chains.

Every proposal owns a covariance matrix and a scalar scale; the effective
covariance is ``scale * covariance``. Both are changed only by
:meth:`ProposalFunction.adapt` and :meth:`ProposalFunction.rescale`, which the
chain calls between blocks of iterations, never within one.

Variants:
    MultivariateGaussianProposal: symmetric Gaussian random walk
    MultivariateStudentTProposal: symmetric Student-t random walk
    IndependenceGaussianProposal: asymmetric independence sampler, needs the
        Hastings correction
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import numpy as np
from scipy import stats

from eosmc.config.exceptions import ConfigurationError
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

PROPOSAL_TYPES = ("MultivariateGaussian", "MultivariateStudentT", "IndependenceGaussian")


def _validated_covariance(covariance: np.ndarray) -> np.ndarray:
    covariance = np.atleast_2d(np.asarray(covariance, dtype=float))
    if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
        raise ConfigurationError(
            f"Proposal covariance must be square, got shape {covariance.shape}",
            key="covariance",
        )
    if not np.allclose(covariance, covariance.T):
        raise ConfigurationError("Proposal covariance must be symmetric", key="covariance")
    try:
        np.linalg.cholesky(covariance)
    except np.linalg.LinAlgError as e:
        raise ConfigurationError(
            "Proposal covariance must be positive definite", key="covariance"
        ) from e
    return covariance


class ProposalFunction(ABC):
    """Abstract proposal density ``q(candidate | current)``."""

    name: str = ""
    symmetric: bool = True

    def __init__(self, covariance: np.ndarray, scale: float | None = None):
        self._covariance = _validated_covariance(covariance)
        if scale is None:
            scale = 2.38**2 / self.dimension
        if not scale > 0.0:
            raise ConfigurationError("Proposal scale must be positive", key="scale", value=scale)
        self._scale = float(scale)
        self._update_factor()

    def _update_factor(self) -> None:
        self._cholesky = np.linalg.cholesky(self._scale * self._covariance)

    @property
    def dimension(self) -> int:
        return self._covariance.shape[0]

    @property
    def covariance(self) -> np.ndarray:
        return self._covariance.copy()

    @property
    def scale(self) -> float:
        return self._scale

    @abstractmethod
    def propose(self, current: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """Draw a candidate given the current point."""

    @abstractmethod
    def log_density(self, candidate: np.ndarray, current: np.ndarray) -> float:
        """``log q(candidate | current)``."""

    def hastings(self, current: np.ndarray, candidate: np.ndarray) -> float:
        """Log Hastings correction ``log q(current|candidate) - log q(candidate|current)``."""
        if self.symmetric:
            return 0.0
        return self.log_density(current, candidate) - self.log_density(candidate, current)

    def rescale(self, factor: float) -> None:
        if not factor > 0.0:
            raise ValueError(f"Rescale factor must be positive, got {factor}")
        self._scale *= factor
        self._update_factor()

    def adapt(self, history: np.ndarray, jitter: float = 1e-10) -> bool:
        """Re-estimate the covariance from recent history points.

        Returns False (and leaves the proposal unchanged) when the history
        is too short or degenerate to give a positive definite estimate.
        """
        history = np.asarray(history, dtype=float).reshape(-1, self.dimension)
        if history.shape[0] <= self.dimension:
            return False
        covariance = np.atleast_2d(np.cov(history.T, ddof=1))
        covariance = covariance + jitter * np.eye(self.dimension)
        try:
            np.linalg.cholesky(self._scale * covariance)
        except np.linalg.LinAlgError:
            logger.debug("Skipping proposal adaptation: sample covariance is not positive definite")
            return False
        self._covariance = covariance
        self._update_factor()
        return True

    def describe(self) -> str:
        return f"{self.name}(dimension={self.dimension}, scale={self._scale:.4g})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.name,
            "covariance": self._covariance.tolist(),
            "scale": self._scale,
        }

    @classmethod
    def from_dict(cls, state: dict[str, Any]) -> ProposalFunction:
        return make_proposal(
            state["type"],
            np.asarray(state["covariance"]),
            degrees_of_freedom=state.get("degrees_of_freedom"),
            scale=state["scale"],
            mean=state.get("mean"),
        )


class MultivariateGaussianProposal(ProposalFunction):
    """Gaussian random walk around the current point."""

    name = "MultivariateGaussian"
    symmetric = True

    def propose(self, current: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        z = rng.standard_normal(self.dimension)
        return current + self._cholesky @ z

    def log_density(self, candidate: np.ndarray, current: np.ndarray) -> float:
        return float(
            stats.multivariate_normal.logpdf(
                candidate, mean=current, cov=self._scale * self._covariance
            )
        )


class MultivariateStudentTProposal(ProposalFunction):
    """Student-t random walk with ``degrees_of_freedom`` degrees of freedom."""

    name = "MultivariateStudentT"
    symmetric = True

    def __init__(
        self,
        covariance: np.ndarray,
        degrees_of_freedom: float,
        scale: float | None = None,
    ):
        if degrees_of_freedom is None or not degrees_of_freedom > 0:
            raise ConfigurationError(
                "Number of degrees of freedom for the Student-t proposal must be positive",
                key="student_t_degrees_of_freedom",
                value=degrees_of_freedom,
            )
        self.degrees_of_freedom = float(degrees_of_freedom)
        super().__init__(covariance, scale)

    def propose(self, current: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        z = rng.standard_normal(self.dimension)
        w = rng.chisquare(self.degrees_of_freedom)
        return current + self._cholesky @ z * np.sqrt(self.degrees_of_freedom / w)

    def log_density(self, candidate: np.ndarray, current: np.ndarray) -> float:
        return float(
            stats.multivariate_t.logpdf(
                candidate,
                loc=current,
                shape=self._scale * self._covariance,
                df=self.degrees_of_freedom,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        state = super().to_dict()
        state["degrees_of_freedom"] = self.degrees_of_freedom
        return state


class IndependenceGaussianProposal(ProposalFunction):
    """Gaussian independence sampler: candidates ignore the current point.

    The density is asymmetric in (current, candidate), so chains apply the
    Hastings correction. Adaptation moves the mean to the history mean.
    """

    name = "IndependenceGaussian"
    symmetric = False

    def __init__(
        self,
        covariance: np.ndarray,
        mean: np.ndarray,
        scale: float | None = None,
    ):
        super().__init__(covariance, 1.0 if scale is None else scale)
        mean = np.asarray(mean, dtype=float).reshape(-1)
        if mean.shape != (self.dimension,):
            raise ConfigurationError(
                f"Proposal mean must have {self.dimension} entries", key="mean", value=mean.tolist()
            )
        self.mean = mean

    def propose(self, current: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        z = rng.standard_normal(self.dimension)
        return self.mean + self._cholesky @ z

    def log_density(self, candidate: np.ndarray, current: np.ndarray) -> float:
        return float(
            stats.multivariate_normal.logpdf(
                candidate, mean=self.mean, cov=self._scale * self._covariance
            )
        )

    def adapt(self, history: np.ndarray, jitter: float = 1e-10) -> bool:
        if not super().adapt(history, jitter):
            return False
        self.mean = np.asarray(history, dtype=float).reshape(-1, self.dimension).mean(axis=0)
        return True

    def to_dict(self) -> dict[str, Any]:
        state = super().to_dict()
        state["mean"] = self.mean.tolist()
        return state


def make_proposal(
    name: str,
    covariance: np.ndarray,
    degrees_of_freedom: float | None = None,
    scale: float | None = None,
    mean: np.ndarray | None = None,
) -> ProposalFunction:
    """Create a proposal by name.

    Raises
    ------
    ConfigurationError
        For unknown names, a Student-t proposal without positive degrees of
        freedom, and an independence proposal without a mean.
    """
    if name == "MultivariateGaussian":
        return MultivariateGaussianProposal(covariance, scale)
    if name == "MultivariateStudentT":
        return MultivariateStudentTProposal(covariance, degrees_of_freedom, scale)
    if name == "IndependenceGaussian":
        if mean is None:
            raise ConfigurationError("Independence proposal requires a mean", key="mean")
        return IndependenceGaussianProposal(covariance, mean, scale)
    raise ConfigurationError(
        f"Unknown proposal '{name}', expected one of {PROPOSAL_TYPES}", key="proposal", value=name
    )
