"""Mixture densities used as PMC proposals.

A :class:`MixtureDensity` is a weighted sum of multivariate Gaussian or
Student-t components. Weights are non-negative and sum to one, and
covariances are symmetric positive semi-definite. Every operation that
removes or changes components restores the weight normalisation before it
returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy import special, stats

from eosmc.sampling.exceptions import DegenerateMixtureError
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

WEIGHT_TOLERANCE = 1e-9


@dataclass
class MixtureComponent:
    """One weighted component; ``degrees_of_freedom=None`` means Gaussian."""

    weight: float
    mean: np.ndarray
    covariance: np.ndarray
    degrees_of_freedom: float | None = None

    def __post_init__(self):
        self.mean = np.asarray(self.mean, dtype=float).reshape(-1)
        self.covariance = np.atleast_2d(np.asarray(self.covariance, dtype=float))
        self.weight = float(self.weight)

    @property
    def dimension(self) -> int:
        return self.mean.shape[0]

    def log_density(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(points)
        if self.degrees_of_freedom is None:
            values = stats.multivariate_normal.logpdf(points, mean=self.mean, cov=self.covariance)
        else:
            values = stats.multivariate_t.logpdf(
                points, loc=self.mean, shape=self.covariance, df=self.degrees_of_freedom
            )
        return np.atleast_1d(values)

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        cholesky = np.linalg.cholesky(self.covariance)
        z = rng.standard_normal((size, self.dimension)) @ cholesky.T
        if self.degrees_of_freedom is not None:
            w = rng.chisquare(self.degrees_of_freedom, size)
            z = z * np.sqrt(self.degrees_of_freedom / w)[:, None]
        return self.mean + z

    def describe(self) -> str:
        kind = "Gaussian" if self.degrees_of_freedom is None else f"Student-t(dof={self.degrees_of_freedom})"
        return f"{kind} component, weight {self.weight:.4g}, mean {np.array2string(self.mean, precision=4)}"


def component_r_value(a: MixtureComponent, b: MixtureComponent) -> float:
    """Largest per-parameter R-value between two components.

    The components play the role of two infinitely long chains, so the
    R-value reduces to ``sqrt(1 + var(means) / mean(variances))``.
    """
    means = np.stack([a.mean, b.mean])
    variances = np.stack([np.diag(a.covariance), np.diag(b.covariance)])
    between = np.var(means, axis=0, ddof=1)
    within = np.mean(variances, axis=0)
    return float(np.max(np.sqrt(1.0 + between / within)))


def merge_components(a: MixtureComponent, b: MixtureComponent) -> MixtureComponent:
    """Moment-preserving merge of two components."""
    weight = a.weight + b.weight
    if weight <= 0.0:
        fa = fb = 0.5
    else:
        fa, fb = a.weight / weight, b.weight / weight
    mean = fa * a.mean + fb * b.mean
    da, db = a.mean - mean, b.mean - mean
    covariance = fa * (a.covariance + np.outer(da, da)) + fb * (b.covariance + np.outer(db, db))
    return MixtureComponent(weight, mean, 0.5 * (covariance + covariance.T), a.degrees_of_freedom)


class MixtureDensity:
    """Weighted sum of components.

    Examples
    --------
    >>> mixture = MixtureDensity([
    ...     MixtureComponent(0.5, [0.0], [[1.0]]),
    ...     MixtureComponent(0.5, [3.0], [[1.0]]),
    ... ])
    >>> points, labels = mixture.sample_many(np.random.default_rng(0), 10)
    """

    def __init__(self, components: list[MixtureComponent]):
        if not components:
            raise DegenerateMixtureError("Mixture density needs at least one component")
        self.components = list(components)
        self.normalize()
        self.validate()

    @property
    def dimension(self) -> int:
        return self.components[0].dimension

    def __len__(self) -> int:
        return len(self.components)

    @property
    def weights(self) -> np.ndarray:
        return np.array([c.weight for c in self.components])

    def validate(self) -> None:
        """Check the mixture invariants.

        Raises
        ------
        DegenerateMixtureError
            If weights are negative, non-finite or do not sum to one, or a
            covariance is not symmetric positive semi-definite.
        """
        weights = self.weights
        if not np.all(np.isfinite(weights)) or np.any(weights < 0.0):
            raise DegenerateMixtureError(f"Invalid mixture weights: {weights}")
        if abs(np.sum(weights) - 1.0) > WEIGHT_TOLERANCE:
            raise DegenerateMixtureError(f"Mixture weights sum to {np.sum(weights)}, not 1")
        for k, component in enumerate(self.components):
            if component.dimension != self.dimension:
                raise DegenerateMixtureError(f"Component {k} has dimension {component.dimension}")
            cov = component.covariance
            if not np.allclose(cov, cov.T):
                raise DegenerateMixtureError(f"Covariance of component {k} is not symmetric")
            if np.min(np.linalg.eigvalsh(cov)) < -1e-12 * max(1.0, np.max(np.abs(cov))):
                raise DegenerateMixtureError(
                    f"Covariance of component {k} is not positive semi-definite"
                )

    def normalize(self) -> None:
        total = float(np.sum(self.weights))
        if not np.isfinite(total) or total <= 0.0:
            raise DegenerateMixtureError("All mixture component weights are zero")
        for component in self.components:
            component.weight /= total

    def component_log_densities(self, points: np.ndarray) -> np.ndarray:
        """``log(w_k) + log(p_k(x))`` with shape ``(n_points, n_components)``."""
        points = np.atleast_2d(points)
        columns = []
        for component in self.components:
            log_weight = np.log(component.weight) if component.weight > 0.0 else -np.inf
            columns.append(log_weight + component.log_density(points))
        return np.column_stack(columns)

    def log_evaluate(self, points: np.ndarray) -> np.ndarray:
        return special.logsumexp(self.component_log_densities(points), axis=1)

    def evaluate(self, point: np.ndarray) -> float:
        """Density at a single point."""
        return float(np.exp(self.log_evaluate(np.atleast_2d(point))[0]))

    def responsibilities(self, points: np.ndarray) -> np.ndarray:
        """Posterior component probabilities of each point."""
        log_terms = self.component_log_densities(points)
        return np.exp(log_terms - special.logsumexp(log_terms, axis=1, keepdims=True))

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        """Draw a component index by weight, then a point from it."""
        k = rng.choice(len(self.components), p=self.weights)
        return self.components[k].sample(rng, 1)[0]

    def sample_many(self, rng: np.random.Generator, size: int) -> tuple[np.ndarray, np.ndarray]:
        """``size`` points and the index of the component each came from."""
        labels = rng.choice(len(self.components), size=size, p=self.weights)
        points = np.empty((size, self.dimension))
        for k, component in enumerate(self.components):
            mask = labels == k
            count = int(np.sum(mask))
            if count:
                points[mask] = component.sample(rng, count)
        return points, labels

    def prune(self, minimum_weight: float) -> int:
        """Remove components lighter than ``minimum_weight``; returns the count."""
        kept = [c for c in self.components if c.weight >= minimum_weight]
        removed = len(self.components) - len(kept)
        if not kept:
            raise DegenerateMixtureError(
                f"All {len(self.components)} components fall below weight {minimum_weight}"
            )
        self.components = kept
        self.normalize()
        if removed:
            logger.debug(f"Pruned {removed} component(s) below weight {minimum_weight}")
        return removed

    def merge(
        self,
        distance_threshold: float | None = None,
        r_value_threshold: float | None = None,
    ) -> int:
        """Merge redundant components; returns the number of merges.

        Two components are redundant when the Mahalanobis distance between
        their means (under their average covariance) is below
        ``distance_threshold``, or when their R-value is below
        ``r_value_threshold``.
        """
        if distance_threshold is None and r_value_threshold is None:
            return 0
        merges = 0
        merged = True
        while merged and len(self.components) > 1:
            merged = False
            for i in range(len(self.components)):
                for j in range(i + 1, len(self.components)):
                    a, b = self.components[i], self.components[j]
                    if self._redundant(a, b, distance_threshold, r_value_threshold):
                        self.components[i] = merge_components(a, b)
                        del self.components[j]
                        merges += 1
                        merged = True
                        break
                if merged:
                    break
        self.normalize()
        if merges:
            logger.debug(f"Merged {merges} redundant component pair(s)")
        return merges

    @staticmethod
    def _redundant(
        a: MixtureComponent,
        b: MixtureComponent,
        distance_threshold: float | None,
        r_value_threshold: float | None,
    ) -> bool:
        if distance_threshold is not None:
            delta = a.mean - b.mean
            average = 0.5 * (a.covariance + b.covariance)
            distance = float(np.sqrt(delta @ np.linalg.solve(average, delta)))
            if distance < distance_threshold:
                return True
        if r_value_threshold is not None:
            if component_r_value(a, b) < r_value_threshold:
                return True
        return False

    def to_arrays(self) -> dict[str, Any]:
        dof = self.components[0].degrees_of_freedom
        return {
            "weights": self.weights,
            "means": np.stack([c.mean for c in self.components]),
            "covariances": np.stack([c.covariance for c in self.components]),
            "degrees_of_freedom": dof,
        }

    @classmethod
    def from_arrays(cls, arrays: dict[str, Any]) -> MixtureDensity:
        dof = arrays.get("degrees_of_freedom")
        return cls(
            [
                MixtureComponent(w, m, c, dof)
                for w, m, c in zip(
                    np.asarray(arrays["weights"]),
                    np.asarray(arrays["means"]),
                    np.asarray(arrays["covariances"]),
                )
            ]
        )

    def copy(self) -> MixtureDensity:
        return MixtureDensity.from_arrays(self.to_arrays())

    def describe(self) -> list[str]:
        return [c.describe() for c in self.components]
