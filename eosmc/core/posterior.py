"""Posterior evaluator.

:class:`LogPosterior` combines a :class:`~eosmc.core.likelihood.LogLikelihood`
with a collection of priors into a single ``evaluate(point) -> float``.
A *point* is an array with one entry per varied parameter, in the order in
which the priors were added.

Evaluation is functional: the values of the parameter set are read as a
snapshot and overlaid with the point for the duration of one call, so the
evaluator may be shared between threads as long as nobody mutates the
parameter set while sampling.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np
from scipy import linalg, optimize

from eosmc.config.exceptions import ConfigurationError
from eosmc.core.goodness_of_fit import GoodnessOfFit
from eosmc.core.likelihood import LogLikelihood
from eosmc.core.parameters import Parameters, ParameterRange
from eosmc.core.priors import LogPrior
from eosmc.sampling.exceptions import DomainError
from eosmc.utils.logging import get_logger, log_operation

logger = get_logger(__name__)

# stands in for -log(0) when the optimizer needs a finite objective
_OPTIMIZER_PENALTY = 1e100


@dataclass(frozen=True)
class ParameterDescription:
    """A varied parameter: its range, prior and role."""

    name: str
    min: float
    max: float
    nuisance: bool
    prior: LogPrior

    @property
    def range(self) -> ParameterRange:
        return ParameterRange(self.min, self.max)

    def describe(self) -> str:
        role = "nuisance" if self.nuisance else "scan"
        return f"{self.prior.describe()} [{role}]"


@dataclass
class OptimizationResult:
    """Mode estimate returned by :meth:`LogPosterior.optimize`."""

    point: np.ndarray
    log_posterior: float
    covariance: np.ndarray
    success: bool
    message: str
    iterations: int


class LogPosterior:
    """Log-likelihood plus log-priors over the varied parameters.

    Parameters
    ----------
    likelihood : LogLikelihood
        Likelihood blocks; its parameter set supplies the values of all
        parameters that are not varied.
    """

    def __init__(self, likelihood: LogLikelihood):
        self.likelihood = likelihood
        self.parameters: Parameters = likelihood.parameters
        self._priors: list[LogPrior] = []
        self._prior_slices: list[slice] = []
        self._descriptions: list[ParameterDescription] = []

    def add(self, prior: LogPrior, nuisance: bool = False) -> None:
        """Vary the parameters covered by ``prior``.

        Raises
        ------
        ConfigurationError
            If any of the parameters already has a prior.
        """
        known = set(self.varied_parameter_names)
        for name in prior.parameter_names:
            if name in known:
                raise ConfigurationError(
                    f"Parameter '{name}' already has a prior", key="priors", value=name
                )

        start = len(self._descriptions)
        for name, parameter_range in zip(prior.parameter_names, prior.ranges):
            self.parameters.ensure(name, parameter_range.min, parameter_range.max)
            self._descriptions.append(
                ParameterDescription(
                    name=name,
                    min=parameter_range.min,
                    max=parameter_range.max,
                    nuisance=nuisance,
                    prior=prior,
                )
            )
        self._priors.append(prior)
        self._prior_slices.append(slice(start, len(self._descriptions)))
        logger.debug(f"Added prior: {prior.describe()}")

    @property
    def parameter_descriptions(self) -> list[ParameterDescription]:
        return list(self._descriptions)

    @property
    def varied_parameter_names(self) -> list[str]:
        return [d.name for d in self._descriptions]

    @property
    def dimension(self) -> int:
        return len(self._descriptions)

    @property
    def scan_indices(self) -> list[int]:
        return [i for i, d in enumerate(self._descriptions) if not d.nuisance]

    @property
    def nuisance_indices(self) -> list[int]:
        return [i for i, d in enumerate(self._descriptions) if d.nuisance]

    @property
    def lower_bounds(self) -> np.ndarray:
        return np.array([d.min for d in self._descriptions])

    @property
    def upper_bounds(self) -> np.ndarray:
        return np.array([d.max for d in self._descriptions])

    def log_prior(self, name: str) -> LogPrior:
        """Prior that covers parameter ``name``."""
        for description in self._descriptions:
            if description.name == name:
                return description.prior
        raise KeyError(f"No prior for parameter '{name}'")

    def _check_point(self, point: np.ndarray) -> np.ndarray:
        point = np.asarray(point, dtype=float).reshape(-1)
        if point.shape != (self.dimension,):
            raise ConfigurationError(
                f"Point has {point.size} entries, posterior varies {self.dimension} parameters",
                key="point",
                value=point.tolist(),
            )
        return point

    def values_at(self, point: np.ndarray) -> dict[str, float]:
        """All parameter values with the varied ones taken from ``point``."""
        point = self._check_point(point)
        values = self.parameters.values()
        values.update(zip(self.varied_parameter_names, point.tolist()))
        return values

    def log_prior_value(self, point: np.ndarray) -> float:
        point = self._check_point(point)
        total = 0.0
        for prior, part in zip(self._priors, self._prior_slices):
            total += prior.log_density(point[part])
            if total == -np.inf:
                break
        return float(total)

    def log_likelihood_value(self, point: np.ndarray) -> float:
        return self.likelihood.evaluate(self.values_at(point))

    def evaluate(self, point: np.ndarray) -> float:
        """Log-posterior at ``point``, ``-inf`` where it is undefined.

        Points outside the parameter ranges, domain errors raised by the
        observables, arithmetic errors and non-finite results all evaluate to
        ``-inf``.
        """
        point = self._check_point(point)
        if np.any(point < self.lower_bounds) or np.any(point > self.upper_bounds):
            return -np.inf

        log_prior = self.log_prior_value(point)
        if not np.isfinite(log_prior):
            return -np.inf

        try:
            log_likelihood = self.log_likelihood_value(point)
        except (DomainError, ArithmeticError) as e:
            logger.debug(f"Posterior undefined at {point.tolist()}: {e}")
            return -np.inf

        result = log_prior + log_likelihood
        if not np.isfinite(result):
            return -np.inf
        return float(result)

    __call__ = evaluate

    def sample_point_from_priors(self, rng: np.random.Generator) -> np.ndarray:
        return np.concatenate([prior.sample(rng) for prior in self._priors])

    def initial_covariance(self) -> np.ndarray:
        """Block-diagonal covariance assembled from the priors."""
        if not self._priors:
            return np.zeros((0, 0))
        return linalg.block_diag(*[prior.covariance() for prior in self._priors])

    def clone(self) -> LogPosterior:
        """Independent copy, e.g. one evaluator per worker."""
        return copy.deepcopy(self)

    def optimize(
        self,
        starting_point: np.ndarray | None = None,
        rng: np.random.Generator | None = None,
        max_iterations: int = 10000,
    ) -> OptimizationResult:
        """Find the mode of the posterior.

        Without a starting point, one is drawn from the priors. The
        covariance estimate is the inverse Hessian of the optimizer; it falls
        back to the prior covariance when that is not positive definite.
        """
        if starting_point is None:
            rng = rng if rng is not None else np.random.default_rng()
            starting_point = self.sample_point_from_priors(rng)
        x0 = self._check_point(starting_point)

        def objective(x: np.ndarray) -> float:
            value = self.evaluate(x)
            return -value if np.isfinite(value) else _OPTIMIZER_PENALTY

        bounds = [
            (d.min if np.isfinite(d.min) else None, d.max if np.isfinite(d.max) else None)
            for d in self._descriptions
        ]
        with log_operation("posterior mode finding", logger):
            result = optimize.minimize(
                objective,
                x0,
                method="L-BFGS-B",
                bounds=bounds,
                options={"maxiter": max_iterations},
            )

        covariance = np.atleast_2d(np.asarray(result.hess_inv.todense(), dtype=float))
        covariance = 0.5 * (covariance + covariance.T)
        try:
            np.linalg.cholesky(covariance)
        except np.linalg.LinAlgError:
            logger.warning("Inverse Hessian is not positive definite; using prior covariance")
            covariance = self.initial_covariance()

        best = np.asarray(result.x, dtype=float)
        log_posterior = self.evaluate(best)
        logger.info(
            f"Mode finding {'converged' if result.success else 'stopped'} after "
            f"{result.nit} iterations: log(posterior) = {log_posterior:.6g}"
        )
        return OptimizationResult(
            point=best,
            log_posterior=log_posterior,
            covariance=covariance,
            success=bool(result.success),
            message=str(result.message),
            iterations=int(result.nit),
        )

    def goodness_of_fit(self, point: np.ndarray) -> GoodnessOfFit:
        return GoodnessOfFit.compute(self, self._check_point(point))

    def describe(self) -> list[str]:
        return [d.describe() for d in self._descriptions]


def build_log_posterior(
    parameters: Parameters,
    priors: list[tuple[LogPrior, bool]],
    blocks: list,
    fixed: Mapping[str, float] | None = None,
) -> LogPosterior:
    """Assemble a posterior from priors ``(prior, nuisance)`` and blocks."""
    likelihood = LogLikelihood(parameters)
    for block in blocks:
        likelihood.add(block)
    posterior = LogPosterior(likelihood)
    for prior, nuisance in priors:
        posterior.add(prior, nuisance=nuisance)
    for name, value in (fixed or {}).items():
        if name in posterior.varied_parameter_names:
            raise ConfigurationError(
                f"Cannot fix varied parameter '{name}'", key="fix", value=name
            )
        if name not in parameters:
            raise ConfigurationError(f"Cannot fix unknown parameter '{name}'", key="fix", value=name)
        parameters.fix(name, value)
    return posterior
