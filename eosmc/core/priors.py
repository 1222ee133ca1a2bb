"""Prior distributions for posterior evaluation.

Every prior is a :class:`LogPrior` that covers one or more parameters and
exposes ``log_density(values)``, ``sample(rng)`` and ``describe()``. The
values passed in are aligned with :attr:`LogPrior.parameter_names`. Priors
are normalised over their declared range; picking a consistent range and
shape is the caller's responsibility.

Variants
--------
- :class:`FlatPrior`: uniform over ``[min, max]``.
- :class:`GaussianPrior`: asymmetric Gaussian ``(lower, central, upper)``
  with separate widths below and above the central value, truncated to
  ``[min, max]``.
- :class:`MultivariateGaussianPrior`: correlated Gaussian over several
  parameters, truncated to a box.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import numpy as np
from scipy import stats

from eosmc.config.exceptions import ConfigurationError
from eosmc.core.parameters import ParameterRange
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

MAX_REJECTION_ATTEMPTS = 10000


class LogPrior(ABC):
    """Abstract base class for prior densities."""

    @property
    @abstractmethod
    def parameter_names(self) -> list[str]:
        """Names of the parameters covered, in value order."""

    @property
    @abstractmethod
    def ranges(self) -> list[ParameterRange]:
        """Ranges of the parameters covered, in value order."""

    @abstractmethod
    def log_density(self, values: np.ndarray) -> float:
        """Log of the normalised prior density at ``values``."""

    @abstractmethod
    def sample(self, rng: np.random.Generator) -> np.ndarray:
        """Draw one set of values from the prior."""

    @abstractmethod
    def covariance(self) -> np.ndarray:
        """Covariance estimate, used to seed proposal densities."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable one-line description."""

    @property
    def dimension(self) -> int:
        return len(self.parameter_names)

    def __repr__(self) -> str:
        return self.describe()


class FlatPrior(LogPrior):
    """Uniform prior over a finite range."""

    def __init__(self, name: str, parameter_range: ParameterRange):
        if not parameter_range.is_finite:
            raise ConfigurationError(
                f"Flat prior for '{name}' requires a finite range",
                key=name,
                value=(parameter_range.min, parameter_range.max),
            )
        self._name = name
        self._range = parameter_range
        self._log_norm = -np.log(parameter_range.width)

    @property
    def parameter_names(self) -> list[str]:
        return [self._name]

    @property
    def ranges(self) -> list[ParameterRange]:
        return [self._range]

    def log_density(self, values: np.ndarray) -> float:
        x = float(np.asarray(values).reshape(-1)[0])
        if x not in self._range:
            return -np.inf
        return self._log_norm

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        return np.array([rng.uniform(self._range.min, self._range.max)])

    def covariance(self) -> np.ndarray:
        return np.array([[self._range.width**2 / 12.0]])

    def describe(self) -> str:
        return f"Parameter: {self._name}, prior type: flat, range: [{self._range.min},{self._range.max}]"


class GaussianPrior(LogPrior):
    """Asymmetric Gaussian prior truncated to a range.

    The density is ``exp(-0.5 * ((x - central) / sigma)**2)`` with
    ``sigma = central - lower`` below the central value and
    ``sigma = upper - central`` above it, normalised over ``[min, max]``.
    """

    def __init__(
        self,
        name: str,
        parameter_range: ParameterRange,
        lower: float,
        central: float,
        upper: float,
    ):
        if not lower < central < upper:
            raise ConfigurationError(
                f"Gaussian prior for '{name}' requires lower < central < upper",
                key=name,
                value=(lower, central, upper),
            )
        self._name = name
        self._range = parameter_range
        self.lower = float(lower)
        self.central = float(central)
        self.upper = float(upper)
        self.sigma_lower = self.central - self.lower
        self.sigma_upper = self.upper - self.central

        # probability mass below/above the central value (unnormalised)
        self._mass_lower = self._side_mass(
            parameter_range.min, min(self.central, parameter_range.max), self.sigma_lower
        )
        self._mass_upper = self._side_mass(
            max(self.central, parameter_range.min), parameter_range.max, self.sigma_upper
        )
        total = self._mass_lower + self._mass_upper
        if not total > 0.0:
            raise ConfigurationError(
                f"Gaussian prior for '{name}' has no probability mass in "
                f"[{parameter_range.min}, {parameter_range.max}]",
                key=name,
                value=(lower, central, upper),
            )
        self._log_norm = -np.log(total)

    def _side_mass(self, a: float, b: float, sigma: float) -> float:
        if not a < b:
            return 0.0
        za = (a - self.central) / sigma
        zb = (b - self.central) / sigma
        return float(sigma * np.sqrt(2.0 * np.pi) * (stats.norm.cdf(zb) - stats.norm.cdf(za)))

    @property
    def parameter_names(self) -> list[str]:
        return [self._name]

    @property
    def ranges(self) -> list[ParameterRange]:
        return [self._range]

    def log_density(self, values: np.ndarray) -> float:
        x = float(np.asarray(values).reshape(-1)[0])
        if x not in self._range:
            return -np.inf
        sigma = self.sigma_lower if x < self.central else self.sigma_upper
        return self._log_norm - 0.5 * ((x - self.central) / sigma) ** 2

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        p_lower = self._mass_lower / (self._mass_lower + self._mass_upper)
        if rng.uniform() < p_lower:
            sigma = self.sigma_lower
            a, b = self._range.min, min(self.central, self._range.max)
        else:
            sigma = self.sigma_upper
            a, b = max(self.central, self._range.min), self._range.max
        value = stats.truncnorm.rvs(
            (a - self.central) / sigma,
            (b - self.central) / sigma,
            loc=self.central,
            scale=sigma,
            random_state=rng,
        )
        return np.array([float(value)])

    def covariance(self) -> np.ndarray:
        sigma = 0.5 * (self.sigma_lower + self.sigma_upper)
        if self._range.is_finite:
            sigma = min(sigma, self._range.width / np.sqrt(12.0))
        return np.array([[sigma**2]])

    def describe(self) -> str:
        return (
            f"Parameter: {self._name}, prior type: Gaussian, range: "
            f"[{self._range.min},{self._range.max}], x = {self.central} "
            f"+ {self.sigma_upper} - {self.sigma_lower}"
        )


class MultivariateGaussianPrior(LogPrior):
    """Correlated Gaussian prior over several parameters.

    The density is truncated to the box spanned by the parameter ranges.
    The truncation constant is estimated once by Monte Carlo when the box
    does not cover the bulk of the distribution.
    """

    def __init__(
        self,
        names: list[str],
        ranges: list[ParameterRange],
        mean: np.ndarray,
        covariance: np.ndarray,
        normalization_samples: int = 100000,
    ):
        mean = np.asarray(mean, dtype=float)
        covariance = np.atleast_2d(np.asarray(covariance, dtype=float))
        dim = len(names)
        if len(set(names)) != dim:
            raise ConfigurationError(
                "Multivariate prior lists a parameter twice", key="parameters", value=names
            )
        if len(ranges) != dim or mean.shape != (dim,) or covariance.shape != (dim, dim):
            raise ConfigurationError(
                f"Multivariate prior dimensions do not match {dim} parameters",
                key="parameters",
                value=names,
            )
        if not np.allclose(covariance, covariance.T):
            raise ConfigurationError(
                "Multivariate prior covariance must be symmetric", key="covariance"
            )
        try:
            np.linalg.cholesky(covariance)
        except np.linalg.LinAlgError as e:
            raise ConfigurationError(
                "Multivariate prior covariance must be positive definite",
                key="covariance",
            ) from e

        self._names = list(names)
        self._ranges = list(ranges)
        self.mean = mean
        self._covariance = covariance
        self._distribution = stats.multivariate_normal(mean=mean, cov=covariance)
        self._lows = np.array([r.min for r in ranges])
        self._highs = np.array([r.max for r in ranges])

        inside = self._fraction_inside(normalization_samples)
        if inside <= 0.0:
            raise ConfigurationError(
                "Multivariate prior has no probability mass inside its ranges",
                key="parameters",
                value=names,
            )
        self._log_norm = -np.log(inside)

    def _fraction_inside(self, n: int) -> float:
        if np.all(np.isinf(self._lows)) and np.all(np.isinf(self._highs)):
            return 1.0
        rng = np.random.default_rng(0)
        draws = self._distribution.rvs(size=n, random_state=rng).reshape(n, -1)
        inside = np.all((draws >= self._lows) & (draws <= self._highs), axis=1)
        return float(np.mean(inside))

    @property
    def parameter_names(self) -> list[str]:
        return list(self._names)

    @property
    def ranges(self) -> list[ParameterRange]:
        return list(self._ranges)

    def log_density(self, values: np.ndarray) -> float:
        x = np.asarray(values, dtype=float).reshape(-1)
        if np.any(x < self._lows) or np.any(x > self._highs):
            return -np.inf
        return float(self._distribution.logpdf(x)) + self._log_norm

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        for _ in range(MAX_REJECTION_ATTEMPTS):
            x = np.asarray(self._distribution.rvs(random_state=rng), dtype=float).reshape(-1)
            if np.all(x >= self._lows) and np.all(x <= self._highs):
                return x
        raise ConfigurationError(
            f"Could not draw from multivariate prior within its ranges after "
            f"{MAX_REJECTION_ATTEMPTS} attempts",
            key="parameters",
            value=self._names,
        )

    def covariance(self) -> np.ndarray:
        return self._covariance.copy()

    def describe(self) -> str:
        return (
            f"Parameters: {', '.join(self._names)}, prior type: multivariate Gaussian, "
            f"mean: {np.array2string(self.mean, precision=4)}"
        )


def adjust_range(
    hard_range: ParameterRange,
    lower: float,
    central: float,
    upper: float,
    n_sigmas: float,
) -> ParameterRange:
    """Narrow ``hard_range`` to ``n_sigmas`` widths around ``central``.

    The result never extends beyond the hard range supplied by the user.
    """
    if not 0.0 < n_sigmas <= 10.0:
        raise ConfigurationError(
            "Number of sigmas must lie in (0, 10]", key="n_sigmas", value=n_sigmas
        )
    return ParameterRange(
        max(hard_range.min, central - n_sigmas * (central - lower)),
        min(hard_range.max, central + n_sigmas * (upper - central)),
    )


def make_prior(spec: dict[str, Any]) -> LogPrior:
    """Build a prior from a configuration entry.

    Parameters
    ----------
    spec : dict
        One of

        - ``{type: flat, parameter, min, max}``
        - ``{type: gaussian, parameter, min, max, lower, central, upper, n_sigmas?}``
        - ``{type: multivariate_gaussian, parameters, min: [...], max: [...],
          mean: [...], covariance: [[...]]}``

    Raises
    ------
    ConfigurationError
        For unknown types and missing or inconsistent fields.
    """
    prior_type = str(spec.get("type", "")).lower()
    try:
        if prior_type == "flat":
            if "n_sigmas" in spec:
                raise ConfigurationError(
                    "Can't specify number of sigmas for flat prior",
                    key="n_sigmas",
                    value=spec["n_sigmas"],
                )
            return FlatPrior(
                spec["parameter"], ParameterRange(float(spec["min"]), float(spec["max"]))
            )
        if prior_type in ("gaussian", "gauss"):
            lower, central, upper = (
                float(spec["lower"]),
                float(spec["central"]),
                float(spec["upper"]),
            )
            hard_range = ParameterRange(
                float(spec.get("min", -np.inf)), float(spec.get("max", np.inf))
            )
            if "n_sigmas" in spec:
                hard_range = adjust_range(
                    hard_range, lower, central, upper, float(spec["n_sigmas"])
                )
            return GaussianPrior(spec["parameter"], hard_range, lower, central, upper)
        if prior_type in ("multivariate_gaussian", "multivariate"):
            names = list(spec["parameters"])
            mins = spec.get("min", [-np.inf] * len(names))
            maxs = spec.get("max", [np.inf] * len(names))
            ranges = [ParameterRange(float(a), float(b)) for a, b in zip(mins, maxs)]
            return MultivariateGaussianPrior(
                names, ranges, np.asarray(spec["mean"]), np.asarray(spec["covariance"])
            )
    except KeyError as e:
        raise ConfigurationError(
            f"Missing field {e} in {prior_type} prior specification",
            key="priors",
            value=spec,
        ) from e
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(
            f"Malformed {prior_type} prior specification: {e}", key="priors", value=spec
        ) from e

    raise ConfigurationError(
        f"Unknown prior distribution: {spec.get('type')!r}", key="type", value=spec.get("type")
    )
