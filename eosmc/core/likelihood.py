"""Log-likelihood built from independent blocks.

The physics library is an opaque collaborator: observables are plain
callables ``observable(values) -> float`` that receive a mapping of parameter
names to values and may raise :class:`~eosmc.sampling.exceptions.DomainError`
for unphysical points. Each :class:`LikelihoodBlock` turns observables into a
log-likelihood contribution and a chi-square for goodness-of-fit reports.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from typing import Any

import numpy as np
from scipy import stats

from eosmc.config.exceptions import ConfigurationError
from eosmc.core.parameters import Parameters
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

Observable = Callable[[Mapping[str, float]], float]


def resolve_observable(reference: str | Observable) -> Observable:
    """Resolve an observable reference.

    ``"package.module:function"`` is imported; any other string is the name
    of a parameter whose value is the observable.
    """
    if callable(reference):
        return reference
    if not isinstance(reference, str) or not reference:
        raise ConfigurationError(
            "Observable must be a callable or a non-empty string",
            key="observable",
            value=reference,
        )
    if ":" in reference:
        module_name, _, attribute = reference.partition(":")
        try:
            module = importlib.import_module(module_name)
            function = getattr(module, attribute)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(
                f"Unknown observable '{reference}'", key="observable", value=reference
            ) from e
        if not callable(function):
            raise ConfigurationError(
                f"Observable '{reference}' is not callable", key="observable", value=reference
            )
        return function

    def parameter_observable(values: Mapping[str, float]) -> float:
        return values[reference]

    parameter_observable.__name__ = reference
    return parameter_observable


class LikelihoodBlock(ABC):
    """One independent contribution to the log-likelihood."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def evaluate(self, values: Mapping[str, float]) -> float:
        """Log-likelihood contribution at ``values``."""

    @abstractmethod
    def chi_square(self, values: Mapping[str, float]) -> float:
        """Chi-square of the block at ``values``."""

    @property
    @abstractmethod
    def degrees_of_freedom(self) -> int:
        """Number of observations constrained by the block."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable one-line description."""


class GaussianObservableBlock(LikelihoodBlock):
    """Measurement ``(min, central, max)`` of a single observable.

    Uncertainties may be asymmetric: the width below the central value is
    ``central - min`` and above it ``max - central``.
    """

    def __init__(
        self,
        name: str,
        observable: Observable,
        minimum: float,
        central: float,
        maximum: float,
    ):
        super().__init__(name)
        if not minimum < central < maximum:
            raise ConfigurationError(
                f"Measurement '{name}' requires min < central < max",
                key=name,
                value=(minimum, central, maximum),
            )
        self.observable = observable
        self.min = float(minimum)
        self.central = float(central)
        self.max = float(maximum)
        self.sigma_lower = self.central - self.min
        self.sigma_upper = self.max - self.central
        self._log_norm = -np.log(np.sqrt(2.0 * np.pi) * 0.5 * (self.sigma_lower + self.sigma_upper))

    def chi_square(self, values: Mapping[str, float]) -> float:
        value = float(self.observable(values))
        sigma = self.sigma_lower if value < self.central else self.sigma_upper
        return ((value - self.central) / sigma) ** 2

    def evaluate(self, values: Mapping[str, float]) -> float:
        return self._log_norm - 0.5 * self.chi_square(values)

    @property
    def degrees_of_freedom(self) -> int:
        return 1

    def describe(self) -> str:
        return f"{self.name} = ({self.min}, {self.central}, {self.max})"


class MultivariateGaussianBlock(LikelihoodBlock):
    """Correlated Gaussian measurement of several observables."""

    def __init__(
        self,
        name: str,
        observables: list[Observable],
        mean: np.ndarray,
        covariance: np.ndarray,
    ):
        super().__init__(name)
        mean = np.asarray(mean, dtype=float)
        covariance = np.atleast_2d(np.asarray(covariance, dtype=float))
        n = len(observables)
        if mean.shape != (n,) or covariance.shape != (n, n):
            raise ConfigurationError(
                f"Measurement '{name}' dimensions do not match {n} observables",
                key=name,
            )
        try:
            self._cholesky = np.linalg.cholesky(covariance)
        except np.linalg.LinAlgError as e:
            raise ConfigurationError(
                f"Covariance of measurement '{name}' is not positive definite", key=name
            ) from e
        self.observables = observables
        self.mean = mean
        self.covariance = covariance
        self._distribution = stats.multivariate_normal(mean=mean, cov=covariance)

    def _predictions(self, values: Mapping[str, float]) -> np.ndarray:
        return np.array([float(o(values)) for o in self.observables])

    def chi_square(self, values: Mapping[str, float]) -> float:
        residual = self._predictions(values) - self.mean
        z = np.linalg.solve(self._cholesky, residual)
        return float(z @ z)

    def evaluate(self, values: Mapping[str, float]) -> float:
        return float(self._distribution.logpdf(self._predictions(values)))

    @property
    def degrees_of_freedom(self) -> int:
        return len(self.observables)

    def describe(self) -> str:
        return f"{self.name}: multivariate Gaussian over {len(self.observables)} observables"


class CallableBlock(LikelihoodBlock):
    """User-supplied log-likelihood function.

    Without an explicit ``chi_square`` function the block reports
    ``-2 * log_likelihood`` as its chi-square.
    """

    def __init__(
        self,
        name: str,
        function: Callable[[Mapping[str, float]], float],
        degrees_of_freedom: int = 1,
        chi_square: Callable[[Mapping[str, float]], float] | None = None,
    ):
        super().__init__(name)
        if degrees_of_freedom < 0:
            raise ConfigurationError(
                f"Block '{name}' has negative degrees of freedom",
                key="degrees_of_freedom",
                value=degrees_of_freedom,
            )
        self.function = function
        self._degrees_of_freedom = int(degrees_of_freedom)
        self._chi_square = chi_square

    def evaluate(self, values: Mapping[str, float]) -> float:
        return float(self.function(values))

    def chi_square(self, values: Mapping[str, float]) -> float:
        if self._chi_square is not None:
            return float(self._chi_square(values))
        return -2.0 * self.evaluate(values)

    @property
    def degrees_of_freedom(self) -> int:
        return self._degrees_of_freedom

    def describe(self) -> str:
        name = getattr(self.function, "__name__", repr(self.function))
        return f"{self.name}: log-likelihood function {name}"


class LogLikelihood:
    """Sum of independent likelihood blocks over a parameter set."""

    def __init__(self, parameters: Parameters):
        self.parameters = parameters
        self._blocks: list[LikelihoodBlock] = []

    def add(self, block: LikelihoodBlock) -> None:
        if any(b.name == block.name for b in self._blocks):
            raise ConfigurationError(
                f"Likelihood block '{block.name}' is added twice", key="name", value=block.name
            )
        self._blocks.append(block)

    def __iter__(self) -> Iterator[LikelihoodBlock]:
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    @property
    def number_of_observations(self) -> int:
        return sum(b.degrees_of_freedom for b in self._blocks)

    def evaluate(self, values: Mapping[str, float]) -> float:
        return float(sum(b.evaluate(values) for b in self._blocks))


def make_likelihood_block(spec: dict[str, Any]) -> LikelihoodBlock:
    """Build a likelihood block from a configuration entry.

    Supported entries:

    - ``{name, type: observable, observable, min, central, max}``
    - ``{name, type: multivariate_gaussian, observables: [...], mean, covariance}``
    - ``{name, type: callable, function: "module:function", degrees_of_freedom}``
    """
    block_type = str(spec.get("type", "observable")).lower()
    try:
        name = spec["name"]
        if block_type == "observable":
            return GaussianObservableBlock(
                name,
                resolve_observable(spec["observable"]),
                float(spec["min"]),
                float(spec["central"]),
                float(spec["max"]),
            )
        if block_type == "multivariate_gaussian":
            return MultivariateGaussianBlock(
                name,
                [resolve_observable(o) for o in spec["observables"]],
                np.asarray(spec["mean"]),
                np.asarray(spec["covariance"]),
            )
        if block_type == "callable":
            chi_square = spec.get("chi_square")
            return CallableBlock(
                name,
                resolve_observable(spec["function"]),
                int(spec.get("degrees_of_freedom", 1)),
                resolve_observable(chi_square) if chi_square else None,
            )
    except KeyError as e:
        raise ConfigurationError(
            f"Missing field {e} in likelihood specification", key="likelihoods", value=spec
        ) from e

    raise ConfigurationError(
        f"Unknown likelihood type: {spec.get('type')!r}", key="type", value=spec.get("type")
    )
