"""Parameter space for posterior evaluation.

A :class:`Parameters` set holds named parameters with a current value and a
valid range. Samplers never work with names directly: they operate on
*points*, i.e. arrays of floats in the order in which the varied parameters
were registered with the posterior. The parameter set only supplies the
values of the parameters that are *not* varied (fixed values), and it is
read-only while sampling is in progress.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from eosmc.config.exceptions import ConfigurationError
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

RANGE_POLICIES = ("reject", "clamp")


class ParameterRangeError(ValueError):
    """Raised when a parameter is set to a value outside of its range."""


@dataclass(frozen=True)
class ParameterRange:
    """Closed interval ``[min, max]`` of admissible values."""

    min: float
    max: float

    def __post_init__(self):
        if not self.min < self.max:
            raise ConfigurationError(
                f"Invalid range: min ({self.min}) must be smaller than max ({self.max})",
                key="range",
                value=(self.min, self.max),
            )

    def __contains__(self, value: float) -> bool:
        return self.min <= value <= self.max

    @property
    def width(self) -> float:
        return self.max - self.min

    @property
    def is_finite(self) -> bool:
        return bool(np.isfinite(self.min) and np.isfinite(self.max))


class Parameter:
    """A named parameter with a current value and a valid range.

    Values are mutated only through :meth:`set`. Out-of-range values are
    rejected or clamped according to the policy of the owning parameter set.
    """

    def __init__(
        self,
        name: str,
        value: float,
        parameter_range: ParameterRange,
        policy: str = "reject",
    ):
        self._name = name
        self._range = parameter_range
        self._policy = policy
        self._value = float(value)
        self.set(value)

    @property
    def name(self) -> str:
        return self._name

    @property
    def range(self) -> ParameterRange:
        return self._range

    @property
    def min(self) -> float:
        return self._range.min

    @property
    def max(self) -> float:
        return self._range.max

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        value = float(value)
        if value not in self._range:
            if self._policy == "clamp":
                clamped = float(np.clip(value, self.min, self.max))
                logger.debug(f"Clamping {self._name}={value} to {clamped}")
                value = clamped
            else:
                raise ParameterRangeError(
                    f"Value {value} for parameter '{self._name}' is outside of "
                    f"its range [{self.min}, {self.max}]"
                )
        self._value = value

    def __float__(self) -> float:
        return self._value

    def __repr__(self) -> str:
        return (
            f"Parameter(name={self._name!r}, value={self._value}, "
            f"range=[{self.min}, {self.max}])"
        )


class Parameters:
    """Ordered collection of named parameters.

    Parameters
    ----------
    policy : str
        Out-of-range policy for :meth:`Parameter.set`, ``"reject"`` (default)
        or ``"clamp"``.

    Examples
    --------
    >>> parameters = Parameters()
    >>> _ = parameters.declare("mass::b", 4.2, 3.8, 5.0)
    >>> parameters["mass::b"].set(4.3)
    >>> parameters.values()
    {'mass::b': 4.3}
    """

    def __init__(self, policy: str = "reject"):
        if policy not in RANGE_POLICIES:
            raise ConfigurationError(
                f"Unknown range policy '{policy}', expected one of {RANGE_POLICIES}",
                key="policy",
                value=policy,
            )
        self._policy = policy
        self._parameters: dict[str, Parameter] = {}

    @classmethod
    def from_config(cls, entries: list[dict], policy: str = "reject") -> Parameters:
        """Build a parameter set from ``[{name, value, min, max}, ...]``."""
        parameters = cls(policy=policy)
        for entry in entries:
            try:
                name = entry["name"]
                minimum = float(entry.get("min", -np.inf))
                maximum = float(entry.get("max", np.inf))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Malformed parameter entry: {entry}", key="parameters", value=entry
                ) from e
            default = 0.5 * (minimum + maximum) if np.isfinite(maximum - minimum) else 0.0
            parameters.declare(name, float(entry.get("value", default)), minimum, maximum)
        return parameters

    @property
    def policy(self) -> str:
        return self._policy

    def declare(
        self,
        name: str,
        value: float,
        minimum: float = -np.inf,
        maximum: float = np.inf,
    ) -> Parameter:
        """Declare a new parameter; redeclaring an existing name is an error."""
        if name in self._parameters:
            raise ConfigurationError(
                f"Parameter '{name}' is declared twice", key="name", value=name
            )
        parameter = Parameter(name, value, ParameterRange(minimum, maximum), self._policy)
        self._parameters[name] = parameter
        return parameter

    def ensure(self, name: str, minimum: float, maximum: float) -> Parameter:
        """Return parameter ``name``, declaring it at the range centre if unknown."""
        if name not in self._parameters:
            centre = 0.5 * (minimum + maximum) if np.isfinite(maximum - minimum) else 0.0
            return self.declare(name, centre, minimum, maximum)
        return self._parameters[name]

    def __getitem__(self, name: str) -> Parameter:
        try:
            return self._parameters[name]
        except KeyError:
            raise KeyError(f"Unknown parameter '{name}'") from None

    def __contains__(self, name: str) -> bool:
        return name in self._parameters

    def __iter__(self) -> Iterator[Parameter]:
        return iter(self._parameters.values())

    def __len__(self) -> int:
        return len(self._parameters)

    def names(self) -> list[str]:
        return list(self._parameters)

    def values(self) -> dict[str, float]:
        """Snapshot of all current values, keyed by name."""
        return {name: p.value for name, p in self._parameters.items()}

    def fix(self, name: str, value: float) -> None:
        """Set the value of a parameter that is not varied by the samplers."""
        self[name].set(value)

    def clone(self) -> Parameters:
        """Independent deep copy, e.g. for one evaluator per worker."""
        return copy.deepcopy(self)
