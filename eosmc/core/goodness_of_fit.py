"""Goodness-of-fit report at a parameter point.

Decomposes the chi-square of a posterior's likelihood into its blocks and
computes the p-value of the total with ``observations - varied parameters``
degrees of freedom.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import stats

from eosmc.utils.logging import get_logger

if TYPE_CHECKING:
    from eosmc.core.posterior import LogPosterior

logger = get_logger(__name__)


@dataclass
class BlockChiSquare:
    """Chi-square contribution of a single likelihood block."""

    name: str
    chi_square: float
    degrees_of_freedom: int
    description: str = ""

    @property
    def p_value(self) -> float:
        if self.degrees_of_freedom <= 0 or not np.isfinite(self.chi_square):
            return float("nan")
        return float(stats.chi2.sf(self.chi_square, self.degrees_of_freedom))


@dataclass
class GoodnessOfFit:
    """Chi-square decomposition of a likelihood at ``point``."""

    point: np.ndarray
    parameter_names: list[str]
    log_posterior: float
    blocks: list[BlockChiSquare] = field(default_factory=list)
    number_of_varied_parameters: int = 0

    @classmethod
    def compute(cls, posterior: LogPosterior, point: np.ndarray) -> GoodnessOfFit:
        point = np.asarray(point, dtype=float)
        values = posterior.values_at(point)
        blocks = [
            BlockChiSquare(
                name=block.name,
                chi_square=float(block.chi_square(values)),
                degrees_of_freedom=block.degrees_of_freedom,
                description=block.describe(),
            )
            for block in posterior.likelihood
        ]
        return cls(
            point=point,
            parameter_names=posterior.varied_parameter_names,
            log_posterior=posterior.evaluate(point),
            blocks=blocks,
            number_of_varied_parameters=len(point),
        )

    @property
    def total_chi_square(self) -> float:
        return float(sum(b.chi_square for b in self.blocks))

    @property
    def number_of_observations(self) -> int:
        return sum(b.degrees_of_freedom for b in self.blocks)

    @property
    def degrees_of_freedom(self) -> int:
        return self.number_of_observations - self.number_of_varied_parameters

    @property
    def p_value(self) -> float:
        """Chi-square survival probability, NaN without degrees of freedom."""
        if self.degrees_of_freedom <= 0:
            return float("nan")
        return float(stats.chi2.sf(self.total_chi_square, self.degrees_of_freedom))

    def log_summary(self) -> None:
        logger.info("=" * 60)
        logger.info("Goodness of fit")
        logger.info("=" * 60)
        for name, value in zip(self.parameter_names, self.point):
            logger.info(f"  {name} = {value:.6g}")
        logger.info(f"  log(posterior) = {self.log_posterior:.6g}")
        for block in self.blocks:
            logger.info(
                f"  {block.name}: chi^2 = {block.chi_square:.4f} "
                f"(dof = {block.degrees_of_freedom})"
            )
        logger.info(
            f"Total chi^2 = {self.total_chi_square:.4f}, dof = {self.degrees_of_freedom}, "
            f"p-value = {self.p_value:.4g}"
        )
        if self.degrees_of_freedom <= 0:
            logger.warning(
                f"{self.number_of_observations} observations do not constrain "
                f"{self.number_of_varied_parameters} varied parameters; no p-value"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "point": self.point.tolist(),
            "parameter_names": list(self.parameter_names),
            "log_posterior": self.log_posterior,
            "blocks": [
                {
                    "name": b.name,
                    "chi_square": b.chi_square,
                    "degrees_of_freedom": b.degrees_of_freedom,
                    "p_value": b.p_value,
                }
                for b in self.blocks
            ],
            "total_chi_square": self.total_chi_square,
            "degrees_of_freedom": self.degrees_of_freedom,
            "p_value": self.p_value,
        }
