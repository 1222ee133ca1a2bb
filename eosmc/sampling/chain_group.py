"""Group of independent chains with an R-value based prerun decision.

Chains share nothing mutable, so a block may run on a thread pool. The
group joins all chains after every block; only then are R-values computed
and the proposals adapted.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

import numpy as np

from eosmc.sampling.diagnostics import compute_r_values
from eosmc.sampling.exceptions import SamplingError
from eosmc.sampling.markov_chain import ChainBlock, MarkovChain
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)


class PrerunDecision(Enum):
    CONTINUE = "continue"
    CONVERGED = "converged"
    ABORTED = "aborted"


def run_parallel(
    function: Callable,
    items: list,
    parallelize: bool = False,
    max_workers: int | None = None,
) -> list:
    """Apply ``function`` to every item, optionally on a thread pool.

    Results keep the order of ``items``; exceptions propagate.
    """
    if not parallelize or len(items) < 2:
        return [function(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers or len(items)) as executor:
        return list(executor.map(function, items))


class ChainGroup:
    """``K >= 2`` chains advanced in lock-step blocks.

    Parameters
    ----------
    chains : list[MarkovChain]
        Independent chains of equal dimension.
    parameter_names : list[str]
        Names of the point entries, used as R-value keys.
    diagnostic_indices : list[int], optional
        Point entries included in the R-value check; all by default.
    parallelize : bool
        Run blocks on a thread pool.
    """

    def __init__(
        self,
        chains: list[MarkovChain],
        parameter_names: list[str],
        diagnostic_indices: list[int] | None = None,
        parallelize: bool = False,
        max_workers: int | None = None,
    ):
        if len(chains) < 2:
            raise SamplingError(
                f"A chain group needs at least two chains for the R-value, got {len(chains)}"
            )
        self.chains = chains
        self.parameter_names = parameter_names
        self.diagnostic_indices = (
            list(range(len(parameter_names))) if diagnostic_indices is None else diagnostic_indices
        )
        self.parallelize = parallelize
        self.max_workers = max_workers
        self.iterations = 0
        self.last_blocks: list[ChainBlock] = []
        self.r_values: dict[str, float] = {}

    def run_prerun_block(self, iterations: int) -> list[ChainBlock]:
        """Advance every chain by ``iterations`` steps; blocks follow chain order."""
        blocks = run_parallel(
            lambda chain: chain.run(iterations),
            self.chains,
            parallelize=self.parallelize,
            max_workers=self.max_workers,
        )
        self.iterations += iterations
        self.last_blocks = blocks
        return blocks

    def compute_r_value(self) -> dict[str, float]:
        """Per-parameter R-values of the most recent block."""
        if not self.last_blocks:
            raise SamplingError("No block has been run yet")
        chains = np.stack([block.points for block in self.last_blocks])
        self.r_values = compute_r_values(chains, self.parameter_names, self.diagnostic_indices)
        return self.r_values

    @property
    def max_r_value(self) -> float:
        return max(self.r_values.values(), default=float("inf"))

    def decide(
        self,
        threshold: float,
        iterations_min: int,
        iterations_max: int,
    ) -> PrerunDecision:
        """Prerun decision after the most recent block.

        Converged once all R-values are below ``threshold`` and at least
        ``iterations_min`` iterations have run; aborted once
        ``iterations_max`` is reached.
        """
        if self.iterations >= iterations_min and self.max_r_value < threshold:
            return PrerunDecision.CONVERGED
        if self.iterations >= iterations_max:
            return PrerunDecision.ABORTED
        return PrerunDecision.CONTINUE

    def adapt(self, **schedule) -> dict[int, float]:
        """Adapt every chain's proposal; returns block acceptance rates."""
        return {chain.index: chain.adapt(**schedule) for chain in self.chains}

    @property
    def acceptance_rates(self) -> dict[int, float]:
        return {chain.index: chain.acceptance_rate for chain in self.chains}
