"""Random-walk Metropolis-Hastings chain.

A :class:`MarkovChain` owns its state, its proposal and its random number
generator; it shares only the read-only posterior with other chains, so any
number of chains may be advanced concurrently.

Status transitions::

    IDLE -> RUNNING -> (ADAPTING <-> RUNNING) -> FINISHED

Adaptation happens only through :meth:`MarkovChain.adapt`, which the
orchestrators call between blocks of iterations.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np

from eosmc.sampling.exceptions import DomainError, SamplingError
from eosmc.sampling.proposal import ProposalFunction
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)


class ChainStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    ADAPTING = "adapting"
    FINISHED = "finished"


@dataclass
class ChainState:
    """Mutable run state of one chain."""

    point: np.ndarray
    log_posterior: float
    accepted: int = 0
    rejected: int = 0
    iterations: int = 0

    @property
    def acceptance_rate(self) -> float:
        if self.iterations == 0:
            return 0.0
        return self.accepted / self.iterations

    def to_dict(self) -> dict[str, Any]:
        return {
            "point": self.point.tolist(),
            "log_posterior": self.log_posterior,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "iterations": self.iterations,
        }

    @classmethod
    def from_dict(cls, state: dict[str, Any]) -> ChainState:
        return cls(
            point=np.asarray(state["point"], dtype=float),
            log_posterior=float(state["log_posterior"]),
            accepted=int(state["accepted"]),
            rejected=int(state["rejected"]),
            iterations=int(state["iterations"]),
        )


@dataclass
class ChainBlock:
    """History of one block: one record per iteration, rejections included."""

    points: np.ndarray
    log_posteriors: np.ndarray
    accepted: int

    def __len__(self) -> int:
        return len(self.log_posteriors)

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / len(self) if len(self) else 0.0


def acceptance_probability(
    log_posterior_current: float,
    log_posterior_candidate: float,
    hastings: float = 0.0,
) -> float:
    """Metropolis-Hastings acceptance probability.

    ``min(1, exp(candidate - current + hastings))``; a candidate at ``-inf``
    is never accepted and any finite candidate replaces a current ``-inf``.
    """
    if log_posterior_candidate == -np.inf:
        return 0.0
    if log_posterior_current == -np.inf:
        return 1.0
    delta = log_posterior_candidate - log_posterior_current + hastings
    return 1.0 if delta >= 0.0 else float(np.exp(delta))


class MarkovChain:
    """Single Metropolis-Hastings chain.

    Parameters
    ----------
    log_posterior : callable
        ``log_posterior(point) -> float``. Domain errors and non-finite
        values are treated as ``-inf``.
    proposal : ProposalFunction
        Proposal density; owned by this chain.
    initial_point : array_like
        Starting point.
    rng : numpy.random.Generator
        Random source owned by this chain.
    index : int
        Chain index, used in logs and storage keys.
    adaptation_window : int
        Number of most recent history points used to re-estimate the
        proposal covariance.
    """

    def __init__(
        self,
        log_posterior: Callable[[np.ndarray], float],
        proposal: ProposalFunction,
        initial_point: np.ndarray,
        rng: np.random.Generator,
        index: int = 0,
        adaptation_window: int = 1000,
    ):
        self.log_posterior = log_posterior
        self.proposal = proposal
        self.rng = rng
        self.index = index
        self.status = ChainStatus.IDLE
        point = np.asarray(initial_point, dtype=float).reshape(-1)
        if point.shape != (proposal.dimension,):
            raise SamplingError(
                f"Initial point has {point.size} entries, proposal has dimension "
                f"{proposal.dimension}",
                error_context={"chain": index},
            )
        self.state = ChainState(point=point, log_posterior=self._evaluate(point))
        self._window: deque[np.ndarray] = deque(maxlen=adaptation_window)
        self._block_accepted = 0
        self._block_iterations = 0

    def _evaluate(self, point: np.ndarray) -> float:
        try:
            value = float(self.log_posterior(point))
        except (DomainError, ArithmeticError):
            return -np.inf
        return value if np.isfinite(value) else -np.inf

    @property
    def dimension(self) -> int:
        return self.proposal.dimension

    @property
    def acceptance_rate(self) -> float:
        return self.state.acceptance_rate

    @property
    def block_acceptance_rate(self) -> float:
        """Acceptance rate since the last adaptation."""
        if self._block_iterations == 0:
            return 0.0
        return self._block_accepted / self._block_iterations

    def propose(self) -> np.ndarray:
        return self.proposal.propose(self.state.point, self.rng)

    def accept_or_reject(self, candidate: np.ndarray, log_posterior_candidate: float) -> bool:
        """Apply the Metropolis-Hastings rule to ``candidate``.

        A uniform variate is drawn on every call so that the random stream
        does not depend on the posterior values.
        """
        u = self.rng.uniform()
        hastings = self.proposal.hastings(self.state.point, candidate)
        probability = acceptance_probability(
            self.state.log_posterior, log_posterior_candidate, hastings
        )
        accept = u < probability
        if accept:
            self.state.point = np.asarray(candidate, dtype=float)
            self.state.log_posterior = float(log_posterior_candidate)
            self.state.accepted += 1
            self._block_accepted += 1
        else:
            self.state.rejected += 1
        self.state.iterations += 1
        self._block_iterations += 1
        self._window.append(self.state.point)
        return accept

    def step(self) -> bool:
        candidate = self.propose()
        return self.accept_or_reject(candidate, self._evaluate(candidate))

    def run(self, iterations: int) -> ChainBlock:
        """Advance the chain by ``iterations`` steps and return their history."""
        if self.status is ChainStatus.FINISHED:
            raise SamplingError("Chain has finished", error_context={"chain": self.index})
        self.status = ChainStatus.RUNNING
        points = np.empty((iterations, self.dimension))
        log_posteriors = np.empty(iterations)
        accepted = 0
        for i in range(iterations):
            accepted += self.step()
            points[i] = self.state.point
            log_posteriors[i] = self.state.log_posterior
        return ChainBlock(points=points, log_posteriors=log_posteriors, accepted=accepted)

    def adapt(
        self,
        acceptance_rate_min: float = 0.15,
        acceptance_rate_max: float = 0.35,
        rescale_factor: float = 1.5,
        covariance_jitter: float = 1e-10,
    ) -> float:
        """Re-estimate and rescale the proposal from the recent history.

        Returns the block acceptance rate the decision was based on.
        """
        self.status = ChainStatus.ADAPTING
        rate = self.block_acceptance_rate
        if self._window:
            updated = self.proposal.adapt(np.array(self._window), covariance_jitter)
            if not updated:
                logger.debug(f"Chain {self.index}: covariance kept, history too degenerate")
        if rate > acceptance_rate_max:
            self.proposal.rescale(rescale_factor)
        elif rate < acceptance_rate_min:
            self.proposal.rescale(1.0 / rescale_factor)
        logger.debug(
            f"Chain {self.index}: acceptance rate {rate:.3f}, proposal scale "
            f"{self.proposal.scale:.4g}"
        )
        self._block_accepted = 0
        self._block_iterations = 0
        self.status = ChainStatus.RUNNING
        return rate

    def extend_history(self, points: np.ndarray) -> None:
        """Refill the adaptation window, e.g. from stored chunks after a restore."""
        self._window.extend(np.asarray(points, dtype=float))

    def finish(self) -> None:
        self.status = ChainStatus.FINISHED

    def checkpoint(self) -> dict[str, Any]:
        """Everything needed to continue the chain bit-identically."""
        return {
            "index": self.index,
            "state": self.state.to_dict(),
            "proposal": self.proposal.to_dict(),
            "rng": self.rng.bit_generator.state,
        }

    @classmethod
    def restore(
        cls,
        checkpoint: dict[str, Any],
        log_posterior: Callable[[np.ndarray], float],
        adaptation_window: int = 1000,
    ) -> MarkovChain:
        """Recreate a chain from :meth:`checkpoint` output."""
        rng = np.random.default_rng()
        rng.bit_generator.state = checkpoint["rng"]
        state = ChainState.from_dict(checkpoint["state"])
        chain = cls.__new__(cls)
        chain.log_posterior = log_posterior
        chain.proposal = ProposalFunction.from_dict(checkpoint["proposal"])
        chain.rng = rng
        chain.index = int(checkpoint["index"])
        chain.status = ChainStatus.RUNNING
        chain.state = state
        chain._window = deque(maxlen=adaptation_window)
        chain._block_accepted = 0
        chain._block_iterations = 0
        return chain
