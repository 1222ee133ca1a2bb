"""Population Monte Carlo orchestrator.

Each step draws ``samples_per_component`` points per component from the
mixture as a whole, weights them against the posterior and refits the
mixture by importance-weighted expectation maximisation::

    INITIALIZED -> (DRAWING -> WEIGHTING -> UPDATING)* ->
        CONVERGED | MAX_UPDATES_REACHED -> FINAL_SAMPLING -> DONE

Importance weights are computed in log space with the maximum subtracted
before exponentiating. The final samples are self-normalised importance
samples: they are not distributed as the posterior and must always be used
together with their weights.

Every step is stored as one chunk ``("pmc", step)`` whose state holds the
updated mixture and the random number generator, so a run can be resumed
from its last complete step.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy import special

from eosmc.io.chunk_store import ChunkStore, SampleChunk, open_chunk_store
from eosmc.sampling.chain_group import run_parallel
from eosmc.sampling.config import PopulationMonteCarloSamplerConfig
from eosmc.sampling.diagnostics import (
    effective_sample_size,
    log_sampler_summary,
    normalize_log_weights,
    perplexity,
)
from eosmc.sampling.exceptions import DegenerateMixtureError, StorageError
from eosmc.sampling.hierarchical_clustering import mixture_from_chains
from eosmc.sampling.mixture import MixtureComponent, MixtureDensity
from eosmc.utils.logging import get_logger, log_operation, log_performance

if TYPE_CHECKING:
    from eosmc.core.posterior import LogPosterior

logger = get_logger(__name__)

PMC = "pmc"
FINAL_RECORD = "pmc/final"
DRAWS = "pmc-draws"
MAX_SAMPLE_SIZE_GROWTH = 10


class PMCStatus(Enum):
    INITIALIZED = "initialized"
    DRAWING = "drawing"
    WEIGHTING = "weighting"
    UPDATING = "updating"
    CONVERGED = "converged"
    MAX_UPDATES_REACHED = "max_updates_reached"
    FINAL_SAMPLING = "final_sampling"
    DONE = "done"


@dataclass
class PMCStepStatistics:
    """Diagnostics of one PMC step."""

    step: int
    samples: int
    components: int
    effective_sample_size: float
    normalized_ess: float
    perplexity: float
    log_evidence: float

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class PopulationMonteCarloResult:
    """Final mixture, weighted samples and diagnostics of a PMC run."""

    converged: bool
    status: PMCStatus
    mixture: MixtureDensity
    samples: np.ndarray
    weights: np.ndarray
    log_posteriors: np.ndarray
    steps: list[PMCStepStatistics] = field(default_factory=list)
    effective_sample_size: float = 0.0
    perplexity: float = 0.0
    log_evidence: float = float("nan")
    cancelled: bool = False
    execution_time: float = 0.0

    def weighted_mean(self) -> np.ndarray:
        return np.average(self.samples, axis=0, weights=self.weights)

    def to_dict(self) -> dict[str, Any]:
        return {
            "converged": self.converged,
            "status": self.status.value,
            "components": len(self.mixture),
            "final_samples": len(self.weights),
            "effective_sample_size": self.effective_sample_size,
            "perplexity": self.perplexity,
            "log_evidence": self.log_evidence,
            "steps": [s.to_dict() for s in self.steps],
            "cancelled": self.cancelled,
            "execution_time": self.execution_time,
        }


def crop_highest_weights(weights: np.ndarray, count: int) -> np.ndarray:
    """Cap the ``count`` largest weights at the next largest one.

    The excess weight is discarded, not redistributed: this trades a small
    bias for a lower variance, and never decreases the effective sample
    size.
    """
    weights = np.asarray(weights, dtype=float).copy()
    if count <= 0 or count >= len(weights):
        return weights
    order = np.argsort(weights)[::-1]
    cap = weights[order[count]]
    weights[order[:count]] = cap
    return weights


def relative_std_deviation(log_values: np.ndarray) -> float:
    """Relative standard deviation of values given by their logarithms."""
    log_values = np.asarray(log_values, dtype=float)
    if len(log_values) < 2:
        return 0.0
    values = np.exp(log_values - np.max(log_values))
    mean = np.mean(values)
    return float(np.std(values, ddof=1) / mean) if mean > 0.0 else float("inf")


class PopulationMonteCarloSampler:
    """Adaptive importance sampler with a mixture proposal.

    Parameters
    ----------
    posterior : LogPosterior
        Read-only posterior evaluator.
    config : PopulationMonteCarloSamplerConfig
        Immutable sampler options.
    mixture : MixtureDensity
        Initial proposal.
    store : ChunkStore, optional
        Chunk store; defaults to ``config.output_file`` (HDF5) or memory.
    stop_event : threading.Event, optional
        Checked between steps.
    """

    def __init__(
        self,
        posterior: LogPosterior,
        config: PopulationMonteCarloSamplerConfig,
        mixture: MixtureDensity,
        store: ChunkStore | None = None,
        stop_event: threading.Event | None = None,
    ):
        if mixture.dimension != posterior.dimension:
            raise DegenerateMixtureError(
                f"Mixture dimension {mixture.dimension} does not match posterior "
                f"dimension {posterior.dimension}"
            )
        self.posterior = posterior
        self.config = config
        self.mixture = mixture
        self.store = store if store is not None else open_chunk_store(config.output_file)
        self.stop_event = stop_event or threading.Event()
        self.rng = np.random.default_rng(config.seed)
        self.status = PMCStatus.INITIALIZED
        self.step = 0
        self.samples_per_component = config.samples_per_component
        self.statistics: list[PMCStepStatistics] = []
        self._cancelled = False

        dof = config.degrees_of_freedom
        for component in self.mixture.components:
            component.degrees_of_freedom = dof

    @classmethod
    def from_chains(
        cls,
        posterior: LogPosterior,
        config: PopulationMonteCarloSamplerConfig,
        chains: list[np.ndarray],
        **kwargs,
    ) -> PopulationMonteCarloSampler:
        """Initialise the mixture from MCMC chains by hierarchical clustering."""
        mixture = mixture_from_chains(
            chains,
            patch_length=config.patch_length,
            skip_initial=config.skip_initial,
            target_ncomponents=config.target_ncomponents,
            group_by_r_value=config.group_by_r_value,
            ignore_groups=config.ignore_groups,
            degrees_of_freedom=config.degrees_of_freedom,
        )
        return cls(posterior, config, mixture, **kwargs)

    @classmethod
    def from_store(
        cls,
        posterior: LogPosterior,
        config: PopulationMonteCarloSamplerConfig,
        store: ChunkStore,
        **kwargs,
    ) -> PopulationMonteCarloSampler:
        """Resume from the mixture of the last complete stored step.

        Partially written steps are discarded first.

        Raises
        ------
        StorageError
            If the store holds no complete PMC step.
        """
        store.discard_incomplete(PMC)
        steps = store.indices(PMC)
        last = store.last_chunk(PMC, steps[-1]) if steps else None
        if last is None:
            raise StorageError(
                "No PMC step to resume from", path=store.location, operation="resume"
            )
        state = last.state
        sampler = cls(
            posterior,
            config,
            MixtureDensity.from_arrays(state["mixture"]),
            store=store,
            **kwargs,
        )
        sampler.rng.bit_generator.state = state["rng"]
        sampler.step = steps[-1] + 1
        sampler.samples_per_component = int(state["samples_per_component"])
        sampler.statistics = [PMCStepStatistics(**s) for s in state["history"]]
        logger.info(f"Resuming PMC at step {sampler.step} with {len(sampler.mixture)} component(s)")
        return sampler

    def draw_samples(self, store: bool = False) -> tuple[np.ndarray, np.ndarray]:
        """Points of the current step and the component each was drawn from.

        The points are drawn from the mixture by weight, ``samples_per_component``
        per component on average.

        With ``store=True`` the unweighted points are appended to
        ``("pmc-draws", step)`` so that their posterior values can be
        computed elsewhere, slice by slice, with :meth:`calculate_weights`.
        """
        self.status = PMCStatus.DRAWING
        size = self.samples_per_component * len(self.mixture)
        points, labels = self.mixture.sample_many(self.rng, size)
        if store:
            self.store.append_chunk(
                DRAWS,
                self.step,
                SampleChunk(
                    points=points,
                    log_posteriors=np.full(len(points), np.nan),
                    state={"labels": labels, "mixture": self.mixture.to_arrays()},
                ),
            )
            logger.info(f"Stored {len(points)} unweighted samples of PMC step {self.step}")
        return points, labels

    @log_performance(threshold=1.0)
    def calculate_weights(
        self,
        points: np.ndarray,
        begin: int = 0,
        end: int | None = None,
    ) -> np.ndarray:
        """Log-posterior of ``points[begin:end]``.

        Slices may be evaluated independently (and on other workers); the
        per-component blocks are evaluated in parallel when configured.
        """
        self.status = PMCStatus.WEIGHTING
        selection = np.atleast_2d(points)[begin:end]
        blocks = np.array_split(selection, max(1, len(self.mixture)))
        values = run_parallel(
            lambda block: np.array([self.posterior.evaluate(x) for x in block]),
            blocks,
            parallelize=self.config.parallelize,
            max_workers=self.config.max_workers,
        )
        return np.concatenate(values)

    def importance_weights(
        self, points: np.ndarray, log_posteriors: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Log-weights and self-normalised weights against the current mixture.

        Raises
        ------
        DegenerateMixtureError
            If no sample has a finite weight.
        """
        log_proposal = self.mixture.log_evaluate(points)
        log_weights = np.where(np.isfinite(log_posteriors), log_posteriors - log_proposal, -np.inf)
        log_weights = np.where(np.isfinite(log_weights), log_weights, -np.inf)
        if not np.any(np.isfinite(log_weights)):
            raise DegenerateMixtureError(
                "All importance weights are zero; the proposal misses the posterior",
                step=self.step,
            )
        return log_weights, normalize_log_weights(log_weights)

    def update(self, points: np.ndarray, weights: np.ndarray) -> MixtureDensity:
        """Importance-weighted EM update of the mixture.

        Components left without weight are dropped, light components pruned
        and redundant ones merged; weights are renormalised.
        """
        self.status = PMCStatus.UPDATING
        config = self.config
        weights = np.asarray(weights, dtype=float)
        weights = weights / np.sum(weights)
        responsibilities = self.mixture.responsibilities(points)
        d = self.mixture.dimension

        components = []
        for k, old in enumerate(self.mixture.components):
            rho = weights * responsibilities[:, k]
            alpha = float(np.sum(rho))
            if not alpha > 0.0:
                continue
            if old.degrees_of_freedom is None:
                u = np.ones(len(points))
            else:
                delta = points - old.mean
                mahalanobis = np.einsum("ni,ij,nj->n", delta, np.linalg.inv(old.covariance), delta)
                u = (old.degrees_of_freedom + d) / (old.degrees_of_freedom + mahalanobis)
            mean = np.sum((rho * u)[:, None] * points, axis=0) / np.sum(rho * u)
            centered = points - mean
            covariance = (rho * u * centered.T) @ centered / alpha
            covariance = 0.5 * (covariance + covariance.T)
            try:
                np.linalg.cholesky(covariance)
            except np.linalg.LinAlgError:
                logger.debug(f"Component {k}: updated covariance singular, keeping previous one")
                covariance = old.covariance
            components.append(MixtureComponent(alpha, mean, covariance, old.degrees_of_freedom))

        if not components:
            raise DegenerateMixtureError(
                "All mixture components lost their weight", step=self.step
            )
        mixture = MixtureDensity(components)
        mixture.prune(config.minimum_component_weight)
        mixture.merge(config.merge_distance_threshold, config.group_by_r_value)
        mixture.validate()
        self.mixture = mixture
        return mixture

    def _converged(self) -> bool:
        config = self.config
        if self.step < config.adaptation_steps:
            return False
        recent = self.statistics[-config.minimum_steps:]
        if len(recent) < config.minimum_steps:
            return False
        if not config.ignore_eff_sample_size and any(
            s.normalized_ess < config.minimum_eff_sample_size for s in recent
        ):
            return False
        rel_std = relative_std_deviation([s.log_evidence for s in recent])
        return rel_std <= config.maximum_relative_std_deviation

    def _adjust_sample_size(self, normalized_ess: float) -> None:
        base = self.config.samples_per_component
        target = math.ceil(base / max(normalized_ess, 1.0 / MAX_SAMPLE_SIZE_GROWTH))
        self.samples_per_component = int(min(max(target, base), MAX_SAMPLE_SIZE_GROWTH * base))
        logger.debug(f"Samples per component adjusted to {self.samples_per_component}")

    def run_step(self) -> PMCStepStatistics:
        """Draw, weight, store and update once."""
        points, _ = self.draw_samples()
        log_posteriors = self.calculate_weights(points)
        log_weights, weights = self.importance_weights(points, log_posteriors)
        cropped = crop_highest_weights(weights, self.config.crop_highest_weights)
        cropped = cropped / np.sum(cropped)

        ess = effective_sample_size(cropped)
        finite = log_weights[np.isfinite(log_weights)]
        statistics = PMCStepStatistics(
            step=self.step,
            samples=len(points),
            components=len(self.mixture),
            effective_sample_size=ess,
            normalized_ess=ess / len(points),
            perplexity=perplexity(cropped),
            log_evidence=float(special.logsumexp(finite) - np.log(len(points))),
        )
        self.statistics.append(statistics)
        logger.info(
            f"PMC step {self.step}: {len(points)} samples, {len(self.mixture)} component(s), "
            f"ESS {statistics.normalized_ess:.3f}, perplexity {statistics.perplexity:.3f}, "
            f"log(evidence) {statistics.log_evidence:.4f}"
        )

        self.update(points, cropped)
        if self.config.adjust_sample_size:
            self._adjust_sample_size(statistics.normalized_ess)

        self.store.append_chunk(
            PMC,
            self.step,
            SampleChunk(
                points=points,
                log_posteriors=log_posteriors,
                weights=cropped,
                state={
                    "mixture": self.mixture.to_arrays(),
                    "rng": self.rng.bit_generator.state,
                    "samples_per_component": self.samples_per_component,
                    "history": [s.to_dict() for s in self.statistics],
                },
            ),
        )
        self.step += 1
        return statistics

    def run(self, final: bool = False) -> PopulationMonteCarloResult:
        """Update until convergence or ``max_updates``, then draw the final samples.

        With ``final=True`` the updates are skipped and the final samples are
        drawn from the current mixture. A cancelled run stops after the step
        in flight and returns without final samples. The summary is logged
        whatever the outcome.
        """
        start = time.perf_counter()
        try:
            converged = self._update(final)
            if self._cancelled:
                result = self._partial_result()
            else:
                result = self.final_sampling(converged)
        except DegenerateMixtureError as e:
            self._log_summary(self._partial_result(), time.perf_counter() - start, error=str(e))
            raise
        result.execution_time = time.perf_counter() - start
        self._log_summary(result, result.execution_time)
        return result

    def _update(self, final: bool) -> bool:
        config = self.config
        with log_operation("PMC updates", logger):
            while not final:
                if self.stop_event.is_set():
                    logger.warning(f"PMC cancelled before step {self.step}")
                    self._cancelled = True
                    return False
                if self.step >= config.max_updates:
                    self.status = PMCStatus.MAX_UPDATES_REACHED
                    logger.warning(
                        f"PMC reached {config.max_updates} updates without meeting the "
                        "convergence criteria"
                    )
                    return False
                self.run_step()
                if self._converged():
                    self.status = PMCStatus.CONVERGED
                    logger.info(f"PMC converged after {self.step} step(s)")
                    return True
        return False

    def _log_summary(
        self, result: PopulationMonteCarloResult, execution_time: float, error: str | None = None
    ) -> None:
        extra = {
            "Status": result.status.value,
            "Steps": self.step,
            "Components": len(self.mixture),
            "Perplexity": f"{result.perplexity:.4f}",
            "log(evidence)": f"{result.log_evidence:.4f}",
            "Cancelled": result.cancelled,
        }
        if error is not None:
            extra["Error"] = error
        ess_label = "final" if len(result.weights) else "last step"
        log_sampler_summary(
            "PMC",
            result.converged,
            {},
            {ess_label: result.effective_sample_size},
            execution_time=execution_time,
            extra=extra,
        )

    def _partial_result(self) -> PopulationMonteCarloResult:
        """Result of a run that stopped before final sampling.

        It holds no samples; the diagnostics are those of the last step.
        """
        last = self.statistics[-1] if self.statistics else None
        return PopulationMonteCarloResult(
            converged=False,
            status=self.status,
            mixture=self.mixture,
            samples=np.empty((0, self.mixture.dimension)),
            weights=np.empty(0),
            log_posteriors=np.empty(0),
            steps=list(self.statistics),
            effective_sample_size=last.effective_sample_size if last else 0.0,
            perplexity=last.perplexity if last else 0.0,
            log_evidence=last.log_evidence if last else float("nan"),
            cancelled=self._cancelled,
        )

    def final_sampling(self, converged: bool) -> PopulationMonteCarloResult:
        """Draw ``final_samples`` from the mixture, weight them and store the record."""
        self.status = PMCStatus.FINAL_SAMPLING
        points, _ = self.mixture.sample_many(self.rng, self.config.final_samples)
        log_posteriors = self.calculate_weights(points)
        log_weights, weights = self.importance_weights(points, log_posteriors)
        finite = log_weights[np.isfinite(log_weights)]
        log_evidence = float(special.logsumexp(finite) - np.log(len(points)))

        arrays = self.mixture.to_arrays()
        self.store.write_record(
            FINAL_RECORD,
            {
                "samples": points,
                "weights": weights,
                "log_posteriors": log_posteriors,
                "log_weights": log_weights,
                "mixture_weights": arrays["weights"],
                "mixture_means": arrays["means"],
                "mixture_covariances": arrays["covariances"],
                "degrees_of_freedom": arrays["degrees_of_freedom"],
                "converged": converged,
            },
        )
        self.status = PMCStatus.DONE
        return PopulationMonteCarloResult(
            converged=converged,
            status=PMCStatus.CONVERGED if converged else PMCStatus.MAX_UPDATES_REACHED,
            mixture=self.mixture,
            samples=points,
            weights=weights,
            log_posteriors=log_posteriors,
            steps=list(self.statistics),
            effective_sample_size=effective_sample_size(weights),
            perplexity=perplexity(weights),
            log_evidence=log_evidence,
        )
