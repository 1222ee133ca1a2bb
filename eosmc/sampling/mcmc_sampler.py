"""Markov Chain Monte Carlo orchestrator.

The sampler runs in two phases:

1. **Prerun**: all chains advance in blocks of ``prerun_iterations_update``
   iterations. After each block the Gelman-Rubin R-values decide whether to
   stop, and every chain adapts its proposal from its recent history.
2. **Main run**: every chain runs independently for ``chunks * chunk_size``
   iterations with a frozen proposal, flushing one chunk per ``chunk_size``
   iterations to the chunk store.

Runs are resumable. The outcome of the prerun (including the state of every
chain) is a write-once record in the store, and every stored chunk carries
the state of its chain at the end of the chunk. A restarted sampler skips a
recorded prerun, continues an unrecorded one from its stored blocks, and
continues each main-run chain from its last complete chunk, producing the
same chunks an uninterrupted run would have produced.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from tqdm.auto import tqdm

from eosmc.io.chunk_store import ChunkStore, SampleChunk, open_chunk_store
from eosmc.sampling.chain_group import ChainGroup, PrerunDecision, run_parallel
from eosmc.sampling.config import MarkovChainSamplerConfig
from eosmc.sampling.diagnostics import (
    compute_ess,
    compute_r_values,
    log_sampler_summary,
)
from eosmc.sampling.exceptions import SamplingError, StorageError
from eosmc.sampling.markov_chain import ChainBlock, MarkovChain
from eosmc.sampling.proposal import make_proposal
from eosmc.utils.logging import get_logger, log_operation

if TYPE_CHECKING:
    from eosmc.core.posterior import LogPosterior

logger = get_logger(__name__)

PRERUN = "prerun"
MAIN = "main"
DESCRIPTIONS_RECORD = "mcmc/descriptions"
PRERUN_RECORD = "mcmc/prerun"


@dataclass
class MarkovChainSamplerResult:
    """Final diagnostics and samples of an MCMC run.

    ``converged`` must be checked before the samples are trusted as
    representative of the posterior.
    """

    converged: bool
    prerun_converged: bool | None
    prerun_iterations: int
    r_values: dict[str, float]
    ess: dict[str, float]
    acceptance_rates: dict[int, float]
    failed_chains: dict[int, str]
    samples: dict[int, np.ndarray] = field(default_factory=dict)
    log_posteriors: dict[int, np.ndarray] = field(default_factory=dict)
    cancelled: bool = False
    execution_time: float = 0.0

    @property
    def all_samples(self) -> np.ndarray:
        """Main-run samples of all healthy chains, stacked."""
        if not self.samples:
            return np.empty((0, 0))
        return np.concatenate([self.samples[i] for i in sorted(self.samples)])

    def to_dict(self) -> dict[str, Any]:
        return {
            "converged": self.converged,
            "prerun_converged": self.prerun_converged,
            "prerun_iterations": self.prerun_iterations,
            "r_values": self.r_values,
            "ess": self.ess,
            "acceptance_rates": {str(k): v for k, v in self.acceptance_rates.items()},
            "failed_chains": {str(k): v for k, v in self.failed_chains.items()},
            "samples_per_chain": {str(k): len(v) for k, v in self.samples.items()},
            "cancelled": self.cancelled,
            "execution_time": self.execution_time,
        }


class MarkovChainSampler:
    """Adaptive Metropolis-Hastings sampler with a prerun and a main run.

    Parameters
    ----------
    posterior : LogPosterior
        Read-only posterior evaluator shared by all chains.
    config : MarkovChainSamplerConfig
        Immutable sampler options.
    store : ChunkStore, optional
        Chunk store; defaults to ``config.output_file`` (HDF5) or memory.
    stop_event : threading.Event, optional
        Checked between prerun blocks and between chunks; when set, the
        sampler finishes the block or chunk in flight and returns.
    """

    def __init__(
        self,
        posterior: LogPosterior,
        config: MarkovChainSamplerConfig,
        store: ChunkStore | None = None,
        stop_event: threading.Event | None = None,
    ):
        if posterior.dimension == 0:
            raise SamplingError("Posterior has no varied parameters")
        self.posterior = posterior
        self.config = config
        self.store = store if store is not None else open_chunk_store(config.output_file)
        self.stop_event = stop_event or threading.Event()
        self.chains: list[MarkovChain] = []
        self.failed_chains: dict[int, str] = {}
        self.prerun_converged: bool | None = None
        self.prerun_iterations = 0
        self.prerun_r_values: dict[str, float] = {}
        self._cancelled = False

    @property
    def parameter_names(self) -> list[str]:
        return self.posterior.varied_parameter_names

    @property
    def diagnostic_indices(self) -> list[int]:
        """Parameters entering the R-value check.

        The strict definition uses scan and nuisance parameters; otherwise
        only scan parameters are used, or all if every one is a nuisance.
        """
        if self.config.use_strict_rvalue_definition:
            return list(range(self.posterior.dimension))
        return self.posterior.scan_indices or list(range(self.posterior.dimension))

    def _schedule(self) -> dict[str, float]:
        return {
            "acceptance_rate_min": self.config.acceptance_rate_min,
            "acceptance_rate_max": self.config.acceptance_rate_max,
            "rescale_factor": self.config.rescale_factor,
            "covariance_jitter": self.config.covariance_jitter,
        }

    def _make_chain(self, index: int) -> MarkovChain:
        seed = None if self.config.seed is None else self.config.seed + index
        rng = np.random.default_rng(seed)
        initial_point = self.posterior.sample_point_from_priors(rng)
        proposal = make_proposal(
            self.config.proposal,
            self.posterior.initial_covariance(),
            degrees_of_freedom=self.config.student_t_degrees_of_freedom,
            scale=self.config.initial_scale,
            mean=initial_point,
        )
        return MarkovChain(
            self.posterior.evaluate,
            proposal,
            initial_point,
            rng,
            index=index,
            adaptation_window=self.config.adaptation_window,
        )

    def _restore_chain(self, checkpoint: dict[str, Any]) -> MarkovChain:
        return MarkovChain.restore(
            checkpoint, self.posterior.evaluate, adaptation_window=self.config.adaptation_window
        )

    def _write_descriptions(self) -> None:
        if self.store.has_record(DESCRIPTIONS_RECORD):
            stored = self.store.read_record(DESCRIPTIONS_RECORD)
            if list(stored["names"]) != self.parameter_names:
                raise StorageError(
                    "Stored chains were produced for different parameters: "
                    f"{list(stored['names'])} vs {self.parameter_names}",
                    path=self.store.location,
                    operation="resume",
                )
            return
        descriptions = self.posterior.parameter_descriptions
        self.store.write_record(
            DESCRIPTIONS_RECORD,
            {
                "names": self.parameter_names,
                "min": np.array([d.min for d in descriptions]),
                "max": np.array([d.max for d in descriptions]),
                "nuisance": np.array([d.nuisance for d in descriptions]),
                "priors": [d.describe() for d in descriptions],
            },
        )

    def run(self) -> MarkovChainSamplerResult:
        """Run (or resume) prerun and main run and report diagnostics.

        The summary is logged whatever the outcome, including a strict-mode
        failure of the prerun.
        """
        start = time.perf_counter()
        logger.info(
            f"MCMC: {self.config.number_of_chains} chains over {self.posterior.dimension} "
            f"parameters, proposal {self.config.proposal}, store {self.store.location}"
        )
        for description in self.posterior.describe():
            logger.info(f"  {description}")

        self._write_descriptions()

        if self.store.has_record(PRERUN_RECORD):
            self._load_prerun()
        elif self.config.need_prerun:
            self.pre_run()
        else:
            self.chains = [self._make_chain(i) for i in range(self.config.number_of_chains)]

        if self.prerun_converged is False and self.config.strict:
            self._log_summary(self._result(time.perf_counter() - start))
            raise SamplingError(
                f"Prerun did not converge after {self.prerun_iterations} iterations",
                error_context={"r_values": self.prerun_r_values},
            )

        if self.config.need_main_run and not self._cancelled:
            self.main_run()

        result = self._result(time.perf_counter() - start)
        self._log_summary(result)
        return result

    def _log_summary(self, result: MarkovChainSamplerResult) -> None:
        log_sampler_summary(
            "MCMC",
            result.converged,
            result.r_values,
            result.ess,
            acceptance_rates=result.acceptance_rates,
            failed=result.failed_chains,
            execution_time=result.execution_time,
            extra={
                "Prerun iterations": self.prerun_iterations,
                "Cancelled": result.cancelled,
            },
        )

    def _load_prerun(self) -> None:
        record = self.store.read_record(PRERUN_RECORD)
        self.prerun_converged = bool(record["converged"])
        self.prerun_iterations = int(record["iterations"])
        self.prerun_r_values = dict(record["r_values"])
        self.chains = [self._restore_chain(c) for c in record["chains"]]
        self.failed_chains.update({int(k): v for k, v in record.get("failed", {}).items()})
        logger.info(
            f"Resuming after stored prerun ({self.prerun_iterations} iterations, "
            f"{'converged' if self.prerun_converged else 'not converged'})"
        )

    def _store_block(self, run_id: str, chain: MarkovChain, block) -> bool:
        """Append a block as a chunk; on failure the chain is marked failed."""
        try:
            self.store.append_chunk(
                run_id,
                chain.index,
                SampleChunk(
                    points=block.points,
                    log_posteriors=block.log_posteriors,
                    state=chain.checkpoint(),
                ),
            )
        except StorageError as e:
            logger.error(f"Chain {chain.index}: storage failed, chain aborted: {e}")
            self.failed_chains[chain.index] = str(e)
            chain.finish()
            return False
        return True

    def _restore_prerun_chains(self) -> list[MarkovChain]:
        """Chains continued from stored prerun chunks; empty if none are stored.

        Each prerun chunk carries the state of its chain after adaptation, so
        a chain restored from its last chunk continues exactly where the
        interrupted prerun stopped. Chains with fewer chunks than the others
        stopped storing before the interruption and are marked failed.
        """
        counts = {}
        for index in range(self.config.number_of_chains):
            self.store.discard_incomplete(PRERUN, index)
            counts[index] = len(self.store.list_chunks(PRERUN, index))
        blocks = max(counts.values(), default=0)
        if blocks == 0:
            return []

        chains = []
        for index, count in counts.items():
            if count < blocks:
                self.failed_chains[index] = f"prerun stored {count} of {blocks} blocks"
                logger.error(f"Chain {index}: {self.failed_chains[index]}, chain aborted")
                continue
            chain = self._restore_chain(self.store.last_chunk(PRERUN, index).state)
            chain.extend_history(self.store.read_samples(PRERUN, index).points)
            chains.append(chain)
        if len(chains) < 2:
            raise SamplingError(
                "Fewer than two chains left to resume the prerun",
                error_context={"failed": sorted(self.failed_chains)},
            )
        return chains

    def pre_run(self) -> bool:
        """Adaptive prerun until the R-value criterion resolves.

        With ``store_prerun`` every block is stored, and a prerun interrupted
        before its outcome was recorded continues from the stored chunks.
        Returns whether the prerun converged. Non-convergence is a flag on
        the result unless ``strict`` is set.
        """
        config = self.config
        restored = self._restore_prerun_chains() if config.store_prerun else []
        self.chains = restored or [self._make_chain(i) for i in range(config.number_of_chains)]
        group = ChainGroup(
            self.chains,
            self.parameter_names,
            self.diagnostic_indices,
            parallelize=config.parallelize,
            max_workers=config.max_workers,
        )

        decision = PrerunDecision.CONTINUE
        if restored:
            # the decision after the last stored block is taken again
            group.iterations = restored[0].state.iterations
            group.last_blocks = [
                ChainBlock(chunk.points, chunk.log_posteriors, accepted=0)
                for chunk in (self.store.last_chunk(PRERUN, c.index) for c in restored)
            ]
            group.compute_r_value()
            decision = self._decide(group)
            logger.info(f"Resuming prerun after {group.iterations} iterations")

        with log_operation("MCMC prerun", logger):
            while decision is PrerunDecision.CONTINUE:
                if self.stop_event.is_set():
                    logger.warning("Prerun cancelled")
                    self._cancelled = True
                    break
                blocks = group.run_prerun_block(config.prerun_iterations_update)
                r_values = group.compute_r_value()
                decision = self._decide(group)
                if decision is PrerunDecision.CONTINUE:
                    rates = group.adapt(**self._schedule())
                else:
                    rates = {c.index: c.block_acceptance_rate for c in group.chains}
                if config.store_prerun:
                    healthy = [
                        chain
                        for chain, block in zip(group.chains, blocks)
                        if self._store_block(PRERUN, chain, block)
                    ]
                    if len(healthy) < 2:
                        raise SamplingError(
                            "Fewer than two chains left after storage failures",
                            error_context={"failed": sorted(self.failed_chains)},
                        )
                    group.chains = healthy
                logger.info(
                    f"Prerun: {group.iterations} iterations, max R-value "
                    f"{max(r_values.values()):.4f}, acceptance rates "
                    + ", ".join(f"{rate:.2f}" for rate in rates.values())
                )

        self.chains = group.chains
        self.prerun_iterations = group.iterations
        self.prerun_r_values = group.r_values
        self.prerun_converged = decision is PrerunDecision.CONVERGED
        if decision is PrerunDecision.ABORTED:
            logger.warning(
                f"Prerun did not converge within {config.prerun_iterations_max} iterations "
                f"(max R-value {group.max_r_value:.4f} >= {config.rvalue_threshold})"
            )
        elif self.prerun_converged:
            logger.info(f"Prerun converged after {group.iterations} iterations")

        if not self._cancelled:
            self.store.write_record(
                PRERUN_RECORD,
                {
                    "converged": self.prerun_converged,
                    "iterations": self.prerun_iterations,
                    "r_values": self.prerun_r_values,
                    "chains": [chain.checkpoint() for chain in self.chains],
                    "failed": {str(k): v for k, v in self.failed_chains.items()},
                },
            )
        return self.prerun_converged

    def _decide(self, group: ChainGroup) -> PrerunDecision:
        return group.decide(
            self.config.rvalue_threshold,
            self.config.prerun_iterations_min,
            self.config.prerun_iterations_max,
        )

    def _run_chain_main(self, chain: MarkovChain, progress=None) -> None:
        config = self.config
        self.store.discard_incomplete(MAIN, chain.index)
        done = len(self.store.list_chunks(MAIN, chain.index))
        if done:
            last = self.store.last_chunk(MAIN, chain.index)
            restored = self._restore_chain(last.state)
            chain.state, chain.proposal, chain.rng = restored.state, restored.proposal, restored.rng
            logger.info(f"Chain {chain.index}: resuming main run after chunk {done - 1}")

        for _ in range(done, config.chunks):
            if self.stop_event.is_set():
                self._cancelled = True
                logger.warning(f"Chain {chain.index}: main run cancelled")
                return
            block = chain.run(config.chunk_size)
            if not self._store_block(MAIN, chain, block):
                return
            if progress is not None:
                progress.update(1)
        chain.finish()

    def main_run(self) -> None:
        """Run every healthy chain for ``chunks`` chunks of ``chunk_size``."""
        chains = [c for c in self.chains if c.index not in self.failed_chains]
        with log_operation("MCMC main run", logger), tqdm(
            total=len(chains) * self.config.chunks,
            desc="MCMC main run",
            unit="chunk",
            disable=not self.config.show_progress,
        ) as progress:
            run_parallel(
                lambda chain: self._run_chain_main(chain, progress),
                chains,
                parallelize=self.config.parallelize,
                max_workers=self.config.max_workers,
            )

    def samples(self, run_id: str = MAIN) -> dict[int, SampleChunk]:
        """Stored samples of every chain, keyed by chain index."""
        return {i: self.store.read_samples(run_id, i) for i in self.store.indices(run_id)}

    def _result(self, execution_time: float) -> MarkovChainSamplerResult:
        stored: dict[int, SampleChunk] = {}
        if self.config.need_main_run:
            stored = {
                i: chunk for i, chunk in self.samples(MAIN).items() if i not in self.failed_chains
            }

        r_values: dict[str, float] = {}
        ess: dict[str, float] = {}
        if len(stored) >= 2:
            n = min(len(chunk) for chunk in stored.values())
            if n >= 4:
                chains = np.stack([chunk.points[:n] for chunk in stored.values()])
                r_values = compute_r_values(chains, self.parameter_names)
                ess = compute_ess(
                    {name: chains[:, :, k] for k, name in enumerate(self.parameter_names)}
                )
        elif not stored:
            r_values = dict(self.prerun_r_values)

        if self.prerun_converged is not None:
            converged = self.prerun_converged
        else:
            converged = bool(r_values) and max(r_values.values()) < self.config.rvalue_threshold
        converged = converged and not self._cancelled

        return MarkovChainSamplerResult(
            converged=converged,
            prerun_converged=self.prerun_converged,
            prerun_iterations=self.prerun_iterations,
            r_values=r_values,
            ess=ess,
            acceptance_rates={c.index: c.acceptance_rate for c in self.chains},
            failed_chains=dict(self.failed_chains),
            samples={i: chunk.points for i, chunk in stored.items()},
            log_posteriors={i: chunk.log_posteriors for i, chunk in stored.items()},
            cancelled=self._cancelled,
            execution_time=execution_time,
        )
