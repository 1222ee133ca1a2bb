"""Command Dispatcher for the eosmc CLI
=====================================

Handles command execution and coordination between CLI arguments,
configuration and the samplers.
"""

import signal
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from eosmc.cli.args_parser import MCMC_OPTIONS, PMC_OPTIONS, sampler_overrides, validate_args
from eosmc.config import ConfigManager, ConfigurationError
from eosmc.core import LogPosterior
from eosmc.io import open_chunk_store, save_mcmc_results, save_pmc_results, save_point_result
from eosmc.sampling import (
    MarkovChainSampler,
    MixtureComponent,
    MixtureDensity,
    PopulationMonteCarloSampler,
    SamplingError,
    StorageError,
    mixture_from_chains,
)
from eosmc.sampling.pmc_sampler import FINAL_RECORD
from eosmc.utils.logging import get_logger, set_log_level

logger = get_logger(__name__)


def _load_configuration(args) -> ConfigManager:
    return ConfigManager(args.config)


def _starting_point(args, posterior: LogPosterior) -> np.ndarray | None:
    point = getattr(args, "point", None)
    if point is None:
        return None
    if len(point) != posterior.dimension:
        raise ConfigurationError(
            f"--point has {len(point)} values, the posterior varies {posterior.dimension} "
            f"parameters: {posterior.varied_parameter_names}",
            key="point",
            value=point,
        )
    return np.asarray(point, dtype=float)


@contextmanager
def _stop_on_interrupt(stop_event: threading.Event):
    """First Ctrl-C stops the samplers at the next chunk boundary."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received; stopping after the current chunk (again to abort)")
        stop_event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _read_chains(chains_file: Path, run_id: str) -> list[np.ndarray]:
    store = open_chunk_store(chains_file)
    indices = store.indices(run_id)
    if not indices:
        raise StorageError(
            f"No '{run_id}' chains stored in {chains_file}",
            path=str(chains_file),
            operation="read",
        )
    chains = [store.read_samples(run_id, i).points for i in indices]
    logger.info(f"Read {len(chains)} '{run_id}' chain(s) from {chains_file}")
    return chains


def run_mcmc(args, config: ConfigManager) -> dict[str, Any]:
    posterior = config.build_posterior(args.posterior)
    overrides = sampler_overrides(args, MCMC_OPTIONS)
    if args.prerun_only:
        overrides.update(need_main_run=False, store_prerun=True)
    sampler_config = config.get_mcmc_config(**overrides)

    stop_event = threading.Event()
    sampler = MarkovChainSampler(posterior, sampler_config, stop_event=stop_event)
    try:
        with _stop_on_interrupt(stop_event):
            result = sampler.run()
    finally:
        sampler.store.close()

    summary_file = save_mcmc_results(
        result, posterior.varied_parameter_names, args.output_dir
    )
    return {"success": not result.cancelled, "result": result, "summary_file": str(summary_file)}


def _mixture_from_mode(
    posterior: LogPosterior, degrees_of_freedom, seed: int | None
) -> MixtureDensity:
    mode = posterior.optimize(rng=np.random.default_rng(seed))
    logger.info(f"Initial mixture centred on the mode, log-posterior {mode.log_posterior:.4f}")
    return MixtureDensity(
        [MixtureComponent(1.0, mode.point, mode.covariance, degrees_of_freedom)]
    )


def run_pmc(args, config: ConfigManager) -> dict[str, Any]:
    posterior = config.build_posterior(args.posterior)
    sampler_config = config.get_pmc_config(**sampler_overrides(args, PMC_OPTIONS))

    stop_event = threading.Event()
    if args.update:
        store = open_chunk_store(sampler_config.output_file)
        if store.has_record(FINAL_RECORD):
            raise StorageError(
                "PMC run has already drawn its final samples",
                path=store.location,
                operation="resume",
            )
        sampler = PopulationMonteCarloSampler.from_store(
            posterior, sampler_config, store, stop_event=stop_event
        )
    elif args.chains_file is not None:
        chains = _read_chains(args.chains_file, args.chains_run)
        sampler = PopulationMonteCarloSampler.from_chains(
            posterior, sampler_config, chains, stop_event=stop_event
        )
    else:
        mixture = _mixture_from_mode(
            posterior, sampler_config.degrees_of_freedom, sampler_config.seed
        )
        sampler = PopulationMonteCarloSampler(
            posterior, sampler_config, mixture, stop_event=stop_event
        )

    try:
        if args.draw_samples:
            points, _ = sampler.draw_samples(store=True)
            return {"success": True, "result": None, "samples": len(points)}
        with _stop_on_interrupt(stop_event):
            result = sampler.run(final=args.final)
    finally:
        sampler.store.close()

    summary_file = save_pmc_results(result, posterior.varied_parameter_names, args.output_dir)
    return {"success": not result.cancelled, "result": result, "summary_file": str(summary_file)}


def run_optimize(args, config: ConfigManager) -> dict[str, Any]:
    posterior = config.build_posterior(args.posterior)
    rng = np.random.default_rng(args.seed)
    result = posterior.optimize(
        _starting_point(args, posterior), rng=rng, max_iterations=args.max_iterations
    )
    names = posterior.varied_parameter_names
    logger.info(f"Mode: log-posterior {result.log_posterior:.6f} ({result.message})")
    for name, value, variance in zip(names, result.point, np.diag(result.covariance)):
        logger.info(f"  {name} = {value:.6g} +- {np.sqrt(max(variance, 0.0)):.3g}")

    gof = posterior.goodness_of_fit(result.point)
    gof.log_summary()
    summary_file = save_point_result(
        "mode",
        {
            "parameter_names": names,
            "point": result.point,
            "log_posterior": result.log_posterior,
            "covariance": result.covariance,
            "success": result.success,
            "message": result.message,
            "iterations": result.iterations,
            "goodness_of_fit": gof.to_dict(),
        },
        args.output_dir,
    )
    return {"success": result.success, "result": result, "summary_file": str(summary_file)}


def run_goodness_of_fit(args, config: ConfigManager) -> dict[str, Any]:
    posterior = config.build_posterior(args.posterior)
    gof = posterior.goodness_of_fit(_starting_point(args, posterior))
    gof.log_summary()
    if args.output_file is not None:
        store = open_chunk_store(args.output_file)
        name = f"goodness_of_fit/{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"
        store.write_record(
            name,
            {
                "point": gof.point,
                "chi_square": np.array([b.chi_square for b in gof.blocks]),
                "degrees_of_freedom": np.array([b.degrees_of_freedom for b in gof.blocks]),
                "blocks": [b.name for b in gof.blocks],
                "p_value": gof.p_value,
            },
        )
        logger.info(f"Stored goodness of fit as record '{name}' in {args.output_file}")
    summary_file = save_point_result("goodness_of_fit", gof.to_dict(), args.output_dir)
    return {"success": True, "result": gof, "summary_file": str(summary_file)}


def run_find_clusters(args, config: ConfigManager) -> dict[str, Any]:
    posterior = config.build_posterior(args.posterior)
    options = {
        k: getattr(args, k)
        for k in ("group_by_r_value", "ignore_groups", "patch_length", "skip_initial",
                  "target_ncomponents")
        if getattr(args, k) is not None
    }
    pmc_config = config.get_pmc_config(**options)
    chains = _read_chains(args.chains_file, args.chains_run)
    mixture = mixture_from_chains(
        chains,
        patch_length=pmc_config.patch_length,
        skip_initial=pmc_config.skip_initial,
        target_ncomponents=pmc_config.target_ncomponents,
        group_by_r_value=pmc_config.group_by_r_value,
        ignore_groups=pmc_config.ignore_groups,
        degrees_of_freedom=pmc_config.degrees_of_freedom,
    )
    if mixture.dimension != posterior.dimension:
        raise ConfigurationError(
            f"Chains have dimension {mixture.dimension}, posterior {posterior.dimension}",
            key="chains_file",
            value=str(args.chains_file),
        )
    for line in mixture.describe():
        logger.info(f"  {line}")
    arrays = mixture.to_arrays()
    summary_file = save_point_result(
        "clusters",
        {"parameter_names": posterior.varied_parameter_names, **arrays},
        args.output_dir,
    )
    if args.output_file is not None:
        store = open_chunk_store(args.output_file)
        store.write_record("pmc/initial_mixture", arrays)
    return {"success": True, "result": mixture, "summary_file": str(summary_file)}


def run_list(args, config: ConfigManager) -> dict[str, Any]:
    names = {
        "priors": config.list_priors,
        "likelihoods": config.list_likelihoods,
        "posteriors": config.list_posteriors,
    }[args.what]()
    for name in names:
        print(name)
    return {"success": True, "result": names}


COMMANDS = {
    "mcmc": run_mcmc,
    "pmc": run_pmc,
    "optimize": run_optimize,
    "goodness-of-fit": run_goodness_of_fit,
    "find-clusters": run_find_clusters,
    "list": run_list,
}


def dispatch_command(args) -> dict[str, Any]:
    """Dispatch command based on parsed CLI arguments.

    Returns
    -------
    dict
        Command execution result with success status and details
    """
    logger.info(f"Dispatching eosmc command '{args.command}'")

    if not validate_args(args):
        return {"success": False, "error": "Invalid command-line arguments"}

    if getattr(args, "quiet", False):
        set_log_level("ERROR")

    try:
        output_dir = getattr(args, "output_dir", None)
        if output_dir is not None:
            output_dir.mkdir(parents=True, exist_ok=True)
        config = _load_configuration(args)
        return COMMANDS[args.command](args, config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return {"success": False, "error": str(e)}
    except (SamplingError, StorageError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return {"success": False, "error": str(e)}
