"""Result saving functions for eosmc sampler runs.

Every run writes a JSON summary (diagnostics, parameter statistics) and an
NPZ file with the samples. The chunk store remains the authoritative record
of a run; these files are the exported view of its final result.
"""

from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from eosmc._version import __version__
from eosmc.io.json_utils import save_json
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)


def _parameter_statistics(
    samples: np.ndarray,
    parameter_names: list[str],
    weights: np.ndarray | None = None,
) -> dict[str, dict[str, float]]:
    """Mean, standard deviation and 68% interval of every parameter."""
    statistics: dict[str, dict[str, float]] = {}
    if samples.size == 0:
        return statistics
    for i, name in enumerate(parameter_names):
        column = samples[:, i]
        if weights is None:
            mean = float(np.mean(column))
            std = float(np.std(column, ddof=1)) if len(column) > 1 else 0.0
            low, high = np.percentile(column, [15.865, 84.135])
        else:
            mean = float(np.average(column, weights=weights))
            std = float(np.sqrt(np.average((column - mean) ** 2, weights=weights)))
            order = np.argsort(column)
            cumulative = np.cumsum(weights[order]) / np.sum(weights)
            low = column[order][np.searchsorted(cumulative, 0.15865)]
            high = column[order][min(np.searchsorted(cumulative, 0.84135), len(column) - 1)]
        statistics[name] = {
            "mean": mean,
            "std": std,
            "lower_68": float(low),
            "upper_68": float(high),
        }
    return statistics


def create_mcmc_summary_dict(result: Any, parameter_names: list[str]) -> dict:
    """Summary of a :class:`MarkovChainSamplerResult`."""
    summary = {
        "timestamp": datetime.now().isoformat(),
        "version": __version__,
        "method": "mcmc",
        "parameter_names": list(parameter_names),
        "diagnostics": result.to_dict(),
        "parameters": _parameter_statistics(result.all_samples, parameter_names),
    }
    if not result.converged:
        summary["warning"] = "Chains did not converge; samples may not represent the posterior"
    return summary


def create_pmc_summary_dict(result: Any, parameter_names: list[str]) -> dict:
    """Summary of a :class:`PopulationMonteCarloResult`."""
    return {
        "timestamp": datetime.now().isoformat(),
        "version": __version__,
        "method": "pmc",
        "parameter_names": list(parameter_names),
        "diagnostics": result.to_dict(),
        "mixture": result.mixture.describe(),
        "parameters": _parameter_statistics(result.samples, parameter_names, result.weights),
    }


def save_mcmc_results(result: Any, parameter_names: list[str], output_dir: str | Path) -> Path:
    """Write ``mcmc_summary.json`` and ``mcmc_samples.npz`` to ``output_dir``.

    Returns
    -------
    Path
        Path of the summary file.
    """
    output_dir = Path(output_dir)
    summary_file = save_json(
        output_dir / "mcmc_summary.json", create_mcmc_summary_dict(result, parameter_names)
    )
    save_dict: dict[str, Any] = {"parameter_names": np.array(parameter_names)}
    for index in sorted(result.samples):
        save_dict[f"chain_{index}_samples"] = result.samples[index]
        save_dict[f"chain_{index}_log_posteriors"] = result.log_posteriors[index]
    _save_npz(output_dir / "mcmc_samples.npz", save_dict)
    return summary_file


def save_pmc_results(result: Any, parameter_names: list[str], output_dir: str | Path) -> Path:
    """Write ``pmc_summary.json`` and ``pmc_samples.npz`` to ``output_dir``."""
    output_dir = Path(output_dir)
    summary_file = save_json(
        output_dir / "pmc_summary.json", create_pmc_summary_dict(result, parameter_names)
    )
    arrays = result.mixture.to_arrays()
    _save_npz(
        output_dir / "pmc_samples.npz",
        {
            "parameter_names": np.array(parameter_names),
            "samples": result.samples,
            "weights": result.weights,
            "log_posteriors": result.log_posteriors,
            "mixture_weights": arrays["weights"],
            "mixture_means": arrays["means"],
            "mixture_covariances": arrays["covariances"],
        },
    )
    return summary_file


def save_point_result(name: str, payload: dict[str, Any], output_dir: str | Path) -> Path:
    """Write a single-point result (mode, goodness of fit) as ``<name>.json``."""
    payload = {"timestamp": datetime.now().isoformat(), "version": __version__, **payload}
    return save_json(Path(output_dir) / f"{name}.json", payload)


def _save_npz(npz_file: Path, save_dict: dict[str, Any]) -> None:
    npz_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        np.savez_compressed(npz_file, **save_dict)
    except OSError as e:
        raise OSError(f"Failed to write NPZ file to {npz_file}: {e}") from e

    try:
        file_size_mb = npz_file.stat().st_size / (1024 * 1024)
        size_str = f"{file_size_mb:.2f} MB"
    except OSError:
        size_str = "size unknown"
    logger.info(f"Saved NPZ file with {len(save_dict)} arrays to {npz_file} ({size_str})")
