"""Convergence and sample-quality diagnostics.

This module provides the Gelman-Rubin R-value used to steer the MCMC
prerun, the autocorrelation-aware effective sample size of finished chains,
and the importance-sampling diagnostics (ESS, perplexity) used by PMC.
"""

from __future__ import annotations

from typing import Any

import arviz as az
import numpy as np
from scipy import special

from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_RVALUE = 1.1
DEFAULT_MIN_ESS = 400


def gelman_rubin_r_value(chains: np.ndarray) -> float:
    """Gelman-Rubin R-value of one parameter.

    Parameters
    ----------
    chains : np.ndarray
        Samples with shape ``(n_chains, n_samples)``.

    Returns
    -------
    float
        ``sqrt((n - 1) / n + (B / W) / n)`` with ``B`` the between-chain
        variance (``n`` times the variance of the chain means) and ``W`` the
        mean within-chain variance.
    """
    chains = np.asarray(chains, dtype=float)
    if chains.ndim != 2:
        raise ValueError(f"Expected (n_chains, n_samples), got shape {chains.shape}")
    n_chains, n = chains.shape
    if n_chains < 2:
        raise ValueError("R-value requires at least two chains")
    if n < 2:
        raise ValueError("R-value requires at least two samples per chain")

    # Between-chain variance
    B = n * np.var(np.mean(chains, axis=1), ddof=1)

    # Within-chain variance
    W = np.mean(np.var(chains, axis=1, ddof=1))

    if W <= 0.0:
        return 1.0 if B <= 0.0 else float("inf")
    return float(np.sqrt((n - 1) / n + (B / W) / n))


def compute_r_values(
    chains: np.ndarray,
    parameter_names: list[str] | None = None,
    indices: list[int] | None = None,
) -> dict[str, float]:
    """Per-parameter R-values.

    Parameters
    ----------
    chains : np.ndarray
        Samples with shape ``(n_chains, n_samples, n_parameters)``.
    parameter_names : list[str], optional
        Names used as keys; defaults to ``"p0", "p1", ...``.
    indices : list[int], optional
        Parameters to include; all by default.
    """
    chains = np.asarray(chains, dtype=float)
    n_parameters = chains.shape[2]
    names = parameter_names or [f"p{i}" for i in range(n_parameters)]
    selected = range(n_parameters) if indices is None else indices
    return {names[i]: gelman_rubin_r_value(chains[:, :, i]) for i in selected}


def compute_ess(samples: dict[str, np.ndarray]) -> dict[str, float]:
    """Bulk effective sample size of each parameter.

    Parameters
    ----------
    samples : dict[str, np.ndarray]
        Parameter samples, ``{name: (n_chains, n_samples)}``.
    """
    if not samples:
        return {}
    idata = az.from_dict(posterior=samples)
    ess_bulk = az.ess(idata, method="bulk")
    return {
        name: float(ess_bulk[name].values) if name in ess_bulk else np.nan
        for name in samples
    }


def normalize_log_weights(log_weights: np.ndarray) -> np.ndarray:
    """Self-normalised weights from log-weights.

    The maximum is subtracted before exponentiating, so weights spanning
    hundreds of orders of magnitude do not overflow.
    """
    log_weights = np.asarray(log_weights, dtype=float)
    finite = np.isfinite(log_weights)
    if not np.any(finite):
        raise ValueError("All log-weights are -inf or non-finite")
    shifted = np.where(finite, log_weights - np.max(log_weights[finite]), -np.inf)
    weights = np.exp(shifted)
    return weights / np.sum(weights)


def effective_sample_size(weights: np.ndarray) -> float:
    """``1 / sum(w_i**2)`` of the normalised weights."""
    weights = np.asarray(weights, dtype=float)
    total = np.sum(weights)
    if not total > 0.0:
        return 0.0
    normalized = weights / total
    return float(1.0 / np.sum(normalized**2))


def perplexity(weights: np.ndarray) -> float:
    """Normalised perplexity ``exp(H) / N`` of the weights, in ``(0, 1]``."""
    weights = np.asarray(weights, dtype=float)
    total = np.sum(weights)
    if not total > 0.0:
        return 0.0
    normalized = weights / total
    entropy = -np.sum(special.xlogy(normalized, normalized))
    return float(np.exp(entropy) / len(weights))


def check_convergence(
    r_values: dict[str, float],
    ess_bulk: dict[str, float] | None = None,
    max_rvalue: float = DEFAULT_MAX_RVALUE,
    min_ess: float = DEFAULT_MIN_ESS,
) -> tuple[str, list[str]]:
    """Check R-values and ESS against thresholds.

    Returns
    -------
    tuple[str, list[str]]
        ``(status, warnings)`` where status is ``"converged"`` or
        ``"not_converged"``.
    """
    warnings: list[str] = []

    max_r = max((v for v in r_values.values() if not np.isnan(v)), default=1.0)
    if max_r > max_rvalue:
        bad_params = [k for k, v in r_values.items() if v > max_rvalue]
        warnings.append(f"R-value > {max_rvalue} for parameters: {bad_params} (max={max_r:.3f})")

    if ess_bulk:
        min_ess_value = min((v for v in ess_bulk.values() if not np.isnan(v)), default=0.0)
        if min_ess_value < min_ess:
            bad_params = [k for k, v in ess_bulk.items() if v < min_ess]
            warnings.append(f"ESS < {min_ess} for parameters: {bad_params} (min={min_ess_value:.0f})")

    return ("not_converged" if warnings else "converged"), warnings


def summarize_diagnostics(r_values: dict[str, float], ess_bulk: dict[str, float]) -> str:
    r_list = [v for v in r_values.values() if not np.isnan(v)]
    ess_list = [v for v in ess_bulk.values() if not np.isnan(v)]
    max_r = max(r_list) if r_list else np.nan
    min_ess = min(ess_list) if ess_list else np.nan
    return f"Diagnostics: R-value(max)={max_r:.3f}, ESS(min)={min_ess:.0f}"


def log_sampler_summary(
    sampler: str,
    converged: bool,
    r_values: dict[str, float],
    ess: dict[str, float],
    acceptance_rates: dict[int, float] | None = None,
    failed: dict[int, str] | None = None,
    execution_time: float | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log the final report of a sampler run.

    Every run ends with this block, whether it converged or not, so that
    sample quality can be audited from the log alone.
    """
    logger.info("=" * 60)
    logger.info(f"{sampler} SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Convergence: {'converged' if converged else 'NOT converged'}")
    if execution_time is not None:
        logger.info(f"Execution time: {execution_time:.1f}s")
    if acceptance_rates:
        for index, rate in sorted(acceptance_rates.items()):
            logger.info(f"  chain {index}: acceptance rate {rate:.3f}")
    if failed:
        for index, reason in sorted(failed.items()):
            logger.error(f"  chain {index} FAILED: {reason}")
    if r_values:
        logger.info("R-values:")
        for name, value in r_values.items():
            logger.info(f"  {name}: {value:.4f}")
    if ess:
        logger.info("Effective sample size:")
        for name, value in ess.items():
            logger.info(f"  {name}: {value:.1f}")
    for key, value in (extra or {}).items():
        logger.info(f"{key}: {value}")
    if not converged:
        logger.warning("Samples may not be representative of the posterior")
    logger.info("=" * 60)
