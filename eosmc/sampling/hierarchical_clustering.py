"""Initial PMC mixtures from MCMC chains.

The chains are cut into patches of ``patch_length`` points after dropping
the first ``skip_initial`` fraction. Every patch becomes a Gaussian
component. Chains that explore the same mode are grouped by their R-value,
and the patches of each group are reduced to ``target_ncomponents``
components by the hierarchical clustering of Goldberger and Roweis, which
alternates between assigning every patch to the output component closest in
Kullback-Leibler divergence and refitting the outputs by moment matching.
Each group receives the same total weight.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from eosmc.sampling.diagnostics import compute_r_values
from eosmc.sampling.exceptions import SamplingError
from eosmc.sampling.mixture import MixtureComponent, MixtureDensity
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)


def kullback_leibler(a: MixtureComponent, b: MixtureComponent) -> float:
    """``KL(a || b)`` between two Gaussian components."""
    d = a.dimension
    inv_b = np.linalg.inv(b.covariance)
    delta = b.mean - a.mean
    _, logdet_a = np.linalg.slogdet(a.covariance)
    _, logdet_b = np.linalg.slogdet(b.covariance)
    return 0.5 * float(
        np.trace(inv_b @ a.covariance) + delta @ inv_b @ delta - d + logdet_b - logdet_a
    )


def group_chains_by_r_value(chains: Sequence[np.ndarray], threshold: float | None) -> list[list[int]]:
    """Group chains whose joint R-value stays below ``threshold``.

    Chains are visited in order; each joins the first group with which all
    R-values stay below the threshold, or opens a new group. Without a
    threshold every chain is its own group.
    """
    if threshold is None:
        return [[i] for i in range(len(chains))]
    n = min(len(c) for c in chains)
    groups: list[list[int]] = []
    for i, chain in enumerate(chains):
        for group in groups:
            stacked = np.stack([chains[j][-n:] for j in group] + [chain[-n:]])
            r_values = compute_r_values(stacked)
            if max(r_values.values()) < threshold:
                group.append(i)
                break
        else:
            groups.append([i])
    logger.info(f"Grouped {len(chains)} chains into {len(groups)} group(s) by R-value")
    for k, group in enumerate(groups):
        logger.info(f"  group {k}: chains {group}")
    return groups


def make_patches(
    chain: np.ndarray,
    patch_length: int,
    skip_initial: float = 0.0,
) -> list[MixtureComponent]:
    """Gaussian components from consecutive patches of one chain.

    Patches whose sample covariance is not positive definite (e.g. a chain
    stuck at one point) are skipped.
    """
    chain = np.asarray(chain, dtype=float)
    chain = chain[int(skip_initial * len(chain)):]
    components = []
    for start in range(0, len(chain) - patch_length + 1, patch_length):
        patch = chain[start : start + patch_length]
        covariance = np.atleast_2d(np.cov(patch.T, ddof=1))
        try:
            np.linalg.cholesky(covariance)
        except np.linalg.LinAlgError:
            continue
        components.append(MixtureComponent(1.0, patch.mean(axis=0), covariance))
    return components


class HierarchicalClustering:
    """Reduce many Gaussian components to a few.

    Parameters
    ----------
    target_ncomponents : int
        Number of output components.
    max_iterations : int
        Upper bound on assign/refit iterations.
    """

    def __init__(self, target_ncomponents: int, max_iterations: int = 100):
        self.target_ncomponents = target_ncomponents
        self.max_iterations = max_iterations

    def _initial(self, components: list[MixtureComponent]) -> list[MixtureComponent]:
        picks = np.linspace(0, len(components) - 1, self.target_ncomponents).round().astype(int)
        return [
            MixtureComponent(1.0, components[i].mean.copy(), components[i].covariance.copy())
            for i in picks
        ]

    @staticmethod
    def _refit(members: list[MixtureComponent]) -> MixtureComponent:
        weights = np.array([m.weight for m in members])
        weights = weights / weights.sum()
        mean = sum(w * m.mean for w, m in zip(weights, members))
        covariance = sum(
            w * (m.covariance + np.outer(m.mean - mean, m.mean - mean))
            for w, m in zip(weights, members)
        )
        return MixtureComponent(1.0, mean, 0.5 * (covariance + covariance.T))

    def reduce(self, components: list[MixtureComponent]) -> list[MixtureComponent]:
        if len(components) <= self.target_ncomponents:
            return list(components)
        outputs = self._initial(components)
        assignment = np.full(len(components), -1)
        for iteration in range(self.max_iterations):
            divergences = np.array(
                [[kullback_leibler(c, o) for o in outputs] for c in components]
            )
            new_assignment = np.argmin(divergences, axis=1)
            if np.array_equal(new_assignment, assignment):
                logger.debug(f"Hierarchical clustering converged after {iteration} iterations")
                break
            assignment = new_assignment
            refitted = []
            for k, output in enumerate(outputs):
                members = [c for c, a in zip(components, assignment) if a == k]
                refitted.append(self._refit(members) if members else output)
            outputs = refitted

        weights = np.array([sum(c.weight for c, a in zip(components, assignment) if a == k)
                            for k in range(len(outputs))])
        return [
            MixtureComponent(w, o.mean, o.covariance)
            for w, o in zip(weights, outputs)
            if w > 0.0
        ]


def mixture_from_chains(
    chains: Sequence[np.ndarray],
    patch_length: int,
    skip_initial: float,
    target_ncomponents: int,
    group_by_r_value: float | None = None,
    ignore_groups: Sequence[int] = (),
    degrees_of_freedom: float | None = None,
) -> MixtureDensity:
    """Initial PMC mixture from MCMC chains.

    Raises
    ------
    SamplingError
        If no group is left after ``ignore_groups`` or no chain is long
        enough to yield a patch.
    """
    groups = group_chains_by_r_value(chains, group_by_r_value)
    kept = [g for k, g in enumerate(groups) if k not in set(ignore_groups)]
    if not kept:
        raise SamplingError(
            f"All {len(groups)} chain groups are ignored", error_context={"ignored": list(ignore_groups)}
        )

    clustering = HierarchicalClustering(target_ncomponents)
    components: list[MixtureComponent] = []
    for group in kept:
        patches = [p for i in group for p in make_patches(chains[i], patch_length, skip_initial)]
        if not patches:
            logger.warning(f"Chain group {group} yields no patches of length {patch_length}")
            continue
        reduced = clustering.reduce(patches)
        total = sum(c.weight for c in reduced)
        for c in reduced:
            components.append(
                MixtureComponent(
                    c.weight / total / len(kept), c.mean, c.covariance, degrees_of_freedom
                )
            )

    if not components:
        raise SamplingError(
            f"No chain yields a patch of length {patch_length}; shorten the patches"
        )
    logger.info(f"Initial mixture has {len(components)} component(s)")
    return MixtureDensity(components)
