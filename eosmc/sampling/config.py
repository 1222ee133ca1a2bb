"""Sampler configuration records.

Both samplers take an explicit, immutable configuration record in their
constructor. Records validate themselves on construction and raise
:class:`~eosmc.config.exceptions.ConfigurationError` listing every problem,
so a bad option never survives until sampling starts. Derived records are
built with :meth:`with_options`::

    config = MarkovChainSamplerConfig.quick().with_options(seed=7, chunks=5)

Configuration file example::

    mcmc:
      number_of_chains: 4
      chunk_size: 1000
      chunks: 10
      prerun_iterations_min: 1000
      prerun_iterations_max: 5000
      rvalue_threshold: 1.1
      proposal: MultivariateGaussian
      seed: 1
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from eosmc.config.exceptions import ConfigurationError
from eosmc.sampling.proposal import PROPOSAL_TYPES
from eosmc.utils.logging import get_logger

logger = get_logger(__name__)

# configuration-file and command-line spellings of option names
_MCMC_ALIASES = {
    "chains": "number_of_chains",
    "scale_reduction": "rvalue_threshold",
    "prerun_min": "prerun_iterations_min",
    "prerun_max": "prerun_iterations_max",
    "prerun_update": "prerun_iterations_update",
    "strict_rvalue": "use_strict_rvalue_definition",
    "dof": "student_t_degrees_of_freedom",
}

_PMC_ALIASES = {
    "dof": "degrees_of_freedom",
    "max_rel_std": "maximum_relative_std_deviation",
    "ess_floor": "minimum_eff_sample_size",
    "hc_patch_length": "patch_length",
    "hc_skip_initial": "skip_initial",
    "hc_target_ncomponents": "target_ncomponents",
}


def _normalized_keys(config_dict: dict[str, Any], aliases: dict[str, str]) -> dict[str, Any]:
    normalized = {}
    for key, value in config_dict.items():
        key = key.replace("-", "_")
        normalized[aliases.get(key, key)] = value
    return normalized


def _from_dict(cls, config_dict: dict[str, Any], aliases: dict[str, str]):
    options = _normalized_keys(config_dict or {}, aliases)
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(options) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown {cls.__name__} option(s): {', '.join(unknown)}",
            key=unknown[0],
            value=options[unknown[0]],
        )
    return cls(**options)


def _check(errors: list[str], condition: bool, message: str) -> None:
    if not condition:
        errors.append(message)


def _raise_on_errors(name: str, errors: list[str]) -> None:
    if errors:
        for error in errors:
            logger.error(f"{name} validation: {error}")
        raise ConfigurationError(f"Invalid {name}: " + "; ".join(errors))


def _is_count(value: Any, minimum: int = 1) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= minimum


@dataclass(frozen=True)
class MarkovChainSamplerConfig:
    """Options of :class:`~eosmc.sampling.mcmc_sampler.MarkovChainSampler`.

    Attributes
    ----------
    number_of_chains : int
        Independent chains; at least two when a prerun is requested.
    chunk_size : int
        Iterations per stored chunk.
    chunks : int
        Chunks per chain in the main run.
    need_prerun : bool
        Run the adaptive prerun before the main run.
    prerun_iterations_min, prerun_iterations_max, prerun_iterations_update : int
        Prerun bounds and block length between R-value checks.
    rvalue_threshold : float
        Prerun converges once every R-value is below this value.
    use_strict_rvalue_definition : bool
        Include nuisance parameters in the R-value check.
    proposal : str
        One of ``MultivariateGaussian``, ``MultivariateStudentT`` and
        ``IndependenceGaussian``.
    student_t_degrees_of_freedom : float or None
        Required (positive) for the Student-t proposal.
    seed : int or None
        Chain ``i`` is seeded with ``seed + i``.
    need_main_run, store_prerun : bool
        Whether to run the main phase and whether to store prerun chunks.
    output_file : str or None
        HDF5 chunk store; ``None`` keeps chunks in memory.
    strict : bool
        Treat prerun non-convergence as an error.
    adaptation_window : int
        Most recent history points used to re-estimate the covariance.
    acceptance_rate_min, acceptance_rate_max, rescale_factor : float
        Target acceptance band and multiplicative rescaling step.
    initial_scale : float or None
        Initial proposal scale, ``2.38**2 / dim`` when ``None``.
    covariance_jitter : float
        Added to the diagonal of adapted covariances.
    """

    number_of_chains: int = 4
    chunk_size: int = 1000
    chunks: int = 10
    need_prerun: bool = True
    prerun_iterations_min: int = 1000
    prerun_iterations_max: int = 100000
    prerun_iterations_update: int = 1000
    rvalue_threshold: float = 1.1
    use_strict_rvalue_definition: bool = True
    proposal: str = "MultivariateGaussian"
    student_t_degrees_of_freedom: float | None = None
    seed: int | None = None
    need_main_run: bool = True
    store_prerun: bool = False
    output_file: str | None = None
    parallelize: bool = False
    max_workers: int | None = None
    strict: bool = False
    show_progress: bool = False

    # Adaptation schedule
    adaptation_window: int = 1000
    acceptance_rate_min: float = 0.15
    acceptance_rate_max: float = 0.35
    rescale_factor: float = 1.5
    initial_scale: float | None = None
    covariance_jitter: float = 1e-10

    def __post_init__(self):
        _raise_on_errors(type(self).__name__, self.validate())

    def validate(self) -> list[str]:
        """List of validation error messages (empty if valid)."""
        errors: list[str] = []
        _check(errors, _is_count(self.number_of_chains),
               f"number_of_chains must be positive int, got: {self.number_of_chains}")
        if self.need_prerun and _is_count(self.number_of_chains):
            _check(errors, self.number_of_chains >= 2,
                   "number_of_chains must be at least 2 for the R-value of the prerun")
        _check(errors, _is_count(self.chunk_size),
               f"chunk_size must be positive int, got: {self.chunk_size}")
        _check(errors, _is_count(self.chunks),
               f"chunks must be positive int, got: {self.chunks}")
        _check(errors, _is_count(self.prerun_iterations_update),
               f"prerun_iterations_update must be positive int, got: {self.prerun_iterations_update}")
        _check(errors, _is_count(self.prerun_iterations_min, 0),
               f"prerun_iterations_min must be non-negative int, got: {self.prerun_iterations_min}")
        _check(errors, _is_count(self.prerun_iterations_max),
               f"prerun_iterations_max must be positive int, got: {self.prerun_iterations_max}")
        if _is_count(self.prerun_iterations_min, 0) and _is_count(self.prerun_iterations_max):
            _check(errors, self.prerun_iterations_min <= self.prerun_iterations_max,
                   f"prerun_iterations_min ({self.prerun_iterations_min}) exceeds "
                   f"prerun_iterations_max ({self.prerun_iterations_max})")
        _check(errors, isinstance(self.rvalue_threshold, (int, float)) and self.rvalue_threshold >= 1.0,
               f"rvalue_threshold must be >= 1.0, got: {self.rvalue_threshold}")
        _check(errors, self.proposal in PROPOSAL_TYPES,
               f"proposal must be one of {list(PROPOSAL_TYPES)}, got: {self.proposal}")
        if self.proposal == "MultivariateStudentT":
            dof = self.student_t_degrees_of_freedom
            _check(errors, dof is not None and dof > 0,
                   f"Number of degrees of freedom for MultivariateStudentT must be positive, got: {dof}")
        _check(errors, self.seed is None or _is_count(self.seed, 0),
               f"seed must be a non-negative int or None, got: {self.seed}")
        _check(errors, self.need_prerun or self.need_main_run,
               "at least one of need_prerun and need_main_run must be set")
        _check(errors, self.max_workers is None or _is_count(self.max_workers),
               f"max_workers must be positive int or None, got: {self.max_workers}")
        _check(errors, _is_count(self.adaptation_window, 2),
               f"adaptation_window must be int >= 2, got: {self.adaptation_window}")
        _check(errors, 0.0 <= self.acceptance_rate_min < self.acceptance_rate_max <= 1.0,
               f"acceptance band must satisfy 0 <= min < max <= 1, got: "
               f"[{self.acceptance_rate_min}, {self.acceptance_rate_max}]")
        _check(errors, self.rescale_factor > 1.0,
               f"rescale_factor must be > 1, got: {self.rescale_factor}")
        _check(errors, self.initial_scale is None or self.initial_scale > 0.0,
               f"initial_scale must be positive, got: {self.initial_scale}")
        _check(errors, self.covariance_jitter >= 0.0,
               f"covariance_jitter must be non-negative, got: {self.covariance_jitter}")
        return errors

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> MarkovChainSamplerConfig:
        """Create a record from a configuration section.

        Raises
        ------
        ConfigurationError
            For unknown options and invalid values.
        """
        return _from_dict(cls, config_dict, _MCMC_ALIASES)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def with_options(self, **changes: Any) -> MarkovChainSamplerConfig:
        """Validated copy with ``changes`` applied."""
        return dataclasses.replace(self, **_normalized_keys(changes, _MCMC_ALIASES))

    @classmethod
    def default(cls) -> MarkovChainSamplerConfig:
        return cls()

    @classmethod
    def quick(cls) -> MarkovChainSamplerConfig:
        """Short runs for tests and interactive exploration."""
        return cls(
            number_of_chains=2,
            chunk_size=100,
            chunks=2,
            prerun_iterations_min=200,
            prerun_iterations_max=2000,
            prerun_iterations_update=200,
            adaptation_window=200,
            seed=0,
        )


@dataclass(frozen=True)
class PopulationMonteCarloSamplerConfig:
    """Options of :class:`~eosmc.sampling.pmc_sampler.PopulationMonteCarloSampler`.

    Attributes
    ----------
    samples_per_component : int
        Samples drawn per mixture component and step.
    adaptation_steps : int
        Updates performed before convergence is tested.
    final_samples : int
        Samples drawn from the final mixture.
    degrees_of_freedom : float or None
        ``None`` for Gaussian components, positive for Student-t components.
    group_by_r_value : float or None
        R-value threshold for merging chain patches or components.
    ignore_groups : list[int]
        Groups of chains dropped before the mixture is initialised.
    minimum_eff_sample_size : float
        Floor of the normalised ESS, in ``(0, 1]``.
    ignore_eff_sample_size : bool
        Test convergence on the evidence only.
    max_updates : int
        Upper bound on the number of updates.
    maximum_relative_std_deviation : float
        Relative std of the evidence over the last ``minimum_steps`` steps.
    minimum_steps : int
        Steps over which the convergence criteria must hold.
    crop_highest_weights : int
        Number of largest weights capped before the update.
    adjust_sample_size : bool
        Grow the sample size when the ESS is poor.
    minimum_component_weight : float
        Components below this weight are pruned.
    merge_distance_threshold : float or None
        Mahalanobis distance below which two components are merged.
    patch_length, skip_initial, target_ncomponents
        Hierarchical clustering of MCMC chains into initial components.
    """

    samples_per_component: int = 1000
    adaptation_steps: int = 0
    final_samples: int = 10000
    degrees_of_freedom: float | None = None
    group_by_r_value: float | None = None
    ignore_groups: tuple[int, ...] = field(default_factory=tuple)
    minimum_eff_sample_size: float = 0.5
    ignore_eff_sample_size: bool = False
    max_updates: int = 20
    maximum_relative_std_deviation: float = 0.01
    minimum_steps: int = 3
    crop_highest_weights: int = 0
    adjust_sample_size: bool = False
    minimum_component_weight: float = 1e-4
    merge_distance_threshold: float | None = None
    patch_length: int = 200
    skip_initial: float = 0.2
    target_ncomponents: int = 1
    seed: int | None = None
    output_file: str | None = None
    parallelize: bool = False
    max_workers: int | None = None

    def __post_init__(self):
        if isinstance(self.ignore_groups, list):
            object.__setattr__(self, "ignore_groups", tuple(self.ignore_groups))
        _raise_on_errors(type(self).__name__, self.validate())

    def validate(self) -> list[str]:
        """List of validation error messages (empty if valid)."""
        errors: list[str] = []
        _check(errors, _is_count(self.samples_per_component, 2),
               f"samples_per_component must be int >= 2, got: {self.samples_per_component}")
        _check(errors, _is_count(self.adaptation_steps, 0),
               f"adaptation_steps must be non-negative int, got: {self.adaptation_steps}")
        _check(errors, _is_count(self.final_samples),
               f"final_samples must be positive int, got: {self.final_samples}")
        _check(errors, self.degrees_of_freedom is None or self.degrees_of_freedom > 0,
               f"degrees_of_freedom must be positive or None, got: {self.degrees_of_freedom}")
        _check(errors, self.group_by_r_value is None or self.group_by_r_value >= 1.0,
               f"group_by_r_value must be >= 1.0 or None, got: {self.group_by_r_value}")
        _check(errors, all(_is_count(g, 0) for g in self.ignore_groups),
               f"ignore_groups must be non-negative ints, got: {list(self.ignore_groups)}")
        _check(errors, 0.0 < self.minimum_eff_sample_size <= 1.0,
               f"minimum_eff_sample_size must be in (0, 1], got: {self.minimum_eff_sample_size}")
        _check(errors, _is_count(self.max_updates),
               f"max_updates must be positive int, got: {self.max_updates}")
        _check(errors, self.maximum_relative_std_deviation > 0.0,
               f"maximum_relative_std_deviation must be positive, got: "
               f"{self.maximum_relative_std_deviation}")
        _check(errors, _is_count(self.minimum_steps),
               f"minimum_steps must be positive int, got: {self.minimum_steps}")
        _check(errors, _is_count(self.crop_highest_weights, 0),
               f"crop_highest_weights must be non-negative int, got: {self.crop_highest_weights}")
        if _is_count(self.crop_highest_weights, 0) and _is_count(self.samples_per_component, 2):
            _check(errors, self.crop_highest_weights < self.samples_per_component,
                   "crop_highest_weights must be smaller than samples_per_component")
        _check(errors, 0.0 <= self.minimum_component_weight < 1.0,
               f"minimum_component_weight must be in [0, 1), got: {self.minimum_component_weight}")
        _check(errors, self.merge_distance_threshold is None or self.merge_distance_threshold > 0.0,
               f"merge_distance_threshold must be positive or None, got: "
               f"{self.merge_distance_threshold}")
        _check(errors, _is_count(self.patch_length, 2),
               f"patch_length must be int >= 2, got: {self.patch_length}")
        _check(errors, 0.0 <= self.skip_initial < 1.0,
               f"skip_initial must be in [0, 1), got: {self.skip_initial}")
        _check(errors, _is_count(self.target_ncomponents),
               f"target_ncomponents must be positive int, got: {self.target_ncomponents}")
        _check(errors, self.seed is None or _is_count(self.seed, 0),
               f"seed must be a non-negative int or None, got: {self.seed}")
        _check(errors, self.max_workers is None or _is_count(self.max_workers),
               f"max_workers must be positive int or None, got: {self.max_workers}")
        return errors

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> PopulationMonteCarloSamplerConfig:
        return _from_dict(cls, config_dict, _PMC_ALIASES)

    def to_dict(self) -> dict[str, Any]:
        result = dataclasses.asdict(self)
        result["ignore_groups"] = list(self.ignore_groups)
        return result

    def with_options(self, **changes: Any) -> PopulationMonteCarloSamplerConfig:
        return dataclasses.replace(self, **_normalized_keys(changes, _PMC_ALIASES))

    @classmethod
    def default(cls) -> PopulationMonteCarloSamplerConfig:
        return cls()

    @classmethod
    def quick(cls) -> PopulationMonteCarloSamplerConfig:
        return cls(
            samples_per_component=500,
            final_samples=2000,
            max_updates=10,
            minimum_steps=2,
            maximum_relative_std_deviation=0.05,
            seed=0,
        )
