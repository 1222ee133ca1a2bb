"""Configuration Management for eosmc
===================================

YAML/JSON analysis files describe parameters, priors, likelihood blocks,
named posteriors and the sampler options. :class:`ConfigManager` loads such
a file (or an override dictionary) and builds the objects the samplers run
on.

Analysis file layout::

    parameters:
      - {name: x, value: 0.0, min: -10, max: 10}
    priors:
      - {name: x-prior, type: flat, parameter: x, min: -10, max: 10}
      - {type: gaussian, parameter: y, min: -5, max: 5,
         lower: -1, central: 0, upper: 1, n_sigmas: 3, nuisance: true}
    likelihoods:
      - {name: x-meas, type: observable, observable: x, min: -1, central: 0, max: 1}
    posteriors:
      - {name: default, priors: [x-prior], likelihoods: [x-meas], fix: {z: 1.0}}
    mcmc: {number_of_chains: 4, seed: 1}
    pmc: {samples_per_component: 1000}
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from eosmc.config.exceptions import ConfigurationError
from eosmc.utils.logging import get_logger

if TYPE_CHECKING:
    from eosmc.core.posterior import LogPosterior
    from eosmc.sampling.config import (
        MarkovChainSamplerConfig,
        PopulationMonteCarloSamplerConfig,
    )

logger = get_logger(__name__)

SECTIONS = (
    "metadata",
    "range_policy",
    "parameters",
    "priors",
    "likelihoods",
    "posteriors",
    "mcmc",
    "pmc",
)


def _prior_name(entry: dict[str, Any]) -> str:
    if "name" in entry:
        return str(entry["name"])
    if "parameter" in entry:
        return str(entry["parameter"])
    return "+".join(entry.get("parameters", []))


class ConfigManager:
    """Configuration manager for eosmc analyses.

    Key Features:
    - YAML/JSON configuration file loading
    - ``.config`` attribute access to the raw dictionary
    - Sampler option records and posteriors built on demand

    Usage:
        config_manager = ConfigManager('analysis.yaml')
        posterior = config_manager.build_posterior('default')
        mcmc_config = config_manager.get_mcmc_config()
    """

    def __init__(
        self,
        config_file: str | Path | None = None,
        config_override: dict[str, Any] | None = None,
    ):
        """Initialize configuration manager.

        Parameters
        ----------
        config_file : str or Path, optional
            Path to YAML/JSON configuration file
        config_override : dict, optional
            Override configuration data instead of loading from file

        Raises
        ------
        ConfigurationError
            If the file is missing or cannot be parsed.
        """
        self.config_file = config_file
        self.config: dict[str, Any] = {}

        if config_override is not None:
            self.config = dict(config_override)
            logger.info("Configuration loaded from override data")
        elif config_file is not None:
            self.load_config()
        else:
            self.config = self._get_default_config()
            logger.debug("No configuration file given, using defaults")

        self._normalize_schema()
        if os.environ.get("EOSMC_VALIDATE_CONFIG", "true").lower() == "true":
            self._validate_config()

    def load_config(self) -> None:
        """Load and parse the YAML/JSON configuration file."""
        config_path = Path(self.config_file)
        if not config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self.config_file}",
                key="config_file",
                value=str(self.config_file),
            )

        file_extension = config_path.suffix.lower()
        try:
            with open(config_path, buffering=8192, encoding="utf-8") as f:
                if file_extension == ".json":
                    config = json.load(f)
                else:
                    # YAML is a superset of JSON, so unknown extensions load too
                    config = yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to parse configuration file {config_path}: {e}",
                key="config_file",
                value=str(config_path),
            ) from e

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigurationError(
                f"Configuration file {config_path} must contain a mapping, "
                f"got {type(config).__name__}",
                key="config_file",
                value=str(config_path),
            )
        self.config = config
        logger.info(f"Configuration loaded from: {self.config_file}")

        if "metadata" in self.config:
            version = self.config["metadata"].get("config_version", "Unknown")
            logger.info(f"Configuration version: {version}")

    def _get_default_config(self) -> dict[str, Any]:
        """Empty analysis with default sampler options."""
        return {
            "metadata": {"config_version": "1.0", "description": "Default configuration"},
            "parameters": [],
            "priors": [],
            "likelihoods": [],
            "posteriors": [],
            "mcmc": {},
            "pmc": {},
        }

    def get_config(self) -> dict[str, Any]:
        return self.config

    def update_config(self, key: str, value: Any) -> None:
        """Update a configuration value using dot notation (``mcmc.seed``)."""
        keys = key.split(".")
        config_ref = self.config
        for k in keys[:-1]:
            if k not in config_ref:
                config_ref[k] = {}
            config_ref = config_ref[k]
        config_ref[keys[-1]] = value

    def _normalize_schema(self) -> None:
        """Accept mappings keyed by name where lists of entries are expected."""
        for section in ("parameters", "priors", "likelihoods", "posteriors"):
            value = self.config.get(section)
            if isinstance(value, dict):
                self.config[section] = [
                    {"name": name, **(entry or {})} for name, entry in value.items()
                ]
                logger.debug(f"Normalized '{section}' mapping into a list of entries")

    def _validate_config(self) -> None:
        """Lightweight structural validation.

        Can be disabled by setting EOSMC_VALIDATE_CONFIG=false.
        """
        if not self.config:
            logger.warning("Configuration is empty")
            return

        for section in self.config:
            if section not in SECTIONS:
                logger.warning(f"Unknown configuration section: '{section}'")

        for section in ("parameters", "priors", "likelihoods", "posteriors"):
            entries = self.config.get(section) or []
            if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
                raise ConfigurationError(
                    f"Section '{section}' must be a list of mappings", key=section
                )
        for section in ("mcmc", "pmc"):
            if not isinstance(self.config.get(section, {}) or {}, dict):
                raise ConfigurationError(f"Section '{section}' must be a mapping", key=section)

        for section, name_of in (("priors", _prior_name), ("likelihoods", lambda e: e.get("name"))):
            names = [name_of(e) for e in (self.config.get(section) or [])]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ConfigurationError(
                    f"Duplicate {section} entries: {duplicates}", key=section, value=duplicates
                )
        logger.debug("Configuration validation completed")

    def get_mcmc_config(self, **overrides: Any) -> MarkovChainSamplerConfig:
        """MCMC options from the ``mcmc`` section, with keyword overrides."""
        from eosmc.sampling.config import MarkovChainSamplerConfig

        options = dict(self.config.get("mcmc") or {})
        options.update({k: v for k, v in overrides.items() if v is not None})
        return MarkovChainSamplerConfig.from_dict(options)

    def get_pmc_config(self, **overrides: Any) -> PopulationMonteCarloSamplerConfig:
        """PMC options from the ``pmc`` section, with keyword overrides."""
        from eosmc.sampling.config import PopulationMonteCarloSamplerConfig

        options = dict(self.config.get("pmc") or {})
        options.update({k: v for k, v in overrides.items() if v is not None})
        return PopulationMonteCarloSamplerConfig.from_dict(options)

    def list_priors(self) -> list[str]:
        return [_prior_name(e) for e in (self.config.get("priors") or [])]

    def list_likelihoods(self) -> list[str]:
        return [str(e.get("name")) for e in (self.config.get("likelihoods") or [])]

    def list_posteriors(self) -> list[str]:
        return [str(e.get("name")) for e in (self.config.get("posteriors") or [])]

    def _posterior_entry(self, name: str | None) -> dict[str, Any]:
        entries = self.config.get("posteriors") or []
        if name is None:
            if entries:
                return entries[0]
            # all priors and likelihoods
            return {"name": "default"}
        for entry in entries:
            if entry.get("name") == name:
                return entry
        raise ConfigurationError(
            f"Unknown posterior '{name}'. Available: {self.list_posteriors()}",
            key="posterior",
            value=name,
        )

    @staticmethod
    def _select(entries: list[dict], names: list[str] | None, name_of, kind: str) -> list[dict]:
        if names is None:
            return list(entries)
        by_name = {name_of(e): e for e in entries}
        missing = [n for n in names if n not in by_name]
        if missing:
            raise ConfigurationError(f"Unknown {kind}: {missing}", key=kind, value=missing)
        return [by_name[n] for n in names]

    def build_posterior(self, name: str | None = None) -> LogPosterior:
        """Build the named posterior (the first one, or everything, by default).

        Raises
        ------
        ConfigurationError
            For unknown names and any invalid prior, likelihood or fix entry.
        """
        from eosmc.core import (
            Parameters,
            build_log_posterior,
            make_likelihood_block,
            make_prior,
        )

        entry = self._posterior_entry(name)
        prior_entries = self._select(
            (self.config.get("priors") or []), entry.get("priors"), _prior_name, "priors"
        )
        likelihood_entries = self._select(
            (self.config.get("likelihoods") or []),
            entry.get("likelihoods"),
            lambda e: e.get("name"),
            "likelihoods",
        )
        if not prior_entries:
            raise ConfigurationError(
                f"Posterior '{entry.get('name')}' varies no parameter", key="priors"
            )

        parameters = Parameters.from_config(
            (self.config.get("parameters") or []),
            policy=self.config.get("range_policy", "reject"),
        )
        priors = [(make_prior(e), bool(e.get("nuisance", False))) for e in prior_entries]
        blocks = [make_likelihood_block(e) for e in likelihood_entries]
        posterior = build_log_posterior(parameters, priors, blocks, entry.get("fix"))
        logger.info(
            f"Built posterior '{entry.get('name')}': {posterior.dimension} varied parameter(s), "
            f"{len(blocks)} likelihood block(s)"
        )
        for line in posterior.describe():
            logger.debug(f"  {line}")
        return posterior


def load_analysis_config(config_path: str | Path) -> dict[str, Any]:
    """Load an analysis configuration file into a dictionary."""
    return ConfigManager(config_path).config
