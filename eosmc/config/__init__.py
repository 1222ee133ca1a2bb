"""Configuration system for the eosmc package.

Analysis files are loaded by :class:`ConfigManager`; the objects it builds
are imported lazily so that this package stays importable from anywhere in
eosmc.
"""

from eosmc.config.exceptions import ConfigurationError
from eosmc.config.manager import ConfigManager, load_analysis_config

__all__ = [
    "ConfigManager",
    "ConfigurationError",
    "load_analysis_config",
]
