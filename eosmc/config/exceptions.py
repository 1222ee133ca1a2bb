"""Configuration errors for eosmc.

Configuration problems are detected while an analysis is being set up and
always abort before the first sample is drawn. The message names the
offending option so that the fix is obvious from the log alone.
"""

from __future__ import annotations

from typing import Any


class ConfigurationError(ValueError):
    """Raised for invalid or inconsistent configuration.

    Attributes
    ----------
    key : str or None
        Configuration key (option or parameter name) that caused the error.
    value : Any
        Offending value, if one is available.
    """

    def __init__(self, message: str, key: str | None = None, value: Any = None):
        super().__init__(message)
        self.key = key
        self.value = value

    def __str__(self) -> str:
        base_msg = super().__str__()
        if self.key is not None:
            return f"{base_msg} (option: {self.key}={self.value!r})"
        return base_msg
