"""Utility helpers shared across eosmc."""

from eosmc.utils.logging import get_logger, log_operation, log_performance

__all__ = ["get_logger", "log_operation", "log_performance"]
