"""
Logging for the eosmc package.

Every module obtains its logger through :func:`get_logger`, which places it
under the ``eosmc`` root logger. The root logger gets one stream handler the
first time it is used, so a single level switch (``--verbose``, ``--quiet``)
controls samplers, stores and CLI together.

Long phases (prerun, main run, PMC updates, mode finding) are wrapped in
:func:`log_operation`; hot functions that are only worth reporting when slow
use :func:`log_performance`.
"""

import functools
import inspect
import logging
import time
from contextlib import contextmanager
from typing import Optional

ROOT_LOGGER = "eosmc"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, level.upper(), logging.INFO)


class PackageLoggers:
    """Configures the ``eosmc`` root logger once and hands out child loggers."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._configured = False
        return cls._instance

    def configure(self, level: str | int = "INFO") -> None:
        if self._configured:
            return
        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(_level(level))
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(handler)
        self._configured = True

    def set_level(self, level: str | int) -> None:
        logging.getLogger(ROOT_LOGGER).setLevel(_level(level))

    def get_logger(self, name: str) -> logging.Logger:
        if name == "__main__":
            name = f"{ROOT_LOGGER}.main"
        elif name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
            name = f"{ROOT_LOGGER}.{name}"
        self.configure()
        return logging.getLogger(name)


_loggers = PackageLoggers()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger in the ``eosmc`` hierarchy.

    Args:
        name: Logger name. If None, uses the caller's module name.

    Returns:
        Configured logger instance.
    """
    if name is None:
        frame = inspect.currentframe()
        try:
            caller = frame.f_back if frame else None
            name = caller.f_globals.get("__name__", "unknown") if caller else "unknown"
        finally:
            del frame
    return _loggers.get_logger(name)


def set_log_level(level: str | int) -> None:
    """Set the level of every eosmc logger, e.g. ``"DEBUG"`` or ``"ERROR"``."""
    _loggers.set_level(level)


def log_performance(
    logger: Optional[logging.Logger] = None,
    level: int = logging.DEBUG,
    threshold: float = 0.1,
):
    """
    Decorator logging the duration of calls that take at least ``threshold`` seconds.

    Failures are logged at ERROR with their duration and re-raised.
    """

    def decorator(func):
        nonlocal logger
        if logger is None:
            logger = get_logger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{func.__qualname__} failed after {time.perf_counter() - start:.3f}s: {e}"
                )
                raise
            duration = time.perf_counter() - start
            if duration >= threshold:
                logger.log(level, f"{func.__qualname__} took {duration:.3f}s")
            return result

        return wrapper

    return decorator


@contextmanager
def log_operation(
    operation_name: str,
    logger: Optional[logging.Logger] = None,
    level: int = logging.INFO,
):
    """
    Log the start, completion time or failure of an operation.

    Args:
        operation_name: Name of the operation.
        logger: Logger to use. If None, creates one for the caller's module.
        level: Logging level of the start and completion messages.
    """
    if logger is None:
        logger = get_logger()

    logger.log(level, f"Starting {operation_name}")
    start = time.perf_counter()
    try:
        yield logger
    except Exception as e:
        logger.error(f"Failed {operation_name} after {time.perf_counter() - start:.3f}s: {e}")
        raise
    logger.log(level, f"Completed {operation_name} in {time.perf_counter() - start:.3f}s")
