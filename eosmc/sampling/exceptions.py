"""Custom exceptions for the sampling engine.

Exception Hierarchy:
    SamplingError (base)
    ├── DomainError (posterior undefined at a point)
    ├── StorageError (chunk store read/write/resume failures)
    └── DegenerateMixtureError (PMC proposal collapsed)

A ``DomainError`` never escapes the posterior evaluator: it is converted into
``log_posterior = -inf`` and the affected proposal is rejected. Storage errors
are fatal for the chain or run that hit them, while independent chains
continue. A degenerate mixture halts the PMC run.

Examples
--------
>>> try:
...     result = sampler.run()
... except DegenerateMixtureError as e:
...     logger.error(f"PMC run halted: {e}")
"""

from __future__ import annotations


class SamplingError(Exception):
    """Base exception for all sampling errors.

    Attributes
    ----------
    error_context : dict
        Additional context about the error (chain index, step, path, ...).
    """

    def __init__(self, message: str, error_context: dict | None = None):
        super().__init__(message)
        self.error_context = error_context or {}

    def __str__(self) -> str:
        """Return formatted error message with context."""
        base_msg = super().__str__()
        if self.error_context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.error_context.items())
            return f"{base_msg} (context: {context_str})"
        return base_msg


class DomainError(SamplingError):
    """Raised when an observable or likelihood is undefined at a point.

    Observables signal unphysical parameter points by raising this error.
    The posterior evaluator turns it into ``-inf``.
    """


class StorageError(SamplingError):
    """Raised for chunk store save/load/resume failures.

    Common Causes
    -------------
    - Output file not writable or disk full
    - Chunk checksum mismatch (file corrupted)
    - Appending a chunk out of order
    - Overwriting a write-once record
    - Missing checkpoint when a resume was requested

    Attributes
    ----------
    path : str
        Path of the store involved, if any.
    operation : str
        Operation that failed ('append', 'read', 'list', 'write_record', ...).
    io_error : Exception
        Original I/O exception, if available.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        operation: str | None = None,
        io_error: Exception | None = None,
        error_context: dict | None = None,
    ):
        context = error_context or {}
        if path:
            context["path"] = path
        if operation:
            context["operation"] = operation
        if io_error:
            context["io_error_type"] = type(io_error).__name__

        super().__init__(message, context)
        self.path = path
        self.operation = operation
        self.io_error = io_error


class DegenerateMixtureError(SamplingError):
    """Raised when the PMC proposal mixture degenerates.

    Either every importance weight of a step is zero or non-finite, or every
    mixture component was pruned. Continuing would mean sampling from an
    ill-defined density, so the run halts.

    Attributes
    ----------
    step : int or None
        PMC step at which the degeneracy was detected.
    """

    def __init__(
        self,
        message: str,
        step: int | None = None,
        error_context: dict | None = None,
    ):
        context = error_context or {}
        if step is not None:
            context["step"] = step
        super().__init__(message, context)
        self.step = step
