"""
Exception hierarchy for kbservice.

Every error raised by the core derives from KBServiceError so callers can
catch the whole family at once. Errors that wrap a collaborator failure keep
the original exception as ``__cause__`` (raised with ``from``).
"""

from typing import Any


class KBServiceError(Exception):
    """Base exception for all kbservice errors."""
    pass


class ConfigurationError(KBServiceError, ValueError):
    """
    Invalid construction parameters.

    Raised when:
    - chunk size or tokens per chunk is not positive
    - chunk overlap is negative
    - chunk overlap is not smaller than the window
    - an unknown distance metric or splitter kind is requested
    """
    pass


class SplitterError(KBServiceError):
    """
    Error while splitting text into chunks.

    Raised when:
    - the number of metadata entries does not match the number of texts
    - the token window fails to make forward progress
    """

    def __init__(self, message: str, operation: str = "split_text"):
        super().__init__(f"splitter.{operation}: {message}")
        self.operation = operation


class DimensionMismatchError(KBServiceError, ValueError):
    """A vector length differs from the store's configured dimension."""

    def __init__(self, expected: int, actual: int, store: str = "", operation: str = "add_documents"):
        where = f" (store: {store}, operation: {operation})" if store else f" (operation: {operation})"
        super().__init__(
            f"invalid vector dimensions: expected {expected}, got {actual}{where}"
        )
        self.expected = expected
        self.actual = actual
        self.store = store
        self.operation = operation


class EmptyInputError(KBServiceError, ValueError):
    """Blank text or an empty batch was given to an embedding call."""

    def __init__(self, operation: str, message: str = "input text or documents cannot be empty"):
        super().__init__(f"embedding.{operation}: {message}")
        self.operation = operation


class BatchFailureError(KBServiceError):
    """One sub-batch of a fanned-out embedding request failed."""

    def __init__(self, batch_index: int, batch_count: int, cause: Exception):
        super().__init__(
            f"embedding batch {batch_index + 1}/{batch_count} failed: {cause}"
        )
        self.batch_index = batch_index
        self.batch_count = batch_count


class NotFoundError(KBServiceError, LookupError):
    """A required document, index or resource is absent."""
    pass


class BackendError(KBServiceError):
    """
    A collaborator (embedding service, vector store, data source) failed.

    Carries the operation name and the target store or service so the
    failure can be traced without inspecting the wrapped exception.
    """

    def __init__(self, message: str, operation: str, target: str):
        super().__init__(f"{operation} on {target} failed: {message}")
        self.operation = operation
        self.target = target


class DataSourceError(KBServiceError):
    """A data source could not produce a document."""

    NOT_FOUND = "NotFound"
    INVALID_SOURCE = "InvalidSource"
    ACCESS_DENIED = "AccessDenied"
    INVALID_FORMAT = "InvalidFormat"
    INTERNAL = "Internal"

    def __init__(self, message: str, source: str, operation: str, code: str = INTERNAL):
        super().__init__(f"datasource.{operation} [{source}]: {message}")
        self.source = source
        self.operation = operation
        self.code = code


class SyncError(KBServiceError):
    """
    A sync run aborted.

    ``source`` names the document that triggered it; ``report`` holds the
    counts reached before the failure, when the error comes from a run.
    """

    def __init__(self, message: str, source: str | None = None, report: Any = None):
        prefix = f"sync aborted at source {source!r}" if source else "sync aborted"
        super().__init__(f"{prefix}: {message}")
        self.source = source
        self.report = report


class OperationCancelledError(KBServiceError):
    """The cancellation token was set before the operation could finish."""
    pass
