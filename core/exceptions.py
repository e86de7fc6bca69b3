"""
Custom exception hierarchy for survey-image-sync.
Every exception carries a message plus a details dict locating the problem
(asset uid, submission id, field, endpoint, ...).
"""


class SyncException(Exception):
    """Base exception for all synchronizer errors."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# =============================================================================
# Network Exceptions
# =============================================================================


class NetworkException(SyncException):
    """Timeout, connection failure or non-2xx answer. Retryable."""

    pass


class MissingContentLengthException(NetworkException):
    """Stream response without a usable Content-Length header."""

    pass


class StreamInterruptedException(NetworkException):
    """An open download stream stalled or broke before its end. Retryable."""

    pass


class PartialDownloadException(SyncException):
    """Bytes received differ from the declared content length. Retryable."""

    pass


# =============================================================================
# Data Exceptions
# =============================================================================


class StructuralDataException(SyncException):
    """Server payload violates an invariant (e.g. two values for one field)."""

    pass


class IntegrityException(SyncException):
    """Local file hash does not match its manifest before a destructive operation."""

    pass


class DuplicateTargetException(SyncException):
    """Two image fields of one submission resolve to the same local file."""

    pass


# =============================================================================
# Configuration / Pipeline Exceptions
# =============================================================================


class ConfigurationException(SyncException):
    """Invalid configuration, raised before any network activity."""

    pass


class StageException(SyncException):
    """A pipeline stage could not produce its result."""

    def __init__(self, stage: int, message: str, details: dict = None):
        self.stage = stage
        super().__init__(message, {"stage": stage, **(details or {})})


RETRYABLE_EXCEPTIONS = (NetworkException, PartialDownloadException)


def is_retryable(error: BaseException) -> bool:
    """Classifies an error as retryable (transient) or fatal."""
    if isinstance(error, MissingContentLengthException):
        return False
    return isinstance(error, RETRYABLE_EXCEPTIONS)
