from __future__ import annotations

"""Controlled ingestion errors.

- A failure inside one hydration task or one blob must never stop the
  dispatcher or the stream connector.
- These errors are signals for logging, skip records and retry decisions.
"""

from typing import Optional


class IngestionError(RuntimeError):
    """Base error for ingestion; caught and logged at task/blob boundaries."""


class DecodeError(IngestionError):
    """A stream frame could not be decoded. Only that frame is dropped."""


class FetchError(IngestionError):
    """A dependent fetch (record, profile, identity, blob) failed."""

    def __init__(self, message: str, *, status: Optional[int] = None, error: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.error = error


class RecordNotFoundError(FetchError):
    """The referenced record or account does not exist. Terminal for the subject."""


class RateLimitedError(FetchError):
    """The remote side asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(FetchError):
    """HTTP 5xx from the remote side."""


class NetworkError(FetchError):
    """Connection-level failure or timeout."""


class AuthenticationError(FetchError):
    """Login failed or the session could not be refreshed."""


class RetryExhaustedError(IngestionError):
    """Raised once retries are exhausted or a non-retryable failure was seen."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RateLimitRejected(IngestionError):
    """Admission would have waited longer than the configured maximum delay."""


class OriginResolutionError(IngestionError):
    """The host for an account's blobs could not be resolved."""


class BlobFetchError(IngestionError):
    """Blob bytes could not be retrieved."""


class StorageError(IngestionError):
    """A storage backend failed to persist or read blob bytes."""


def root_cause(error: BaseException) -> BaseException:
    """Unwrap RetryExhaustedError to the underlying failure."""
    while isinstance(error, RetryExhaustedError):
        error = error.last_error
    return error
