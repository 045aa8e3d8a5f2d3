"""Exception hierarchy shared by the indexer components."""

from __future__ import annotations


class IndexerError(Exception):
    """Base exception for all indexer errors."""


class ConfigurationError(IndexerError):
    """Raised when a required setting is missing or inconsistent.

    Configuration errors are fatal for the unit of work and are never retried.
    """


class ChainReadError(IndexerError):
    """Raised when an RPC call fails (timeout, rate limit, transport, node error).

    Callers treat this as retryable.
    """


class MalformedEventError(IndexerError):
    """Raised when a log matches a known topic but its payload cannot be decoded."""


class OutOfOrderEventError(IndexerError):
    """Raised when an event precedes the last event applied to the same group."""


class InvalidSignatureError(IndexerError):
    """Raised when a webhook body does not match its signature header."""


class RetryError(IndexerError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception
