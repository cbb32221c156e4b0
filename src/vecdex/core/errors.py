"""Typed error hierarchy shared by the pool, store and vector index layers.

Every error carries a ``retryable`` flag. Only store and network failures are
ever retryable; configuration, validation, missing-id and serialization
failures are final.
"""

from __future__ import annotations

from dataclasses import dataclass, field

__all__ = [
    "VectorStoreError",
    "ConfigurationError",
    "IndexConfigurationError",
    "FilterError",
    "StoreConnectionError",
    "PoolTimeoutError",
    "PoolClosedError",
    "InvalidDataError",
    "MissingIdError",
    "DuplicateIdError",
    "DatastoreError",
    "SerializationError",
    "DimensionMismatchError",
    "OperationCancelledError",
    "EmbeddingProviderError",
    "EmbeddingConfigurationError",
    "EmbeddingRequestError",
    "EmbeddingRetryableError",
    "EmbeddingRateLimitError",
    "EmbeddingRetryExceededError",
]


@dataclass(slots=True)
class VectorStoreError(RuntimeError):
    """Base error raised by :mod:`vecdex`."""

    message: str

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)

    @property
    def retryable(self) -> bool:
        return False


@dataclass(slots=True)
class ConfigurationError(VectorStoreError):
    """Raised when parameters are rejected before any I/O happens."""

    field: str | None = None


@dataclass(slots=True)
class IndexConfigurationError(ConfigurationError):
    """Raised when index or search parameters are invalid."""


@dataclass(slots=True)
class FilterError(IndexConfigurationError):
    """Raised when a filter expression cannot be built."""


@dataclass(slots=True)
class StoreConnectionError(VectorStoreError):
    """Raised when a store connection cannot be obtained."""

    database: str | None = None

    @property
    def retryable(self) -> bool:
        return True


@dataclass(slots=True)
class PoolTimeoutError(StoreConnectionError):
    """Raised when waiting for an admission slot exceeds the pool timeout."""

    timeout: float | None = None


@dataclass(slots=True)
class PoolClosedError(StoreConnectionError):
    """Raised when a connection is requested from a closed pool."""

    @property
    def retryable(self) -> bool:
        return False


@dataclass(slots=True)
class InvalidDataError(VectorStoreError):
    """Raised for empty or malformed input to a search or CRUD call."""

    field: str | None = None


@dataclass(slots=True)
class MissingIdError(VectorStoreError):
    """Raised when a mutation targets records that do not exist."""

    ids: tuple[str, ...] = field(default_factory=tuple)
    table: str | None = None


@dataclass(slots=True)
class DuplicateIdError(VectorStoreError):
    """Raised when creating a record whose id is already present."""

    id: str | None = None
    table: str | None = None


@dataclass(slots=True)
class DatastoreError(VectorStoreError):
    """Wraps a failure reported by the underlying store."""

    operation: str | None = None
    transient: bool = False

    @property
    def retryable(self) -> bool:
        return self.transient


@dataclass(slots=True)
class SerializationError(VectorStoreError):
    """Raised when a stored payload does not match the requested shape."""

    id: str | None = None


@dataclass(slots=True)
class DimensionMismatchError(VectorStoreError):
    """Raised when a vector length disagrees with the index dimensions."""

    expected: int | None = None
    actual: int | None = None


@dataclass(slots=True)
class OperationCancelledError(VectorStoreError):
    """Raised inside store workers when the awaiting task was cancelled."""


@dataclass(slots=True)
class EmbeddingProviderError(VectorStoreError):
    """Base error raised by embedding providers."""

    provider: str = ""
    model: str = ""
    request_id: str | None = None
    status_code: int | None = None


@dataclass(slots=True)
class EmbeddingConfigurationError(EmbeddingProviderError):
    """Raised when the provider configuration is invalid."""


@dataclass(slots=True)
class EmbeddingRequestError(EmbeddingProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class EmbeddingRetryableError(EmbeddingRequestError):
    """Raised for transport or server-side errors worth retrying."""

    @property
    def retryable(self) -> bool:
        return True


@dataclass(slots=True)
class EmbeddingRateLimitError(EmbeddingRetryableError):
    """Raised when the provider returns a rate limiting response."""


@dataclass(slots=True)
class EmbeddingRetryExceededError(EmbeddingProviderError):
    """Raised when retry attempts are exhausted."""

    attempts: int = 0
