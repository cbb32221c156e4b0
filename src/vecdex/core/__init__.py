"""Core utilities shared across :mod:`vecdex` modules.

The core namespace holds configuration loading, logging setup, the error
hierarchy and credential handling so the storage and index modules stay
focused on their own concerns.

Example:
    >>> from vecdex.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .config import AppConfig, load_config, load_packaged_defaults
from .errors import (
    ConfigurationError,
    DatastoreError,
    DimensionMismatchError,
    DuplicateIdError,
    EmbeddingProviderError,
    FilterError,
    IndexConfigurationError,
    InvalidDataError,
    MissingIdError,
    PoolClosedError,
    PoolTimeoutError,
    SerializationError,
    StoreConnectionError,
    VectorStoreError,
)
from .logging import configure_logging, get_logger
from .secrets import SecureCredential

__all__ = [
    "AppConfig",
    "ConfigurationError",
    "DatastoreError",
    "DimensionMismatchError",
    "DuplicateIdError",
    "EmbeddingProviderError",
    "FilterError",
    "IndexConfigurationError",
    "InvalidDataError",
    "MissingIdError",
    "PoolClosedError",
    "PoolTimeoutError",
    "SecureCredential",
    "SerializationError",
    "StoreConnectionError",
    "VectorStoreError",
    "configure_logging",
    "get_logger",
    "load_config",
    "load_packaged_defaults",
]
