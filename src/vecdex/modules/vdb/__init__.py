"""Vector database (VDB) module primitives.

FAISS structures live in :mod:`vecdex.modules.vdb.faiss_index` and are only
imported when an approximate search runs.
"""

from __future__ import annotations

from .client import VectorStoreClient
from .config import (
    AdvancedIndexConfig,
    BruteForceConfig,
    FlatConfig,
    HnswConfig,
    IndexConfig,
    IndexKind,
    IndexType,
    IvfConfig,
    QuantizationConfig,
    SearchParams,
    SearchType,
    SimilarityFunction,
)
from .filters import FilterBuilder, FilterExpression, FilterOperator
from .index import EmbeddingUpdate, ScoredId, SearchHit, VectorIndex, VectorRecord
from .observer import IndexObserver, LoggingIndexObserver
from .providers import (
    EmbeddingModel,
    ProviderFactory,
    ProviderInitContext,
    ProviderNotRegisteredError,
    ProviderRegistry,
    ProviderRegistryError,
)

__all__ = [
    "AdvancedIndexConfig",
    "BruteForceConfig",
    "EmbeddingModel",
    "EmbeddingUpdate",
    "FilterBuilder",
    "FilterExpression",
    "FilterOperator",
    "FlatConfig",
    "HnswConfig",
    "IndexConfig",
    "IndexKind",
    "IndexObserver",
    "IndexType",
    "IvfConfig",
    "LoggingIndexObserver",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "QuantizationConfig",
    "ScoredId",
    "SearchHit",
    "SearchParams",
    "SearchType",
    "SimilarityFunction",
    "VectorIndex",
    "VectorRecord",
    "VectorStoreClient",
]
