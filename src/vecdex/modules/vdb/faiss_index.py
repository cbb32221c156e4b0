"""FAISS structures backing approximate search over a candidate set."""

from __future__ import annotations

import math
import threading
from collections import OrderedDict
from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass

import numpy as np

try:  # pragma: no cover - import guard exercised in tests via functionality
    import faiss
except ImportError as exc:  # pragma: no cover - bubble missing dependency
    message = "faiss is required for approximate search; install faiss-cpu"
    raise ImportError(message) from exc

from vecdex.core.errors import IndexConfigurationError
from vecdex.core.logging import get_logger
from vecdex.modules.vdb.config import (
    BruteForceConfig,
    FlatConfig,
    HnswConfig,
    IndexConfig,
    IvfConfig,
    SimilarityFunction,
)

__all__ = [
    "ApproximateIndexCache",
    "FaissIndex",
    "FaissIndexError",
    "FaissIndexMetric",
    "factory_string",
]

_logger = get_logger(__name__, component="faiss")


class FaissIndexError(RuntimeError):
    """Base error raised for FAISS adapter failures."""


@dataclass(frozen=True)
class FaissIndexMetric:
    """Metric descriptor bridging similarity functions to FAISS ids."""

    name: str
    faiss_metric: int
    normalize: bool = False

    @classmethod
    def from_similarity(cls, function: SimilarityFunction) -> "FaissIndexMetric":
        if function is SimilarityFunction.EUCLIDEAN:
            return cls(name="l2", faiss_metric=faiss.METRIC_L2)
        if function is SimilarityFunction.DOT_PRODUCT:
            return cls(name="ip", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        if function is SimilarityFunction.COSINE:
            return cls(
                name="cosine",
                faiss_metric=faiss.METRIC_INNER_PRODUCT,
                normalize=True,
            )
        raise FaissIndexError(f"Unsupported FAISS metric: {function.value!r}")

    def to_scores(self, distances: np.ndarray) -> np.ndarray:
        """Convert raw FAISS distances into "higher is closer" scores."""

        values = distances.astype("float64")
        if self.faiss_metric == faiss.METRIC_L2:
            # FAISS reports squared L2 distances.
            return 1.0 / (1.0 + np.sqrt(np.clip(values, 0.0, None)))
        return values


def factory_string(config: IndexConfig, candidates: int) -> str:
    """Return the ``index_factory`` description for ``config``.

    Raises:
        IndexConfigurationError: If the index type has no FAISS structure.
    """

    index_type = config.index_type
    quantization = config.advanced_config.quantization
    if isinstance(index_type, HnswConfig):
        return f"HNSW{config.hnsw.max_connections}"
    if isinstance(index_type, IvfConfig):
        nlist = max(1, min(config.ivf.ncentroids, candidates))
        storage = quantization.factory_code if quantization else "Flat"
        return f"IVF{nlist},{storage}"
    if isinstance(index_type, FlatConfig):
        return quantization.factory_code if quantization else "Flat"
    raise IndexConfigurationError(
        f"Index type {index_type.kind.value!r} has no approximate structure",
        field="index_type",
    )


class FaissIndex:
    """Thin wrapper around ``faiss.IndexIDMap`` with typed helpers."""

    def __init__(
        self,
        *,
        index: faiss.Index,
        inner: faiss.Index,
        metric: FaissIndexMetric,
    ) -> None:
        if not isinstance(index, faiss.IndexIDMap):
            raise TypeError("index must be an instance of faiss.IndexIDMap")
        self._index = index
        self._inner = inner
        self._metric = metric

    @property
    def dim(self) -> int:
        return self._index.d

    @property
    def metric(self) -> FaissIndexMetric:
        return self._metric

    @property
    def size(self) -> int:
        """Number of vectors stored in the index."""

        return self._index.ntotal

    @classmethod
    def build(
        cls,
        config: IndexConfig,
        *,
        ids: Sequence[int],
        vectors: Sequence[Sequence[float]] | np.ndarray,
    ) -> "FaissIndex":
        """Create, train and populate a structure for ``config``."""

        if isinstance(config.index_type, BruteForceConfig):
            raise IndexConfigurationError(
                "BruteForce indexes are searched exactly",
                field="index_type",
            )
        metric = FaissIndexMetric.from_similarity(config.similarity_function)
        id_array = _ids_to_array(ids)
        vector_array = _vectors_to_array(vectors, dim=config.dimensions)
        if len(id_array) != len(vector_array):
            raise ValueError("ids and vectors must have matching lengths")
        if metric.normalize and len(vector_array):
            faiss.normalize_L2(vector_array)

        threads = config.advanced_config.num_threads
        if threads is not None:
            faiss.omp_set_num_threads(threads)

        description = factory_string(config, len(vector_array))
        inner = faiss.index_factory(
            config.dimensions,
            description,
            metric.faiss_metric,
        )
        if isinstance(config.index_type, HnswConfig):
            inner.hnsw.efConstruction = config.hnsw.ef_construction
        if isinstance(config.index_type, IvfConfig):
            faiss.extract_index_ivf(inner).cp.niter = config.ivf.niter
        wrapped = faiss.IndexIDMap(inner)
        index = cls(index=wrapped, inner=inner, metric=metric)
        if len(vector_array):
            if not inner.is_trained:
                inner.train(vector_array)
            wrapped.add_with_ids(vector_array, id_array)
        _logger.debug(
            "faiss-index-built",
            description=description,
            metric=metric.name,
            size=index.size,
        )
        return index

    def search(
        self,
        query: Sequence[float] | np.ndarray,
        *,
        k: int,
        ef_search: int | None = None,
        nprobe: int | None = None,
    ) -> list[tuple[float, int]]:
        """Return up to ``k`` ``(score, id)`` pairs, best first."""

        if k <= 0:
            raise ValueError("k must be positive")
        if self.size == 0:
            return []
        queries = _vectors_to_array([list(query)], dim=self.dim)
        if self._metric.normalize:
            faiss.normalize_L2(queries)
        distances, ids = self._index.search(
            queries,
            min(k, self.size),
            params=self._search_parameters(k, ef_search=ef_search, nprobe=nprobe),
        )
        scores = self._metric.to_scores(distances[0])
        return [
            (float(value), int(identifier))
            for value, identifier in zip(scores, ids[0])
            if identifier >= 0 and math.isfinite(value)
        ]

    def _search_parameters(
        self,
        k: int,
        *,
        ef_search: int | None,
        nprobe: int | None,
    ) -> faiss.SearchParameters | None:
        # Per-call knobs never touch the cached structure's own settings.
        if ef_search is not None and hasattr(self._inner, "hnsw"):
            parameters = faiss.SearchParametersHNSW()
            parameters.efSearch = max(int(ef_search), k)
            return parameters
        ivf = faiss.try_extract_index_ivf(self._inner)
        if nprobe is not None and ivf is not None:
            parameters = faiss.SearchParametersIVF()
            parameters.nprobe = max(1, int(nprobe))
            return parameters
        return None


class ApproximateIndexCache:
    """Small LRU of built structures keyed by collection state.

    Keys include the collection generation, so any committed mutation makes
    earlier entries unreachable; they age out of the LRU.
    """

    def __init__(self, max_entries: int = 8) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[Hashable, FaissIndex] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> FaissIndex | None:
        with self._lock:
            index = self._entries.get(key)
            if index is not None:
                self._entries.move_to_end(key)
            return index

    def put(self, key: Hashable, index: FaissIndex) -> None:
        with self._lock:
            self._entries[key] = index
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _ids_to_array(ids: Iterable[int]) -> np.ndarray:
    if isinstance(ids, np.ndarray):
        return ids.astype("int64", copy=False).reshape(-1)
    if isinstance(ids, Sequence):
        return np.asarray(ids, dtype="int64").reshape(-1)
    return np.fromiter(
        (int(identifier) for identifier in ids),
        dtype="int64",
        count=-1,
    )


def _vectors_to_array(
    vectors: Sequence[Sequence[float]] | np.ndarray,
    *,
    dim: int,
) -> np.ndarray:
    if not isinstance(vectors, np.ndarray) and len(vectors) == 0:
        return np.empty((0, dim), dtype="float32")
    array = np.ascontiguousarray(vectors, dtype="float32")
    if array.size == 0:
        return np.empty((0, dim), dtype="float32")
    if array.ndim != 2:
        raise ValueError("vectors must be a 2-D array of shape (n, dim)")
    if array.shape[1] != dim:
        message = (
            "Vector dimensionality mismatch: expected "
            f"{dim}, got {array.shape[1]}"
        )
        raise ValueError(message)
    return array
