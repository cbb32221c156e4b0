"""Declarative vector index configuration and per-call search parameters."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

from vecdex.core.errors import IndexConfigurationError

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from vecdex.modules.vdb.filters import FilterExpression

__all__ = [
    "APPROXIMATE_FUNCTIONS",
    "AdvancedIndexConfig",
    "BruteForceConfig",
    "FlatConfig",
    "HnswConfig",
    "IndexConfig",
    "IndexKind",
    "IndexType",
    "IvfConfig",
    "MAX_VECTOR_DIMENSIONS",
    "QuantizationConfig",
    "RESERVED_COLUMNS",
    "SearchParams",
    "SearchType",
    "SimilarityFunction",
    "index_type_from_mapping",
]

MAX_VECTOR_DIMENSIONS = 65_536
"""Largest vector length accepted by any index or CRUD call."""

RESERVED_COLUMNS = frozenset({"seq", "id", "metadata", "created_at", "updated_at"})

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCALAR_QUANTIZER_BITS = {4: "SQ4", 6: "SQ6", 8: "SQ8", 16: "SQfp16"}


class SimilarityFunction(StrEnum):
    """Similarity metrics; every score is "higher is closer"."""

    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT_PRODUCT = "dot_product"
    MANHATTAN = "manhattan"
    JACCARD = "jaccard"
    HAMMING = "hamming"


APPROXIMATE_FUNCTIONS = frozenset(
    {
        SimilarityFunction.COSINE,
        SimilarityFunction.EUCLIDEAN,
        SimilarityFunction.DOT_PRODUCT,
    }
)
"""Metrics with an approximate structure; others are always searched exactly."""


class IndexKind(StrEnum):
    HNSW = "hnsw"
    IVF = "ivf"
    FLAT = "flat"
    BRUTE_FORCE = "brute_force"


class SearchType(StrEnum):
    """How a search is executed against a collection.

    ``EXACT`` scores every candidate, ``APPROXIMATE`` goes through an
    approximate nearest-neighbour structure, and ``SIMILARITY`` defers to the
    index's configured strategy.
    """

    EXACT = "exact"
    APPROXIMATE = "approximate"
    SIMILARITY = "similarity"


@dataclass(frozen=True, slots=True)
class HnswConfig:
    """Hierarchical navigable small world graph parameters.

    Attributes:
        ef_construction: Candidate list size while inserting; larger builds a
            better graph more slowly.
        max_connections: Neighbours kept per node (``M``).
    """

    kind: ClassVar[IndexKind] = IndexKind.HNSW

    ef_construction: int = 200
    max_connections: int = 16

    def __post_init__(self) -> None:
        if self.ef_construction < 1:
            raise IndexConfigurationError(
                "ef_construction must be >= 1",
                field="hnsw.ef_construction",
            )
        if self.max_connections < 2:
            raise IndexConfigurationError(
                "HNSW max_connections must be >= 2",
                field="hnsw.max_connections",
            )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ef_construction": self.ef_construction,
            "max_connections": self.max_connections,
        }


@dataclass(frozen=True, slots=True)
class IvfConfig:
    """Inverted file parameters.

    Attributes:
        ncentroids: Upper bound on the number of coarse clusters; capped by the
            number of candidate vectors at build time.
        niter: k-means iterations used to train the clusters.
    """

    kind: ClassVar[IndexKind] = IndexKind.IVF

    ncentroids: int = 100
    niter: int = 20

    def __post_init__(self) -> None:
        if self.ncentroids < 1:
            raise IndexConfigurationError(
                "ncentroids must be >= 1",
                field="ivf.ncentroids",
            )
        if self.niter < 1:
            raise IndexConfigurationError(
                "niter must be >= 1",
                field="ivf.niter",
            )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ncentroids": self.ncentroids,
            "niter": self.niter,
        }


@dataclass(frozen=True, slots=True)
class FlatConfig:
    """Flat (uncompressed, exhaustive) approximate-path index."""

    kind: ClassVar[IndexKind] = IndexKind.FLAT

    dimension: int | None = None

    def to_mapping(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "dimension": self.dimension}


@dataclass(frozen=True, slots=True)
class BruteForceConfig:
    """Exact scan inside the store; no auxiliary structure is built."""

    kind: ClassVar[IndexKind] = IndexKind.BRUTE_FORCE

    def to_mapping(self) -> dict[str, Any]:
        return {"kind": self.kind.value}


IndexType = HnswConfig | IvfConfig | FlatConfig | BruteForceConfig


def index_type_from_mapping(payload: Mapping[str, Any]) -> IndexType:
    """Rebuild an :data:`IndexType` variant from :meth:`to_mapping` output."""

    raw_kind = payload.get("kind")
    try:
        kind = IndexKind(str(raw_kind).strip().lower())
    except ValueError as exc:
        raise IndexConfigurationError(
            f"Unknown index type {raw_kind!r}",
            field="index_type",
        ) from exc
    options = {key: value for key, value in payload.items() if key != "kind"}
    if kind is IndexKind.HNSW:
        return HnswConfig(**options)
    if kind is IndexKind.IVF:
        return IvfConfig(**options)
    if kind is IndexKind.FLAT:
        return FlatConfig(**options)
    return BruteForceConfig()


@dataclass(frozen=True, slots=True)
class QuantizationConfig:
    """Scalar quantization applied to Flat and IVF structures.

    Only ``quantizer_type="scalar"`` with 4, 6, 8 or 16 bits is supported.
    """

    bits: int = 8
    quantizer_type: str = "scalar"

    @property
    def factory_code(self) -> str:
        return _SCALAR_QUANTIZER_BITS[self.bits]

    def to_mapping(self) -> dict[str, Any]:
        return {"bits": self.bits, "quantizer_type": self.quantizer_type}


@dataclass(frozen=True, slots=True)
class AdvancedIndexConfig:
    """Optional tuning knobs; ``None`` means "use the default".

    Attributes:
        hnsw: Overrides the HNSW parameters carried by the index type.
        ivf: Overrides the IVF parameters carried by the index type.
        flat: Overrides the Flat parameters carried by the index type.
        quantization: Scalar quantization for Flat and IVF structures.
        num_threads: Threads used while building approximate structures
            (1-64).
        allow_replace_deleted: Recorded with the index; deleted rows are
            always dropped from rebuilt structures.
        max_connections: Graph degree override for HNSW (1-100).
        min_connections: Recorded with the index for callers that size pools
            from it.
    """

    hnsw: HnswConfig | None = None
    ivf: IvfConfig | None = None
    flat: FlatConfig | None = None
    quantization: QuantizationConfig | None = None
    num_threads: int | None = None
    allow_replace_deleted: bool | None = None
    max_connections: int | None = None
    min_connections: int | None = None

    def to_mapping(self) -> dict[str, Any]:
        return {
            "hnsw": self.hnsw.to_mapping() if self.hnsw else None,
            "ivf": self.ivf.to_mapping() if self.ivf else None,
            "flat": self.flat.to_mapping() if self.flat else None,
            "quantization": (
                self.quantization.to_mapping() if self.quantization else None
            ),
            "num_threads": self.num_threads,
            "allow_replace_deleted": self.allow_replace_deleted,
            "max_connections": self.max_connections,
            "min_connections": self.min_connections,
        }

    @classmethod
    def from_mapping(
        cls,
        payload: Mapping[str, Any] | None,
    ) -> "AdvancedIndexConfig":
        if not payload:
            return cls()

        def _variant(key: str) -> Any:
            value = payload.get(key)
            if value is None:
                return None
            return index_type_from_mapping(value)

        quantization = payload.get("quantization")
        return cls(
            hnsw=_variant("hnsw"),
            ivf=_variant("ivf"),
            flat=_variant("flat"),
            quantization=(
                QuantizationConfig(**quantization) if quantization else None
            ),
            num_threads=payload.get("num_threads"),
            allow_replace_deleted=payload.get("allow_replace_deleted"),
            max_connections=payload.get("max_connections"),
            min_connections=payload.get("min_connections"),
        )


@dataclass(frozen=True, slots=True)
class IndexConfig:
    """Immutable description of a vector index.

    Construction never raises for out-of-range values; call :meth:`validate`
    (the index and client do so before any I/O) to check them.

    Example:
        >>> config = IndexConfig("movies", "embedding", dimensions=3)
        >>> config.validate()
        >>> config.batch_size, config.max_retries, config.retry_delay
        (100, 3, 100)
    """

    index_name: str
    embedding_property: str = "embedding"
    similarity_function: SimilarityFunction = SimilarityFunction.COSINE
    index_type: IndexType = field(default_factory=BruteForceConfig)
    dimensions: int = 0
    max_elements: int = 1_000_000
    advanced_config: AdvancedIndexConfig = field(
        default_factory=AdvancedIndexConfig,
    )
    batch_size: int = 100
    max_retries: int = 3
    retry_delay: int = 100
    """Milliseconds between retry attempts."""

    def __post_init__(self) -> None:
        if not isinstance(self.similarity_function, SimilarityFunction):
            try:
                metric = SimilarityFunction(
                    str(self.similarity_function).strip().lower()
                )
            except ValueError as exc:
                raise IndexConfigurationError(
                    f"Unknown similarity function {self.similarity_function!r}",
                    field="similarity_function",
                ) from exc
            object.__setattr__(self, "similarity_function", metric)

    def validate(self) -> None:
        """Check invariants in a fixed order and raise on the first failure.

        The order is ``index_name``, ``embedding_property``, ``dimensions``,
        ``max_elements``, ``batch_size``, ``max_retries``,
        ``max_connections``, ``num_threads``, then ``retry_delay`` and
        ``quantization``. Errors are never aggregated; the raised
        :class:`IndexConfigurationError` names the failing field.
        """

        if not self.index_name or not self.index_name.strip():
            raise IndexConfigurationError(
                "Index name cannot be empty",
                field="index_name",
            )
        if not self.embedding_property or not self.embedding_property.strip():
            raise IndexConfigurationError(
                "Embedding property cannot be empty",
                field="embedding_property",
            )
        if (
            not _IDENTIFIER.match(self.embedding_property)
            or self.embedding_property in RESERVED_COLUMNS
        ):
            raise IndexConfigurationError(
                "Embedding property must be a plain identifier other than "
                f"{sorted(RESERVED_COLUMNS)} (got {self.embedding_property!r})",
                field="embedding_property",
            )
        if self.dimensions <= 0:
            raise IndexConfigurationError(
                "Dimensions must be greater than 0",
                field="dimensions",
            )
        if self.dimensions > MAX_VECTOR_DIMENSIONS:
            raise IndexConfigurationError(
                f"Dimensions cannot exceed {MAX_VECTOR_DIMENSIONS}",
                field="dimensions",
            )
        if self.max_elements <= 0:
            raise IndexConfigurationError(
                f"Invalid max elements: {self.max_elements}",
                field="max_elements",
            )
        if self.batch_size < 1 or self.batch_size > 1000:
            raise IndexConfigurationError(
                f"Invalid batch size: {self.batch_size}",
                field="batch_size",
            )
        if self.max_retries < 0 or self.max_retries > 10:
            raise IndexConfigurationError(
                "Max retries must be between 0 and 10",
                field="max_retries",
            )
        advanced = self.advanced_config
        if advanced.max_connections is not None and not (
            1 <= advanced.max_connections <= 100
        ):
            raise IndexConfigurationError(
                "Max connections must be between 1 and 100",
                field="max_connections",
            )
        if advanced.num_threads is not None and not (
            1 <= advanced.num_threads <= 64
        ):
            raise IndexConfigurationError(
                f"Invalid thread count: {advanced.num_threads}",
                field="num_threads",
            )
        if self.retry_delay < 0:
            raise IndexConfigurationError(
                "Retry delay cannot be negative",
                field="retry_delay",
            )
        quantization = advanced.quantization
        if quantization is not None and (
            quantization.quantizer_type != "scalar"
            or quantization.bits not in _SCALAR_QUANTIZER_BITS
        ):
            raise IndexConfigurationError(
                "Only scalar quantization with 4, 6, 8 or 16 bits is supported",
                field="quantization",
            )

    @property
    def hnsw(self) -> HnswConfig:
        """Effective HNSW parameters after advanced overrides."""

        base = self.advanced_config.hnsw
        if base is None:
            base = (
                self.index_type
                if isinstance(self.index_type, HnswConfig)
                else HnswConfig()
            )
        if self.advanced_config.max_connections is not None:
            return HnswConfig(
                ef_construction=base.ef_construction,
                max_connections=max(2, self.advanced_config.max_connections),
            )
        return base

    @property
    def ivf(self) -> IvfConfig:
        """Effective IVF parameters after advanced overrides."""

        if self.advanced_config.ivf is not None:
            return self.advanced_config.ivf
        if isinstance(self.index_type, IvfConfig):
            return self.index_type
        return IvfConfig()

    def to_mapping(self) -> dict[str, Any]:
        return {
            "index_name": self.index_name,
            "embedding_property": self.embedding_property,
            "similarity_function": self.similarity_function.value,
            "index_type": self.index_type.to_mapping(),
            "dimensions": self.dimensions,
            "max_elements": self.max_elements,
            "advanced_config": self.advanced_config.to_mapping(),
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "IndexConfig":
        index_type = payload.get("index_type") or {"kind": "brute_force"}
        return cls(
            index_name=str(payload.get("index_name", "")),
            embedding_property=str(
                payload.get("embedding_property", "embedding")
            ),
            similarity_function=payload.get("similarity_function", "cosine"),
            index_type=index_type_from_mapping(index_type),
            dimensions=int(payload.get("dimensions", 0)),
            max_elements=int(payload.get("max_elements", 1_000_000)),
            advanced_config=AdvancedIndexConfig.from_mapping(
                payload.get("advanced_config"),
            ),
            batch_size=int(payload.get("batch_size", 100)),
            max_retries=int(payload.get("max_retries", 3)),
            retry_delay=int(payload.get("retry_delay", 100)),
        )


@dataclass(frozen=True, slots=True)
class SearchParams:
    """Per-call search options.

    Attributes:
        pre_filter: Restricts the candidate set before scoring. Evaluated by
            the store, so ``limit`` applies to filtered rows.
        post_filter: Applied to the already-truncated top-K result set. A
            post-filtered call can return fewer than K rows even when more
            rows would have matched before truncation.
        params: Free-form knobs (``alpha`` for hybrid search, ``ef_search``
            and ``nprobe`` for approximate search).
        limit: Optional cap on results; the effective K is ``min(n, limit)``.
        search_type: Execution strategy.
    """

    pre_filter: "FilterExpression | None" = None
    post_filter: "FilterExpression | None" = None
    params: Mapping[str, Any] | None = None
    limit: int | None = None
    search_type: SearchType = SearchType.SIMILARITY

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise IndexConfigurationError(
                "limit must be >= 0",
                field="limit",
            )
        if not isinstance(self.search_type, SearchType):
            object.__setattr__(
                self,
                "search_type",
                SearchType(str(self.search_type).strip().lower()),
            )
        if self.params is not None:
            object.__setattr__(
                self,
                "params",
                MappingProxyType(dict(self.params)),
            )

    def param(self, name: str, default: Any = None) -> Any:
        if self.params is None:
            return default
        return self.params.get(name, default)

    def effective_limit(self, n: int) -> int:
        return n if self.limit is None else min(n, self.limit)
