"""Vector index orchestration: search, CRUD, batch mutation and re-ranking.

A :class:`VectorIndex` pairs an embedding model with a pooled store and an
:class:`~vecdex.modules.vdb.config.IndexConfig`. Every public coroutine
validates its input before any I/O, then runs its store work on one pooled
connection. Mutations run inside a single transaction, so a failed or
cancelled call leaves no partial change behind.

Ordering: results are sorted by descending score; equal scores keep
insertion order (the collection's ``seq`` column).
"""

from __future__ import annotations

import json
import math
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import TypeAdapter, ValidationError

from vecdex.core.errors import (
    DimensionMismatchError,
    InvalidDataError,
    MissingIdError,
    SerializationError,
)
from vecdex.core.logging import Logger, get_logger
from vecdex.modules.db.pool import ConnectionPool
from vecdex.modules.db.store import (
    StoreConnection,
    quote_identifier,
    raise_duplicate,
    utc_timestamp,
)
from vecdex.modules.vdb.config import (
    APPROXIMATE_FUNCTIONS,
    MAX_VECTOR_DIMENSIONS,
    BruteForceConfig,
    IndexConfig,
    SearchParams,
    SearchType,
)
from vecdex.modules.vdb.executor import CancelToken, StoreExecutor
from vecdex.modules.vdb.filters import normalize_field
from vecdex.modules.vdb.observer import IndexObserver, LoggingIndexObserver
from vecdex.modules.vdb.providers import EmbeddingModel
from vecdex.modules.vdb.similarity import (
    lexical_scorer,
    similarity_scorer,
    tokenize,
)

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from vecdex.modules.vdb.faiss_index import ApproximateIndexCache

__all__ = [
    "EmbeddingUpdate",
    "ScoredId",
    "SearchHit",
    "VectorIndex",
    "VectorRecord",
    "encode_metadata",
    "encode_vector",
]

_SIMILARITY_FN = "vecdex_similarity"
_LEXICAL_FN = "vecdex_lexical"
_DEFAULT_ALPHA = 0.5


class SearchHit(NamedTuple):
    score: float
    id: str
    payload: Any


class ScoredId(NamedTuple):
    score: float
    id: str


@dataclass(frozen=True, slots=True)
class VectorRecord:
    """A stored record as returned by :meth:`VectorIndex.read_vector`."""

    id: str
    vector: tuple[float, ...]
    metadata: Any
    created_at: str
    updated_at: str


@dataclass(frozen=True, slots=True)
class EmbeddingUpdate:
    """One item of :meth:`VectorIndex.update_batch`.

    ``vector=None`` keeps the stored embedding and only replaces metadata.
    """

    id: str
    metadata: Any
    vector: Sequence[float] | None = None


@dataclass(frozen=True, slots=True)
class _ScoredRow:
    score: float
    seq: int
    id: str
    metadata: str | None


@dataclass(frozen=True, slots=True)
class _PreparedUpdate:
    id: str
    metadata: str
    vector: str | None


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _decode_metadata(row_id: str, raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SerializationError(
            f"Stored metadata for {row_id!r} is not valid JSON",
            id=row_id,
        ) from exc


def encode_vector(
    vector: Sequence[float],
    *,
    dimensions: int | None = None,
) -> str:
    """Validate ``vector`` and return its stored JSON form.

    Raises:
        InvalidDataError: If the vector is empty, longer than
            :data:`MAX_VECTOR_DIMENSIONS` or holds non-finite values.
        DimensionMismatchError: If ``dimensions`` is given and differs.
    """

    if vector is None or len(vector) == 0:
        raise InvalidDataError("Vector cannot be empty", field="vector")
    if len(vector) > MAX_VECTOR_DIMENSIONS:
        raise InvalidDataError(
            f"Vector exceeds the maximum of {MAX_VECTOR_DIMENSIONS} dimensions",
            field="vector",
        )
    try:
        values = [float(value) for value in vector]
    except (TypeError, ValueError) as exc:
        raise InvalidDataError(
            "Vector must contain only numbers",
            field="vector",
        ) from exc
    if not all(math.isfinite(value) for value in values):
        raise InvalidDataError(
            "Vector must contain only finite numbers",
            field="vector",
        )
    if dimensions is not None and len(values) != dimensions:
        raise DimensionMismatchError(
            "Vector length does not match the index dimensions",
            expected=dimensions,
            actual=len(values),
        )
    return json.dumps(values)


def encode_metadata(metadata: Any) -> str:
    try:
        return json.dumps(metadata, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidDataError(
            f"Metadata is not JSON serializable: {exc}",
            field="metadata",
        ) from exc


class VectorIndex:
    """Similarity search and record management over one collection.

    Args:
        model: Embedding capability used to turn query text into vectors.
        pool: Pool of store connections shared with other callers.
        config: Index description; validated on construction.
        search_params: Defaults used when a call passes no parameters.
        collection: Default table; falls back to ``config.index_name``.
        observer: Receives request, retry and rollback notifications.

    Raises:
        IndexConfigurationError: If ``config`` is invalid.
        DimensionMismatchError: If the model and config disagree on the
            vector length.
        InvalidDataError: If the collection name is not a plain identifier.
    """

    def __init__(
        self,
        model: EmbeddingModel,
        pool: ConnectionPool[StoreConnection],
        config: IndexConfig,
        search_params: SearchParams | None = None,
        *,
        collection: str | None = None,
        observer: IndexObserver | None = None,
        logger: Logger | None = None,
    ) -> None:
        config.validate()
        if model.dimensions != config.dimensions:
            raise DimensionMismatchError(
                "Embedding model dimensions do not match the index",
                expected=config.dimensions,
                actual=model.dimensions,
            )
        self._model = model
        self._config = config
        self._search_params = search_params or SearchParams()
        self._collection = collection or config.index_name
        quote_identifier(self._collection)
        self._column = quote_identifier(
            config.embedding_property,
            field="embedding_property",
        )
        self._logger = logger or get_logger(
            __name__,
            index=config.index_name,
        )
        self._observer = observer or LoggingIndexObserver()
        self._executor = StoreExecutor(
            pool,
            observer=self._observer,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay / 1000.0,
            logger=self._logger,
        )
        self._approximate: ApproximateIndexCache | None = None

    @property
    def config(self) -> IndexConfig:
        return self._config

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def model(self) -> EmbeddingModel:
        return self._model

    @property
    def search_params(self) -> SearchParams:
        return self._search_params

    def __repr__(self) -> str:
        return (
            f"VectorIndex(index_name={self._config.index_name!r}, "
            f"collection={self._collection!r})"
        )

    # ------------------------------------------------------------------#
    # Search
    # ------------------------------------------------------------------#
    async def top_n(
        self,
        query: str,
        n: int,
        table: str | None = None,
        search_params: SearchParams | None = None,
        *,
        payload_type: Any = None,
    ) -> list[SearchHit]:
        """Return the ``n`` records most similar to ``query``.

        Payloads are the stored metadata. When ``payload_type`` is given every
        payload is validated against it with pydantic and the whole call
        fails with :class:`SerializationError` if any row does not fit.
        """

        rows = await self._search("top-n", query, n, table, search_params)
        return self._hits(rows, payload_type)

    async def top_n_ids(
        self,
        query: str,
        n: int,
        table: str | None = None,
        search_params: SearchParams | None = None,
    ) -> list[ScoredId]:
        """Same ranking as :meth:`top_n` without payload deserialization."""

        rows = await self._search("top-n-ids", query, n, table, search_params)
        return [ScoredId(row.score, row.id) for row in rows]

    async def hybrid_search(
        self,
        query: str,
        n: int,
        table: str | None = None,
        search_params: SearchParams | None = None,
        *,
        payload_type: Any = None,
    ) -> list[SearchHit]:
        """Rank by ``alpha * vector_score + (1 - alpha) * lexical_score``.

        ``alpha`` comes from ``search_params.params["alpha"]`` (default 0.5).
        The lexical score is the fraction of query tokens found in a record's
        metadata text. Hybrid ranking always scans candidates exactly.
        """

        params = search_params or self._search_params
        alpha = params.param("alpha", _DEFAULT_ALPHA)
        try:
            alpha = float(alpha)
        except (TypeError, ValueError) as exc:
            raise InvalidDataError(
                f"alpha must be a number (got {alpha!r})",
                field="alpha",
            ) from exc
        if not 0.0 <= alpha <= 1.0:
            raise InvalidDataError(
                f"alpha must be between 0 and 1 (got {alpha})",
                field="alpha",
            )
        rows = await self._search(
            "hybrid-search",
            query,
            n,
            table,
            params,
            alpha=alpha,
        )
        return self._hits(rows, payload_type)

    async def full_text_search(
        self,
        query: str,
        table: str | None = None,
        *,
        field: str | None = None,
        limit: int | None = None,
        payload_type: Any = None,
    ) -> list[SearchHit]:
        """Return records whose metadata contains every token of ``query``.

        ``field`` narrows matching to one (dotted) metadata key. Matches are
        returned in insertion order with a score of 1.0.
        """

        self._check_query(query)
        if not tokenize(query):
            raise InvalidDataError(
                "Query text has no searchable tokens",
                field="query",
            )
        if limit is not None and limit < 0:
            raise InvalidDataError("limit must be >= 0", field="limit")
        target = self._resolve_table(table)
        selected = normalize_field(field) if field is not None else None
        if limit == 0:
            return []

        def _match(
            connection: StoreConnection,
            token: CancelToken,
        ) -> list[_ScoredRow]:
            if not connection.table_exists(target):
                return []
            sql = (
                f"SELECT seq, id, metadata, {_LEXICAL_FN}(metadata) AS score "
                f"FROM {quote_identifier(target)} "
                f"WHERE {_LEXICAL_FN}(metadata) >= 1.0 "
                "ORDER BY seq ASC LIMIT ?"
            )
            scorer = lexical_scorer(query, field=selected)
            with connection.functions({_LEXICAL_FN: (1, scorer)}):
                rows = connection.fetch_all(
                    sql,
                    (-1 if limit is None else limit,),
                    operation="full-text-search",
                )
            token.raise_if_cancelled()
            return [
                _ScoredRow(float(row["score"]), row["seq"], row["id"], row["metadata"])
                for row in rows
            ]

        rows = await self._executor.run(
            "full-text-search",
            _match,
            table=target,
        )
        return self._hits(rows, payload_type)

    def rerank(
        self,
        results: Iterable[SearchHit | tuple[float, str, Any]],
        scoring_fn: Callable[[Any], float],
    ) -> list[SearchHit]:
        """Re-score ``results`` with ``scoring_fn(payload)`` and re-sort.

        The store is not queried. Equal scores keep their incoming order.
        """

        rescored: list[SearchHit] = []
        for _, record_id, payload in results:
            value = float(scoring_fn(payload))
            if math.isnan(value):
                raise InvalidDataError(
                    f"Scoring function returned NaN for {record_id!r}",
                    field="score",
                )
            rescored.append(SearchHit(value, record_id, payload))
        rescored.sort(key=lambda hit: hit.score, reverse=True)
        return rescored

    # ------------------------------------------------------------------#
    # CRUD
    # ------------------------------------------------------------------#
    async def create_vector(
        self,
        id: str,
        vector: Sequence[float],
        metadata: Any,
        *,
        table: str | None = None,
    ) -> None:
        """Insert a new record.

        Raises:
            DuplicateIdError: If ``id`` already exists in the table.
        """

        record_id = self._check_id(id)
        encoded = encode_vector(vector, dimensions=self._config.dimensions)
        payload = encode_metadata(metadata)
        target = self._resolve_table(table)
        quoted = quote_identifier(target)
        prop = self._config.embedding_property

        def _insert(connection: StoreConnection, token: CancelToken) -> None:
            with connection.transaction(operation="create-vector"):
                connection.ensure_collection(target, embedding_property=prop)
                now = utc_timestamp()
                try:
                    connection.execute(
                        f"INSERT INTO {quoted} "
                        f"(id, {self._column}, metadata, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (record_id, encoded, payload, now, now),
                        operation="create-vector",
                    )
                except sqlite3.IntegrityError as exc:
                    raise_duplicate(exc, record_id=record_id, table=target)
                token.raise_if_cancelled()
                connection.bump_generation(target)

        await self._executor.run("create-vector", _insert, table=target, id=record_id)

    async def read_vector(
        self,
        id: str,
        *,
        table: str | None = None,
        payload_type: Any = None,
    ) -> VectorRecord | None:
        """Return the stored record, or ``None`` when ``id`` is absent."""

        record_id = self._check_id(id)
        target = self._resolve_table(table)

        def _read(
            connection: StoreConnection,
            token: CancelToken,
        ) -> sqlite3.Row | None:
            if not connection.table_exists(target):
                return None
            return connection.fetch_one(
                f"SELECT id, {self._column} AS embedding, metadata, "
                f"created_at, updated_at FROM {quote_identifier(target)} "
                "WHERE id = ?",
                (record_id,),
                operation="read-vector",
            )

        row = await self._executor.run("read-vector", _read, table=target, id=record_id)
        if row is None:
            return None
        metadata = _decode_metadata(record_id, row["metadata"])
        if payload_type is not None:
            metadata = self._validate_payload(
                TypeAdapter(payload_type),
                record_id,
                metadata,
            )
        try:
            vector = tuple(float(value) for value in json.loads(row["embedding"]))
        except (TypeError, ValueError) as exc:
            raise SerializationError(
                f"Stored embedding for {record_id!r} is malformed",
                id=record_id,
            ) from exc
        return VectorRecord(
            id=row["id"],
            vector=vector,
            metadata=metadata,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def update_embedding(
        self,
        id: str,
        table: str,
        metadata: Any,
        vector: Sequence[float] | None = None,
    ) -> None:
        """Replace a record's metadata and, when given, its embedding.

        Raises:
            InvalidDataError: For an empty id or table, or an empty or
                oversized vector.
            MissingIdError: If the record does not exist.
        """

        record_id = self._check_id(id)
        target = self._resolve_table(table, required=True)
        update = _PreparedUpdate(
            id=record_id,
            metadata=encode_metadata(metadata),
            vector=(
                None
                if vector is None
                else encode_vector(vector, dimensions=self._config.dimensions)
            ),
        )
        quoted = quote_identifier(target)

        def _update(connection: StoreConnection, token: CancelToken) -> None:
            with connection.transaction(operation="update-embedding"):
                if not connection.table_exists(target):
                    raise self._missing((record_id,), target)
                cursor = self._apply_update(connection, quoted, update)
                if cursor.rowcount == 0:
                    raise self._missing((record_id,), target)
                token.raise_if_cancelled()
                connection.bump_generation(target)

        await self._executor.run(
            "update-embedding",
            _update,
            table=target,
            id=record_id,
        )

    async def delete_embedding(self, id: str, table: str) -> None:
        """Delete one record.

        Raises:
            MissingIdError: If the record does not exist.
        """

        record_id = self._check_id(id)
        target = self._resolve_table(table, required=True)
        quoted = quote_identifier(target)

        def _delete(connection: StoreConnection, token: CancelToken) -> None:
            with connection.transaction(operation="delete-embedding"):
                if not connection.table_exists(target):
                    raise self._missing((record_id,), target)
                cursor = connection.execute(
                    f"DELETE FROM {quoted} WHERE id = ?",
                    (record_id,),
                    operation="delete-embedding",
                )
                if cursor.rowcount == 0:
                    raise self._missing((record_id,), target)
                token.raise_if_cancelled()
                connection.bump_generation(target)

        await self._executor.run(
            "delete-embedding",
            _delete,
            table=target,
            id=record_id,
        )

    # ------------------------------------------------------------------#
    # Batches
    # ------------------------------------------------------------------#
    async def update_batch(
        self,
        updates: Iterable[EmbeddingUpdate | tuple[Any, ...]],
        table: str,
    ) -> None:
        """Apply every update or none of them.

        Items are :class:`EmbeddingUpdate` values or ``(id, metadata)`` /
        ``(id, metadata, vector)`` tuples. All items are validated before the
        transaction starts; any missing id rolls the whole batch back.
        """

        prepared = [self._prepare_update(item) for item in updates]
        target = self._resolve_table(table, required=True)
        if not prepared:
            return
        quoted = quote_identifier(target)
        ids = tuple(dict.fromkeys(item.id for item in prepared))

        def _apply(connection: StoreConnection, token: CancelToken) -> None:
            try:
                with connection.transaction(operation="update-batch"):
                    if not connection.table_exists(target):
                        raise self._missing(ids, target)
                    for chunk in _chunks(prepared, self._config.batch_size):
                        token.raise_if_cancelled()
                        missing = self._missing_ids(
                            connection,
                            quoted,
                            [item.id for item in chunk],
                        )
                        if missing:
                            raise self._missing(missing, target)
                        for item in chunk:
                            self._apply_update(connection, quoted, item)
                    token.raise_if_cancelled()
                    connection.bump_generation(target)
            except Exception as exc:
                self._observer.batch_rolled_back(
                    "update-batch",
                    table=target,
                    size=len(prepared),
                    error=exc,
                )
                raise

        await self._executor.run(
            "update-batch",
            _apply,
            table=target,
            size=len(prepared),
        )

    async def delete_batch(self, ids: Iterable[str], table: str) -> None:
        """Delete every id or none of them.

        Any missing id fails the call with :class:`MissingIdError` and rolls
        the whole batch back.
        """

        unique = tuple(dict.fromkeys(self._check_id(value) for value in ids))
        target = self._resolve_table(table, required=True)
        if not unique:
            return
        quoted = quote_identifier(target)

        def _delete(connection: StoreConnection, token: CancelToken) -> None:
            try:
                with connection.transaction(operation="delete-batch"):
                    if not connection.table_exists(target):
                        raise self._missing(unique, target)
                    for chunk in _chunks(unique, self._config.batch_size):
                        token.raise_if_cancelled()
                        missing = self._missing_ids(connection, quoted, chunk)
                        if missing:
                            raise self._missing(missing, target)
                        connection.executemany(
                            f"DELETE FROM {quoted} WHERE id = ?",
                            [(record_id,) for record_id in chunk],
                            operation="delete-batch",
                        )
                    token.raise_if_cancelled()
                    connection.bump_generation(target)
            except Exception as exc:
                self._observer.batch_rolled_back(
                    "delete-batch",
                    table=target,
                    size=len(unique),
                    error=exc,
                )
                raise

        await self._executor.run(
            "delete-batch",
            _delete,
            table=target,
            size=len(unique),
        )

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    async def _search(
        self,
        operation: str,
        query: str,
        n: int,
        table: str | None,
        search_params: SearchParams | None,
        *,
        alpha: float | None = None,
    ) -> list[_ScoredRow]:
        self._check_query(query)
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidDataError(f"n must be a non-negative integer (got {n!r})", field="n")
        target = self._resolve_table(table)
        params = search_params or self._search_params
        k = params.effective_limit(n)
        if k == 0:
            return []

        vector = await self._embed(query)
        approximate = alpha is None and self._use_approximate(params)
        work = partial(
            self._scored_rows,
            table=target,
            query=query,
            vector=vector,
            k=k,
            params=params,
            alpha=alpha,
            approximate=approximate,
        )
        rows = await self._executor.run(
            operation,
            work,
            table=target,
            k=k,
            search_type=params.search_type.value,
        )
        if params.post_filter is not None:
            post_filter = params.post_filter
            rows = [
                row
                for row in rows
                if post_filter.matches(row.id, _decode_metadata(row.id, row.metadata))
            ]
        self._logger.debug(
            "vector-search-complete",
            operation=operation,
            table=target,
            results=len(rows),
            approximate=approximate,
        )
        return rows

    def _scored_rows(
        self,
        connection: StoreConnection,
        token: CancelToken,
        *,
        table: str,
        query: str,
        vector: list[float],
        k: int,
        params: SearchParams,
        alpha: float | None,
        approximate: bool,
    ) -> list[_ScoredRow]:
        if not connection.table_exists(table):
            return []
        where, where_params = ("1", [])
        if params.pre_filter is not None:
            where, where_params = params.pre_filter.to_sql()
        if approximate:
            return self._approximate_rows(
                connection,
                token,
                table=table,
                vector=vector,
                k=k,
                params=params,
                where=where,
                where_params=where_params,
            )

        functions = {
            _SIMILARITY_FN: (
                1,
                similarity_scorer(self._config.similarity_function, vector),
            ),
        }
        score_sql = f"{_SIMILARITY_FN}({self._column})"
        score_params: list[Any] = []
        if alpha is not None:
            functions[_LEXICAL_FN] = (1, lexical_scorer(query))
            score_sql = (
                f"(? * {_SIMILARITY_FN}({self._column}) "
                f"+ ? * {_LEXICAL_FN}(metadata))"
            )
            score_params = [alpha, 1.0 - alpha]
        sql = (
            f"SELECT seq, id, metadata, {score_sql} AS score "
            f"FROM {quote_identifier(table)} WHERE {where} "
            "ORDER BY score DESC, seq ASC LIMIT ?"
        )
        with connection.functions(functions):
            rows = connection.fetch_all(
                sql,
                [*score_params, *where_params, k],
                operation="vector-search",
            )
        token.raise_if_cancelled()
        return [
            _ScoredRow(float(row["score"]), row["seq"], row["id"], row["metadata"])
            for row in rows
        ]

    def _approximate_rows(
        self,
        connection: StoreConnection,
        token: CancelToken,
        *,
        table: str,
        vector: list[float],
        k: int,
        params: SearchParams,
        where: str,
        where_params: list[Any],
    ) -> list[_ScoredRow]:
        from vecdex.modules.vdb.faiss_index import (
            ApproximateIndexCache,
            FaissIndex,
        )

        if self._approximate is None:
            self._approximate = ApproximateIndexCache()
        quoted = quote_identifier(table)
        key = (table, where, tuple(where_params), connection.generation(table))
        structure = self._approximate.get(key)
        if structure is None:
            candidates = connection.fetch_all(
                f"SELECT seq, {self._column} AS embedding FROM {quoted} "
                f"WHERE {where} ORDER BY seq ASC",
                where_params,
                operation="approximate-build",
            )
            token.raise_if_cancelled()
            if not candidates:
                return []
            structure = FaissIndex.build(
                self._config,
                ids=[row["seq"] for row in candidates],
                vectors=[json.loads(row["embedding"]) for row in candidates],
            )
            self._approximate.put(key, structure)

        found = structure.search(
            vector,
            k=k,
            ef_search=params.param("ef_search"),
            nprobe=params.param("nprobe"),
        )
        if not found:
            return []
        seqs = [seq for _, seq in found]
        placeholders = ", ".join("?" for _ in seqs)
        rows = connection.fetch_all(
            f"SELECT seq, id, metadata FROM {quoted} WHERE seq IN ({placeholders})",
            seqs,
            operation="approximate-fetch",
        )
        token.raise_if_cancelled()
        by_seq = {row["seq"]: row for row in rows}
        results = [
            _ScoredRow(score, seq, by_seq[seq]["id"], by_seq[seq]["metadata"])
            for score, seq in found
            if seq in by_seq
        ]
        results.sort(key=lambda row: (-row.score, row.seq))
        return results

    def _use_approximate(self, params: SearchParams) -> bool:
        if params.search_type is SearchType.EXACT:
            return False
        if isinstance(self._config.index_type, BruteForceConfig):
            return False
        return self._config.similarity_function in APPROXIMATE_FUNCTIONS

    def _hits(self, rows: Sequence[_ScoredRow], payload_type: Any) -> list[SearchHit]:
        adapter = TypeAdapter(payload_type) if payload_type is not None else None
        hits: list[SearchHit] = []
        for row in rows:
            payload = _decode_metadata(row.id, row.metadata)
            if adapter is not None:
                payload = self._validate_payload(adapter, row.id, payload)
            hits.append(SearchHit(row.score, row.id, payload))
        return hits

    @staticmethod
    def _validate_payload(adapter: TypeAdapter[Any], row_id: str, payload: Any) -> Any:
        try:
            return adapter.validate_python(payload)
        except ValidationError as exc:
            raise SerializationError(
                f"Payload for {row_id!r} does not match the requested type: {exc}",
                id=row_id,
            ) from exc

    async def _embed(self, text: str) -> list[float]:
        raw = await self._model.embed_text(text)
        vector = [float(value) for value in raw]
        if len(vector) != self._config.dimensions:
            raise DimensionMismatchError(
                "Embedding model returned a vector of unexpected length",
                expected=self._config.dimensions,
                actual=len(vector),
            )
        return vector

    def _missing_ids(
        self,
        connection: StoreConnection,
        quoted: str,
        ids: Sequence[str],
    ) -> tuple[str, ...]:
        placeholders = ", ".join("?" for _ in ids)
        rows = connection.fetch_all(
            f"SELECT id FROM {quoted} WHERE id IN ({placeholders})",
            list(ids),
            operation="batch-lookup",
        )
        present = {row["id"] for row in rows}
        return tuple(value for value in dict.fromkeys(ids) if value not in present)

    def _apply_update(
        self,
        connection: StoreConnection,
        quoted: str,
        update: _PreparedUpdate,
    ) -> sqlite3.Cursor:
        now = utc_timestamp()
        if update.vector is None:
            return connection.execute(
                f"UPDATE {quoted} SET metadata = ?, updated_at = ? WHERE id = ?",
                (update.metadata, now, update.id),
                operation="update-embedding",
            )
        return connection.execute(
            f"UPDATE {quoted} SET {self._column} = ?, metadata = ?, "
            "updated_at = ? WHERE id = ?",
            (update.vector, update.metadata, now, update.id),
            operation="update-embedding",
        )

    def _prepare_update(self, item: EmbeddingUpdate | tuple[Any, ...]) -> _PreparedUpdate:
        if isinstance(item, EmbeddingUpdate):
            record_id, metadata, vector = item.id, item.metadata, item.vector
        elif isinstance(item, tuple) and len(item) in (2, 3):
            record_id, metadata = item[0], item[1]
            vector = item[2] if len(item) == 3 else None
        else:
            raise InvalidDataError(
                "Batch items must be EmbeddingUpdate or (id, metadata[, vector]) "
                f"tuples (got {type(item).__name__})",
                field="updates",
            )
        return _PreparedUpdate(
            id=self._check_id(record_id),
            metadata=encode_metadata(metadata),
            vector=(
                None
                if vector is None
                else encode_vector(vector, dimensions=self._config.dimensions)
            ),
        )

    @staticmethod
    def _missing(ids: Sequence[str], table: str) -> MissingIdError:
        listed = ", ".join(repr(value) for value in ids)
        return MissingIdError(
            f"Records not found in {table!r}: {listed}",
            ids=tuple(ids),
            table=table,
        )

    def _resolve_table(self, table: str | None, *, required: bool = False) -> str:
        if table is None and not required:
            return self._collection
        if not isinstance(table, str) or not table.strip():
            raise InvalidDataError("Table name cannot be empty", field="table")
        quote_identifier(table)
        return table

    @staticmethod
    def _check_query(query: str) -> None:
        if not isinstance(query, str) or not query.strip():
            raise InvalidDataError("Query text cannot be empty", field="query")

    @staticmethod
    def _check_id(value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidDataError("Record id cannot be empty", field="id")
        return value

