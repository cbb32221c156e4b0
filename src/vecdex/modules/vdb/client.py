"""Store-level client: connection setup, index registry and raw inserts."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from types import TracebackType
from typing import Any, Sequence

from vecdex.core.errors import (
    ConfigurationError,
    DimensionMismatchError,
    IndexConfigurationError,
    InvalidDataError,
)
from vecdex.core.logging import Logger, get_logger
from vecdex.modules.db.pool import ConnectionPool, PoolConfig
from vecdex.modules.db.store import (
    COLLECTIONS_TABLE,
    INDEXES_TABLE,
    StoreConnection,
    is_memory_database,
    quote_identifier,
    raise_duplicate,
    sqlite_connector,
    utc_timestamp,
)
from vecdex.modules.vdb.config import IndexConfig, SearchParams
from vecdex.modules.vdb.executor import CancelToken, StoreExecutor
from vecdex.modules.vdb.index import VectorIndex, encode_metadata, encode_vector
from vecdex.modules.vdb.observer import IndexObserver, LoggingIndexObserver
from vecdex.modules.vdb.providers import EmbeddingModel

__all__ = ["VectorStoreClient"]

_DEFAULT_EMBEDDING_PROPERTY = "embedding"


class VectorStoreClient:
    """Entry point owning a connection pool and the persisted index registry.

    Example:
        >>> async with await VectorStoreClient.connect("vectors.db") as client:  # doctest: +SKIP
        ...     await client.create_vector_index(config)
        ...     index = await client.get_index(model, config.index_name)
    """

    def __init__(
        self,
        pool: ConnectionPool[StoreConnection],
        *,
        observer: IndexObserver | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._pool = pool
        self._observer = observer or LoggingIndexObserver()
        self._logger = logger or get_logger(__name__, component="client")
        self._executor = StoreExecutor(
            pool,
            observer=self._observer,
            logger=self._logger,
        )

    @classmethod
    async def connect(
        cls,
        database: str | Path,
        *,
        pool_config: PoolConfig | None = None,
        busy_timeout: float = 5.0,
        observer: IndexObserver | None = None,
    ) -> "VectorStoreClient":
        """Open a pool against ``database`` and verify one connection.

        Raises:
            ConfigurationError: If the pool configuration is invalid or
                an in-memory database is shared by more than one connection.
            StoreConnectionError: If the database cannot be opened.
        """

        config = pool_config or PoolConfig()
        config.validate()
        target = str(database)
        if is_memory_database(target) and config.max_size > 1:
            raise ConfigurationError(
                "In-memory databases require a pool with max_size=1; "
                "each connection would otherwise see its own database",
                field="database",
            )
        pool = ConnectionPool(
            config,
            connect=sqlite_connector(target, busy_timeout=busy_timeout),
        )
        async with pool.connection() as connection:
            connection.ping()
        client = cls(pool, observer=observer)
        client._logger.info(
            "client-connected",
            database=target,
            max_size=config.max_size,
        )
        return client

    @property
    def pool(self) -> ConnectionPool[StoreConnection]:
        return self._pool

    async def add_embedding(
        self,
        id: str,
        vector: Sequence[float],
        metadata: Any,
        table: str,
    ) -> None:
        """Insert one record into ``table``, creating the table if needed.

        When an index is registered for ``table`` the vector must match its
        dimensions and is stored under its embedding property.

        Raises:
            DuplicateIdError: If ``id`` already exists in ``table``.
        """

        if not isinstance(id, str) or not id.strip():
            raise InvalidDataError("Record id cannot be empty", field="id")
        if not isinstance(table, str) or not table.strip():
            raise InvalidDataError("Table name cannot be empty", field="table")
        quoted = quote_identifier(table)
        encoded = encode_vector(vector)
        dimensions = len(vector)
        payload = encode_metadata(metadata)

        def _insert(connection: StoreConnection, token: CancelToken) -> None:
            with connection.transaction(operation="add-embedding"):
                prop = self._embedding_property(connection, table)
                config = self._index_for_collection(connection, table)
                if config is not None and config.dimensions != dimensions:
                    raise DimensionMismatchError(
                        f"Vector length does not match index {config.index_name!r}",
                        expected=config.dimensions,
                        actual=dimensions,
                    )
                connection.ensure_collection(table, embedding_property=prop)
                column = quote_identifier(prop, field="embedding_property")
                now = utc_timestamp()
                try:
                    connection.execute(
                        f"INSERT INTO {quoted} "
                        f"(id, {column}, metadata, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (id, encoded, payload, now, now),
                        operation="add-embedding",
                    )
                except sqlite3.IntegrityError as exc:
                    raise_duplicate(exc, record_id=id, table=table)
                token.raise_if_cancelled()
                connection.bump_generation(table)

        await self._executor.run("add-embedding", _insert, table=table, id=id)

    async def create_vector_index(
        self,
        config: IndexConfig,
        table: str | None = None,
    ) -> None:
        """Validate ``config``, create its collection and persist it.

        Re-registering an index name replaces the stored configuration.

        Raises:
            IndexConfigurationError: If ``config`` is invalid or ``table``
                already stores embeddings under another property.
        """

        config.validate()
        collection = table or config.index_name
        quote_identifier(collection)
        document = json.dumps(config.to_mapping(), sort_keys=True)

        def _create(connection: StoreConnection, token: CancelToken) -> None:
            with connection.transaction(operation="create-vector-index"):
                existing = self._stored_property(connection, collection)
                if existing is not None and existing != config.embedding_property:
                    raise IndexConfigurationError(
                        f"Table {collection!r} stores embeddings in "
                        f"{existing!r}, not {config.embedding_property!r}",
                        field="embedding_property",
                    )
                connection.ensure_collection(
                    collection,
                    embedding_property=config.embedding_property,
                )
                connection.execute(
                    f"INSERT OR REPLACE INTO {INDEXES_TABLE} "
                    "(index_name, collection, config, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (config.index_name, collection, document, utc_timestamp()),
                    operation="create-vector-index",
                )
                token.raise_if_cancelled()

        await self._executor.run(
            "create-vector-index",
            _create,
            table=collection,
            index=config.index_name,
        )
        self._logger.info(
            "vector-index-created",
            index=config.index_name,
            collection=collection,
            dimensions=config.dimensions,
            similarity=config.similarity_function.value,
            index_type=config.index_type.kind.value,
        )

    async def get_index(
        self,
        model: EmbeddingModel,
        index_name: str,
        search_params: SearchParams | None = None,
    ) -> VectorIndex:
        """Return a :class:`VectorIndex` for a registered index.

        Raises:
            IndexConfigurationError: If ``index_name`` was never registered.
        """

        if not index_name or not index_name.strip():
            raise IndexConfigurationError(
                "Index name cannot be empty",
                field="index_name",
            )

        def _load(
            connection: StoreConnection,
            token: CancelToken,
        ) -> sqlite3.Row | None:
            return connection.fetch_one(
                f"SELECT collection, config FROM {INDEXES_TABLE} "
                "WHERE index_name = ?",
                (index_name,),
                operation="get-index",
            )

        row = await self._executor.run(
            "get-index",
            _load,
            table=INDEXES_TABLE,
            index=index_name,
        )
        if row is None:
            raise IndexConfigurationError(
                f"Index {index_name!r} does not exist",
                field="index_name",
            )
        config = IndexConfig.from_mapping(json.loads(row["config"]))
        return VectorIndex(
            model,
            self._pool,
            config,
            search_params,
            collection=row["collection"],
            observer=self._observer,
        )

    async def list_indexes(self) -> list[str]:
        """Return registered index names in alphabetical order."""

        def _list(connection: StoreConnection, token: CancelToken) -> list[str]:
            rows = connection.fetch_all(
                f"SELECT index_name FROM {INDEXES_TABLE} ORDER BY index_name",
                operation="list-indexes",
            )
            return [row["index_name"] for row in rows]

        return await self._executor.run(
            "list-indexes",
            _list,
            table=INDEXES_TABLE,
        )

    async def close(self) -> None:
        await self._pool.close()

    async def __aenter__(self) -> "VectorStoreClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @staticmethod
    def _stored_property(connection: StoreConnection, table: str) -> str | None:
        row = connection.fetch_one(
            f"SELECT embedding_property FROM {COLLECTIONS_TABLE} WHERE name = ?",
            (table,),
            operation="collection-lookup",
        )
        return None if row is None else row["embedding_property"]

    def _embedding_property(self, connection: StoreConnection, table: str) -> str:
        return self._stored_property(connection, table) or _DEFAULT_EMBEDDING_PROPERTY

    @staticmethod
    def _index_for_collection(
        connection: StoreConnection,
        table: str,
    ) -> IndexConfig | None:
        row = connection.fetch_one(
            f"SELECT config FROM {INDEXES_TABLE} WHERE collection = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (table,),
            operation="index-lookup",
        )
        if row is None:
            return None
        return IndexConfig.from_mapping(json.loads(row["config"]))
