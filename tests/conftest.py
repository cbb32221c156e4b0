"""Shared pytest fixtures for store and index tests."""

from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path

import pytest
import pytest_asyncio

from vecdex.modules.db.pool import ConnectionPool, PoolConfig
from vecdex.modules.db.store import StoreConnection, sqlite_connector
from vecdex.modules.vdb.client import VectorStoreClient
from vecdex.modules.vdb.config import IndexConfig
from vecdex.modules.vdb.index import VectorIndex


class FakeEmbeddingModel:
    """Deterministic embedding model for tests.

    Texts listed in ``vectors`` embed to the given vector; anything else is
    hashed into a stable pseudo-random vector.
    """

    def __init__(
        self,
        dimensions: int = 3,
        vectors: Mapping[str, Sequence[float]] | None = None,
    ) -> None:
        self._dimensions = dimensions
        self._vectors = dict(vectors or {})
        self.calls: list[str] = []

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_text(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self._vectors:
            return [float(value) for value in self._vectors[text]]
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[index] / 255.0 for index in range(self._dimensions)]


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    return tmp_path / "vectors.db"


@pytest.fixture
def fake_model_cls() -> type[FakeEmbeddingModel]:
    return FakeEmbeddingModel


@pytest.fixture
def embedding_model() -> FakeEmbeddingModel:
    return FakeEmbeddingModel(
        vectors={
            "north": [1.0, 0.0, 0.0],
            "east": [0.0, 1.0, 0.0],
            "up": [0.0, 0.0, 1.0],
        },
    )


@pytest.fixture
def index_config() -> IndexConfig:
    return IndexConfig("docs", dimensions=3, retry_delay=0)


@pytest_asyncio.fixture
async def pool(database_path: Path) -> AsyncIterator[ConnectionPool[StoreConnection]]:
    pool = ConnectionPool(
        PoolConfig(max_size=4, timeout=5.0),
        connect=sqlite_connector(database_path),
    )
    try:
        yield pool
    finally:
        await pool.close()


@pytest_asyncio.fixture
async def client(database_path: Path) -> AsyncIterator[VectorStoreClient]:
    client = await VectorStoreClient.connect(
        database_path,
        pool_config=PoolConfig(max_size=4, timeout=5.0),
    )
    try:
        yield client
    finally:
        await client.close()


@pytest_asyncio.fixture
async def vector_index(
    client: VectorStoreClient,
    embedding_model: FakeEmbeddingModel,
    index_config: IndexConfig,
) -> VectorIndex:
    await client.create_vector_index(index_config)
    return await client.get_index(embedding_model, index_config.index_name)
