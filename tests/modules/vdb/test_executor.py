"""Retry and cancellation semantics of :class:`StoreExecutor`."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from vecdex.core.errors import DatastoreError, InvalidDataError, OperationCancelledError
from vecdex.modules.db.pool import ConnectionPool, PoolConfig
from vecdex.modules.db.store import StoreConnection, sqlite_connector
from vecdex.modules.vdb.executor import CancelToken, StoreExecutor


class RecordingObserver:
    def __init__(self) -> None:
        self.requests: list[str] = []
        self.retries: list[tuple[str, int, float]] = []

    def request_issued(self, operation: str, *, table: str, **context: Any) -> None:
        self.requests.append(operation)

    def retry_attempted(self, operation, *, attempt, error, delay) -> None:
        self.retries.append((operation, attempt, delay))

    def batch_rolled_back(self, operation, *, table, size, error) -> None:
        raise AssertionError("no batches in executor tests")


def _count_notes(connection: StoreConnection, token: CancelToken) -> int:
    row = connection.fetch_one("SELECT COUNT(*) AS n FROM notes", operation="count")
    return row["n"]


def _create_notes(connection: StoreConnection, token: CancelToken) -> None:
    connection.execute("CREATE TABLE notes (body TEXT)", operation="create")


def test_cancel_token_flags_and_raises() -> None:
    token = CancelToken()
    token.raise_if_cancelled()
    assert not token.cancelled

    token.cancel()

    assert token.cancelled
    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_transient_errors_are_retried(pool) -> None:
    observer = RecordingObserver()
    executor = StoreExecutor(pool, observer=observer, max_retries=3, retry_delay=0.0)
    attempts: list[int] = []

    def _flaky(connection: StoreConnection, token: CancelToken) -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise DatastoreError("database is locked", operation="flaky", transient=True)
        return "done"

    assert await executor.run("flaky", _flaky, table="t") == "done"

    assert len(attempts) == 3
    assert observer.requests == ["flaky"]
    assert observer.retries == [("flaky", 1, 0.0), ("flaky", 2, 0.0)]
    assert pool.size() == 4


@pytest.mark.asyncio
async def test_retry_budget_is_bounded(pool) -> None:
    observer = RecordingObserver()
    executor = StoreExecutor(pool, observer=observer, max_retries=2, retry_delay=0.0)
    attempts: list[int] = []

    def _always_locked(connection: StoreConnection, token: CancelToken) -> None:
        attempts.append(1)
        raise DatastoreError("database is locked", operation="locked", transient=True)

    with pytest.raises(DatastoreError):
        await executor.run("locked", _always_locked, table="t")

    assert len(attempts) == 3
    assert [attempt for _, attempt, _ in observer.retries] == [1, 2]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        DatastoreError("disk I/O error", operation="io"),
        InvalidDataError("bad input", field="query"),
    ],
)
async def test_final_errors_are_not_retried(pool, error) -> None:
    observer = RecordingObserver()
    executor = StoreExecutor(pool, observer=observer, max_retries=5, retry_delay=0.0)
    attempts: list[int] = []

    def _fail(connection: StoreConnection, token: CancelToken) -> None:
        attempts.append(1)
        raise error

    with pytest.raises(type(error)):
        await executor.run("fail", _fail, table="t")

    assert len(attempts) == 1
    assert observer.retries == []


@pytest.mark.asyncio
async def test_cancellation_rolls_back_and_returns_connection(pool) -> None:
    executor = StoreExecutor(pool, observer=RecordingObserver())
    await executor.run("create", _create_notes, table="notes")
    started = threading.Event()
    finished = threading.Event()

    def _slow_insert(connection: StoreConnection, token: CancelToken) -> None:
        try:
            with connection.transaction(operation="slow-insert"):
                connection.execute(
                    "INSERT INTO notes (body) VALUES (?)",
                    ("draft",),
                    operation="slow-insert",
                )
                started.set()
                deadline = time.monotonic() + 5.0
                while not token.cancelled and time.monotonic() < deadline:
                    time.sleep(0.01)
                token.raise_if_cancelled()
        finally:
            finished.set()

    task = asyncio.create_task(executor.run("slow-insert", _slow_insert, table="notes"))
    assert await asyncio.to_thread(started.wait, 2)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert finished.is_set()
    assert pool.size() == 4
    assert await executor.run("count", _count_notes, table="notes") == 0


@pytest.mark.asyncio
async def test_repeated_cancellation_keeps_connection_until_worker_finishes(
    database_path: Path,
) -> None:
    pool = ConnectionPool(
        PoolConfig(max_size=1, timeout=5.0),
        connect=sqlite_connector(database_path),
    )
    executor = StoreExecutor(pool, observer=RecordingObserver())
    started = threading.Event()
    release = threading.Event()
    finished = threading.Event()

    def _stubborn(connection: StoreConnection, token: CancelToken) -> None:
        started.set()
        try:
            release.wait(5.0)
        finally:
            finished.set()

    try:
        task = asyncio.create_task(executor.run("stubborn", _stubborn, table="t"))
        assert await asyncio.to_thread(started.wait, 2)

        task.cancel()
        await asyncio.sleep(0)
        task.cancel()
        await asyncio.sleep(0.05)

        assert not task.done()
        assert pool.size() == 0

        release.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert finished.is_set()
        assert pool.size() == 1
    finally:
        release.set()
        await pool.close()
