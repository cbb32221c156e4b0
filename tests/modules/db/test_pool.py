"""Tests for :mod:`vecdex.modules.db.pool`."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from vecdex.core.errors import (
    ConfigurationError,
    IndexConfigurationError,
    PoolClosedError,
    PoolTimeoutError,
    StoreConnectionError,
)
from vecdex.modules.db.pool import ConnectionPool, PoolConfig


class _FakeConnection:
    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.id = next(self._ids)
        self.closed = False

    def close(self) -> None:
        self.closed = True


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _pool(config: PoolConfig, *, clock: _Clock | None = None) -> ConnectionPool[_FakeConnection]:
    async def _connect() -> _FakeConnection:
        return _FakeConnection()

    if clock is None:
        return ConnectionPool(config, connect=_connect)
    return ConnectionPool(config, connect=_connect, clock=clock)


@pytest.mark.parametrize(
    "config",
    [
        PoolConfig(),
        PoolConfig(max_size=1, min_idle=0, timeout=0.01),
        PoolConfig(max_size=5, min_idle=5, timeout=1.0),
    ],
)
def test_valid_configs_create_pools(config: PoolConfig) -> None:
    pool = _pool(config)

    assert pool.size() == config.max_size
    assert pool.idle_count() == 0


@pytest.mark.parametrize(
    ("config", "field"),
    [
        (PoolConfig(max_size=0), "max_size"),
        (PoolConfig(max_size=-3, min_idle=0), "max_size"),
        (PoolConfig(max_size=2, min_idle=3), "min_idle"),
        (PoolConfig(min_idle=-1), "min_idle"),
        (PoolConfig(timeout=0), "timeout"),
        (PoolConfig(timeout=-1.0), "timeout"),
    ],
)
def test_invalid_configs_fail_before_pool_exists(config: PoolConfig, field: str) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        _pool(config)

    assert excinfo.value.field == field
    assert not isinstance(excinfo.value, IndexConfigurationError)
    assert not excinfo.value.retryable


@pytest.mark.asyncio
async def test_get_blocks_when_saturated_and_put_admits_one_waiter() -> None:
    pool = _pool(PoolConfig(max_size=2, timeout=5.0))
    first = await pool.get()
    second = await pool.get()
    assert pool.size() == 0

    waiters = [asyncio.create_task(pool.get()) for _ in range(2)]
    await asyncio.sleep(0.05)
    assert not any(task.done() for task in waiters)

    await pool.put(first)
    await asyncio.sleep(0.05)
    done = [task for task in waiters if task.done()]
    assert len(done) == 1
    third = done[0].result()
    assert third.connection is first.connection

    await pool.put(second)
    fourth = await asyncio.wait_for(
        next(task for task in waiters if task is not done[0]),
        timeout=1.0,
    )
    assert fourth.connection is second.connection

    await pool.put(third)
    await pool.put(fourth)
    assert pool.size() == 2
    assert pool.idle_count() == 2


@pytest.mark.asyncio
async def test_release_without_put_frees_slot() -> None:
    pool = _pool(PoolConfig(max_size=1, timeout=5.0))
    lease = await pool.get()
    waiter = asyncio.create_task(pool.get())
    await asyncio.sleep(0.02)
    assert not waiter.done()

    lease.release()
    other = await asyncio.wait_for(waiter, timeout=1.0)

    assert other.connection is not lease.connection
    await pool.put(lease)  # already released: no-op
    assert pool.idle_count() == 0
    await pool.put(other)


@pytest.mark.asyncio
async def test_get_times_out_when_no_slot_frees() -> None:
    pool = _pool(PoolConfig(max_size=1, timeout=0.05))
    lease = await pool.get()

    with pytest.raises(PoolTimeoutError) as excinfo:
        await pool.get()

    assert excinfo.value.timeout == 0.05
    assert excinfo.value.retryable
    await pool.put(lease)
    assert pool.size() == 1


@pytest.mark.asyncio
async def test_closed_pool_rejects_get_and_closes_returned_connections() -> None:
    pool = _pool(PoolConfig(max_size=2))
    idle = await pool.get()
    busy = await pool.get()
    await pool.put(idle)

    await pool.close()

    assert idle.connection.closed
    assert not busy.connection.closed
    with pytest.raises(PoolClosedError) as excinfo:
        await pool.get()
    assert not excinfo.value.retryable

    await pool.put(busy)
    assert busy.connection.closed
    assert pool.size() == 2


@pytest.mark.asyncio
async def test_close_wakes_waiters_with_pool_closed_error() -> None:
    pool = _pool(PoolConfig(max_size=1, timeout=30.0))
    lease = await pool.get()
    waiter = asyncio.create_task(pool.get())
    await asyncio.sleep(0.02)

    await pool.close()

    with pytest.raises(PoolClosedError):
        await asyncio.wait_for(waiter, timeout=1.0)
    assert pool.size() == 0

    await pool.put(lease)
    assert lease.connection.closed
    assert pool.size() == 1


@pytest.mark.asyncio
async def test_expired_connections_are_not_reused() -> None:
    clock = _Clock()
    pool = _pool(PoolConfig(max_size=1, max_lifetime=10.0), clock=clock)
    lease = await pool.get()
    await pool.put(lease)

    clock.now = 11.0
    fresh = await pool.get()

    assert lease.connection.closed
    assert fresh.connection is not lease.connection
    await pool.put(fresh)


@pytest.mark.asyncio
async def test_expired_connection_is_discarded_on_put() -> None:
    clock = _Clock()
    pool = _pool(PoolConfig(max_size=1, max_lifetime=10.0), clock=clock)
    lease = await pool.get()

    clock.now = 20.0
    await pool.put(lease)

    assert lease.connection.closed
    assert pool.idle_count() == 0


@pytest.mark.asyncio
async def test_idle_eviction_keeps_min_idle() -> None:
    clock = _Clock()
    pool = _pool(
        PoolConfig(max_size=3, min_idle=1, idle_timeout=5.0),
        clock=clock,
    )
    leases = [await pool.get() for _ in range(3)]
    for lease in leases:
        await pool.put(lease)
    assert pool.idle_count() == 3

    clock.now = 6.0
    reused = await pool.get()

    # Two stale connections are evicted; the last one stays to honour min_idle.
    closed = [lease.connection.closed for lease in leases]
    assert closed.count(True) == 2
    assert reused.connection is leases[0].connection
    assert pool.idle_count() == 0
    await pool.put(reused)


@pytest.mark.asyncio
async def test_connect_failure_releases_slot() -> None:
    attempts = 0

    async def _failing() -> _FakeConnection:
        nonlocal attempts
        attempts += 1
        raise OSError("disk on fire")

    pool: ConnectionPool[_FakeConnection] = ConnectionPool(
        PoolConfig(max_size=1, timeout=0.1),
        connect=_failing,
    )

    for _ in range(2):
        with pytest.raises(StoreConnectionError):
            await pool.get()

    assert attempts == 2
    assert pool.size() == 1


@pytest.mark.asyncio
async def test_connection_context_discards_after_connection_error() -> None:
    pool = _pool(PoolConfig(max_size=1))

    with pytest.raises(StoreConnectionError):
        async with pool.connection() as connection:
            raise StoreConnectionError("lost connection")

    assert connection.closed
    assert pool.idle_count() == 0
    assert pool.size() == 1

    async with pool.connection() as healthy:
        assert healthy is not connection
    assert pool.idle_count() == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_a_slot() -> None:
    pool = _pool(PoolConfig(max_size=1, timeout=5.0))
    lease = await pool.get()
    waiter = asyncio.create_task(pool.get())
    await asyncio.sleep(0.02)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    await pool.put(lease)
    assert pool.size() == 1
    again = await asyncio.wait_for(pool.get(), timeout=1.0)
    await pool.put(again)
