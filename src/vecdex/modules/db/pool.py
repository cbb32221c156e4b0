"""Bounded, admission-gated pool of reusable store connections."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from vecdex.core.errors import (
    ConfigurationError,
    PoolClosedError,
    PoolTimeoutError,
    StoreConnectionError,
)
from vecdex.core.logging import Logger, get_logger

__all__ = [
    "ConnectionPool",
    "PoolConfig",
    "PooledConnection",
    "PoolableConnection",
]


class PoolableConnection(Protocol):
    """Minimal surface the pool needs from a connection."""

    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


ConnectionT = TypeVar("ConnectionT", bound=PoolableConnection)


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Sizing and timing knobs for :class:`ConnectionPool`.

    All durations are in seconds.
    """

    max_size: int = 10
    min_idle: int = 1
    timeout: float = 30.0
    max_lifetime: float = 3600.0
    idle_timeout: float = 600.0

    def validate(self) -> None:
        """Check the pool invariants in order, raising on the first failure.

        Raises:
            ConfigurationError: If ``max_size`` is not positive,
                ``min_idle`` exceeds ``max_size`` or ``timeout`` is not
                positive.
        """

        if self.max_size <= 0:
            raise ConfigurationError(
                "Max pool size must be greater than 0",
                field="max_size",
            )
        if self.min_idle < 0 or self.min_idle > self.max_size:
            raise ConfigurationError(
                "Minimum idle connections must be between 0 and max pool size",
                field="min_idle",
            )
        if self.timeout <= 0:
            raise ConfigurationError(
                "Timeout must be greater than 0",
                field="timeout",
            )


@dataclass(slots=True)
class _IdleEntry(Generic[ConnectionT]):
    connection: ConnectionT
    created_at: float
    last_used: float


@dataclass(slots=True, eq=False)
class PooledConnection(Generic[ConnectionT]):
    """A checked-out connection holding one admission slot.

    The slot is released exactly once, either by :meth:`ConnectionPool.put`
    or by :meth:`release` when the connection is discarded.
    """

    connection: ConnectionT
    created_at: float
    _pool: "ConnectionPool[ConnectionT]" = field(repr=False)
    _released: bool = field(default=False, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Give back the admission slot without returning the connection."""

        if self._released:
            return
        self._released = True
        self._pool._release_slot()


class ConnectionPool(Generic[ConnectionT]):
    """Pool connections behind a fair counting semaphore.

    At most ``max_size`` connections are checked out at once. Callers that
    find the pool saturated wait (FIFO) for up to ``timeout`` seconds. Stale
    idle connections are evicted lazily when fetched, never by a background
    task.

    Example:
        >>> pool = ConnectionPool(PoolConfig(max_size=2), connect=open_conn)  # doctest: +SKIP
        >>> async with pool.connection() as conn:  # doctest: +SKIP
        ...     conn.fetch_all("SELECT 1")
    """

    def __init__(
        self,
        config: PoolConfig,
        *,
        connect: Callable[[], Awaitable[ConnectionT]],
        logger: Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config.validate()
        self._config = config
        self._connect = connect
        self._clock = clock
        self._logger = logger or get_logger(__name__, component="pool")
        self._semaphore = asyncio.Semaphore(config.max_size)
        self._idle: deque[_IdleEntry[ConnectionT]] = deque()
        self._lock = threading.Lock()
        self._waiters: set[asyncio.Future[bool]] = set()
        self._in_use = 0
        self._closed = False

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    def size(self) -> int:
        """Return the number of free admission slots.

        This is not the number of idle connections; see :meth:`idle_count`.
        """

        with self._lock:
            return self._config.max_size - self._in_use

    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    async def get(self) -> PooledConnection[ConnectionT]:
        """Acquire a slot and return an idle or freshly opened connection.

        Raises:
            PoolClosedError: If the pool has been closed.
            PoolTimeoutError: If no slot frees up within ``timeout``.
            StoreConnectionError: If opening a new connection fails.
        """

        if self._closed:
            raise PoolClosedError("Connection pool is closed")
        waiter = asyncio.ensure_future(self._semaphore.acquire())
        self._waiters.add(waiter)
        try:
            await asyncio.wait_for(waiter, timeout=self._config.timeout)
        except asyncio.TimeoutError as exc:
            self._logger.warning(
                "pool-acquire-timeout",
                timeout=self._config.timeout,
                max_size=self._config.max_size,
            )
            raise PoolTimeoutError(
                "Timed out waiting for a pooled connection",
                timeout=self._config.timeout,
            ) from exc
        except asyncio.CancelledError:
            # close() cancels waiters; the caller's own cancellation wins.
            task = asyncio.current_task()
            if self._closed and task is not None and not task.cancelling():
                raise PoolClosedError("Connection pool is closed") from None
            raise
        finally:
            self._waiters.discard(waiter)
        with self._lock:
            self._in_use += 1

        try:
            if self._closed:
                raise PoolClosedError("Connection pool is closed")
            entry = self._take_idle()
            if entry is not None:
                return PooledConnection(
                    connection=entry.connection,
                    created_at=entry.created_at,
                    _pool=self,
                )
            connection = await self._open()
            return PooledConnection(
                connection=connection,
                created_at=self._clock(),
                _pool=self,
            )
        except BaseException:
            self._release_slot()
            raise

    async def put(self, lease: PooledConnection[ConnectionT]) -> None:
        """Return ``lease`` to the idle set and free its slot.

        Returning into a closed pool closes the connection instead; it is not
        an error.
        """

        if lease.released:
            return
        connection = lease.connection
        try:
            if self._closed or connection.closed:
                self._discard(connection, reason="closed")
                return
            if self._expired(lease.created_at, self._clock()):
                self._discard(connection, reason="max-lifetime")
                return
            with self._lock:
                self._idle.append(
                    _IdleEntry(
                        connection=connection,
                        created_at=lease.created_at,
                        last_used=self._clock(),
                    )
                )
        finally:
            lease.release()

    async def close(self) -> None:
        """Close every idle connection; checked-out ones close on return.

        Tasks waiting for a slot fail with :class:`PoolClosedError`.
        """

        self._closed = True
        for waiter in list(self._waiters):
            waiter.cancel()
        with self._lock:
            drained = list(self._idle)
            self._idle.clear()
        for entry in drained:
            self._discard(entry.connection, reason="pool-closed")
        self._logger.info("pool-closed", drained=len(drained))

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[ConnectionT]:
        """Check out a connection for the duration of the block.

        The slot is released when the block exits, including on errors and
        task cancellation. Connections that failed with a connection error
        are discarded rather than reused.
        """

        lease = await self.get()
        try:
            yield lease.connection
        except StoreConnectionError:
            self._discard(lease.connection, reason="connection-error")
            lease.release()
            raise
        finally:
            await self.put(lease)

    async def _open(self) -> ConnectionT:
        try:
            connection = await self._connect()
        except StoreConnectionError:
            raise
        except Exception as exc:
            raise StoreConnectionError(
                f"Failed to create new connection: {exc}",
            ) from exc
        self._logger.debug("pool-connection-opened", in_use=self._in_use)
        return connection

    def _take_idle(self) -> _IdleEntry[ConnectionT] | None:
        now = self._clock()
        stale: list[ConnectionT] = []
        found: _IdleEntry[ConnectionT] | None = None
        with self._lock:
            while self._idle:
                entry = self._idle.pop()
                if entry.connection.closed or self._expired(entry.created_at, now):
                    stale.append(entry.connection)
                    continue
                idle_for = now - entry.last_used
                if (
                    idle_for > self._config.idle_timeout
                    and len(self._idle) >= self._config.min_idle
                ):
                    stale.append(entry.connection)
                    continue
                found = entry
                break
        for connection in stale:
            self._discard(connection, reason="evicted")
        return found

    def _expired(self, created_at: float, now: float) -> bool:
        return now - created_at > self._config.max_lifetime

    def _discard(self, connection: ConnectionT, *, reason: str) -> None:
        connection.close()
        self._logger.debug("pool-connection-discarded", reason=reason)

    def _release_slot(self) -> None:
        with self._lock:
            self._in_use -= 1
        self._semaphore.release()
