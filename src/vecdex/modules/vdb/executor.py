"""Run blocking store work on pooled connections with retries."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from vecdex.core.errors import OperationCancelledError, VectorStoreError
from vecdex.core.logging import Logger, get_logger
from vecdex.modules.db.pool import ConnectionPool
from vecdex.modules.db.store import StoreConnection
from vecdex.modules.vdb.observer import IndexObserver

__all__ = ["CancelToken", "StoreExecutor", "StoreWork"]

T = TypeVar("T")


class CancelToken:
    """Cancellation flag shared between the awaiting task and its worker."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled by caller")


StoreWork = Callable[[StoreConnection, CancelToken], T]


class StoreExecutor:
    """Execute store work with pool admission, retries and cancellation.

    Each attempt checks out one connection for its whole duration and runs
    the work on the default thread pool. If the awaiting task is cancelled,
    the worker is told to stop and the connection is only returned once the
    worker has finished, so a cancelled transaction is always rolled back
    before its connection is reused.
    """

    def __init__(
        self,
        pool: ConnectionPool[StoreConnection],
        *,
        observer: IndexObserver,
        max_retries: int = 0,
        retry_delay: float = 0.0,
        logger: Logger | None = None,
    ) -> None:
        self._pool = pool
        self._observer = observer
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._logger = logger or get_logger(__name__, component="executor")

    @property
    def pool(self) -> ConnectionPool[StoreConnection]:
        return self._pool

    async def run(
        self,
        operation: str,
        work: StoreWork[T],
        *,
        table: str,
        **context: Any,
    ) -> T:
        """Run ``work`` and retry it while it fails with retryable errors.

        Raises:
            VectorStoreError: The last error when it is not retryable or the
                retry budget is spent.
        """

        self._observer.request_issued(operation, table=table, **context)
        attempt = 0
        while True:
            try:
                return await self._attempt(work)
            except VectorStoreError as exc:
                if not exc.retryable or attempt >= self._max_retries:
                    raise
                attempt += 1
                self._observer.retry_attempted(
                    operation,
                    attempt=attempt,
                    error=exc,
                    delay=self._retry_delay,
                )
                await asyncio.sleep(self._retry_delay)

    async def _attempt(self, work: StoreWork[T]) -> T:
        async with self._pool.connection() as connection:
            token = CancelToken()
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(None, work, connection, token)
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                token.cancel()
                # The connection goes back only once the worker is done with it.
                while not future.done():
                    try:
                        await asyncio.wait({future})
                    except asyncio.CancelledError:
                        continue
                if not future.cancelled() and future.exception() is not None:
                    self._logger.debug(
                        "store-work-abandoned",
                        error=str(future.exception()),
                    )
                raise
