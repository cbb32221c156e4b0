"""Extension points invoked by the index and client around store work."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from vecdex.core.logging import Logger, get_logger

__all__ = ["IndexObserver", "LoggingIndexObserver"]


@runtime_checkable
class IndexObserver(Protocol):
    """Callbacks fired at well-defined points of an index operation.

    Callbacks may run on worker threads and must not block.
    """

    def request_issued(self, operation: str, *, table: str, **context: Any) -> None:
        """Called once per logical operation before the first store attempt."""

    def retry_attempted(
        self,
        operation: str,
        *,
        attempt: int,
        error: BaseException,
        delay: float,
    ) -> None:
        """Called before sleeping ``delay`` seconds ahead of retry ``attempt``."""

    def batch_rolled_back(
        self,
        operation: str,
        *,
        table: str,
        size: int,
        error: BaseException,
    ) -> None:
        """Called after a batch transaction was rolled back."""


class LoggingIndexObserver:
    """Default observer emitting structlog events."""

    def __init__(self, logger: Logger | None = None) -> None:
        self._logger = logger or get_logger(__name__, component="index")

    def request_issued(self, operation: str, *, table: str, **context: Any) -> None:
        self._logger.debug(
            "index-request-issued",
            operation=operation,
            table=table,
            **context,
        )

    def retry_attempted(
        self,
        operation: str,
        *,
        attempt: int,
        error: BaseException,
        delay: float,
    ) -> None:
        self._logger.warning(
            "index-retry-attempted",
            operation=operation,
            attempt=attempt,
            delay=delay,
            error=str(error),
            error_type=type(error).__name__,
        )

    def batch_rolled_back(
        self,
        operation: str,
        *,
        table: str,
        size: int,
        error: BaseException,
    ) -> None:
        self._logger.warning(
            "index-batch-rolled-back",
            operation=operation,
            table=table,
            size=size,
            error=str(error),
            error_type=type(error).__name__,
        )
