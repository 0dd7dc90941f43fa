"""
Query execution adapters.

The host platform's query facility is an external collaborator with one
operation, ``execute(query, account_id, shape) -> rows``.  This module defines
that contract and wraps any implementation with bounded exponential-backoff
retries.  Implementations raise ``UpstreamExecutionError`` for failures worth
retrying.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import get_settings
from src.core.errors import UpstreamExecutionError
from src.core.logging import get_logger

logger = get_logger(__name__)


class ResultShape(str, Enum):
    SINGLE = "single"
    FACETED = "faceted"
    TIMESERIES = "timeseries"
    ENTITIES = "entities"


class QueryExecutor(Protocol):
    async def execute(
        self, query: str, account_id: str, shape: ResultShape,
    ) -> list[dict[str, Any]]:
        ...


class RetryingExecutor:
    """Retry an executor on ``UpstreamExecutionError`` with exponential backoff.

    After the last attempt the final ``UpstreamExecutionError`` is raised with
    ``attempts`` set.
    """

    def __init__(
        self,
        inner: QueryExecutor,
        *,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
    ):
        settings = get_settings()
        self._inner = inner
        self._max_attempts = max_attempts or settings.upstream_max_attempts
        self._backoff = settings.upstream_backoff_seconds if backoff_seconds is None else backoff_seconds
        self._backoff_max = (
            settings.upstream_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def execute(
        self, query: str, account_id: str, shape: ResultShape,
    ) -> list[dict[str, Any]]:
        attempt = 0
        try:
            async for state in AsyncRetrying(
                retry=retry_if_exception_type(UpstreamExecutionError),
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff, max=self._backoff_max),
                reraise=True,
            ):
                with state:
                    attempt = state.retry_state.attempt_number
                    if attempt > 1:
                        logger.warning("Retrying query (attempt %d/%d) account=%s",
                                       attempt, self._max_attempts, account_id)
                    return await self._inner.execute(query, account_id, shape)
        except UpstreamExecutionError as exc:
            exc.attempts = attempt
            logger.error("Query failed after %d attempts: %s", attempt, exc)
            raise
        except RetryError as exc:  # pragma: no cover - reraise=True surfaces the cause
            raise UpstreamExecutionError(str(exc), attempts=attempt) from exc
        raise UpstreamExecutionError("Executor returned no result", attempts=attempt)
