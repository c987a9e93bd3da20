from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .context import AppContext
from .errors import ErrorKind, classify_exception, is_retryable
from .models import BackendError, QueryOptions, QueryResult

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[QueryResult]]


def backoff_delay(retry_delay: float, attempt: int) -> float:
    """Wait before attempt `attempt + 1` (attempts counted from 0)."""
    return retry_delay * (2 ** attempt)


class ResilientQuery:
    """
    Retry wrapper for backend operations that resolve to `{data, error}`.

    The contract is that `run()` never raises:
    - offline, a raised exception, or a retryable returned error count as a
      failed attempt and are retried after `retry_delay * 2**attempt`;
    - a terminal returned error (e.g. SCHEMA_ERROR) is returned at once;
    - after the last attempt the result is `{data: None, error: <classified>}`.
    """

    def __init__(
        self,
        context: AppContext,
        *,
        options: Optional[QueryOptions] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._context = context
        self._options = options or QueryOptions()
        self._sleep = sleep

    @property
    def options(self) -> QueryOptions:
        return self._options

    async def run(
        self,
        operation: Operation,
        *,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> QueryResult:
        overrides = {"retries": retries, "retry_delay": retry_delay}
        opts = self._options.model_copy(update={k: v for k, v in overrides.items() if v is not None})

        failure = BackendError(code="NETWORK_ERROR", message="Network request failed")
        for attempt in range(opts.retries + 1):
            if not self._context.online:
                failure = BackendError(code="OFFLINE", message="Network offline")
            else:
                try:
                    result = await operation()
                except Exception as exc:
                    kind = classify_exception(exc)
                    failure = BackendError(
                        code=kind.value,
                        message=str(exc) or "Network request failed",
                        details=type(exc).__name__,
                    )
                else:
                    if result.error is None:
                        return result
                    classified = result.error.classified()
                    if not is_retryable(classified.kind):
                        if classified.kind is ErrorKind.SCHEMA_ERROR:
                            logger.warning(
                                "Backend definition error %s, not retrying: %s",
                                classified.code,
                                classified.message,
                            )
                        return QueryResult(data=result.data, error=classified)
                    failure = classified

            failure = failure.classified()
            logger.warning(
                "Query attempt %d/%d failed: %s %s",
                attempt + 1,
                opts.retries + 1,
                failure.code,
                failure.message,
            )
            if attempt < opts.retries:
                await self._sleep(backoff_delay(opts.retry_delay, attempt))

        return QueryResult(data=None, error=failure)

    __call__ = run


async def run_query(
    context: AppContext,
    operation: Operation,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
    sleep=asyncio.sleep,
) -> QueryResult:
    """Functional form of `ResilientQuery.run` with explicit options."""
    query = ResilientQuery(context, options=QueryOptions(retries=retries, retry_delay=retry_delay), sleep=sleep)
    return await query.run(operation)


__all__ = ["Operation", "ResilientQuery", "backoff_delay", "run_query"]
