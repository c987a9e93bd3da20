from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from .context import AppContext
from .errors import ClassifiedError, ErrorKind, RequestError, classify_exception, classify_status
from .models import RequestOptions

logger = logging.getLogger(__name__)


class ResilientClient:
    """
    HTTP client wrapper with connectivity fail-fast, per-attempt deadline,
    classification and bounded exponential backoff.

    Notes
    - Offline at call time: `RequestError(OFFLINE)` with zero attempts.
    - 2xx returns the response. 4xx (except 429) raises CLIENT_ERROR at once.
    - 429/5xx, transport failures and deadline expiry are retried: wait
      `retry_delay`, then `retry_delay * 2`, ... for at most `retries` retries.
    - If the monitor reports offline after a failed attempt, retrying stops
      and the call fails with OFFLINE, the same outcome a fresh call gets.
    - Only `RequestError` ever leaves `request()`; the underlying exception
      is kept as `__cause__`.
    """

    def __init__(
        self,
        context: AppContext,
        *,
        options: Optional[RequestOptions] = None,
        base_url: str = "",
        headers: Optional[dict] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._context = context
        self._options = options or RequestOptions()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=self._options.timeout
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def options(self) -> RequestOptions:
        return self._options

    # --------------- Public API ---------------
    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Issue `method url`, retrying transient failures.

        `retries`, `retry_delay` and `timeout` override the client defaults for
        this call only; remaining kwargs go to `httpx.AsyncClient.request`.
        """
        overrides = {"retries": retries, "retry_delay": retry_delay, "timeout": timeout}
        opts = self._options.model_copy(update={k: v for k, v in overrides.items() if v is not None})

        if not self._context.online:
            raise RequestError(ErrorKind.OFFLINE, "Network offline", status=0)

        remaining = opts.retries
        delay = opts.retry_delay
        attempt = 0
        while True:
            attempt += 1
            outcome = await self._attempt(method, url, opts.timeout, kwargs)
            if isinstance(outcome, httpx.Response):
                return outcome
            error = outcome

            if not error.retryable:
                raise error
            if not self._context.online:
                raise RequestError(ErrorKind.OFFLINE, "Network offline", status=0) from error
            if remaining <= 0:
                logger.warning("%s %s failed after %d attempt(s): %s", method, url, attempt, error)
                raise error

            logger.warning(
                "%s %s failed (%s), retrying in %.2fs (%d left)",
                method,
                url,
                error.kind.value,
                delay,
                remaining,
            )
            await self._sleep(delay)
            remaining -= 1
            delay *= 2

    # --------------- Internal ---------------
    async def _attempt(self, method: str, url: str, timeout: float, kwargs: dict):
        """Return the response on success, else the classified error for this attempt."""
        # The transport timeout matches the attempt deadline, whatever the client default
        send = self._client.request(method, url, timeout=timeout, **kwargs)
        try:
            resp = await asyncio.wait_for(send, timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            error = RequestError(ErrorKind.TIMEOUT, f"Request timed out after {timeout}s", status=0)
            error.__cause__ = exc
            return error
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            error = RequestError(classify_exception(exc), str(exc) or "Fetch failed", status=0)
            error.__cause__ = exc
            return error

        kind = classify_status(resp.status_code)
        if kind is None:
            return resp
        if kind is ErrorKind.CLIENT_ERROR:
            return RequestError(
                kind, f"HTTP Error {resp.status_code}", status=resp.status_code, response=resp
            )
        return RequestError(
            kind, f"Server Error {resp.status_code}", status=resp.status_code, response=resp
        )


async def request(
    context: AppContext,
    method: str,
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    **kwargs: Any,
) -> httpx.Response:
    """One-shot convenience wrapper around `ResilientClient.request`."""
    async with ResilientClient(context, client=client) as rc:
        return await rc.request(method, url, **kwargs)


__all__ = ["ClassifiedError", "RequestError", "ResilientClient", "request"]
