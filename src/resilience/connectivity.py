from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Set, Union

import httpx

from .context import AppContext
from .notify import Notice, Notifier, post, withdraw

logger = logging.getLogger(__name__)

ReconnectListener = Callable[[], Union[Awaitable[None], None]]

ONLINE_MESSAGE = "Network connection restored"
OFFLINE_MESSAGE = "Network disconnected, please check your connection"
ONLINE_NOTICE_SECONDS = 3.0


class ConnectivityMonitor:
    """
    Observer of platform online/offline signals.

    - Owns the connectivity flag on `AppContext` (sole writer).
    - On offline→online: flips the flag, dismisses the persistent offline
      notice, shows a transient notice, then starts every reconnect
      listener in registration order. Coroutine listeners run as tasks,
      so a slow re-fetch never holds up the next signal.
    - On online→offline: flips the flag and shows a persistent notice.
    - Repeated signals for the current state are ignored.
    """

    def __init__(self, context: AppContext, *, notifier: Optional[Notifier] = None) -> None:
        self._context = context
        self._notifier = notifier
        # dict keeps insertion order and collapses duplicate registrations
        self._listeners: Dict[ReconnectListener, None] = {}
        self._offline_notice: Optional[str] = None
        self._pending: Set[asyncio.Future] = set()
        context.add_disposer(self.close)

    @property
    def online(self) -> bool:
        return self._context.online

    @property
    def pending(self) -> int:
        """Reconnect listeners still running."""
        return len(self._pending)

    def subscribe_reconnect(self, listener: ReconnectListener) -> Callable[[], None]:
        self._listeners[listener] = None

        def unsubscribe() -> None:
            self._listeners.pop(listener, None)

        return unsubscribe

    async def set_online(self, online: bool) -> None:
        if online:
            await self.handle_online()
        else:
            self.handle_offline()

    async def handle_online(self) -> None:
        if self._context.online:
            return
        self._context._set_online(True)
        logger.info("Connectivity restored; notifying %d listener(s)", len(self._listeners))
        withdraw(self._notifier, self._offline_notice)
        self._offline_notice = None
        post(
            self._notifier,
            Notice(level="success", message=ONLINE_MESSAGE, duration=ONLINE_NOTICE_SECONDS),
        )
        for listener in list(self._listeners):
            self._dispatch(listener)

    def handle_offline(self) -> None:
        if not self._context.online:
            return
        self._context._set_online(False)
        logger.info("Connectivity lost")
        self._offline_notice = post(
            self._notifier,
            Notice(level="error", message=OFFLINE_MESSAGE, persistent=True),
        )

    async def drain(self) -> None:
        """Wait for reconnect listeners started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        pending, self._pending = list(self._pending), set()
        for fut in pending:
            fut.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _dispatch(self, listener: ReconnectListener) -> None:
        try:
            result = listener()
        except Exception:
            logger.exception("Reconnect listener %r failed", listener)
            return
        if not inspect.isawaitable(result):
            return
        fut = asyncio.ensure_future(result)
        self._pending.add(fut)
        fut.add_done_callback(functools.partial(self._finished, listener))

    def _finished(self, listener: ReconnectListener, fut: asyncio.Future) -> None:
        self._pending.discard(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("Reconnect listener %r failed", listener, exc_info=exc)


class ConnectivityProbe:
    """
    Source of online/offline signals for processes without a platform event.

    Polls `url` every `interval` seconds. Any HTTP response below 500 counts
    as reachable; a transport failure or 5xx counts as offline. The monitor
    filters out repeats, so only transitions are broadcast.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        *,
        interval: float = 15.0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._monitor = monitor
        self._url = url
        self._interval = interval
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def check(self) -> bool:
        try:
            resp = await self._client.head(self._url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Connectivity probe to %s failed: %s", self._url, exc)
            reachable = False
        else:
            reachable = resp.status_code < 500
        await self._monitor.set_online(reachable)
        return reachable

    async def run(self, *, iterations: Optional[int] = None) -> None:
        """Probe forever (or `iterations` times); cancel the task to stop."""
        done = 0
        while iterations is None or done < iterations:
            await self.check()
            done += 1
            await self._sleep(self._interval)


__all__ = ["ConnectivityMonitor", "ConnectivityProbe", "ReconnectListener"]
