from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, List, Set

logger = logging.getLogger(__name__)

Disposer = Callable[[], Any]


class AppContext:
    """
    Process-scoped mutable state shared by the resilient layer.

    - `online`: the connectivity flag. Read by everyone, written only by
      `ConnectivityMonitor` through `_set_online`.
    - `claim_once(name)`: one-shot guard for process-wide initialization.
    - Disposers registered with `add_disposer` run in reverse order on
      `close()` (process teardown).
    """

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._claimed: Set[str] = set()
        self._disposers: List[Disposer] = []
        self._closed = False

    @property
    def online(self) -> bool:
        return self._online

    def _set_online(self, value: bool) -> None:
        self._online = value

    def claim_once(self, name: str) -> bool:
        """Return True the first time `name` is claimed, False afterwards."""
        if name in self._claimed:
            return False
        self._claimed.add(name)
        return True

    def is_claimed(self, name: str) -> bool:
        return name in self._claimed

    def add_disposer(self, disposer: Disposer) -> None:
        self._disposers.append(disposer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._disposers:
            disposer = self._disposers.pop()
            try:
                result = disposer()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Disposer %r failed during context teardown", disposer)

    async def __aenter__(self) -> "AppContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["AppContext", "Disposer"]
