from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from resilience.notify import Notice, Notifier, post

from .config import KNOWN_STORE_NAMES, STORE_PREFIX

logger = logging.getLogger(__name__)

PURGE_WARNING = "Some local caches could not be cleared, but your sign-out is still secure."
NAME_MARKER = "NomAI"


class StoreRegistry(Protocol):
    def list_stores(self) -> Iterable[str]: ...

    def delete_store(self, name: str) -> None: ...

    def list_caches(self) -> Iterable[str]: ...

    def delete_cache(self, name: str) -> None: ...


class ClearableStore(Protocol):
    name: str

    def clear(self) -> None: ...


class PurgeReport(BaseModel):
    deleted_stores: List[str] = Field(default_factory=list)
    deleted_caches: List[str] = Field(default_factory=list)
    cleared: List[str] = Field(default_factory=list, description="Key-value stores emptied")
    failures: List[str] = Field(default_factory=list)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def deleted(self) -> int:
        return len(self.deleted_stores) + len(self.deleted_caches)


class LocalStorePurge:
    """
    Deletes every local store and cache belonging to the app at sign-out.

    - Stores match on the namespace prefix, a known default name, or the
      app name marker. Cache buckets are app-owned and are all deleted.
    - Key-value stores (persistent and session-scoped) are cleared in full.
    - Individual failures are logged and collected; one non-blocking warning
      is shown if anything failed. `run()` never raises, and running it
      again when nothing is left is a no-op.
    """

    def __init__(
        self,
        registry: StoreRegistry,
        *,
        kv_stores: Sequence[ClearableStore] = (),
        notifier: Optional[Notifier] = None,
        prefix: str = STORE_PREFIX,
        known_names: Sequence[str] = KNOWN_STORE_NAMES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._kv_stores = list(kv_stores)
        self._notifier = notifier
        self._prefix = prefix
        self._known = frozenset(known_names)
        self._clock = clock

    def matches(self, name: str) -> bool:
        return name.startswith(self._prefix) or name in self._known or NAME_MARKER in name

    def run(self) -> PurgeReport:
        started = self._clock()
        report = PurgeReport()

        for store in self._kv_stores:
            try:
                store.clear()
            except Exception as exc:
                logger.warning("Failed to clear key-value store %s: %s", store.name, exc)
                report.failures.append(f"kv:{store.name}")
            else:
                report.cleared.append(store.name)

        self._sweep(
            "store",
            self._registry.list_stores,
            self._registry.delete_store,
            self.matches,
            report.deleted_stores,
            report,
        )
        self._sweep(
            "cache",
            self._registry.list_caches,
            self._registry.delete_cache,
            lambda _name: True,
            report.deleted_caches,
            report,
        )

        report.elapsed = self._clock() - started
        if report.failures:
            logger.error("Local purge finished with %d failure(s): %s", len(report.failures), report.failures)
            post(self._notifier, Notice(level="warning", message=PURGE_WARNING))
        else:
            logger.info(
                "Local purge removed %d store(s), %d cache(s) in %.3fs",
                len(report.deleted_stores),
                len(report.deleted_caches),
                report.elapsed,
            )
        return report

    @staticmethod
    def _sweep(
        what: str,
        lister: Callable[[], Iterable[str]],
        deleter: Callable[[str], None],
        wanted: Callable[[str], bool],
        deleted: List[str],
        report: PurgeReport,
    ) -> None:
        try:
            names = [n for n in lister() if wanted(n)]
        except Exception as exc:
            logger.warning("Failed to enumerate local %ss: %s", what, exc)
            report.failures.append(f"{what}:*")
            return
        if names:
            logger.info("Deleting %d local %s(s): %s", len(names), what, names)
        for name in names:
            try:
                deleter(name)
            except Exception as exc:
                logger.warning("Failed to delete local %s %s: %s", what, name, exc)
                report.failures.append(f"{what}:{name}")
            else:
                deleted.append(name)


__all__ = ["ClearableStore", "LocalStorePurge", "PURGE_WARNING", "PurgeReport", "StoreRegistry"]
