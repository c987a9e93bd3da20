from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from resilience.connectivity import ConnectivityMonitor, ConnectivityProbe
from resilience.context import AppContext
from resilience.notify import LoggingNotifier, Notifier
from resilience.query import ResilientQuery
from resilience.request import ResilientClient

from .config import Settings
from .gotrue import GoTrueIdentityProvider
from .manager import SessionManager
from .postgrest import PostgrestProfileBackend
from .providers import IdentityProvider, ProfileBackend
from .purge import LocalStorePurge
from .storage import FileStoreRegistry, KeyValueStore, MemoryKeyValueStore

LOCAL_STORAGE_FILE = "local-storage.json"


@dataclass
class App:
    """Everything the rest of the application reads from or calls into."""

    settings: Settings
    context: AppContext
    monitor: ConnectivityMonitor
    http: ResilientClient
    query: ResilientQuery
    sessions: SessionManager
    local_storage: KeyValueStore
    session_storage: MemoryKeyValueStore
    probe: Optional[ConnectivityProbe] = None


@asynccontextmanager
async def open_app(
    settings: Settings,
    *,
    identity: Optional[IdentityProvider] = None,
    backend: Optional[ProfileBackend] = None,
    notifier: Optional[Notifier] = None,
    online: bool = True,
    probe_client: Optional[httpx.AsyncClient] = None,
    sleep=asyncio.sleep,
) -> AsyncIterator[App]:
    """
    Wire the session core for one process and tear it down on exit.

    Without explicit collaborators the GoTrue identity provider and the
    PostgREST profiles backend are built from `settings`. A connectivity
    probe polls `settings.health_url` unless `settings.probe_interval` is 0.
    """
    notifier = notifier or LoggingNotifier()
    async with AppContext(online=online) as context:
        http = ResilientClient(context, options=settings.request, sleep=sleep)
        context.add_disposer(http.aclose)
        monitor = ConnectivityMonitor(context, notifier=notifier)
        query = ResilientQuery(context, options=settings.query, sleep=sleep)

        local_storage = KeyValueStore(
            settings.data_dir / LOCAL_STORAGE_FILE, fernet_key=settings.fernet_key
        )
        session_storage = MemoryKeyValueStore()

        if identity is None:
            identity = GoTrueIdentityProvider(
                http, settings.auth_url, settings.supabase_anon_key, storage=local_storage
            )
        if backend is None:
            token_source = getattr(identity, "current_access_token", None)
            rest = PostgrestProfileBackend(
                settings.rest_url,
                settings.supabase_anon_key,
                access_token=token_source,
                timeout=settings.request.timeout,
            )
            context.add_disposer(rest.aclose)
            backend = rest

        purge = LocalStorePurge(
            FileStoreRegistry(settings.data_dir),
            kv_stores=[local_storage, session_storage],
            notifier=notifier,
            prefix=settings.store_prefix,
            known_names=settings.known_store_names,
        )
        sessions = SessionManager(
            context,
            identity,
            backend,
            monitor,
            query=query,
            purge=purge,
            notifier=notifier,
            loading_timeout=settings.loading_timeout,
        )
        await sessions.initialize()

        probe = None
        if settings.probe_interval > 0:
            probe = ConnectivityProbe(
                monitor,
                settings.health_url,
                interval=settings.probe_interval,
                timeout=settings.request.timeout,
                client=probe_client,
            )
            probe_task = asyncio.create_task(probe.run())
            context.add_disposer(functools.partial(_stop_probe, probe, probe_task))

        yield App(
            settings=settings,
            context=context,
            monitor=monitor,
            http=http,
            query=query,
            sessions=sessions,
            local_storage=local_storage,
            session_storage=session_storage,
            probe=probe,
        )


async def _stop_probe(probe: ConnectivityProbe, task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    await probe.aclose()


__all__ = ["App", "open_app"]
