from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, List, Optional

from resilience.connectivity import ConnectivityMonitor
from resilience.context import AppContext
from resilience.errors import ErrorKind
from resilience.notify import Notice, Notifier, post
from resilience.query import ResilientQuery

from .models import Profile, Session, SessionEvent, SessionPhase, User
from .providers import IdentityProvider, ProfileBackend
from .purge import LocalStorePurge

logger = logging.getLogger(__name__)

INIT_GUARD = "session-manager"
DEFAULT_LOADING_TIMEOUT = 8.0
SIGNED_OUT_MESSAGE = "Signed out safely"


class SessionManager:
    """
    Owns session, user and onboarding state for the running process.

    States: UNINITIALIZED -> INITIALIZING -> ANONYMOUS | NOT_ONBOARDED | ONBOARDED.

    Every transition goes through `handle_session_change`, whether it comes
    from the initial fetch, a provider push or a reconnect re-fetch; calls are
    processed one at a time. `loading` starts True on `initialize()` and is
    forced to False by a dead-man's switch after `loading_timeout` seconds if
    nothing else cleared it. Clearing loading never cancels pending work.

    `sign_out()` does not touch local session state: the provider's
    SIGNED_OUT notification does that through the same entry point.
    """

    def __init__(
        self,
        context: AppContext,
        identity: IdentityProvider,
        backend: ProfileBackend,
        monitor: ConnectivityMonitor,
        *,
        query: Optional[ResilientQuery] = None,
        purge: Optional[LocalStorePurge] = None,
        notifier: Optional[Notifier] = None,
        loading_timeout: float = DEFAULT_LOADING_TIMEOUT,
    ) -> None:
        self._context = context
        self._identity = identity
        self._backend = backend
        self._monitor = monitor
        self._query = query or ResilientQuery(context)
        self._purge = purge
        self._notifier = notifier
        self._loading_timeout = loading_timeout

        self._session: Optional[Session] = None
        self._user: Optional[User] = None
        self._is_onboarded = False
        self._loading = False
        self._started = False
        self._changes = 0
        self._ready = asyncio.Event()
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: List[asyncio.Task] = []
        self._unsubscribers: List[Callable[[], None]] = []

    # --------------- Read model ---------------
    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def is_onboarded(self) -> bool:
        return self._is_onboarded

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def online(self) -> bool:
        return self._context.online

    @property
    def phase(self) -> SessionPhase:
        if not self._started:
            return SessionPhase.UNINITIALIZED
        if self._loading:
            return SessionPhase.INITIALIZING
        if self._session is None:
            return SessionPhase.ANONYMOUS
        return SessionPhase.ONBOARDED if self._is_onboarded else SessionPhase.NOT_ONBOARDED

    async def wait_until_ready(self) -> None:
        """Wait for the first time loading clears (resolution or timeout)."""
        await self._ready.wait()

    # --------------- Lifecycle ---------------
    async def initialize(self) -> None:
        """
        Start session tracking; runs once per process.

        Returns without waiting for the initial session fetch. Use
        `wait_until_ready()` to block on the first resolution.
        """
        if not self._context.claim_once(INIT_GUARD):
            logger.debug("SessionManager already initialized; skipping")
            return
        logger.info("Initializing session manager")
        self._started = True
        self._loading = True

        self._unsubscribers.append(self._monitor.subscribe_reconnect(self._on_reconnect))
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._loading_timeout, self._on_loading_timeout)
        self._spawn(self._initial_fetch())
        self._unsubscribers.append(self._identity.on_session_change(self._on_provider_change))
        self._context.add_disposer(self.close)

    async def close(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()
        self._cancel_timer()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --------------- Transitions ---------------
    async def handle_session_change(
        self, session: Optional[Session], event: SessionEvent = SessionEvent.INITIAL_FETCH
    ) -> None:
        async with self._lock:
            self._changes += 1
            logger.info(
                "Session change %s (user=%s)",
                event.value,
                session.user.id if session is not None else None,
            )
            self._session = session
            self._user = session.user if session is not None else None
            if session is not None:
                await self.check_onboarding_status(session.user)
            else:
                self._is_onboarded = False
                self._set_loading(False)
            self._cancel_timer()

    async def check_onboarding_status(self, user: Optional[User] = None) -> bool:
        """
        Resolve the onboarding flag for `user` (default: current user).

        Never raises. A missing profile row is created with
        `is_onboarded=False`; any failure yields False. Loading is cleared on
        every path.
        """
        onboarded = False
        try:
            target = user or self._user or await self._lookup_user()
            if target is None:
                logger.info("Onboarding check: no user, defaulting to not onboarded")
            else:
                onboarded = await self._fetch_onboarded(target)
        except Exception:
            logger.exception("Onboarding check crashed, defaulting to not onboarded")
            onboarded = False
        finally:
            self._is_onboarded = onboarded
            self._set_loading(False)
        return onboarded

    async def sign_out(self) -> None:
        """
        Sign out with the identity provider, then purge local stores.

        A provider failure propagates and nothing is purged. Purge problems
        are reported by the purge itself and never fail the sign-out.
        """
        logger.info("Signing out")
        await self._identity.sign_out()
        if self._purge is not None:
            self._purge.run()
        post(self._notifier, Notice(level="success", message=SIGNED_OUT_MESSAGE))

    # --------------- Internal ---------------
    async def _fetch_onboarded(self, user: User) -> bool:
        logger.debug("Querying profile for %s", user.id)
        result = await self._query.run(lambda: self._backend.fetch_profile(user.id))
        if result.error is not None:
            if result.error.kind is ErrorKind.SCHEMA_ERROR:
                logger.error(
                    "Profiles table or column missing (%s); run the schema migration",
                    result.error.code,
                )
            else:
                logger.warning(
                    "Onboarding check failed for %s: %s %s",
                    user.id,
                    result.error.code,
                    result.error.message,
                )
            return False

        if result.data is None:
            logger.info("Profile missing for %s, creating default", user.id)
            created = await self._query.run(lambda: self._backend.create_default_profile(user.id))
            if created.error is not None:
                logger.warning(
                    "Default profile creation failed for %s: %s %s",
                    user.id,
                    created.error.code,
                    created.error.message,
                )
            return False

        profile = result.data if isinstance(result.data, Profile) else Profile.model_validate(result.data)
        return profile.is_onboarded

    async def _lookup_user(self) -> Optional[User]:
        try:
            return await self._identity.get_user()
        except Exception as exc:
            logger.warning("Could not resolve current user: %s", exc)
            return None

    async def _initial_fetch(self) -> None:
        try:
            await self._fetch_and_apply(SessionEvent.INITIAL_FETCH)
        except Exception as exc:
            # Reconnect listener re-drives the fetch; stop blocking the UI now
            logger.warning("Initial session fetch failed: %s", exc)
            self._set_loading(False)

    async def _on_reconnect(self) -> None:
        logger.info("Network reconnected, re-fetching session")
        try:
            await self._fetch_and_apply(SessionEvent.RECONNECTED)
        except Exception as exc:
            logger.warning("Session re-fetch after reconnect failed: %s", exc)

    async def _fetch_and_apply(self, event: SessionEvent) -> None:
        seen = self._changes
        session = await self._identity.get_session()
        # Refresh or drop events fired inside get_session() already applied it
        if self._changes != seen and session == self._session:
            logger.debug("Session already applied by provider event; skipping %s", event.value)
            return
        await self.handle_session_change(session, event)

    async def _on_provider_change(self, event: SessionEvent, session: Optional[Session]) -> None:
        await self.handle_session_change(session, event)

    def _on_loading_timeout(self) -> None:
        self._timer = None
        if self._loading:
            logger.warning("Session resolution exceeded %.1fs, forcing loading off", self._loading_timeout)
            self._set_loading(False)

    def _set_loading(self, value: bool) -> None:
        self._loading = value
        if not value:
            self._ready.set()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)


__all__ = ["DEFAULT_LOADING_TIMEOUT", "INIT_GUARD", "SessionManager"]
