from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from resilience.connectivity import ConnectivityMonitor
from resilience.context import AppContext
from resilience.models import BackendError, QueryOptions, QueryResult
from resilience.notify import Notice
from resilience.query import ResilientQuery
from session.manager import SessionManager
from session.models import Profile, Session, SessionEvent, SessionPhase, User
from session.providers import SessionListener
from session.purge import LocalStorePurge


def _session(uid: str = "u1") -> Session:
    return Session(access_token=f"token-{uid}", user=User(id=uid))


class _FakeIdentity:
    def __init__(self, session: Optional[Session] = None, *, hang: bool = False, fail: bool = False) -> None:
        self.session = session
        self.hang = hang
        self.fail = fail
        self.get_session_calls = 0
        self.sign_out_calls = 0
        self.sign_out_error: Optional[Exception] = None
        self.listeners: List[SessionListener] = []
        self._never = asyncio.Event()

    async def get_session(self) -> Optional[Session]:
        self.get_session_calls += 1
        if self.hang:
            await self._never.wait()
        if self.fail:
            raise ConnectionError("auth server unreachable")
        return self.session

    async def get_user(self) -> Optional[User]:
        return self.session.user if self.session else None

    def on_session_change(self, listener: SessionListener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        if self.sign_out_error is not None:
            raise self.sign_out_error
        self.session = None
        for listener in list(self.listeners):
            await listener(SessionEvent.SIGNED_OUT, None)

    async def push(self, event: SessionEvent, session: Optional[Session]) -> None:
        self.session = session
        for listener in list(self.listeners):
            await listener(event, session)


class _FakeBackend:
    def __init__(self, *, profiles=None, fetch_error: Optional[BackendError] = None, hang: bool = False) -> None:
        self.profiles = dict(profiles or {})
        self.fetch_error = fetch_error
        self.hang = hang
        self.fetch_calls = 0
        self.created: List[str] = []

    async def fetch_profile(self, user_id: str) -> QueryResult:
        self.fetch_calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.fetch_error is not None:
            return QueryResult(error=self.fetch_error)
        profile = self.profiles.get(user_id)
        return QueryResult(data=profile)

    async def create_default_profile(self, user_id: str) -> QueryResult:
        self.created.append(user_id)
        profile = Profile(id=user_id, is_onboarded=False)
        self.profiles[user_id] = profile
        return QueryResult(data=profile)


class _FakeNotifier:
    def __init__(self) -> None:
        self.shown: List[Notice] = []

    def notify(self, notice: Notice) -> str:
        self.shown.append(notice)
        return str(len(self.shown))

    def dismiss(self, notice_id: str) -> None:  # noqa: ARG002
        pass


class _CountingPurge(LocalStorePurge):
    def __init__(self) -> None:
        self.runs = 0

    def run(self):
        self.runs += 1


async def _no_sleep(_: float) -> None:
    return None


def _manager(identity, backend, *, context=None, timeout: float = 8.0, purge=None, notifier=None):
    context = context or AppContext()
    monitor = ConnectivityMonitor(context)
    query = ResilientQuery(context, options=QueryOptions(retries=1, retry_delay=0.0), sleep=_no_sleep)
    manager = SessionManager(
        context,
        identity,
        backend,
        monitor,
        query=query,
        purge=purge,
        notifier=notifier,
        loading_timeout=timeout,
    )
    return manager, monitor, context


async def _ready(manager: SessionManager, timeout: float = 2.0) -> None:
    await asyncio.wait_for(manager.wait_until_ready(), timeout)


@pytest.mark.asyncio
async def test_no_session_resolves_anonymous():
    manager, _, context = _manager(_FakeIdentity(None), _FakeBackend())
    assert manager.phase is SessionPhase.UNINITIALIZED

    await manager.initialize()
    assert manager.loading is True
    await _ready(manager)

    assert manager.loading is False
    assert manager.is_onboarded is False
    assert manager.session is None
    assert manager.phase is SessionPhase.ANONYMOUS
    await context.close()


@pytest.mark.asyncio
async def test_onboarded_user_resolves_onboarded():
    backend = _FakeBackend(profiles={"u1": Profile(id="u1", is_onboarded=True)})
    manager, _, context = _manager(_FakeIdentity(_session()), backend)

    await manager.initialize()
    await _ready(manager)

    assert manager.user == User(id="u1")
    assert manager.is_onboarded is True
    assert manager.phase is SessionPhase.ONBOARDED
    await context.close()


@pytest.mark.asyncio
async def test_missing_profile_is_created_and_reports_not_onboarded():
    backend = _FakeBackend()
    manager, _, context = _manager(_FakeIdentity(None), backend)

    result = await manager.check_onboarding_status(User(id="new-user"))

    assert result is False
    assert backend.created == ["new-user"]
    assert backend.profiles["new-user"].is_onboarded is False
    assert manager.loading is False
    await context.close()


@pytest.mark.asyncio
async def test_schema_error_is_absorbed_after_single_attempt():
    backend = _FakeBackend(fetch_error=BackendError(code="PGRST205", message="no profiles table"))
    manager, _, context = _manager(_FakeIdentity(None), backend)

    result = await manager.check_onboarding_status(User(id="u1"))

    assert result is False
    assert backend.fetch_calls == 1
    assert backend.created == []
    assert manager.loading is False
    await context.close()


@pytest.mark.asyncio
async def test_transient_backend_error_defaults_to_not_onboarded():
    backend = _FakeBackend(fetch_error=BackendError(code="HTTP_503", message="unavailable"))
    manager, _, context = _manager(_FakeIdentity(None), backend)

    assert await manager.check_onboarding_status(User(id="u1")) is False
    assert backend.fetch_calls == 2  # retries=1
    await context.close()


@pytest.mark.asyncio
async def test_check_without_any_user_returns_false():
    manager, _, context = _manager(_FakeIdentity(None), _FakeBackend())

    assert await manager.check_onboarding_status() is False
    assert manager.loading is False
    await context.close()


@pytest.mark.asyncio
async def test_check_falls_back_to_provider_user():
    backend = _FakeBackend(profiles={"u7": Profile(id="u7", is_onboarded=True)})
    manager, _, context = _manager(_FakeIdentity(_session("u7")), backend)

    assert await manager.check_onboarding_status() is True
    await context.close()


@pytest.mark.asyncio
async def test_hung_session_fetch_released_by_timeout():
    identity = _FakeIdentity(hang=True)
    manager, _, context = _manager(identity, _FakeBackend(), timeout=0.05)

    await manager.initialize()
    await _ready(manager, timeout=1.0)

    assert manager.loading is False
    assert manager.is_onboarded is False
    assert manager.phase is SessionPhase.ANONYMOUS
    await context.close()


@pytest.mark.asyncio
async def test_hung_onboarding_query_released_by_timeout():
    manager, _, context = _manager(_FakeIdentity(_session()), _FakeBackend(hang=True), timeout=0.05)

    await manager.initialize()
    await _ready(manager, timeout=1.0)

    assert manager.loading is False
    assert manager.session is not None
    assert manager.phase is SessionPhase.NOT_ONBOARDED
    await context.close()


@pytest.mark.asyncio
async def test_failed_initial_fetch_clears_loading_immediately():
    manager, _, context = _manager(_FakeIdentity(fail=True), _FakeBackend(), timeout=60.0)

    await manager.initialize()
    await _ready(manager, timeout=1.0)

    assert manager.loading is False
    assert manager.session is None
    await context.close()


@pytest.mark.asyncio
async def test_initialize_runs_once_per_context():
    identity = _FakeIdentity(None)
    manager, _, context = _manager(identity, _FakeBackend())

    await manager.initialize()
    await manager.initialize()
    await _ready(manager)

    assert identity.get_session_calls == 1
    assert len(identity.listeners) == 1
    await context.close()
    assert identity.listeners == []


@pytest.mark.asyncio
async def test_reconnect_triggers_exactly_one_refetch():
    identity = _FakeIdentity(None)
    manager, monitor, context = _manager(identity, _FakeBackend())
    await manager.initialize()
    await _ready(manager)
    assert identity.get_session_calls == 1

    monitor.handle_offline()
    identity.session = _session()
    await monitor.handle_online()
    await monitor.handle_online()
    await monitor.drain()

    assert identity.get_session_calls == 2
    assert manager.session is not None
    assert manager.phase is SessionPhase.NOT_ONBOARDED
    await context.close()


@pytest.mark.asyncio
async def test_provider_push_drives_transitions():
    identity = _FakeIdentity(None)
    backend = _FakeBackend(profiles={"u1": Profile(id="u1", is_onboarded=True)})
    manager, _, context = _manager(identity, backend)
    await manager.initialize()
    await _ready(manager)

    await identity.push(SessionEvent.SIGNED_IN, _session())
    assert manager.phase is SessionPhase.ONBOARDED

    await identity.push(SessionEvent.SIGNED_OUT, None)
    assert manager.phase is SessionPhase.ANONYMOUS
    assert manager.is_onboarded is False
    await context.close()


@pytest.mark.asyncio
async def test_sign_out_purges_and_state_follows_provider_event():
    identity = _FakeIdentity(_session())
    backend = _FakeBackend(profiles={"u1": Profile(id="u1", is_onboarded=True)})
    purge = _CountingPurge()
    notifier = _FakeNotifier()
    manager, _, context = _manager(identity, backend, purge=purge, notifier=notifier)
    await manager.initialize()
    await _ready(manager)
    assert manager.session is not None

    await manager.sign_out()

    assert identity.sign_out_calls == 1
    assert purge.runs == 1
    assert manager.session is None
    assert manager.phase is SessionPhase.ANONYMOUS
    assert notifier.shown[-1].level == "success"
    await context.close()


@pytest.mark.asyncio
async def test_sign_out_without_provider_event_keeps_local_state():
    class _SilentIdentity(_FakeIdentity):
        async def sign_out(self) -> None:
            self.sign_out_calls += 1

    identity = _SilentIdentity(_session())
    manager, _, context = _manager(identity, _FakeBackend())
    await manager.initialize()
    await _ready(manager)

    await manager.sign_out()

    # Local state only changes through the session-change subscription
    assert manager.session is not None
    await context.close()


@pytest.mark.asyncio
async def test_sign_out_provider_failure_propagates_and_skips_purge():
    identity = _FakeIdentity(_session())
    identity.sign_out_error = ConnectionError("logout failed")
    purge = _CountingPurge()
    manager, _, context = _manager(identity, _FakeBackend(), purge=purge)

    with pytest.raises(ConnectionError):
        await manager.sign_out()
    assert purge.runs == 0
    await context.close()


class _RefreshingIdentity(_FakeIdentity):
    """Emits the refreshed or dropped session from inside get_session()."""

    def __init__(self, refreshed: Optional[Session], event: SessionEvent) -> None:
        super().__init__(refreshed)
        self.event = event

    async def get_session(self) -> Optional[Session]:
        self.get_session_calls += 1
        await self.push(self.event, self.session)
        return self.session


@pytest.mark.asyncio
async def test_refresh_during_fetch_applies_session_once():
    identity = _RefreshingIdentity(_session(), SessionEvent.TOKEN_REFRESHED)
    backend = _FakeBackend(profiles={"u1": Profile(id="u1", is_onboarded=True)})
    manager, monitor, context = _manager(identity, backend)

    await manager.initialize()
    await _ready(manager)
    assert backend.fetch_calls == 1
    assert manager.phase is SessionPhase.ONBOARDED

    monitor.handle_offline()
    await monitor.handle_online()
    await monitor.drain()

    assert identity.get_session_calls == 2
    assert backend.fetch_calls == 2
    await context.close()


@pytest.mark.asyncio
async def test_rejected_refresh_during_fetch_goes_anonymous_once():
    identity = _RefreshingIdentity(None, SessionEvent.SIGNED_OUT)
    manager, _, context = _manager(identity, _FakeBackend())
    changes = []
    apply = manager.handle_session_change

    async def recording(session, event=SessionEvent.INITIAL_FETCH):
        changes.append(event)
        await apply(session, event)

    manager.handle_session_change = recording

    await manager.initialize()
    await _ready(manager)

    assert changes == [SessionEvent.SIGNED_OUT]
    assert manager.phase is SessionPhase.ANONYMOUS
    await context.close()


@pytest.mark.asyncio
async def test_expired_token_error_is_not_reported_as_missing_schema(caplog):
    backend = _FakeBackend(fetch_error=BackendError(code="PGRST301", message="JWT expired"))
    manager, _, context = _manager(_FakeIdentity(None), backend)

    assert await manager.check_onboarding_status(User(id="u1")) is False

    assert backend.fetch_calls == 1
    assert not any("schema migration" in r.getMessage() for r in caplog.records)
    await context.close()
