from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from resilience.errors import ErrorKind, RequestError
from resilience.request import ResilientClient

from .models import Session, SessionEvent, User
from .providers import SessionListener, Unsubscribe
from .storage import MemoryKeyValueStore

logger = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "nomai-auth-token"


class AuthError(RuntimeError):
    """The auth server rejected the request (bad credentials, invalid token...)."""


class GoTrueIdentityProvider:
    """
    Identity provider speaking the GoTrue (Supabase Auth) HTTP API.

    Notes
    - The current session is persisted in a key-value store under
      `SESSION_STORAGE_KEY` so it survives restarts.
    - `get_session()` refreshes an expired session once; a rejected refresh
      drops the session and emits SIGNED_OUT.
    - Listeners are awaited one at a time in registration order.
    - Network failures surface as `RequestError` from the resilient client.
    """

    def __init__(
        self,
        http: ResilientClient,
        auth_url: str,
        api_key: str,
        *,
        storage: Optional[MemoryKeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._auth_url = auth_url.rstrip("/")
        self._api_key = api_key
        self._storage = storage if storage is not None else MemoryKeyValueStore()
        self._clock = clock
        self._listeners: List[SessionListener] = []

    # --------------- Subscriptions ---------------
    def on_session_change(self, listener: SessionListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: SessionEvent, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, session)
            except Exception:
                logger.exception("Session listener failed for %s", event.value)

    # --------------- Public API ---------------
    async def sign_in_with_password(self, email: str, password: str) -> Session:
        payload = await self._auth_call(
            "/token", params={"grant_type": "password"}, json={"email": email, "password": password}
        )
        session = self._session_from(payload)
        self._store(session)
        await self._emit(SessionEvent.SIGNED_IN, session)
        return session

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        """Register a user; returns None when email confirmation is pending."""
        payload = await self._auth_call("/signup", json={"email": email, "password": password})
        if "access_token" not in payload:
            return None
        session = self._session_from(payload)
        self._store(session)
        await self._emit(SessionEvent.SIGNED_IN, session)
        return session

    async def get_session(self) -> Optional[Session]:
        session = self._load()
        if session is None or not session.expired(self._clock()):
            return session
        if not session.refresh_token:
            await self._drop()
            return None
        try:
            payload = await self._auth_call(
                "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": session.refresh_token},
            )
        except AuthError as exc:
            logger.info("Session refresh rejected: %s", exc)
            await self._drop()
            return None
        refreshed = self._session_from(payload)
        self._store(refreshed)
        await self._emit(SessionEvent.TOKEN_REFRESHED, refreshed)
        return refreshed

    async def get_user(self) -> Optional[User]:
        session = self._load()
        if session is None:
            return None
        try:
            resp = await self._http.get(
                f"{self._auth_url}/user", headers=self._headers(session.access_token)
            )
        except RequestError as exc:
            if exc.kind is ErrorKind.CLIENT_ERROR:
                return None
            raise
        return User.model_validate(resp.json())

    async def sign_out(self) -> None:
        session = self._load()
        if session is not None:
            try:
                await self._http.post(
                    f"{self._auth_url}/logout", headers=self._headers(session.access_token)
                )
            except RequestError as exc:
                # The token is discarded locally either way; a 4xx means it was already invalid
                if exc.kind is not ErrorKind.CLIENT_ERROR:
                    raise
        await self._drop()

    def current_access_token(self) -> Optional[str]:
        session = self._load()
        return session.access_token if session else None

    # --------------- Internal ---------------
    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self._api_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _auth_call(
        self, path: str, *, json: Dict[str, Any], params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        try:
            resp = await self._http.post(
                f"{self._auth_url}{path}", params=params, json=json, headers=self._headers()
            )
        except RequestError as exc:
            if exc.kind is ErrorKind.CLIENT_ERROR:
                raise AuthError(self._describe(exc)) from exc
            raise
        payload = resp.json()
        if not isinstance(payload, dict):
            raise AuthError("Malformed response from auth server")
        return payload

    @staticmethod
    def _describe(exc: RequestError) -> str:
        resp = exc.response
        if resp is not None:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                msg = body.get("error_description") or body.get("msg") or body.get("message")
                if msg:
                    return str(msg)
        return str(exc)

    def _session_from(self, payload: Dict[str, Any]) -> Session:
        data = dict(payload)
        if data.get("expires_at") is None and data.get("expires_in") is not None:
            data["expires_at"] = self._clock() + float(data["expires_in"])
        try:
            return Session.model_validate(data)
        except ValidationError as ve:
            raise AuthError(f"Failed to parse session payload: {ve}") from ve

    def _load(self) -> Optional[Session]:
        raw = self._storage.get(SESSION_STORAGE_KEY)
        if raw is None:
            return None
        try:
            return Session.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed persisted session")
            self._storage.remove(SESSION_STORAGE_KEY)
            return None

    def _store(self, session: Session) -> None:
        self._storage.set(SESSION_STORAGE_KEY, session.model_dump(mode="json"))

    async def _drop(self) -> None:
        self._storage.remove(SESSION_STORAGE_KEY)
        await self._emit(SessionEvent.SIGNED_OUT, None)


__all__ = ["AuthError", "GoTrueIdentityProvider", "SESSION_STORAGE_KEY"]
