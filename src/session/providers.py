from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol

from resilience.models import QueryResult

from .models import Session, SessionEvent, User

SessionListener = Callable[[SessionEvent, Optional[Session]], Awaitable[None]]
Unsubscribe = Callable[[], None]


class IdentityProvider(Protocol):
    """Issues sessions. Transport failures surface as exceptions."""

    async def get_session(self) -> Optional[Session]: ...

    async def get_user(self) -> Optional[User]: ...

    def on_session_change(self, listener: SessionListener) -> Unsubscribe: ...

    async def sign_out(self) -> None: ...


class ProfileBackend(Protocol):
    """Structured data backend; operations return `{data, error}` instead of raising."""

    async def fetch_profile(self, user_id: str) -> QueryResult:
        """`data` is a `Profile`, or None when no row exists."""
        ...

    async def create_default_profile(self, user_id: str) -> QueryResult: ...


__all__ = ["IdentityProvider", "ProfileBackend", "SessionListener", "Unsubscribe"]
