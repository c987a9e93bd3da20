from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SessionEvent(str, Enum):
    INITIAL_FETCH = "INITIAL_FETCH"
    RECONNECTED = "RECONNECTED"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class SessionPhase(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    ANONYMOUS = "ANONYMOUS"
    NOT_ONBOARDED = "AUTHENTICATED_NOT_ONBOARDED"
    ONBOARDED = "AUTHENTICATED_ONBOARDED"


class User(BaseModel):
    id: str
    email: Optional[str] = None


class Session(BaseModel):
    """
    Credential bundle issued by the identity provider.

    Treated as opaque by the session manager apart from `user`. `expires_at`
    is a unix timestamp in seconds (None: never expires locally).
    """

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[float] = None
    user: User

    def expired(self, now: float, *, leeway: float = 10.0) -> bool:
        return self.expires_at is not None and self.expires_at - leeway <= now


class Profile(BaseModel):
    """Row of the `profiles` table; only the onboarding flag matters here."""

    id: str
    is_onboarded: bool = Field(default=False)


__all__ = ["Profile", "Session", "SessionEvent", "SessionPhase", "User"]
