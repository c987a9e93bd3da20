"""
Session, onboarding and local-state handling for the NomAI client core.

The `SessionManager` in `manager` is the one long-lived stateful component;
`app.open_app` wires it to the Supabase-style adapters in `gotrue` and
`postgrest`, and to the local stores purged at sign-out.
"""

from .models import Profile, Session, SessionEvent, SessionPhase, User

__all__ = ["Profile", "Session", "SessionEvent", "SessionPhase", "User"]
