"""
Resilient network access for the NomAI client core.

Modules:
- errors: failure taxonomy and the central classifier
- context: process-scoped state (connectivity flag, one-shot guards)
- connectivity: online/offline observer and reconnect broadcaster
- request: timed, retried HTTP calls that raise classified errors
- query: retried result-returning backend operations that never raise
- notify: fire-and-forget user notices
"""

__all__ = [
    "connectivity",
    "context",
    "errors",
    "models",
    "notify",
    "query",
    "request",
]
