from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple

import httpx


class ErrorKind(str, Enum):
    OFFLINE = "OFFLINE"
    TIMEOUT = "TIMEOUT"
    CLIENT_ERROR = "CLIENT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    SCHEMA_ERROR = "SCHEMA_ERROR"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.TIMEOUT, ErrorKind.SERVER_ERROR, ErrorKind.NETWORK_ERROR}
)


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


class ClassifiedError(RuntimeError):
    """A failure mapped onto the taxonomy; callers branch on `kind`, not on type."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.code = code or kind.value

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}, {str(self)!r}, status={self.status})"


class RequestError(ClassifiedError):
    """Raised by the resilient HTTP request wrapper; keeps the last HTTP response if any."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: Optional[int] = None,
        response=None,
    ) -> None:
        super().__init__(kind, message, status=status)
        self.response = response


# -------- HTTP --------
def classify_status(status: int) -> Optional[ErrorKind]:
    """
    Map an HTTP status to an error kind; None means success.

    - 2xx: success
    - 429: SERVER_ERROR (retryable throttling)
    - other 4xx: CLIENT_ERROR (terminal)
    - everything else (5xx and unexpected codes): SERVER_ERROR
    """
    if 200 <= status < 300:
        return None
    if status == 429:
        return ErrorKind.SERVER_ERROR
    if 400 <= status < 500:
        return ErrorKind.CLIENT_ERROR
    return ErrorKind.SERVER_ERROR


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ClassifiedError):
        return exc.kind
    # Malformed target: retrying cannot help
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return ErrorKind.CLIENT_ERROR
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return ErrorKind.TIMEOUT
    return ErrorKind.NETWORK_ERROR


# -------- Structured data backend --------
# Single place mapping provider codes onto the taxonomy. Exact codes win
# over prefixes; prefixes are checked longest first.
BACKEND_CODE_KINDS: Dict[str, ErrorKind] = {
    # Our own synthesized codes
    "OFFLINE": ErrorKind.OFFLINE,
    "TIMEOUT": ErrorKind.TIMEOUT,
    "NETWORK_ERROR": ErrorKind.NETWORK_ERROR,
    "SERVER_ERROR": ErrorKind.SERVER_ERROR,
    "CLIENT_ERROR": ErrorKind.CLIENT_ERROR,
    "SCHEMA_ERROR": ErrorKind.SCHEMA_ERROR,
    # PostgREST: relation / column missing from the schema cache
    "PGRST204": ErrorKind.SCHEMA_ERROR,
    "PGRST205": ErrorKind.SCHEMA_ERROR,
    # Postgres
    "42P01": ErrorKind.SCHEMA_ERROR,  # undefined_table
    "42703": ErrorKind.SCHEMA_ERROR,  # undefined_column
    "42883": ErrorKind.SCHEMA_ERROR,  # undefined_function
    "42501": ErrorKind.CLIENT_ERROR,  # insufficient_privilege (row-level security)
    "57014": ErrorKind.TIMEOUT,  # query_canceled (statement timeout)
    "23505": ErrorKind.CLIENT_ERROR,  # unique_violation
}

BACKEND_CODE_PREFIXES: Tuple[Tuple[str, ErrorKind], ...] = (
    ("PGRST0", ErrorKind.NETWORK_ERROR),  # database connection
    ("PGRST1", ErrorKind.CLIENT_ERROR),  # malformed request or result cardinality
    ("PGRST2", ErrorKind.SCHEMA_ERROR),  # schema cache
    ("PGRST3", ErrorKind.CLIENT_ERROR),  # JWT / authorization
    ("PGRST", ErrorKind.SERVER_ERROR),
    ("42", ErrorKind.SCHEMA_ERROR),  # syntax error or access rule violation
    ("08", ErrorKind.NETWORK_ERROR),  # connection exception
    ("53", ErrorKind.SERVER_ERROR),  # insufficient resources
    ("57", ErrorKind.SERVER_ERROR),  # operator intervention
)


def classify_backend_code(code: Optional[str]) -> ErrorKind:
    if not code:
        return ErrorKind.SERVER_ERROR
    exact = BACKEND_CODE_KINDS.get(code)
    if exact is not None:
        return exact
    # Bare HTTP failures without a provider code, e.g. "HTTP_503"
    if code.startswith("HTTP_") and code[5:].isdigit():
        return classify_status(int(code[5:])) or ErrorKind.SERVER_ERROR
    for prefix, kind in sorted(BACKEND_CODE_PREFIXES, key=lambda p: len(p[0]), reverse=True):
        if code.startswith(prefix):
            return kind
    return ErrorKind.SERVER_ERROR


__all__ = [
    "BACKEND_CODE_KINDS",
    "BACKEND_CODE_PREFIXES",
    "ClassifiedError",
    "ErrorKind",
    "RETRYABLE_KINDS",
    "RequestError",
    "classify_backend_code",
    "classify_exception",
    "classify_status",
    "is_retryable",
]
