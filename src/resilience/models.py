from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind, classify_backend_code


class BackendError(BaseModel):
    """
    Error payload returned (not raised) by the structured data backend.

    Mirrors the PostgREST error body: `code`, `message`, `details`, `hint`.
    `kind` is filled in once the error has been classified.
    """

    code: str = ""
    message: str = ""
    details: str = ""
    hint: str = ""
    kind: Optional[ErrorKind] = None

    def classified(self) -> "BackendError":
        """Return a copy with `kind` set from the central code table."""
        if self.kind is not None:
            return self
        return self.model_copy(update={"kind": classify_backend_code(self.code)})


class QueryResult(BaseModel):
    """The `{data, error}` pair every backend operation resolves to."""

    data: Optional[Any] = None
    error: Optional[BackendError] = Field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None


class RequestOptions(BaseModel):
    retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0.0, description="Seconds before the first retry")
    timeout: float = Field(default=10.0, gt=0.0, description="Per-attempt deadline in seconds")


class QueryOptions(BaseModel):
    retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0.0)


__all__ = ["BackendError", "QueryOptions", "QueryResult", "RequestOptions"]
