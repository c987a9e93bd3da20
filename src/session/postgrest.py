from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from resilience.models import BackendError, QueryResult

from .models import Profile

PROFILES_TABLE = "profiles"


class PostgrestProfileBackend:
    """
    `profiles` table access over the PostgREST HTTP API.

    Notes
    - Every HTTP-level problem is returned as `QueryResult.error` with the
      PostgREST `code` (or `HTTP_<status>` when the body has none).
    - Transport exceptions (DNS, TLS, reset, timeout) are raised on purpose:
      the resilient query wrapper treats them as failed attempts.
    - `create_default_profile` ignores duplicates, so two overlapping
      first-time checks for the same user cannot conflict.
    """

    def __init__(
        self,
        rest_url: str,
        api_key: str,
        *,
        access_token: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._rest_url = rest_url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PostgrestProfileBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --------------- Public API ---------------
    async def fetch_profile(self, user_id: str) -> QueryResult:
        resp = await self._client.get(
            f"{self._rest_url}/{PROFILES_TABLE}",
            params={"select": "id,is_onboarded", "id": f"eq.{user_id}"},
            headers=self._headers(),
        )
        if resp.status_code != 200:
            return QueryResult(error=self._error_from(resp))

        rows = resp.json()
        if not isinstance(rows, list):
            return QueryResult(error=BackendError(code="PGRST102", message="Unexpected response shape"))
        if not rows:
            return QueryResult(data=None)
        if len(rows) > 1:
            return QueryResult(
                error=BackendError(
                    code="PGRST116",
                    message="Results contain more than one row",
                    details=f"{len(rows)} rows returned",
                )
            )
        try:
            return QueryResult(data=Profile.model_validate(rows[0]))
        except ValidationError as ve:
            return QueryResult(error=BackendError(code="PGRST102", message=f"Invalid profile row: {ve}"))

    async def create_default_profile(self, user_id: str) -> QueryResult:
        headers = self._headers()
        headers["Prefer"] = "resolution=ignore-duplicates,return=minimal"
        resp = await self._client.post(
            f"{self._rest_url}/{PROFILES_TABLE}",
            params={"on_conflict": "id"},
            json=[{"id": user_id, "is_onboarded": False}],
            headers=headers,
        )
        if resp.status_code not in (200, 201, 204):
            return QueryResult(error=self._error_from(resp))
        return QueryResult(data=Profile(id=user_id, is_onboarded=False))

    # --------------- Internal ---------------
    def _headers(self) -> Dict[str, str]:
        token = self._access_token() if self._access_token else None
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token or self._api_key}",
            "Accept": "application/json",
        }

    @staticmethod
    def _error_from(resp: httpx.Response) -> BackendError:
        body: Any = None
        try:
            body = resp.json()
        except ValueError:
            pass
        if isinstance(body, dict):
            return BackendError(
                code=str(body.get("code") or f"HTTP_{resp.status_code}"),
                message=str(body.get("message") or f"HTTP {resp.status_code}"),
                details=str(body.get("details") or ""),
                hint=str(body.get("hint") or ""),
            )
        return BackendError(code=f"HTTP_{resp.status_code}", message=resp.text[:200])


__all__ = ["PROFILES_TABLE", "PostgrestProfileBackend"]
