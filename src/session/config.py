from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from resilience.models import QueryOptions, RequestOptions

logger = logging.getLogger(__name__)


# Environment variable names
ENV_SUPABASE_URL = "NOMAI_SUPABASE_URL"
ENV_SUPABASE_ANON_KEY = "NOMAI_SUPABASE_ANON_KEY"
ENV_DATA_DIR = "NOMAI_DATA_DIR"
ENV_FERNET_KEY = "NOMAI_FERNET_KEY"
ENV_LOADING_TIMEOUT = "NOMAI_LOADING_TIMEOUT"
ENV_REQUEST_RETRIES = "NOMAI_REQUEST_RETRIES"
ENV_REQUEST_RETRY_DELAY = "NOMAI_REQUEST_RETRY_DELAY"
ENV_REQUEST_TIMEOUT = "NOMAI_REQUEST_TIMEOUT"
ENV_QUERY_RETRIES = "NOMAI_QUERY_RETRIES"
ENV_QUERY_RETRY_DELAY = "NOMAI_QUERY_RETRY_DELAY"
ENV_PROBE_INTERVAL = "NOMAI_PROBE_INTERVAL"
ENV_PROBE_URL = "NOMAI_PROBE_URL"

# Fallbacks shared with other Supabase tooling
FALLBACK_ENV_SUPABASE_URL = "SUPABASE_URL"
FALLBACK_ENV_SUPABASE_ANON_KEY = "SUPABASE_ANON_KEY"

PLACEHOLDER_URL_MARKER = "your-project-id"
SECRET_KEY_PREFIX = "sb_secret"

STORE_PREFIX = "nomai-"
KNOWN_STORE_NAMES: Tuple[str, ...] = ("NomAIDatabase", "keyval-store")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid number for {name}: {raw!r}") from exc


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for {name}: {raw!r}") from exc


class Settings(BaseModel):
    """
    Runtime configuration for the session core.

    Environment variables
    - `NOMAI_SUPABASE_URL` (fallback `SUPABASE_URL`): project URL, required
    - `NOMAI_SUPABASE_ANON_KEY` (fallback `SUPABASE_ANON_KEY`): public anon key, required
    - `NOMAI_DATA_DIR`: root for local stores, caches and key-value files (default `.nomai`)
    - `NOMAI_FERNET_KEY`: optional key encrypting persistent key-value storage
    - `NOMAI_LOADING_TIMEOUT`: seconds before loading is forced off (default 8)
    - `NOMAI_REQUEST_*` / `NOMAI_QUERY_*`: retry tuning
    - `NOMAI_PROBE_URL`: reachability endpoint (default `<auth url>/health`)
    - `NOMAI_PROBE_INTERVAL`: seconds between reachability checks, 0 disables (default 15)
    """

    supabase_url: str
    supabase_anon_key: str
    data_dir: Path = Field(default=Path(".nomai"))
    fernet_key: Optional[str] = None
    loading_timeout: float = Field(default=8.0, gt=0.0)
    request: RequestOptions = Field(default_factory=RequestOptions)
    query: QueryOptions = Field(default_factory=QueryOptions)
    probe_url: Optional[str] = None
    probe_interval: float = Field(default=15.0, ge=0.0)
    store_prefix: str = STORE_PREFIX
    known_store_names: Tuple[str, ...] = KNOWN_STORE_NAMES

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    @property
    def health_url(self) -> str:
        return self.probe_url or f"{self.auth_url}/health"

    @classmethod
    def from_env(cls) -> "Settings":
        url = _getenv(ENV_SUPABASE_URL) or _getenv(FALLBACK_ENV_SUPABASE_URL)
        key = _getenv(ENV_SUPABASE_ANON_KEY) or _getenv(FALLBACK_ENV_SUPABASE_ANON_KEY)

        url = _require(url, ENV_SUPABASE_URL)
        key = _require(key, ENV_SUPABASE_ANON_KEY)
        if PLACEHOLDER_URL_MARKER in url:
            raise RuntimeError(
                f"Missing required configuration: {ENV_SUPABASE_URL} still holds the placeholder URL"
            )
        if key.startswith(SECRET_KEY_PREFIX):
            # Works, but a service-role key grants full access and must not ship in a client
            logger.warning("%s looks like a secret/service-role key; use the anon key", ENV_SUPABASE_ANON_KEY)

        return cls(
            supabase_url=url,
            supabase_anon_key=key,
            data_dir=Path(_getenv(ENV_DATA_DIR, ".nomai")),
            fernet_key=_getenv(ENV_FERNET_KEY),
            loading_timeout=_getfloat(ENV_LOADING_TIMEOUT, 8.0),
            request=RequestOptions(
                retries=_getint(ENV_REQUEST_RETRIES, 3),
                retry_delay=_getfloat(ENV_REQUEST_RETRY_DELAY, 1.0),
                timeout=_getfloat(ENV_REQUEST_TIMEOUT, 10.0),
            ),
            query=QueryOptions(
                retries=_getint(ENV_QUERY_RETRIES, 3),
                retry_delay=_getfloat(ENV_QUERY_RETRY_DELAY, 1.0),
            ),
            probe_url=_getenv(ENV_PROBE_URL),
            probe_interval=_getfloat(ENV_PROBE_INTERVAL, 15.0),
        )


__all__ = ["KNOWN_STORE_NAMES", "STORE_PREFIX", "Settings"]
