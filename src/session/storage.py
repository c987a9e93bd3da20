from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


class MemoryKeyValueStore:
    """Session-scoped key-value storage; lives as long as the process."""

    def __init__(self, name: str = "session") -> None:
        self.name = name
        self._data: Dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()


class KeyValueStore(MemoryKeyValueStore):
    """
    Persistent key-value storage backed by a single JSON file.

    - Loaded lazily on first access; a missing, corrupt or undecryptable
      file starts empty.
    - With `fernet_key`, the file holds a Fernet token instead of plain JSON.
    - Every mutation rewrites the file; `clear()` deletes it.
    """

    def __init__(
        self,
        path: os.PathLike[str] | str,
        *,
        fernet_key: Optional[str | bytes] = None,
        name: str = "local",
    ) -> None:
        super().__init__(name)
        self._path = Path(path)
        self._fernet = _to_fernet(fernet_key) if fernet_key else None
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            raw = self._path.read_bytes()
            if self._fernet is not None:
                raw = self._fernet.decrypt(raw)
            data = json.loads(raw.decode("utf-8"))
        except (InvalidToken, ValueError, OSError) as exc:
            logger.warning("Ignoring unreadable key-value file %s: %s", self._path, exc)
            return
        if isinstance(data, dict):
            self._data = {str(k): v for k, v in data.items()}

    def _save(self) -> None:
        payload = json.dumps(self._data, separators=(",", ":"), sort_keys=True).encode("utf-8")
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(payload)
        except OSError as exc:
            # Best-effort persistence; in-memory view stays authoritative
            logger.warning("Failed to persist key-value file %s: %s", self._path, exc)

    def get(self, key: str, default: Any = None) -> Any:
        self._ensure_loaded()
        return super().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._ensure_loaded()
        super().set(key, value)
        self._save()

    def remove(self, key: str) -> None:
        self._ensure_loaded()
        if key in self._data:
            super().remove(key)
            self._save()

    def keys(self) -> List[str]:
        self._ensure_loaded()
        return super().keys()

    def clear(self) -> None:
        self._loaded = True
        super().clear()
        self._path.unlink(missing_ok=True)


class FileStoreRegistry:
    """
    Local persistent stores laid out under one data directory.

    - `<root>/stores/<name>`: keyed/structured stores (files or directories)
    - `<root>/caches/<name>`: response cache buckets (directories)
    """

    def __init__(self, root: os.PathLike[str] | str) -> None:
        self._root = Path(root)

    @property
    def stores_dir(self) -> Path:
        return self._root / "stores"

    @property
    def caches_dir(self) -> Path:
        return self._root / "caches"

    @staticmethod
    def _names(folder: Path) -> List[str]:
        if not folder.is_dir():
            return []
        return sorted(p.name for p in folder.iterdir())

    @staticmethod
    def _delete(path: Path) -> None:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)

    def list_stores(self) -> List[str]:
        return self._names(self.stores_dir)

    def delete_store(self, name: str) -> None:
        self._delete(self.stores_dir / name)

    def list_caches(self) -> List[str]:
        return self._names(self.caches_dir)

    def delete_cache(self, name: str) -> None:
        self._delete(self.caches_dir / name)


__all__ = ["FileStoreRegistry", "KeyValueStore", "MemoryKeyValueStore"]
