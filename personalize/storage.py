"""Persisted key-value store used to survive reloads."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

from personalize.errors import StorageLimitError

logger = logging.getLogger("personalize.storage")

PROFILE_KEY = "profile"
SEARCH_HISTORY_KEY = "search_history"
AB_ASSIGNMENTS_KEY = "ab_assignments"
AB_RESULTS_KEY = "ab_results"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


def _encode(key: str, value: Any, limit: int) -> str:
    encoded = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    size = len(encoded.encode("utf-8"))
    if size > limit:
        raise StorageLimitError(key, size, limit)
    return encoded


class MemoryKeyValueStore:
    """Process-local store; values go through JSON so round-trips match the file store."""

    def __init__(self, max_bytes: int = 5_000_000) -> None:
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def set(self, key: str, value: Any) -> None:
        others = sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
        self._data[key] = _encode(key, value, self._max_bytes - others)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Single JSON document on disk holding every key, written atomically."""

    def __init__(self, path: str | os.PathLike[str], max_bytes: int = 5_000_000) -> None:
        self._path = Path(path)
        self._max_bytes = max_bytes
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError:
            logger.warning("storage read failed path=%s", self._path, exc_info=True)
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("storage file is corrupt, ignoring path=%s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict[str, Any]) -> None:
        encoded = _encode("*", data, self._max_bytes)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(encoded)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            try:
                self._dump(data)
            except StorageLimitError as exc:
                raise StorageLimitError(key, exc.size, exc.limit) from None

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


def safe_get(store: KeyValueStore, key: str, default: Any = None) -> Any:
    """Read ``key`` ignoring storage failures."""

    try:
        value = store.get(key)
    except Exception:
        logger.warning("storage get failed key=%s", key, exc_info=True)
        return default
    return default if value is None else value


def safe_set(store: KeyValueStore, key: str, value: Any) -> bool:
    """Write ``key``; failures are logged and reported as ``False``."""

    try:
        store.set(key, value)
    except StorageLimitError as exc:
        logger.warning("storage limit exceeded key=%s size=%s limit=%s", key, exc.size, exc.limit)
        return False
    except Exception:
        logger.warning("storage set failed key=%s", key, exc_info=True)
        return False
    return True


__all__ = [
    "AB_ASSIGNMENTS_KEY",
    "AB_RESULTS_KEY",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "PROFILE_KEY",
    "SEARCH_HISTORY_KEY",
    "safe_get",
    "safe_set",
]
