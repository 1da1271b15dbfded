"""Cache service with a pluggable backing store.

Callers get a `Cache` injected instead of reaching for module-level dicts, so
tests can swap the backend and inspect or invalidate entries directly.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from ownership_platform.util.time import utcnow_iso

_MISSING = object()


def _debug(msg: str) -> None:
    print(f"[cache] {msg}")


def make_key(key: Hashable) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, tuple):
        return "|".join("" if k is None else str(k) for k in key)
    return str(key)


class MemoryBackend:
    """Thread-safe in-process store. Values are kept by reference."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any, expires_at: Optional[float]) -> None:
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())


class GatewayBackend:
    """Durable store in the `app_cache` table. Values must be JSON-serializable."""

    def __init__(self, gateway: Any, namespace: str):
        self._gateway = gateway
        self._prefix = f"{namespace}:"

    def get(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        row = self._gateway.query_one(
            "SELECT value_json, expires_at FROM app_cache WHERE key=?",
            (self._prefix + key,),
        )
        if row is None:
            return None
        exp = row["expires_at"]
        return json.loads(row["value_json"]), (float(exp) if exp is not None else None)

    def set(self, key: str, value: Any, expires_at: Optional[float]) -> None:
        self._gateway.upsert_rows(
            "app_cache",
            [
                {
                    "key": self._prefix + key,
                    "value_json": json.dumps(value, ensure_ascii=False),
                    "expires_at": expires_at,
                    "updated_at": utcnow_iso(),
                }
            ],
            "key",
        )

    def delete(self, key: str) -> None:
        self._gateway.execute("DELETE FROM app_cache WHERE key=?", (self._prefix + key,))

    def clear(self) -> None:
        self._gateway.execute("DELETE FROM app_cache WHERE key LIKE ?", (self._prefix + "%",))

    def keys(self) -> List[str]:
        rows = self._gateway.query("SELECT key FROM app_cache WHERE key LIKE ?", (self._prefix + "%",))
        return [str(r["key"])[len(self._prefix) :] for r in rows]


class Cache:
    """get/put/invalidate over a backend, with optional TTL per entry.

    Expiry uses wall-clock time so durable entries stay meaningful across
    processes.
    """

    def __init__(
        self,
        backend: Any = None,
        *,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend if backend is not None else MemoryBackend()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def get(self, key: Hashable, default: Any = None) -> Any:
        k = make_key(key)
        hit = self.backend.get(k)
        if hit is None:
            return default
        value, expires_at = hit
        if expires_at is not None and self._clock() >= expires_at:
            self.backend.delete(k)
            return default
        return value

    def put(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl if ttl is not None else None
        self.backend.set(make_key(key), value, expires_at)

    def invalidate(self, key: Hashable) -> None:
        self.backend.delete(make_key(key))

    def clear(self) -> None:
        self.backend.clear()

    def keys(self) -> List[str]:
        return self.backend.keys()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self.backend.keys())
