import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any


@dataclass
class _Entry:
    expires_at: float
    value: Any


class TTLCache:
    def __init__(self, *, max_items: int = 256, ttl_s: int = 30) -> None:
        self._max_items = max(1, int(max_items or 1))
        self._ttl_s = max(0, int(ttl_s or 0))
        self._items: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            if entry.expires_at <= time.monotonic():
                self._items.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: Any) -> None:
        if self._ttl_s <= 0:
            return
        with self._lock:
            if key not in self._items and len(self._items) >= self._max_items:
                self._items.pop(next(iter(self._items)), None)
            self._items[key] = _Entry(expires_at=time.monotonic() + self._ttl_s, value=value)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


def stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def make_hash_key(prefix: str, payload: Any) -> str:
    blob = stable_json_dumps(payload)
    digest = hashlib.sha256(blob.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"
