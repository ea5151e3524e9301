from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Mapping, Protocol


class KeyValueCache(Protocol):
    def get_fields(self, key: str, fields: Iterable[str]) -> list[str | None]: ...

    def set_fields(self, key: str, mapping: Mapping[str, str], ttl: timedelta) -> None: ...

    def delete(self, key: str) -> None: ...

    def flush(self) -> None: ...

    def ping(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Entry:
    fields: dict[str, str]
    expires_at: datetime


class InMemoryKeyValueCache(KeyValueCache):
    """Process-local hash cache with per-key expiry.

    A key's fields and its expiry are replaced together under one lock, so a
    reader never sees a price without its timestamp. Expired keys are dropped
    lazily when read.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get_fields(self, key: str, fields: Iterable[str]) -> list[str | None]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return [None for _ in fields]
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return [None for _ in fields]
            return [entry.fields.get(field) for field in fields]

    def set_fields(self, key: str, mapping: Mapping[str, str], ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        with self._lock:
            self._entries[key] = _Entry(fields=dict(mapping), expires_at=self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()

    def ping(self) -> None:
        return None


__all__ = ["InMemoryKeyValueCache", "KeyValueCache"]
