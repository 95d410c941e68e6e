from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class SchemaCache(Generic[T]):
    """Single-entry cache of a schema analysis keyed by schema fingerprint.

    The entry is only ever replaced wholesale, never mutated.
    """

    def __init__(self, ttl: timedelta, clock: Clock = utc_now) -> None:
        self.ttl = ttl
        self.clock = clock
        self._entry: CacheEntry[T] | None = None

    @property
    def entry(self) -> CacheEntry[T] | None:
        return self._entry

    def current(self) -> T | None:
        """The cached value while it is still fresh."""

        entry = self._entry
        if entry is not None and entry.is_valid(self.clock()):
            return entry.value
        return None

    def lookup(self, key: str) -> T | None:
        """The cached value for ``key`` regardless of age (used after re-introspection)."""

        entry = self._entry
        if entry is not None and entry.key == key:
            return entry.value
        return None

    def store(self, key: str, value: T) -> CacheEntry[T]:
        entry = CacheEntry(key=key, value=value, expires_at=self.clock() + self.ttl)
        self._entry = entry
        return entry

    def clear(self) -> None:
        self._entry = None
