"""
Local query cache for transcript records.

Values are replaced whole on every write (records are frozen dataclasses and
list views are tuples), so a reader never observes a half-applied update.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Protocol, Tuple

from loguru import logger

from .models import TranscriptRecord


CacheKey = Tuple[Hashable, ...]
Updater = Callable[[Any], Any]


class transcript_keys:
    """Cache key factory for transcript views."""
    ALL: CacheKey = ("transcripts",)

    @staticmethod
    def lists() -> CacheKey:
        return ("transcripts", "list")

    @staticmethod
    def detail(record_id: str) -> CacheKey:
        return ("transcripts", "detail", record_id)

    @staticmethod
    def summary() -> CacheKey:
        return ("transcripts", "summary")


class LocalCache(Protocol):
    """The slice of the cache the sync core depends on."""

    def get(self, key: CacheKey) -> Any:
        ...

    def set_patch(self, key: CacheKey, updater: Updater) -> Any:
        ...

    def invalidate(self, keys: Iterable[CacheKey]) -> int:
        ...

    def list_snapshot(self, key: CacheKey) -> Optional[Tuple[Any, ...]]:
        ...


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""
    value: Any
    timestamp: float
    stale: bool = False


class QueryCache:
    """
    In-memory keyed store with prefix invalidation.

    Keys are tuples; invalidating ``("transcripts",)`` marks every key that
    starts with that prefix as stale. Stale entries keep their value until
    they are rewritten.
    """

    def __init__(self):
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._listeners: List[Callable[[List[CacheKey]], None]] = []
        self._writes = 0
        self._invalidations = 0

    def get(self, key: CacheKey) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def has(self, key: CacheKey) -> bool:
        return key in self._entries

    def set(self, key: CacheKey, value: Any) -> Any:
        return self.set_patch(key, lambda _old: value)

    def set_patch(self, key: CacheKey, updater: Updater) -> Any:
        """
        Replace the value at ``key`` with ``updater(old_value)``.

        Returning None from the updater removes the key.
        """
        old = self.get(key)
        new = updater(old)
        if new is None:
            self._entries.pop(key, None)
        else:
            self._entries[key] = CacheEntry(value=new, timestamp=time.time())
        self._writes += 1
        return new

    def remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def list_snapshot(self, key: CacheKey) -> Optional[Tuple[Any, ...]]:
        value = self.get(key)
        if value is None:
            return None
        return tuple(value)

    def invalidate(self, keys: Iterable[CacheKey]) -> int:
        """Mark every entry under any of the given key prefixes as stale."""
        prefixes = [tuple(k) for k in keys]
        marked: List[CacheKey] = []
        for key, entry in self._entries.items():
            if any(key[:len(prefix)] == prefix for prefix in prefixes):
                entry.stale = True
                marked.append(key)
        self._invalidations += 1
        logger.debug(f"Invalidated {len(marked)} cache entries for prefixes {prefixes}")
        for listener in list(self._listeners):
            listener(prefixes)
        return len(marked)

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry.stale)

    def on_invalidate(self, listener: Callable[[List[CacheKey]], None]) -> Callable[[], None]:
        """Register a listener called with the invalidated prefixes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def dump(self) -> Dict[CacheKey, Any]:
        """Plain key -> value copy of the cache contents."""
        return {key: entry.value for key, entry in self._entries.items()}

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "stale": sum(1 for e in self._entries.values() if e.stale),
            "writes": self._writes,
            "invalidations": self._invalidations,
        }


# --- List view helpers (pure; return new tuples) ---

def find_index(records: Optional[Iterable[TranscriptRecord]], record_id: str) -> int:
    for index, record in enumerate(records or ()):
        if record.id == record_id:
            return index
    return -1


def replace_record(records: Optional[Iterable[TranscriptRecord]], record_id: str, record: TranscriptRecord) -> Tuple[TranscriptRecord, ...]:
    """
    Replace the entry with ``record_id`` by ``record`` in place.

    If ``record.id`` is already listed under its own id, that entry is
    replaced instead and any ``record_id`` entry dropped, so an id never
    appears twice. Appends when neither is present.
    """
    current = tuple(records or ())
    if record_id != record.id and find_index(current, record.id) >= 0:
        current = remove_record(current, record_id)
        record_id = record.id
    index = find_index(current, record_id)
    if index < 0:
        return current + (record,)
    return current[:index] + (record,) + current[index + 1:]


def remove_record(records: Optional[Iterable[TranscriptRecord]], record_id: str) -> Tuple[TranscriptRecord, ...]:
    return tuple(r for r in (records or ()) if r.id != record_id)


def insert_record_at(records: Optional[Iterable[TranscriptRecord]], index: int, record: TranscriptRecord) -> Tuple[TranscriptRecord, ...]:
    current = tuple(records or ())
    if find_index(current, record.id) >= 0:
        return current
    index = max(0, min(index, len(current)))
    return current[:index] + (record,) + current[index:]


# --- Cache-patch primitives shared by every write path ---

def store_record(cache: LocalCache, record: TranscriptRecord, replace_id: Optional[str] = None) -> None:
    """Write an authoritative record into the list view (and the detail view when it is cached)."""
    target_id = replace_id or record.id
    cache.set_patch(transcript_keys.lists(), lambda old: replace_record(old, target_id, record))
    if replace_id and replace_id != record.id:
        cache.set_patch(transcript_keys.detail(replace_id), lambda _old: None)
    if cache.get(transcript_keys.detail(record.id)) is not None:
        cache.set_patch(transcript_keys.detail(record.id), lambda _old: record)


def evict_record(cache: LocalCache, record_id: str) -> None:
    """Remove a record from the list view and drop its detail view."""
    cache.set_patch(transcript_keys.lists(), lambda old: remove_record(old, record_id) if old is not None else None)
    cache.set_patch(transcript_keys.detail(record_id), lambda _old: None)


def cached_records(cache: LocalCache) -> Tuple[TranscriptRecord, ...]:
    return cache.list_snapshot(transcript_keys.lists()) or ()
