"""Incremental, fingerprint-keyed cache of extraction progress.

An entry remembers which contiguous run of pages has been extracted
(``cached_from``..``cached_through``) together with the deduplicated
courses found so far, so a rerun can return immediately and an extended
page range only pays for the pages outside that span.

The cache owns its entries; callers go through :meth:`IncrementalCache.lookup`
and :meth:`IncrementalCache.merge`. Storage is pluggable: an in-memory
store for tests and a JSON file store for use across sessions.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from .models import CacheEntry, CacheHit, CacheLookup, Course

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dedup helpers
# ---------------------------------------------------------------------------


def _norm(value: str) -> str:
    return " ".join((value or "").split()).lower()


def course_key(course: Course) -> tuple[str, str, str]:
    """Identity of a course across reruns: name, code and source file."""
    return (_norm(course.course_name), _norm(course.course_code), _norm(course.source_file))


def merge_courses(existing: Iterable[Course], new: Iterable[Course]) -> list[Course]:
    """Append the unseen courses of *new* to *existing*; first seen wins."""
    merged: list[Course] = []
    seen: set[tuple[str, str, str]] = set()
    for course in [*existing, *new]:
        key = course_key(course)
        if key in seen:
            continue
        seen.add(key)
        merged.append(course)
    return merged


# ---------------------------------------------------------------------------
# Covered page spans
# ---------------------------------------------------------------------------

EMPTY_SPAN = (1, 0)


def extend_span(span: tuple[int, int], new: tuple[int, int]) -> tuple[int, int]:
    """Union *new* into *span* when they overlap or touch.

    A disjoint *new* span is ignored: the entry keeps the pages it already
    covers and the gap between them is still unprocessed.
    """
    start, end = span
    new_start, new_end = new
    if new_end < new_start:
        return span
    if end < start:
        return new
    if new_start > end + 1 or new_end < start - 1:
        return span
    return (min(start, new_start), max(end, new_end))


def missing_ranges(span: tuple[int, int], range_start: int, range_end: int) -> list[tuple[int, int]]:
    """Sub-ranges of ``range_start..range_end`` that *span* does not cover."""
    start, end = span
    if end < start or end < range_start or start > range_end:
        return [(range_start, range_end)]
    missing = []
    if range_start < start:
        missing.append((range_start, start - 1))
    if end < range_end:
        missing.append((end + 1, range_end))
    return missing


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[dict[str, Any]]:
        ...

    def put(self, key: str, value: dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...


class MemoryCacheStore:
    """Process-local store; values are copied in and out through JSON."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        raw = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class JsonFileCacheStore:
    """All entries in a single ``{"entries": {...}}`` JSON document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                state = json.load(fh)
        except (json.JSONDecodeError, OSError, ValueError) as exc:
            log.warning("Cache file %s unreadable (%s); starting empty", self.path, exc)
            return {}
        if not isinstance(state, dict):
            return {}
        entries = state.get("entries")
        return entries if isinstance(entries, dict) else {}

    def _save(self, entries: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump({"entries": entries}, fh, indent=2, ensure_ascii=False)
        tmp_path.replace(self.path)

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, dict) else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            entries = self._load()
            entries[key] = value
            self._save(entries)

    def delete(self, key: str) -> None:
        with self._lock:
            entries = self._load()
            if entries.pop(key, None) is not None:
                self._save(entries)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._load())


# ---------------------------------------------------------------------------
# Incremental cache
# ---------------------------------------------------------------------------


class IncrementalCache:
    """Fingerprint -> (cached-through page, deduplicated courses)."""

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        max_age_s: Optional[float] = None,
        clock=time.time,
    ) -> None:
        self.store: CacheStore = store if store is not None else MemoryCacheStore()
        self.max_age_s = max_age_s
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(fingerprint, threading.Lock())

    def _is_stale(self, entry: CacheEntry) -> bool:
        if self.max_age_s is None:
            return False
        return self._clock() - entry.updated_at > self.max_age_s

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Return the live entry for *fingerprint*; stale entries are evicted."""
        raw = self.store.get(fingerprint)
        if raw is None:
            return None
        entry = CacheEntry.from_dict(raw)
        if self._is_stale(entry):
            log.info("Cache entry %s expired; evicting", fingerprint[:12])
            self.store.delete(fingerprint)
            return None
        return entry

    def lookup(self, fingerprint: str, range_end: int, range_start: int = 1) -> CacheLookup:
        """Classify ``range_start..range_end`` against the cached span.

        FULL when the span covers the whole range; PARTIAL when an entry
        with courses exists but some pages are missing (listed in
        ``missing``, first one in ``resume_from_page``); NONE otherwise.
        """
        entry = self.get(fingerprint)
        if entry is None or not entry.courses:
            return CacheLookup(
                CacheHit.NONE,
                resume_from_page=range_start,
                missing=[(range_start, range_end)],
            )
        missing = missing_ranges(entry.span, range_start, range_end)
        if not missing:
            log.info(
                "Cache hit for %s: %s course(s), pages %s-%s",
                fingerprint[:12],
                len(entry.courses),
                entry.cached_from,
                entry.cached_through,
            )
            return CacheLookup(
                CacheHit.FULL,
                courses=list(entry.courses),
                resume_from_page=entry.cached_through + 1,
                entry=entry,
            )
        log.info(
            "Partial cache hit for %s: pages %s-%s cached, missing %s",
            fingerprint[:12],
            entry.cached_from,
            entry.cached_through,
            ", ".join(f"{s}-{e}" for s, e in missing),
        )
        return CacheLookup(
            CacheHit.PARTIAL,
            courses=list(entry.courses),
            resume_from_page=missing[0][0],
            entry=entry,
            missing=missing,
        )

    def merge(
        self,
        fingerprint: str,
        new_courses: Iterable[Course],
        new_cached_through: int,
        total_pages: int,
        covered_from: int = 1,
    ) -> Optional[CacheEntry]:
        """Fold *new_courses* and the pages ``covered_from..new_cached_through``
        into the entry for *fingerprint*.

        The covered span only grows, by union with spans that overlap or
        touch it, so ``cached_through`` never moves backwards. Nothing is
        written, and ``None`` is returned, when the merged entry would hold
        no courses.
        """
        with self._lock_for(fingerprint):
            current = self.get(fingerprint)
            existing = current.courses if current else []
            merged = merge_courses(existing, new_courses)
            if not merged:
                log.debug("Not caching %s: no courses to store", fingerprint[:12])
                return None

            span = extend_span(
                current.span if current else EMPTY_SPAN,
                (covered_from, new_cached_through),
            )
            entry = CacheEntry(
                fingerprint=fingerprint,
                cached_through=span[1],
                total_pages=max(current.total_pages if current else 0, total_pages),
                courses=merged,
                updated_at=self._clock(),
                cached_from=span[0],
            )
            self.store.put(fingerprint, entry.to_dict())
            log.debug(
                "Cached %s course(s) for %s, pages %s-%s",
                len(merged),
                fingerprint[:12],
                entry.cached_from,
                entry.cached_through,
            )
            return entry

    def delete(self, fingerprint: str) -> None:
        self.store.delete(fingerprint)

    def clear(self) -> int:
        keys = self.store.keys()
        for key in keys:
            self.store.delete(key)
        log.info("Cache cleared (%s entries)", len(keys))
        return len(keys)

    def stats(self) -> dict[str, Any]:
        entries = [e for e in (self.store.get(k) for k in self.store.keys()) if e]
        timestamps = [float(e.get("updated_at") or 0.0) for e in entries]
        return {
            "entries": len(entries),
            "oldest_timestamp": min(timestamps) if timestamps else None,
        }

    def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        if self.max_age_s is None:
            return 0
        removed = 0
        for key in self.store.keys():
            raw = self.store.get(key)
            if raw is not None and self._is_stale(CacheEntry.from_dict(raw)):
                self.store.delete(key)
                removed += 1
        return removed
