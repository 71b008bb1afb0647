"""Cross-cutting helpers: constants, fingerprints, export and manifest I/O."""

from __future__ import annotations

import csv
import hashlib
import json
from pathlib import Path
from typing import Any, Iterable

from .models import COURSE_FIELDS, Course, DocRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BATCH_PAGES = 5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_S = 2.0
DEFAULT_MAX_BACKOFF_S = 60.0
DEFAULT_TEXT_SLICE_BYTES = 40 * 1024
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
CACHE_FILE_NAME = "extraction_cache.json"
MANIFEST_FILE_NAME = "harvest_manifest.json"

_HASH_BLOCK = 1024 * 1024


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def fingerprint_bytes(data: bytes) -> str:
    """SHA-256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def file_fingerprint(path: Path) -> str:
    """Return a stable content hash of the file at *path*."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_HASH_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def ensure_output_dirs(output_dir: Path) -> tuple[Path, Path]:
    """Create and return (courses_dir, cache_dir) under *output_dir*."""
    courses_dir = output_dir / "courses"
    cache_dir = output_dir / "cache"
    courses_dir.mkdir(parents=True, exist_ok=True)
    cache_dir.mkdir(parents=True, exist_ok=True)
    return courses_dir, cache_dir


# ---------------------------------------------------------------------------
# Course export
# ---------------------------------------------------------------------------


def save_courses_csv(path: Path, courses: Iterable[Course]) -> Path:
    """Write courses as CSV with a leading serial-number column."""
    path.parent.mkdir(parents=True, exist_ok=True)
    headers = ["S.No", *COURSE_FIELDS.values()]
    with open(path, "w", encoding="utf-8", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(headers)
        for idx, course in enumerate(courses, start=1):
            row = course.to_dict()
            writer.writerow([idx, *(row[name] for name in COURSE_FIELDS.values())])
    return path


def save_courses_json(path: Path, courses: Iterable[Course]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump([c.to_dict() for c in courses], fh, indent=2, ensure_ascii=False)
    return path


# ---------------------------------------------------------------------------
# Manifest I/O
# ---------------------------------------------------------------------------


def save_manifest(
    output_dir: Path,
    records: list[DocRecord],
    *,
    merge_existing: bool = True,
) -> Path:
    """Write harvest_manifest.json and return its path."""
    manifest_path = output_dir / MANIFEST_FILE_NAME
    manifest_by_path: dict[str, dict[str, Any]] = {}

    if merge_existing and manifest_path.exists():
        try:
            with open(manifest_path, "r", encoding="utf-8") as fh:
                existing = json.load(fh)
            if isinstance(existing, list):
                for item in existing:
                    if not isinstance(item, dict):
                        continue
                    key = str(item.get("filepath") or item.get("filename") or "")
                    if key:
                        manifest_by_path[key] = item
        except (json.JSONDecodeError, OSError, ValueError):
            manifest_by_path = {}

    for record in records:
        key = record.filepath or record.filename
        manifest_by_path[key] = {
            "filename": record.filename,
            "filepath": record.filepath,
            "fingerprint": record.fingerprint,
            "status": record.status,
            "cache_hit": record.cache_hit,
            "total_pages": record.total_pages,
            "range_start": record.range_start,
            "range_end": record.range_end,
            "cached_from": record.cached_from,
            "pages_processed": record.cached_through,
            "complete": (
                record.range_end > 0
                and record.cached_from <= record.range_start
                and record.cached_through >= record.range_end
            ),
            "courses_found": record.courses_found,
            "halt_reason": record.halt_reason,
            "elapsed_s": record.elapsed_s,
            "error": record.error,
        }

    manifest = sorted(
        manifest_by_path.values(),
        key=lambda item: (str(item.get("filename", "")), str(item.get("filepath", ""))),
    )
    output_dir.mkdir(parents=True, exist_ok=True)
    with open(manifest_path, "w", encoding="utf-8") as fh:
        json.dump(manifest, fh, indent=2, ensure_ascii=False, default=str)
    return manifest_path
