"""Shared data models for the extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

PLACEHOLDER = "-"
DEFAULT_CATEGORY = "Uncategorized"

# Attribute name -> external (JSON / CSV) field name.
COURSE_FIELDS: dict[str, str] = {
    "category": "Category",
    "course_name": "CourseName",
    "course_code": "CourseCode",
    "grade_level": "GradeLevel",
    "length": "Length",
    "prerequisite": "Prerequisite",
    "credit": "Credit",
    "course_description": "CourseDescription",
    "source_file": "SourceFile",
}


@dataclass
class Course:
    """One cleaned course record."""

    course_name: str
    category: str = DEFAULT_CATEGORY
    course_code: str = PLACEHOLDER
    grade_level: str = PLACEHOLDER
    length: str = PLACEHOLDER
    prerequisite: str = PLACEHOLDER
    credit: str = PLACEHOLDER
    course_description: str = PLACEHOLDER
    source_file: str = ""

    def to_dict(self) -> dict[str, str]:
        return {external: getattr(self, attr) for attr, external in COURSE_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Course":
        """Rebuild a course from its external form (e.g. a cache payload)."""
        kwargs = {}
        for attr, external in COURSE_FIELDS.items():
            value = data.get(external)
            if value is not None:
                kwargs[attr] = str(value)
        kwargs.setdefault("course_name", "")
        return cls(**kwargs)


@dataclass
class DocRecord:
    """Tracks harvesting results and metadata for a single source document."""

    filename: str
    filepath: str
    fingerprint: str = ""
    total_pages: int = 0
    range_start: int = 1
    range_end: int = 0
    cached_from: int = 1
    cached_through: int = 0
    courses_found: int = 0
    cache_hit: str = "none"
    status: str = "pending"
    halt_reason: Optional[str] = None
    error: Optional[str] = None
    elapsed_s: float = 0.0


@dataclass
class Batch:
    """A run of consecutive pages submitted together in one call."""

    sequence: int
    page_start: int
    page_end: int
    pages: list[str] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return self.page_end - self.page_start + 1

    @property
    def text(self) -> str:
        return "\n\n".join(self.pages)


class OutcomeStatus(str, Enum):
    OK = "ok"
    PARSE_FAILURE = "parse_failure"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    QUOTA_EXHAUSTED = "quota_exhausted"


@dataclass
class ExtractionOutcome:
    """Result of submitting one batch."""

    status: OutcomeStatus
    courses: list[Course] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    @property
    def terminal(self) -> bool:
        return self.status is OutcomeStatus.QUOTA_EXHAUSTED


class RunState(str, Enum):
    PLANNING = "planning"
    SUBMITTING = "submitting"
    RETRYING = "retrying"
    COMPLETED = "completed"
    HALTED = "halted"


@dataclass
class ProgressEvent:
    """Progress notification emitted while a document run advances."""

    status: str
    batch_index: int
    total_batches: int
    pages_processed: int
    total_pages: int
    courses_found: int
    message: str = ""
    error: Optional[str] = None


@dataclass
class RunResult:
    """What one Chunk Processor run produced."""

    courses: list[Course]
    state: RunState
    range_start: int
    range_end: int
    total_batches: int
    batches_attempted: int = 0
    pages_processed: int = 0
    contiguous_through: int = 0
    halt_reason: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    @property
    def halted(self) -> bool:
        return self.state is RunState.HALTED

    @property
    def quota_exhausted(self) -> bool:
        return self.halt_reason == "quota_exhausted"


class CacheHit(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


@dataclass
class CacheEntry:
    """Cached extraction progress for one document fingerprint.

    Pages ``cached_from..cached_through`` (inclusive) have been extracted;
    ``cached_through < cached_from`` means no page is covered yet.
    """

    fingerprint: str
    cached_through: int
    total_pages: int
    courses: list[Course] = field(default_factory=list)
    updated_at: float = 0.0
    cached_from: int = 1

    @property
    def span(self) -> tuple[int, int]:
        return (self.cached_from, self.cached_through)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "cached_from_page": self.cached_from,
            "cached_through_page": self.cached_through,
            "total_pages": self.total_pages,
            "records": [course.to_dict() for course in self.courses],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        records = data.get("records") or []
        return cls(
            fingerprint=str(data.get("fingerprint", "")),
            cached_through=int(data.get("cached_through_page") or 0),
            total_pages=int(data.get("total_pages") or 0),
            courses=[Course.from_dict(r) for r in records if isinstance(r, dict)],
            updated_at=float(data.get("updated_at") or 0.0),
            cached_from=int(data.get("cached_from_page") or 1),
        )


@dataclass
class CacheLookup:
    hit: CacheHit
    courses: list[Course] = field(default_factory=list)
    resume_from_page: int = 1
    entry: Optional[CacheEntry] = None
    missing: list[tuple[int, int]] = field(default_factory=list)


@dataclass
class HarvestResult:
    """Final, merged outcome of extracting one document (cache + new runs).

    ``runs`` holds one result per uncovered sub-range that was processed,
    in order; a full cache hit has none.
    """

    courses: list[Course]
    cache_hit: CacheHit
    range_start: int
    range_end: int
    total_pages: int
    cached_through: int = 0
    cached_from: int = 1
    runs: list[RunResult] = field(default_factory=list)

    @property
    def run(self) -> Optional[RunResult]:
        return self.runs[-1] if self.runs else None

    @property
    def from_cache(self) -> bool:
        return self.cache_hit is CacheHit.FULL

    @property
    def is_complete(self) -> bool:
        return self.cached_from <= self.range_start and self.cached_through >= self.range_end

    @property
    def quota_exhausted(self) -> bool:
        return any(run.quota_exhausted for run in self.runs)

    @property
    def errors(self) -> list[str]:
        return [error for run in self.runs for error in run.errors]
