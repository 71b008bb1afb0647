"""Text normalization: turn loosely-typed model records into clean courses.

The model is asked for a fixed field set but routinely answers with
variant key names (``name``, ``title``, ``course_name`` ...), ``null``
placeholders, numbers instead of strings, or mojibake left behind by PDF
text extraction. Everything here is pure and never raises on bad input:
a record that cannot be salvaged is dropped by returning ``None``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any, Iterable, Optional

from .models import DEFAULT_CATEGORY, PLACEHOLDER, Course

log = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
MAX_COMPOUND_SPAN = 10

# Accepted key variants per attribute, canonical external name first.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "category": (
        "Category", "category", "CategoryName", "subject", "Subject",
        "Department", "department",
    ),
    "course_name": (
        "CourseName", "name", "Name", "title", "Title", "courseName",
        "course_name", "CourseTitle",
    ),
    "course_code": (
        "CourseCode", "code", "Code", "course_id", "courseCode", "course_code", "ID",
    ),
    "grade_level": ("GradeLevel", "grade_level", "grade", "Grade", "level", "gradeLevel"),
    "length": ("Length", "length", "duration", "Duration", "semester", "Semester"),
    "prerequisite": ("Prerequisite", "prerequisite", "prereq", "Prereq", "Prerequisites"),
    "credit": ("Credit", "credit", "credits", "Credits", "units", "Units"),
    "course_description": (
        "CourseDescription", "description", "Description", "desc", "overview", "Overview",
    ),
}

_MISSING_VALUES = {"", "-", "null", "none", "n/a"}

_WHITESPACE_CONTROL_RE = re.compile(r"[\t\n\r\x0b\x0c]")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_HIGH_LATIN1_RE = re.compile(r"[\x80-\xff]+")
_WHITESPACE_RE = re.compile(r"\s+")
_EXPORT_UNSAFE_RE = re.compile(r'["\\]')
_COMPOUND_RE = re.compile(r"^(.+?)\s*(\d+)\s*-\s*(\d+)$")


def _repair_mojibake(match: re.Match) -> str:
    chunk = match.group(0)
    try:
        return chunk.encode("latin-1").decode("utf-8")
    except UnicodeDecodeError:
        return chunk


def clean_text(value: Any) -> str:
    """Return *value* as a single-line string free of control characters."""
    if value is None or isinstance(value, (dict, list)):
        return ""
    text = str(value)
    text = _WHITESPACE_CONTROL_RE.sub(" ", text)
    text = _CONTROL_RE.sub("", text)
    text = _HIGH_LATIN1_RE.sub(_repair_mojibake, text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _pick(raw: dict[str, Any], attr: str) -> str:
    for key in FIELD_ALIASES[attr]:
        if key not in raw:
            continue
        text = clean_text(raw[key])
        if text.lower() not in _MISSING_VALUES:
            return text
    return ""


def clean_course(raw: Any, source_file: str = "") -> Optional[Course]:
    """Clean one raw record; ``None`` means the record is dropped."""
    if not isinstance(raw, dict):
        return None

    name = _EXPORT_UNSAFE_RE.sub("", _pick(raw, "course_name"))
    name = _WHITESPACE_RE.sub(" ", name).strip()
    if len(name) < MIN_NAME_LENGTH:
        log.debug("Dropping record with unusable course name: %r", raw)
        return None

    return Course(
        course_name=name,
        category=_pick(raw, "category") or DEFAULT_CATEGORY,
        course_code=_pick(raw, "course_code") or PLACEHOLDER,
        grade_level=_pick(raw, "grade_level") or PLACEHOLDER,
        length=_pick(raw, "length") or PLACEHOLDER,
        prerequisite=_pick(raw, "prerequisite") or PLACEHOLDER,
        credit=_pick(raw, "credit") or PLACEHOLDER,
        course_description=_pick(raw, "course_description") or PLACEHOLDER,
        source_file=clean_text(source_file),
    )


def split_compound_course(course: Course) -> list[Course]:
    """Expand ``"English 1-4"`` into ``English 1`` .. ``English 4``."""
    match = _COMPOUND_RE.match(course.course_name)
    if not match:
        return [course]
    subject, first, last = match.group(1).strip(), int(match.group(2)), int(match.group(3))
    if last <= first or last - first > MAX_COMPOUND_SPAN or not subject:
        return [course]
    return [
        replace(course, course_name=f"{subject} {number}")
        for number in range(first, last + 1)
    ]


def clean_courses(
    raw_records: Iterable[Any],
    source_file: str = "",
    *,
    split_compounds: bool = False,
) -> list[Course]:
    """Clean a batch of raw records, dropping the ones that fail validation."""
    cleaned: list[Course] = []
    dropped = 0
    for raw in raw_records:
        course = clean_course(raw, source_file)
        if course is None:
            dropped += 1
            continue
        if split_compounds:
            cleaned.extend(split_compound_course(course))
        else:
            cleaned.append(course)
    if dropped:
        log.debug("clean_courses: dropped %s invalid record(s)", dropped)
    return cleaned
