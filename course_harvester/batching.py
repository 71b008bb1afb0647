"""Batch planning: split page texts (or a flat blob) into bounded batches."""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from .errors import InvalidRangeError
from .models import Batch
from .utils import DEFAULT_BATCH_PAGES, DEFAULT_TEXT_SLICE_BYTES

log = logging.getLogger(__name__)

# Section boundaries in catalogue text: "SCIENCE COURSES:", "3. Mathematics",
# or a blank line followed by an all-caps heading line.
_SECTION_RE = re.compile(r"\n(?=[A-Z][A-Z\s]{3,}:|\d+\.\s+[A-Z]|\n\n[A-Z][A-Z\s]+\n)")


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def clamp_range(
    total_pages: int,
    range_start: Optional[int] = 1,
    range_end: Optional[int] = None,
) -> tuple[int, int]:
    """Clamp a requested 1-based range to ``1..total_pages``.

    Raises:
        InvalidRangeError: the clamped range is empty or inverted.
    """
    start = max(1, range_start or 1)
    end = total_pages if range_end is None else min(range_end, total_pages)
    if start > end:
        raise InvalidRangeError(start, end, total_pages)
    return start, end


def plan_batches(
    page_texts: Sequence[str],
    range_start: Optional[int] = 1,
    range_end: Optional[int] = None,
    batch_size_pages: int = DEFAULT_BATCH_PAGES,
    max_batch_bytes: Optional[int] = None,
) -> list[Batch]:
    """Plan contiguous batches over ``page_texts[range_start-1:range_end]``.

    Each batch holds at most ``batch_size_pages`` pages and, when
    ``max_batch_bytes`` is given, closes early rather than grow past that
    size. A single page larger than the byte budget still gets a batch of
    its own.
    """
    if batch_size_pages < 1:
        raise ValueError(f"batch_size_pages must be >= 1, got {batch_size_pages}")

    start, end = clamp_range(len(page_texts), range_start, range_end)

    batches: list[Batch] = []
    current: list[str] = []
    current_bytes = 0
    current_start = start

    for page_no in range(start, end + 1):
        page = page_texts[page_no - 1] or ""
        page_bytes = _byte_len(page)
        over_budget = (
            max_batch_bytes is not None
            and current
            and current_bytes + page_bytes > max_batch_bytes
        )
        if len(current) >= batch_size_pages or over_budget:
            batches.append(
                Batch(len(batches) + 1, current_start, page_no - 1, current)
            )
            current, current_bytes, current_start = [], 0, page_no
        current.append(page)
        current_bytes += page_bytes

    if current:
        batches.append(Batch(len(batches) + 1, current_start, end, current))

    log.debug(
        "Planned %s batch(es) over pages %s-%s (batch_size=%s, max_bytes=%s)",
        len(batches),
        start,
        end,
        batch_size_pages,
        max_batch_bytes,
    )
    return batches


def _hard_split(section: str, max_bytes: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    for word in re.split(r"(\s+)", section):
        if current and _byte_len(current) + _byte_len(word) > max_bytes:
            pieces.append(current)
            current = ""
        while _byte_len(word) > max_bytes:
            # A single run longer than the budget; cut by characters.
            cut = max_bytes
            while _byte_len(word[:cut]) > max_bytes:
                cut -= 1
            pieces.append(word[:cut])
            word = word[cut:]
        current += word
    if current:
        pieces.append(current)
    return pieces


def split_text(text: str, max_bytes: int = DEFAULT_TEXT_SLICE_BYTES) -> list[str]:
    """Split a flat text blob into slices of at most *max_bytes* UTF-8 bytes.

    Cuts prefer section boundaries; oversized sections are split on
    whitespace. Returns ``[]`` for blank input.
    """
    if max_bytes < 1:
        raise ValueError(f"max_bytes must be >= 1, got {max_bytes}")
    if not text or not text.strip():
        return []

    slices: list[str] = []
    current = ""
    for section in _SECTION_RE.split(text):
        if _byte_len(section) > max_bytes:
            if current.strip():
                slices.append(current.strip())
            current = ""
            slices.extend(p.strip() for p in _hard_split(section, max_bytes) if p.strip())
            continue
        joined = f"{current}\n{section}" if current else section
        if current and _byte_len(joined) > max_bytes:
            slices.append(current.strip())
            current = section
        else:
            current = joined
    if current.strip():
        slices.append(current.strip())
    return slices


def plan_text_batches(
    text: str,
    max_bytes: int = DEFAULT_TEXT_SLICE_BYTES,
    range_start: Optional[int] = 1,
    range_end: Optional[int] = None,
    batch_size_pages: int = 1,
) -> list[Batch]:
    """Plan batches over a flat blob; each byte-bounded slice acts as a page."""
    return plan_batches(split_text(text, max_bytes), range_start, range_end, batch_size_pages)
