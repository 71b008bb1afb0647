"""Cache-aware extraction of one document.

Consults the incremental cache, runs the chunk processor over whatever
parts of the requested range are not cached yet, and folds results back
into the cache after every batch.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .batching import clamp_range
from .cache import EMPTY_SPAN, IncrementalCache, extend_span, merge_courses
from .models import CacheHit, Course, HarvestResult, RunResult
from .processor import AbortSignal, ChunkProcessor, ErrorCallback, ProgressCallback

log = logging.getLogger(__name__)

_BATCH_DONE = ("batch_complete", "batch_error")


def extract_document(
    page_texts: Sequence[str],
    fingerprint: str,
    cache: IncrementalCache,
    processor: ChunkProcessor,
    range_start: Optional[int] = 1,
    range_end: Optional[int] = None,
    *,
    on_progress: Optional[ProgressCallback] = None,
    on_error: Optional[ErrorCallback] = None,
    abort: Optional[AbortSignal] = None,
    use_cache: bool = True,
) -> HarvestResult:
    """Extract courses for ``page_texts[range_start-1:range_end]``.

    Returns the cached courses followed by newly found unique ones. A full
    cache hit makes no network calls at all; otherwise only the sub-ranges
    outside the cached span are submitted, in page order. A halted run
    (quota or abort) stops the remaining sub-ranges. ``use_cache=False``
    skips the lookup (forced reprocessing) but still records what the run
    finds.

    Raises:
        InvalidRangeError: the clamped range is empty or inverted.
    """
    total_pages = len(page_texts)
    start, end = clamp_range(total_pages, range_start, range_end)

    cached_courses: list[Course] = []
    span = EMPTY_SPAN
    hit = CacheHit.NONE
    todo = [(start, end)]
    if use_cache:
        lookup = cache.lookup(fingerprint, end, start)
        hit = lookup.hit
        if hit is CacheHit.FULL and lookup.entry is not None:
            return HarvestResult(
                courses=lookup.courses,
                cache_hit=hit,
                range_start=start,
                range_end=end,
                total_pages=total_pages,
                cached_through=lookup.entry.cached_through,
                cached_from=lookup.entry.cached_from,
            )
        if hit is CacheHit.PARTIAL and lookup.entry is not None:
            cached_courses = lookup.courses
            span = lookup.entry.span
            todo = lookup.missing

    runs: list[RunResult] = []
    found: list[Course] = []
    for sub_start, sub_end in todo:
        run = processor.start(page_texts, sub_start, sub_end, abort, on_wait=on_progress)
        for event in run:
            if on_progress is not None:
                on_progress(event)
            if event.error and on_error is not None:
                on_error(event.error)
            if event.status not in _BATCH_DONE:
                continue
            span = extend_span(span, (sub_start, run.contiguous_through))
            cache.merge(
                fingerprint,
                [*found, *run.courses],
                run.contiguous_through,
                total_pages,
                covered_from=sub_start,
            )
        result = run.result
        runs.append(result)
        found = merge_courses(found, result.courses)
        if result.halted:
            break

    courses = merge_courses(cached_courses, found)
    if not courses:
        log.info("No courses found for %s; cache left untouched", fingerprint[:12])
    log.info(
        "Document %s: %s course(s), pages %s-%s of %s-%s covered (%s)",
        fingerprint[:12],
        len(courses),
        span[0],
        span[1],
        start,
        end,
        runs[-1].state.value if runs else "cached",
    )
    return HarvestResult(
        courses=courses,
        cache_hit=hit,
        range_start=start,
        range_end=end,
        total_pages=total_pages,
        cached_through=span[1],
        cached_from=span[0],
        runs=runs,
    )
