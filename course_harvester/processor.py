"""Chunk processor: drive batch-by-batch extraction over one document."""

from __future__ import annotations

import logging
from typing import Callable, Iterator, Optional, Protocol, Sequence

from .batching import plan_batches
from .cache import course_key
from .client import EXTRACTION_PROMPT, ExtractionClient, RetryCallback
from .models import (
    Batch,
    Course,
    ExtractionOutcome,
    OutcomeStatus,
    ProgressEvent,
    RunResult,
    RunState,
)
from .utils import DEFAULT_BATCH_PAGES

log = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ErrorCallback = Callable[[str], None]


class AbortSignal(Protocol):
    def is_set(self) -> bool:
        ...


class DocumentRun:
    """One pass over a planned document, consumed as a stream of events.

    Iterating submits the batches strictly in order; each batch is
    submitted only when the consumer asks for the next event. After the
    iteration ends, :attr:`result` holds the accumulated outcome.

    Backoff waits happen inside a submission, while the iterator is
    suspended. With *on_wait* set, each ``waiting`` event is passed to it
    right before the client sleeps; without it, the run yields the
    ``waiting`` events once the batch has returned.
    """

    def __init__(
        self,
        processor: "ChunkProcessor",
        batches: list[Batch],
        range_start: int,
        range_end: int,
        abort: Optional[AbortSignal] = None,
        on_wait: Optional[ProgressCallback] = None,
    ) -> None:
        self._processor = processor
        self.batches = batches
        self.range_start = range_start
        self.range_end = range_end
        self._abort = abort
        self._on_wait = on_wait
        self.state = RunState.PLANNING
        self.courses: list[Course] = []
        self._seen: set[tuple[str, str, str]] = set()
        self.errors: list[str] = []
        self.batches_attempted = 0
        self.pages_processed = range_start - 1
        self.contiguous_through = range_start - 1
        self._chain_intact = True
        self.halt_reason: Optional[str] = None
        self._started = False

    @property
    def total_batches(self) -> int:
        return len(self.batches)

    @property
    def finished(self) -> bool:
        return self.state in (RunState.COMPLETED, RunState.HALTED)

    def _event(self, status: str, batch_index: int, message: str, error: Optional[str] = None) -> ProgressEvent:
        return ProgressEvent(
            status=status,
            batch_index=batch_index,
            total_batches=self.total_batches,
            pages_processed=self.pages_processed,
            total_pages=self.range_end,
            courses_found=len(self.courses),
            message=message,
            error=error,
        )

    def _accumulate(self, batch: Batch, outcome: ExtractionOutcome) -> int:
        added = 0
        for course in outcome.courses:
            key = course_key(course)
            if key in self._seen:
                continue
            self._seen.add(key)
            self.courses.append(course)
            added += 1
        self.batches_attempted += 1
        self.pages_processed = batch.page_end
        if outcome.ok and self._chain_intact:
            self.contiguous_through = batch.page_end
        else:
            self._chain_intact = False
        if outcome.error:
            self.errors.append(f"batch {batch.sequence} (pages {batch.page_start}-{batch.page_end}): {outcome.error}")
        return added

    def __iter__(self) -> Iterator[ProgressEvent]:
        if self._started:
            raise RuntimeError("A DocumentRun can only be iterated once")
        self._started = True

        yield self._event(
            "planned",
            0,
            f"Split pages {self.range_start}-{self.range_end} into "
            f"{self.total_batches} batch{'es' if self.total_batches != 1 else ''}",
        )

        for batch in self.batches:
            if self._abort is not None and self._abort.is_set():
                self.halt_reason = "aborted"
                log.warning("Run aborted before batch %s/%s", batch.sequence, self.total_batches)
                break

            self.state = RunState.SUBMITTING
            waits: list[ProgressEvent] = []

            def _on_retry(attempt: int, delay: float) -> None:
                self.state = RunState.RETRYING
                event = self._event(
                    "waiting",
                    batch.sequence,
                    f"Rate limit reached. Retrying in {delay:.0f}s (attempt {attempt})",
                )
                if self._on_wait is not None:
                    self._on_wait(event)
                else:
                    waits.append(event)

            log.info(
                "Submitting batch %s/%s (pages %s-%s)",
                batch.sequence,
                self.total_batches,
                batch.page_start,
                batch.page_end,
            )
            outcome = self._processor.submit_batch(batch, on_retry=_on_retry)
            yield from waits
            added = self._accumulate(batch, outcome)

            if outcome.status is OutcomeStatus.OK:
                yield self._event(
                    "batch_complete",
                    batch.sequence,
                    f"Found {len(outcome.courses)} course(s) in batch {batch.sequence} "
                    f"({added} new)",
                )
            else:
                yield self._event(
                    "batch_error",
                    batch.sequence,
                    f"Error in batch {batch.sequence}: {outcome.error}",
                    error=outcome.error,
                )

            if outcome.terminal:
                self.halt_reason = "quota_exhausted"
                break

        if self.halt_reason:
            self.state = RunState.HALTED
            yield self._event(
                "halted",
                self.batches_attempted,
                f"Stopped ({self.halt_reason}) after {self.batches_attempted} of "
                f"{self.total_batches} batches; {len(self.courses)} course(s) kept",
            )
        else:
            self.state = RunState.COMPLETED
            yield self._event(
                "completed",
                self.total_batches,
                f"Extraction complete: {len(self.courses)} unique course(s)",
            )

    @property
    def result(self) -> RunResult:
        if not self.finished:
            raise RuntimeError("Run has not finished; iterate it first")
        return RunResult(
            courses=list(self.courses),
            state=self.state,
            range_start=self.range_start,
            range_end=self.range_end,
            total_batches=self.total_batches,
            batches_attempted=self.batches_attempted,
            pages_processed=self.pages_processed,
            contiguous_through=self.contiguous_through,
            halt_reason=self.halt_reason,
            errors=list(self.errors),
        )


class ChunkProcessor:
    """Plans a document into batches and extracts them one at a time."""

    def __init__(
        self,
        client: ExtractionClient,
        *,
        batch_size_pages: int = DEFAULT_BATCH_PAGES,
        max_batch_bytes: Optional[int] = None,
        source_file: str = "",
        prompt_template: str = EXTRACTION_PROMPT,
        split_compounds: bool = False,
    ) -> None:
        self.client = client
        self.batch_size_pages = batch_size_pages
        self.max_batch_bytes = max_batch_bytes
        self.source_file = source_file
        self.prompt_template = prompt_template
        self.split_compounds = split_compounds

    def submit_batch(self, batch: Batch, on_retry: Optional[RetryCallback] = None) -> ExtractionOutcome:
        return self.client.submit(
            batch.text,
            self.prompt_template,
            source_file=self.source_file,
            split_compounds=self.split_compounds,
            on_retry=on_retry,
        )

    def start(
        self,
        page_texts: Sequence[str],
        range_start: Optional[int] = 1,
        range_end: Optional[int] = None,
        abort: Optional[AbortSignal] = None,
        on_wait: Optional[ProgressCallback] = None,
    ) -> DocumentRun:
        """Plan the run; raises ``InvalidRangeError`` before any network call."""
        batches = plan_batches(
            page_texts,
            range_start,
            range_end,
            self.batch_size_pages,
            self.max_batch_bytes,
        )
        return DocumentRun(
            self, batches, batches[0].page_start, batches[-1].page_end, abort, on_wait
        )

    def process_document(
        self,
        page_texts: Sequence[str],
        range_start: Optional[int] = 1,
        range_end: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        abort: Optional[AbortSignal] = None,
    ) -> RunResult:
        """Run to completion, forwarding events and batch errors to callbacks."""
        run = self.start(page_texts, range_start, range_end, abort, on_wait=on_progress)
        for event in run:
            if on_progress is not None:
                on_progress(event)
            if on_error is not None and event.error:
                on_error(event.error)
        result = run.result
        log.info(
            "Run %s: %s/%s batches, %s course(s), pages %s-%s",
            result.state.value,
            result.batches_attempted,
            result.total_batches,
            len(result.courses),
            result.range_start,
            result.pages_processed,
        )
        return result
