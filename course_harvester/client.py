"""Completion-service client: one call per batch, bounded 429 retries."""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Optional

import httpx

from .config import HarvestConfig
from .errors import (
    ConfigurationError,
    QuotaExhaustedError,
    RateLimitedError,
    ResponseParseError,
)
from .models import ExtractionOutcome, OutcomeStatus
from .normalize import clean_courses
from .parsing import extract_json_array, response_text

log = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Extract courses from the document as JSON array only.
Fields: Category, CourseName, CourseCode, GradeLevel, Length, Prerequisite, Credit, CourseDescription
Use null for missing fields.
Return ONLY valid JSON starting with [ and ending with ].
No markdown, no code blocks, no extra text.

Document:
{document}"""

RetryCallback = Callable[[int, float], None]

_DAILY_QUOTA_MARKERS = ("perday", "per day", "per_day", "daily")
_RETRY_DELAY_RE = re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?)s"')


def is_daily_quota_error(body: str) -> bool:
    """True when an error body names a per-day quota rather than a rate."""
    lowered = (body or "").lower()
    return any(marker in lowered for marker in _DAILY_QUOTA_MARKERS)


def backoff_delay(
    attempt: int,
    base_s: float = 2.0,
    max_s: float = 60.0,
    retry_after: Optional[float] = None,
) -> float:
    """Seconds to wait after failed *attempt* (1-based): 2, 4, 8 ... capped.

    A server-supplied ``retry_after`` lengthens the wait but never past
    ``max_s``.
    """
    delay = base_s * (2 ** (attempt - 1))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return min(delay, max_s)


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    match = _RETRY_DELAY_RE.search(response.text)
    return float(match.group(1)) if match else None


class ExtractionClient:
    """Submits batch text to a Gemini-style ``generateContent`` endpoint."""

    def __init__(
        self,
        config: HarvestConfig,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not config.api_key:
            raise ConfigurationError(
                "Missing API key for the completion service. "
                "Set GEMINI_API_KEY or pass --api-key-file."
            )
        if config.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {config.max_attempts}")
        self.config = config
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=config.timeout_s)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "ExtractionClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def build_payload(self, batch_text: str, prompt_template: str = EXTRACTION_PROMPT) -> dict[str, Any]:
        prompt = prompt_template.format(document=batch_text)
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }

    def _post(self, payload: dict[str, Any]) -> str:
        """Make one HTTP call and return the model text.

        Raises:
            QuotaExhaustedError: daily quota signature in a 403/429 body.
            RateLimitedError: any other 429.
            httpx.HTTPError: transport failure or other non-2xx status.
        """
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }
        resp = self._http.post(self.config.endpoint, json=payload, headers=headers)
        if resp.status_code in (403, 429) and is_daily_quota_error(resp.text):
            raise QuotaExhaustedError(f"Daily quota exhausted (HTTP {resp.status_code})")
        if resp.status_code == 429:
            raise RateLimitedError("Rate limited (HTTP 429)", _retry_after_seconds(resp))
        resp.raise_for_status()
        try:
            return response_text(resp.json())
        except ValueError:
            return resp.text

    def submit(
        self,
        batch_text: str,
        prompt_template: str = EXTRACTION_PROMPT,
        *,
        source_file: str = "",
        split_compounds: bool = False,
        on_retry: Optional[RetryCallback] = None,
    ) -> ExtractionOutcome:
        """Extract courses from one batch. Never raises for service errors."""
        payload = self.build_payload(batch_text, prompt_template)
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                text = self._post(payload)
            except RateLimitedError as exc:
                if attempt >= max_attempts:
                    log.warning("Still rate limited after %s attempt(s); skipping batch", attempt)
                    return ExtractionOutcome(
                        OutcomeStatus.RATE_LIMITED, error=str(exc), attempts=attempt
                    )
                delay = backoff_delay(
                    attempt,
                    self.config.backoff_base_s,
                    self.config.max_backoff_s,
                    exc.retry_after,
                )
                log.warning(
                    "Rate limited; retrying in %.1fs (attempt %s/%s)",
                    delay,
                    attempt,
                    max_attempts,
                )
                if on_retry is not None:
                    on_retry(attempt, delay)
                self._sleep(delay)
                continue
            except QuotaExhaustedError as exc:
                log.error("%s; no further batches will be submitted", exc)
                return ExtractionOutcome(
                    OutcomeStatus.QUOTA_EXHAUSTED, error=str(exc), attempts=attempt
                )
            except httpx.HTTPError as exc:
                log.warning("Batch request failed (%s): %s", type(exc).__name__, exc)
                return ExtractionOutcome(
                    OutcomeStatus.FAILED,
                    error=f"{type(exc).__name__}: {exc}",
                    attempts=attempt,
                )
            return self._to_outcome(text, source_file, split_compounds, attempt)

        # Only reachable when the loop body never ran.
        return ExtractionOutcome(OutcomeStatus.FAILED, error="no attempts made")

    def _to_outcome(
        self,
        text: str,
        source_file: str,
        split_compounds: bool,
        attempts: int,
    ) -> ExtractionOutcome:
        try:
            raw_records = extract_json_array(text)
        except ResponseParseError as exc:
            log.warning("Unparseable model response: %s", exc)
            return ExtractionOutcome(
                OutcomeStatus.PARSE_FAILURE, error=str(exc), attempts=attempts
            )
        courses = clean_courses(raw_records, source_file, split_compounds=split_compounds)
        log.info(
            "Batch extracted %s course(s) from %s raw record(s)",
            len(courses),
            len(raw_records),
        )
        return ExtractionOutcome(OutcomeStatus.OK, courses=courses, attempts=attempts)


def create_extraction_client(
    config: Optional[HarvestConfig] = None,
    http_client: Optional[httpx.Client] = None,
) -> ExtractionClient:
    """Build a client from *config* or from the environment."""
    cfg = config or HarvestConfig.from_env()
    log.debug("Extraction client: model=%s endpoint=%s", cfg.model, cfg.endpoint)
    return ExtractionClient(cfg, http_client=http_client)
