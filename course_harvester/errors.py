"""Exception taxonomy for the extraction pipeline."""

from __future__ import annotations


class HarvestError(Exception):
    """Base class for all course-harvester errors."""


class ConfigurationError(HarvestError):
    """Required configuration (API key, endpoint) is missing or unusable."""


class InvalidRangeError(HarvestError, ValueError):
    """Requested page range is empty or inverted after clamping."""

    def __init__(self, range_start: int, range_end: int, total_pages: int) -> None:
        self.range_start = range_start
        self.range_end = range_end
        self.total_pages = total_pages
        super().__init__(
            f"Invalid page range {range_start}-{range_end} "
            f"for a document with {total_pages} page(s)"
        )


class ResponseParseError(HarvestError):
    """The model response holds no recoverable JSON array."""


class RateLimitedError(HarvestError):
    """The completion service answered HTTP 429 (transient backpressure)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class QuotaExhaustedError(HarvestError):
    """The daily request quota is spent; no further calls will succeed today."""
