"""Curriculum document -> batched LLM extraction -> course records pipeline.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from course_harvester import X``
works.
"""

from .batching import clamp_range, plan_batches, plan_text_batches, split_text
from .cache import (
    IncrementalCache,
    JsonFileCacheStore,
    MemoryCacheStore,
    course_key,
    merge_courses,
)
from .client import (
    EXTRACTION_PROMPT,
    ExtractionClient,
    backoff_delay,
    create_extraction_client,
    is_daily_quota_error,
)
from .config import HarvestConfig, load_api_keys
from .errors import (
    ConfigurationError,
    HarvestError,
    InvalidRangeError,
    QuotaExhaustedError,
    RateLimitedError,
    ResponseParseError,
)
from .extraction import extract_document
from .models import (
    Batch,
    CacheEntry,
    CacheHit,
    CacheLookup,
    Course,
    DocRecord,
    ExtractionOutcome,
    HarvestResult,
    OutcomeStatus,
    ProgressEvent,
    RunResult,
    RunState,
)
from .normalize import clean_course, clean_courses, clean_text, split_compound_course
from .parsing import extract_json_array, find_balanced_array, response_text
from .processor import ChunkProcessor, DocumentRun
from .sources import (
    create_converter,
    discover_documents,
    load_page_texts,
    needs_converter,
)
from .utils import (
    DEFAULT_BATCH_PAGES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MODEL,
    DEFAULT_TEXT_SLICE_BYTES,
    ensure_output_dirs,
    file_fingerprint,
    fingerprint_bytes,
    save_courses_csv,
    save_courses_json,
    save_manifest,
)

__all__ = [
    # Models
    "Course",
    "DocRecord",
    "Batch",
    "OutcomeStatus",
    "ExtractionOutcome",
    "RunState",
    "ProgressEvent",
    "RunResult",
    "CacheHit",
    "CacheEntry",
    "CacheLookup",
    "HarvestResult",
    # Errors
    "HarvestError",
    "ConfigurationError",
    "InvalidRangeError",
    "ResponseParseError",
    "RateLimitedError",
    "QuotaExhaustedError",
    # Constants
    "DEFAULT_BATCH_PAGES",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MODEL",
    "DEFAULT_TEXT_SLICE_BYTES",
    "EXTRACTION_PROMPT",
    # Utils
    "fingerprint_bytes",
    "file_fingerprint",
    "ensure_output_dirs",
    "save_courses_csv",
    "save_courses_json",
    "save_manifest",
    # Config
    "HarvestConfig",
    "load_api_keys",
    # Normalization
    "clean_text",
    "clean_course",
    "clean_courses",
    "split_compound_course",
    # Parsing
    "find_balanced_array",
    "extract_json_array",
    "response_text",
    # Batching
    "clamp_range",
    "plan_batches",
    "split_text",
    "plan_text_batches",
    # Client
    "is_daily_quota_error",
    "backoff_delay",
    "ExtractionClient",
    "create_extraction_client",
    # Processing
    "DocumentRun",
    "ChunkProcessor",
    # Cache
    "course_key",
    "merge_courses",
    "MemoryCacheStore",
    "JsonFileCacheStore",
    "IncrementalCache",
    # Extraction
    "extract_document",
    # Sources
    "discover_documents",
    "needs_converter",
    "create_converter",
    "load_page_texts",
]
