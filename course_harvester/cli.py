"""CLI entrypoint for the document -> batched LLM extraction -> courses pipeline.

Usage:
    python -m course_harvester --local-dir ./catalogs
    python -m course_harvester --local-dir ./catalogs --end-page 10
    python -m course_harvester --local-dir ./catalogs --batch-size 3 --max-batch-kb 40
    python -m course_harvester --local-dir ./catalogs --force-reprocess
    python -m course_harvester --local-dir ./catalogs --clear-cache
"""

from __future__ import annotations

import argparse
import logging
from logging.handlers import RotatingFileHandler
import sys
import time
import traceback
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DETAILED_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "harvest.log"

# Per-request chatter from the HTTP stack and per-page chatter from Docling.
_NOISY_LOGGERS = ("httpx", "httpcore", "docling")


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> Path | None:
    """Configure root logging for a CLI run; returns the log file in use, if any."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter(DETAILED_LOG_FORMAT if detailed_logging else LOG_FORMAT, DATE_FORMAT)
    )
    root_logger.addHandler(console_handler)

    if log_file is None and detailed_logging:
        log_file = output_dir / LOG_FILE_NAME
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(DETAILED_LOG_FORMAT, DATE_FORMAT))
        root_logger.addHandler(file_handler)

    # --verbose surfaces one line per completion request, never httpcore internals.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if verbose:
        logging.getLogger("httpx").setLevel(logging.INFO)
    return log_file


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Curriculum documents -> batched LLM extraction -> course records"
    )
    parser.add_argument(
        "--local-dir",
        type=Path,
        required=True,
        help="Directory with source documents (.pdf, .docx, .html, .txt, .md)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Output directory (default: output/)",
    )
    parser.add_argument(
        "--start-page",
        type=int,
        default=1,
        help="First page to extract (1-based, default: 1)",
    )
    parser.add_argument(
        "--end-page",
        type=int,
        default=None,
        help="Last page to extract (default: last page of each document)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Pages per completion call (default: 5)",
    )
    parser.add_argument(
        "--max-batch-kb",
        type=int,
        default=None,
        help="Upper bound on batch text size in KiB (default: unbounded)",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Calls per batch while rate limited (default: 3)",
    )
    parser.add_argument("--model", default=None, help="Completion model name")
    parser.add_argument(
        "--api-key-file",
        type=Path,
        default=None,
        help="JSON file with {\"api_keys\": {\"GEMINI_API_KEY\": ...}}",
    )
    parser.add_argument(
        "--cache-file",
        type=Path,
        default=None,
        help="Extraction cache path (default: <output-dir>/cache/extraction_cache.json)",
    )
    parser.add_argument(
        "--cache-max-age-hours",
        type=float,
        default=None,
        help="Treat cache entries older than this as missing (default: never expire)",
    )
    parser.add_argument(
        "--force-reprocess",
        action="store_true",
        help="Ignore cached results and extract every requested page again",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Drop every cache entry before processing",
    )
    parser.add_argument(
        "--split-compound",
        action="store_true",
        help='Expand names like "English 1-4" into one course per level',
    )
    parser.add_argument(
        "--enable-ocr",
        action="store_true",
        help="Run OCR while converting scanned PDFs",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (logger line numbers, rotating log file)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=(
            "Optional log file path "
            "(default: <output-dir>/harvest.log in detailed mode)"
        ),
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Run the harvesting pipeline over every document in --local-dir."""
    from tqdm import tqdm

    from .cache import IncrementalCache, JsonFileCacheStore
    from .client import create_extraction_client
    from .config import HarvestConfig
    from .errors import ConfigurationError, InvalidRangeError
    from .extraction import extract_document
    from .models import CacheHit, DocRecord, ProgressEvent
    from .processor import ChunkProcessor
    from .sources import (
        create_converter,
        discover_documents,
        load_page_texts,
        needs_converter,
    )
    from .utils import (
        CACHE_FILE_NAME,
        DEFAULT_TEXT_SLICE_BYTES,
        ensure_output_dirs,
        file_fingerprint,
        save_courses_csv,
        save_courses_json,
        save_manifest,
    )

    args = parse_args(argv)
    log_path = _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=args.output_dir,
        log_file=args.log_file,
    )
    if log_path is not None:
        log.info("Writing log file %s", log_path)

    overall_t0 = time.perf_counter()
    courses_dir, cache_dir = ensure_output_dirs(args.output_dir)

    max_age_s = args.cache_max_age_hours * 3600 if args.cache_max_age_hours else None
    cache = IncrementalCache(
        JsonFileCacheStore(args.cache_file or cache_dir / CACHE_FILE_NAME),
        max_age_s=max_age_s,
    )
    if args.clear_cache:
        cache.clear()
    else:
        expired = cache.cleanup()
        if expired:
            log.info("Removed %s expired cache entr%s", expired, "y" if expired == 1 else "ies")

    config = HarvestConfig.from_env(
        args.api_key_file,
        model=args.model,
        max_attempts=args.max_attempts,
        batch_size_pages=args.batch_size,
        max_batch_bytes=args.max_batch_kb * 1024 if args.max_batch_kb else None,
    )
    text_slice_bytes = config.max_batch_bytes or DEFAULT_TEXT_SLICE_BYTES
    log.info(
        "Settings: model=%s batch_size=%s max_batch_bytes=%s max_attempts=%s",
        config.model,
        config.batch_size_pages,
        config.max_batch_bytes,
        config.max_attempts,
    )

    documents = discover_documents(args.local_dir)
    log.info("Documents discovered in %s: %s", args.local_dir, len(documents))
    if not documents:
        log.warning("No supported documents found. Exiting.")
        sys.exit(0)

    client = None
    converter = None
    records: list[DocRecord] = []
    quota_exhausted = False

    try:
        for path in documents:
            t0 = time.perf_counter()
            record = DocRecord(filename=path.name, filepath=str(path))
            records.append(record)
            record.fingerprint = file_fingerprint(path)

            # --- Resume check: a full cache hit needs no text extraction ---
            entry = None if args.force_reprocess else cache.get(record.fingerprint)
            if entry is not None and entry.total_pages:
                start = max(1, args.start_page)
                end = min(args.end_page or entry.total_pages, entry.total_pages)
                lookup = cache.lookup(record.fingerprint, end, start)
                if lookup.hit is CacheHit.FULL:
                    record.total_pages = entry.total_pages
                    record.range_start = start
                    record.range_end = end
                    record.cached_from = entry.cached_from
                    record.cached_through = entry.cached_through
                    record.courses_found = len(lookup.courses)
                    record.cache_hit = CacheHit.FULL.value
                    record.status = "complete"
                    save_courses_csv(courses_dir / f"{path.stem}.csv", lookup.courses)
                    save_courses_json(courses_dir / f"{path.stem}.json", lookup.courses)
                    record.elapsed_s = round(time.perf_counter() - t0, 2)
                    log.info("%s: loaded %s course(s) from cache", path.name, len(lookup.courses))
                    continue

            if quota_exhausted:
                record.status = "skipped"
                record.halt_reason = "quota_exhausted"
                continue

            try:
                if needs_converter(path) and converter is None:
                    converter = create_converter(enable_ocr=args.enable_ocr)
                pages = load_page_texts(path, converter, max_text_bytes=text_slice_bytes)
            except Exception:
                record.status = "error"
                record.error = traceback.format_exc()
                log.error("%s: text extraction failed - %s", path.name, record.error)
                continue
            record.total_pages = len(pages)

            if client is None:
                client = create_extraction_client(config)
            processor = ChunkProcessor(
                client,
                batch_size_pages=config.batch_size_pages,
                max_batch_bytes=config.max_batch_bytes,
                source_file=path.name,
                split_compounds=args.split_compound,
            )

            with tqdm(total=0, desc=path.name, unit="batch", leave=False) as bar:

                def _on_progress(event: ProgressEvent, bar: Any = bar) -> None:
                    if event.status == "planned":
                        bar.total += event.total_batches
                        bar.refresh()
                    elif event.status in ("batch_complete", "batch_error"):
                        bar.update(1)
                        bar.set_postfix(courses=event.courses_found, page=event.pages_processed)
                    elif event.status == "waiting":
                        bar.set_postfix_str(event.message)

                try:
                    result = extract_document(
                        pages,
                        record.fingerprint,
                        cache,
                        processor,
                        args.start_page,
                        args.end_page,
                        on_progress=_on_progress,
                        use_cache=not args.force_reprocess,
                    )
                except InvalidRangeError as exc:
                    record.status = "error"
                    record.error = str(exc)
                    log.error("%s: %s", path.name, exc)
                    continue

            record.range_start = result.range_start
            record.range_end = result.range_end
            record.cached_from = result.cached_from
            record.cached_through = result.cached_through
            record.courses_found = len(result.courses)
            record.cache_hit = result.cache_hit.value
            record.status = "complete" if result.is_complete else "partial"
            if result.run is not None:
                record.halt_reason = result.run.halt_reason
            if result.errors:
                record.error = "; ".join(result.errors)[:500]
            if result.courses:
                save_courses_csv(courses_dir / f"{path.stem}.csv", result.courses)
                save_courses_json(courses_dir / f"{path.stem}.json", result.courses)
            record.elapsed_s = round(time.perf_counter() - t0, 2)

            if not result.is_complete:
                log.warning(
                    "%s: incomplete - pages %s-%s of %s-%s covered, %s course(s) so far",
                    path.name,
                    result.cached_from,
                    result.cached_through,
                    result.range_start,
                    result.range_end,
                    len(result.courses),
                )
            if result.quota_exhausted:
                quota_exhausted = True
                log.error("Daily quota exhausted; remaining documents will be skipped")
    except ConfigurationError as exc:
        log.error("%s", exc)
        sys.exit(1)
    finally:
        if client is not None:
            client.close()

    manifest_path = save_manifest(args.output_dir, records)

    # --- Summary ---
    complete = [r for r in records if r.status == "complete"]
    partial = [r for r in records if r.status == "partial"]
    failed = [r for r in records if r.status == "error"]
    skipped = [r for r in records if r.status == "skipped"]
    from_cache = [r for r in records if r.cache_hit == CacheHit.FULL.value]
    log.info("=" * 60)
    log.info("HARVEST COMPLETE")
    log.info(f"  Documents:        {len(records)}")
    log.info(f"  Complete:         {len(complete)}")
    log.info(f"  From cache:       {len(from_cache)}")
    log.info(f"  Partial:          {len(partial)}")
    log.info(f"  Failed:           {len(failed)}")
    log.info(f"  Skipped (quota):  {len(skipped)}")
    log.info(f"  Courses found:    {sum(r.courses_found for r in records)}")
    log.info(f"  Courses dir:      {courses_dir}")
    log.info(f"  Manifest:         {manifest_path}")
    log.info(f"  Total runtime:    {time.perf_counter() - overall_t0:.1f}s")
    if failed:
        log.warning("Failed files:")
        for r in failed:
            log.warning(f"  - {r.filename}: {(r.error or 'unknown')[:200]}")
