from __future__ import annotations

import json
import logging
import re
from logging.handlers import RotatingFileHandler

import httpx
import pytest

from conftest import FakeService, gemini_body
from course_harvester.cache import IncrementalCache, JsonFileCacheStore
from course_harvester.cli import _setup_logging, main, parse_args
from course_harvester.errors import InvalidRangeError
from course_harvester.extraction import extract_document
from course_harvester.models import CacheHit
from course_harvester.processor import ChunkProcessor
from course_harvester.utils import file_fingerprint


def page_courses(request: httpx.Request) -> httpx.Response:
    prompt = json.loads(request.content)["contents"][0]["parts"][0]["text"]
    records = [
        {"CourseName": f"Course {n}", "CourseCode": f"C{n}"}
        for n in re.findall(r"PAGE (\d+)", prompt)
    ]
    return httpx.Response(200, json=gemini_body(json.dumps(records)))


def quota_response() -> httpx.Response:
    return httpx.Response(429, text='{"error": {"message": "Quota exceeded, limit: PerDay"}}')


def _names(courses) -> list[str]:
    return [c.course_name for c in courses]


def test_rerun_is_served_from_cache(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses)
    processor = ChunkProcessor(make_client(service), batch_size_pages=5)

    first = extract_document(catalog_pages, "fp-1", memory_cache, processor)
    assert first.cache_hit is CacheHit.NONE
    assert first.is_complete
    assert service.calls == 2

    second = extract_document(catalog_pages, "fp-1", memory_cache, processor)
    assert second.cache_hit is CacheHit.FULL
    assert second.from_cache
    assert service.calls == 2
    assert _names(second.courses) == _names(first.courses)


def test_extending_range_only_pays_for_new_pages(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses)
    processor = ChunkProcessor(make_client(service), batch_size_pages=5)

    first = extract_document(catalog_pages, "fp-1", memory_cache, processor, 1, 5)
    assert service.calls == 1
    assert first.cached_through == 5

    second = extract_document(catalog_pages, "fp-1", memory_cache, processor, 1, 10)
    assert second.cache_hit is CacheHit.PARTIAL
    assert service.calls == 2
    assert "PAGE 6" in service.prompts()[1]
    assert "PAGE 5" not in service.prompts()[1]
    assert _names(second.courses) == [f"Course {n}" for n in range(1, 11)]
    assert memory_cache.get("fp-1").cached_through == 10


def test_empty_result_is_not_cached(make_client, memory_cache, catalog_pages):
    service = FakeService(httpx.Response(200, json=gemini_body("[]")))
    processor = ChunkProcessor(make_client(service), batch_size_pages=5)

    result = extract_document(catalog_pages, "fp-1", memory_cache, processor)
    assert result.courses == []
    assert memory_cache.get("fp-1") is None

    extract_document(catalog_pages, "fp-1", memory_cache, processor)
    assert service.calls == 4


def test_quota_halt_keeps_progress_for_resume(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses, page_courses, page_courses, quota_response())
    processor = ChunkProcessor(make_client(service), batch_size_pages=1)

    halted = extract_document(catalog_pages, "fp-1", memory_cache, processor)
    assert halted.quota_exhausted
    assert not halted.is_complete
    assert halted.cached_through == 3
    assert memory_cache.get("fp-1").cached_through == 3

    healthy = FakeService(page_courses)
    processor = ChunkProcessor(make_client(healthy), batch_size_pages=1)
    resumed = extract_document(catalog_pages, "fp-1", memory_cache, processor)

    assert resumed.cache_hit is CacheHit.PARTIAL
    assert healthy.calls == 7
    assert resumed.is_complete
    assert _names(resumed.courses) == [f"Course {n}" for n in range(1, 11)]


def test_failed_batch_is_retried_on_next_run(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses, httpx.Response(500), page_courses)
    processor = ChunkProcessor(make_client(service), batch_size_pages=1)

    first = extract_document(catalog_pages, "fp-1", memory_cache, processor, 1, 3)
    assert _names(first.courses) == ["Course 1", "Course 3"]
    assert first.cached_through == 1

    second = extract_document(catalog_pages, "fp-1", memory_cache, processor, 1, 3)
    assert second.cache_hit is CacheHit.PARTIAL
    assert service.calls == 5
    assert _names(second.courses) == ["Course 1", "Course 3", "Course 2"]
    assert second.cached_through == 3


def test_run_past_cached_prefix_does_not_advance_it(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses)
    processor = ChunkProcessor(make_client(service), batch_size_pages=5)

    extract_document(catalog_pages, "fp-1", memory_cache, processor, 1, 3)
    result = extract_document(catalog_pages, "fp-1", memory_cache, processor, 6, 10)

    assert "PAGE 6" in service.prompts()[1]
    assert result.cached_through == 3
    entry = memory_cache.get("fp-1")
    assert entry.cached_through == 3
    assert len(entry.courses) == 8


def test_cut_off_batch_is_not_marked_processed(make_client, memory_cache, catalog_pages):
    cut_off = '[{"CourseName": "Geometry", "GradeLevel": ["9", "10"]}, {"CourseName": "Trigono'
    service = FakeService(page_courses, httpx.Response(200, json=gemini_body(cut_off)))
    processor = ChunkProcessor(make_client(service), batch_size_pages=5)

    first = extract_document(catalog_pages, "fp-1", memory_cache, processor)
    assert first.cached_through == 5
    assert not first.is_complete
    assert len(first.errors) == 1
    assert memory_cache.get("fp-1").cached_through == 5

    healthy = FakeService(page_courses)
    processor = ChunkProcessor(make_client(healthy), batch_size_pages=5)
    second = extract_document(catalog_pages, "fp-1", memory_cache, processor)

    assert second.cache_hit is CacheHit.PARTIAL
    assert healthy.calls == 1
    assert "PAGE 6" in healthy.prompts()[0]
    assert "PAGE 5" not in healthy.prompts()[0]
    assert second.is_complete
    assert _names(second.courses) == [f"Course {n}" for n in range(1, 11)]


def test_range_after_first_page_is_cached(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses)
    processor = ChunkProcessor(make_client(service), batch_size_pages=5)

    first = extract_document(catalog_pages, "fp-1", memory_cache, processor, 3, 10)
    assert service.calls == 2
    assert (first.cached_from, first.cached_through) == (3, 10)
    assert first.is_complete

    rerun = extract_document(catalog_pages, "fp-1", memory_cache, processor, 3, 10)
    assert rerun.cache_hit is CacheHit.FULL
    assert service.calls == 2
    assert _names(rerun.courses) == [f"Course {n}" for n in range(3, 11)]

    widened = extract_document(catalog_pages, "fp-1", memory_cache, processor, 1, 10)
    assert widened.cache_hit is CacheHit.PARTIAL
    assert service.calls == 3
    assert "PAGE 1" in service.prompts()[2]
    assert "PAGE 2" in service.prompts()[2]
    assert "PAGE 3" not in service.prompts()[2]
    assert (widened.cached_from, widened.cached_through) == (1, 10)
    assert widened.is_complete
    assert sorted(_names(widened.courses)) == sorted(f"Course {n}" for n in range(1, 11))
    assert memory_cache.get("fp-1").span == (1, 10)


def test_force_reprocess_bypasses_cache(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses)
    processor = ChunkProcessor(make_client(service), batch_size_pages=10)

    extract_document(catalog_pages, "fp-1", memory_cache, processor)
    forced = extract_document(catalog_pages, "fp-1", memory_cache, processor, use_cache=False)

    assert service.calls == 2
    assert forced.cache_hit is CacheHit.NONE
    assert len(forced.courses) == 10


def test_invalid_range_raises_before_any_call(make_client, memory_cache, catalog_pages):
    service = FakeService(page_courses)
    processor = ChunkProcessor(make_client(service))
    with pytest.raises(InvalidRangeError):
        extract_document(catalog_pages, "fp-1", memory_cache, processor, 8, 4)
    assert service.calls == 0


def test_parse_args_supports_resume_flags():
    args = parse_args(
        [
            "--local-dir",
            "./catalogs",
            "--end-page",
            "10",
            "--batch-size",
            "3",
            "--force-reprocess",
            "--split-compound",
        ]
    )
    assert args.end_page == 10
    assert args.batch_size == 3
    assert args.force_reprocess is True
    assert args.split_compound is True
    assert args.start_page == 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _write_catalog(path, pages: int) -> None:
    path.write_text("\f".join(f"PAGE {n}\nCourse listing." for n in range(1, pages + 1)), encoding="utf-8")


def _cli_args(local_dir, output_dir, *extra) -> list[str]:
    return [
        "--local-dir",
        str(local_dir),
        "--output-dir",
        str(output_dir),
        "--api-key-file",
        str(local_dir / "no_keys.json"),
        *extra,
    ]


def test_main_extracts_then_serves_rerun_from_cache(tmp_path, monkeypatch, make_client):
    local_dir = tmp_path / "catalogs"
    local_dir.mkdir()
    _write_catalog(local_dir / "catalog.txt", 10)
    output_dir = tmp_path / "out"

    service = FakeService(page_courses)
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(
        "course_harvester.client.create_extraction_client",
        lambda config=None, http_client=None: make_client(service),
    )

    main(_cli_args(local_dir, output_dir))

    assert service.calls == 2
    csv_lines = (output_dir / "courses" / "catalog.csv").read_text(encoding="utf-8").splitlines()
    assert len(csv_lines) == 11
    courses = json.loads((output_dir / "courses" / "catalog.json").read_text(encoding="utf-8"))
    assert courses[0]["SourceFile"] == "catalog.txt"

    cache_file = output_dir / "cache" / "extraction_cache.json"
    cache = IncrementalCache(JsonFileCacheStore(cache_file))
    entry = cache.get(file_fingerprint(local_dir / "catalog.txt"))
    assert entry.cached_through == 10

    main(_cli_args(local_dir, output_dir))

    assert service.calls == 2
    manifest = json.loads((output_dir / "harvest_manifest.json").read_text(encoding="utf-8"))
    assert len(manifest) == 1
    assert manifest[0]["cache_hit"] == "full"
    assert manifest[0]["status"] == "complete"
    assert manifest[0]["courses_found"] == 10


def test_main_rerun_of_later_range_makes_no_calls(tmp_path, monkeypatch, make_client):
    local_dir = tmp_path / "catalogs"
    local_dir.mkdir()
    _write_catalog(local_dir / "catalog.txt", 10)
    output_dir = tmp_path / "out"

    service = FakeService(page_courses)
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(
        "course_harvester.client.create_extraction_client",
        lambda config=None, http_client=None: make_client(service),
    )

    main(_cli_args(local_dir, output_dir, "--start-page", "3", "--batch-size", "5"))
    assert service.calls == 2

    main(_cli_args(local_dir, output_dir, "--start-page", "3", "--batch-size", "5"))

    assert service.calls == 2
    manifest = json.loads((output_dir / "harvest_manifest.json").read_text(encoding="utf-8"))
    assert manifest[0]["cache_hit"] == "full"
    assert manifest[0]["cached_from"] == 3
    assert manifest[0]["complete"] is True


def test_main_quota_halt_skips_remaining_documents(tmp_path, monkeypatch, make_client):
    local_dir = tmp_path / "catalogs"
    local_dir.mkdir()
    _write_catalog(local_dir / "a.txt", 4)
    _write_catalog(local_dir / "b.txt", 4)
    output_dir = tmp_path / "out"

    service = FakeService(quota_response())
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(
        "course_harvester.client.create_extraction_client",
        lambda config=None, http_client=None: make_client(service),
    )

    main(_cli_args(local_dir, output_dir))

    assert service.calls == 1
    manifest = json.loads((output_dir / "harvest_manifest.json").read_text(encoding="utf-8"))
    by_file = {entry["filename"]: entry for entry in manifest}
    assert by_file["a.txt"]["status"] == "partial"
    assert by_file["a.txt"]["halt_reason"] == "quota_exhausted"
    assert by_file["b.txt"]["status"] == "skipped"


def test_detailed_logging_writes_rotating_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_path = _setup_logging(
            verbose=False, detailed_logging=True, output_dir=tmp_path, log_file=None
        )
        assert log_path == tmp_path / "harvest.log"
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert "threadName" not in file_handlers[0].formatter._fmt
        assert "lineno" in file_handlers[0].formatter._fmt
        assert logging.getLogger("httpcore").level == logging.WARNING

        _setup_logging(verbose=True, detailed_logging=False, output_dir=tmp_path, log_file=None)
        assert not any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        assert logging.getLogger("httpx").level == logging.INFO
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def test_main_exits_cleanly_without_documents(tmp_path, monkeypatch):
    local_dir = tmp_path / "empty"
    local_dir.mkdir()
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    with pytest.raises(SystemExit) as exc_info:
        main(_cli_args(local_dir, tmp_path / "out"))
    assert exc_info.value.code == 0
