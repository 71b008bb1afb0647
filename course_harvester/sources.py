"""Document discovery and per-page text loading."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional

from .batching import split_text
from .utils import DEFAULT_TEXT_SLICE_BYTES

log = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".md"}
CONVERTIBLE_SUFFIXES = {".pdf", ".docx", ".html", ".htm"}
SUPPORTED_SUFFIXES = TEXT_SUFFIXES | CONVERTIBLE_SUFFIXES


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


def discover_documents(folder: Path) -> list[Path]:
    """Recursively find supported documents under *folder*, sorted by path."""
    if not folder.exists():
        return []
    return sorted(
        p for p in folder.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
    )


def needs_converter(path: Path) -> bool:
    return path.suffix.lower() in CONVERTIBLE_SUFFIXES


# ---------------------------------------------------------------------------
# Docling conversion
# ---------------------------------------------------------------------------


def create_converter(*, num_threads: int = 4, enable_ocr: bool = False) -> Any:
    """Build a Docling ``DocumentConverter`` tuned for text extraction."""
    t0 = time.time()
    from docling.datamodel.accelerator_options import AcceleratorOptions
    from docling.datamodel.base_models import InputFormat
    from docling.datamodel.pipeline_options import PdfPipelineOptions
    from docling.document_converter import DocumentConverter, PdfFormatOption

    pipeline_options = PdfPipelineOptions(
        do_ocr=enable_ocr,
        accelerator_options=AcceleratorOptions(num_threads=max(1, num_threads)),
    )
    converter = DocumentConverter(
        format_options={
            InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
        }
    )
    log.info("Docling converter initialized (ocr=%s) in %.2fs", enable_ocr, time.time() - t0)
    return converter


def _docling_pages(converter: Any, path: Path) -> list[str]:
    t0 = time.time()
    result = converter.convert(source=str(path))
    doc = result.document
    num_pages = doc.num_pages() if hasattr(doc, "num_pages") else 0
    if num_pages:
        pages = [doc.export_to_markdown(page_no=page_no) for page_no in range(1, num_pages + 1)]
    else:
        # Formats without pagination (docx, html) come back as one blob.
        pages = split_text(doc.export_to_markdown())
    log.info("Converted %s: %s page(s) in %.2fs", path.name, len(pages), time.time() - t0)
    return pages


# ---------------------------------------------------------------------------
# Page text loading
# ---------------------------------------------------------------------------


def load_page_texts(
    path: Path,
    converter: Optional[Any] = None,
    *,
    max_text_bytes: int = DEFAULT_TEXT_SLICE_BYTES,
) -> list[str]:
    """Return one text string per page of *path*, in document order.

    Plain text pages are delimited by form feeds; text without form feeds
    is cut into byte-bounded slices that stand in for pages. Other formats
    go through the Docling *converter*.
    """
    if path.suffix.lower() in TEXT_SUFFIXES:
        text = path.read_text(encoding="utf-8", errors="replace")
        if "\f" in text:
            pages = [page.strip() for page in text.split("\f")]
            if pages and not pages[-1]:
                pages.pop()
            return pages
        return split_text(text, max_text_bytes)

    if converter is None:
        raise ValueError(f"A document converter is required for {path.suffix} files")
    return _docling_pages(converter, path)
