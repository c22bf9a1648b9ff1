"""
Extractor Set: Raw Bytes → Normalized Text + Metadata
═════════════════════════════════════════════════════════

One strategy per document format, registered in a lookup table
(ExtractorSet) keyed by DocumentFormat:

  PDF        PdfExtractor        native text layer (PyMuPDF); OCR fallback
                                 when the layer is near-empty
  TXT / MD   PlainTextExtractor  strict decode (UTF-8, or UTF-16 with BOM)
  EPUB       EpubExtractor       spine order, one chapter per XHTML item;
                                 chapter titles + offsets kept in metadata
  DOC / DOCX WordExtractor       render → OCR is the only strategy; this is
                                 the extension point for a native parser

Scanned-PDF rule:
  meaningful chars = printable, non-whitespace characters of the native layer
  if meaningful chars / page_count < ocr_min_chars_per_page (default 50)
      → render every page and run OCR once over the page set

Failure contract (all raise ExtractionError):
  corrupt             unreadable file, or no text at all after extraction
  unsupported_format  no strategy for the format
  invalid_encoding    TXT/MD bytes that do not decode, or contain NUL
  ocr_unavailable     OCR needed but disabled, or the engine failed
                      (the only kind eligible for a later retry)

Empty text is never returned as success.

Extractors are synchronous and stateless; the orchestrator runs them in a
thread executor.
"""

from __future__ import annotations

import codecs
import logging
import os
import re
import tempfile
import time
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from docingest.core.config import Settings
from docingest.core.errors import ExtractionError, ExtractionErrorKind
from docingest.processing.formats import DocumentFormat, detect_format
from docingest.processing.ocr import (
    OcrEngine,
    OfficePageRenderer,
    PdfPageRenderer,
)

logger = logging.getLogger(__name__)

# Collapse excessive whitespace while preserving paragraph breaks.
_MULTI_NEWLINE = re.compile(r"\n{3,}")
_MULTI_SPACE   = re.compile(r"[ \t]{2,}")
_MD_HEADING    = re.compile(r"^#{1,6}\s", re.MULTILINE)
_HEADING_TAG   = re.compile(r"^h[1-3]$")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ExtractedContent:
    """
    Output of one extraction run.

    Not persisted by the registry. The spool keeps a copy only when store
    ingestion fails, so a retry can skip extraction.
    """
    text:     str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "metadata": self.metadata}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractedContent":
        return cls(text=data["text"], metadata=dict(data.get("metadata") or {}))


def meaningful_char_count(text: str) -> int:
    return sum(1 for ch in text if ch.isprintable() and not ch.isspace())


def _ocr_pages(engine: Optional[OcrEngine], images: list[bytes], what: str) -> tuple[str, Optional[float]]:
    """Run the OCR engine over every page image; returns (text, mean confidence)."""
    if engine is None:
        raise ExtractionError(
            ExtractionErrorKind.OCR_UNAVAILABLE,
            f"OCR is required for {what} but no OCR engine is configured",
        )

    texts: list[str] = []
    confidences: list[float] = []
    t0 = time.monotonic()

    for page_number, image in enumerate(images, start=1):
        try:
            page = engine.recognize(image)
        except ExtractionError:
            raise
        except Exception as exc:
            logger.error(
                "OCR failed | engine=%s page=%d error=%s", engine.name, page_number, exc,
            )
            raise ExtractionError(
                ExtractionErrorKind.OCR_UNAVAILABLE,
                f"OCR engine '{engine.name}' failed on page {page_number}: {exc}",
            ) from exc

        if page.text.strip():
            texts.append(page.text.strip())
        if page.confidence is not None:
            confidences.append(page.confidence)

    logger.info(
        "OCR | engine=%s pages=%d elapsed_ms=%.0f",
        engine.name, len(images), (time.monotonic() - t0) * 1000,
    )

    text = "\n\n".join(texts)
    if meaningful_char_count(text) == 0:
        raise ExtractionError(
            ExtractionErrorKind.CORRUPT,
            f"OCR recognised no text in {what} ({len(images)} page(s))",
        )

    confidence = round(sum(confidences) / len(confidences), 3) if confidences else None
    return text, confidence


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseExtractor(ABC):
    """
    Abstract base for per-format extraction strategies.

    All implementations:
      - Accept raw bytes, never a file path
      - Return ExtractedContent with non-empty text, or raise ExtractionError
      - Are safe for concurrent use (no shared mutable state)
    """

    formats: frozenset[DocumentFormat] = frozenset()

    def supports(self, fmt: DocumentFormat) -> bool:
        return fmt in self.formats

    @abstractmethod
    def extract(self, data: bytes, fmt: DocumentFormat) -> ExtractedContent:
        """Blocking extraction; run it in a thread executor."""


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfExtractor(BaseExtractor):
    """
    Native text layer first (PyMuPDF), OCR fallback for scanned documents.

    Metadata:
      extraction_method  "native" | "ocr"
      page_count
      native_chars_per_page
      ocr_backend, ocr_confidence   (OCR path only; confidence when reported)
    """

    formats = frozenset({DocumentFormat.PDF})

    def __init__(
        self,
        ocr_engine: Optional[OcrEngine],
        renderer: Optional[PdfPageRenderer] = None,
        min_chars_per_page: int = 50,
    ) -> None:
        self._ocr       = ocr_engine
        self._renderer  = renderer or PdfPageRenderer()
        self._threshold = min_chars_per_page

    def extract(self, data: bytes, fmt: DocumentFormat) -> ExtractedContent:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                if doc.needs_pass:
                    raise ExtractionError(
                        ExtractionErrorKind.CORRUPT, "PDF is password-protected",
                    )
                pages = [page.get_text("text") or "" for page in doc]
        except ExtractionError:
            raise
        except (RuntimeError, ValueError) as exc:
            raise ExtractionError(
                ExtractionErrorKind.CORRUPT, f"Unreadable PDF: {exc}",
            ) from exc

        page_count = len(pages)
        if page_count == 0:
            raise ExtractionError(ExtractionErrorKind.CORRUPT, "PDF has no pages")

        avg_chars = sum(meaningful_char_count(p) for p in pages) / page_count
        metadata: dict[str, Any] = {
            "format":                fmt.value,
            "page_count":            page_count,
            "native_chars_per_page": round(avg_chars, 1),
        }

        if avg_chars >= self._threshold:
            logger.info("PDF native | pages=%d avg_chars_per_page=%.0f", page_count, avg_chars)
            text = "\n\n".join(p.strip() for p in pages if p.strip())
            metadata["extraction_method"] = "native"
            return ExtractedContent(text=text, metadata=metadata)

        logger.info(
            "PDF likely scanned, falling back to OCR | pages=%d avg_chars_per_page=%.0f threshold=%d",
            page_count, avg_chars, self._threshold,
        )
        if self._ocr is None:
            raise ExtractionError(
                ExtractionErrorKind.OCR_UNAVAILABLE,
                f"PDF has no usable text layer ({avg_chars:.0f} chars/page) "
                f"and no OCR engine is configured",
            )

        images = self._renderer.render(data)
        text, confidence = _ocr_pages(self._ocr, images, "scanned PDF")

        metadata["extraction_method"] = "ocr"
        metadata["ocr_backend"]       = self._ocr.name
        if confidence is not None:
            metadata["ocr_confidence"] = confidence
        return ExtractedContent(text=text, metadata=metadata)


# ---------------------------------------------------------------------------
# TXT / MD
# ---------------------------------------------------------------------------

class PlainTextExtractor(BaseExtractor):
    """Direct read. The decoded text is passed through verbatim."""

    formats = frozenset({DocumentFormat.TXT, DocumentFormat.MD})

    @staticmethod
    def decode(data: bytes) -> tuple[str, str]:
        if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
            encoding = "utf-16"
        else:
            encoding = "utf-8-sig"

        try:
            text = data.decode(encoding)
        except UnicodeDecodeError as exc:
            raise ExtractionError(
                ExtractionErrorKind.INVALID_ENCODING,
                f"Content is not valid {encoding}: {exc.reason} at byte {exc.start}",
            ) from exc

        if "\x00" in text:
            raise ExtractionError(
                ExtractionErrorKind.INVALID_ENCODING, "Content contains NUL characters",
            )
        return text, ("utf-8" if encoding == "utf-8-sig" else encoding)

    def extract(self, data: bytes, fmt: DocumentFormat) -> ExtractedContent:
        text, encoding = self.decode(data)
        if not text.strip():
            raise ExtractionError(ExtractionErrorKind.CORRUPT, "Document is empty")

        metadata: dict[str, Any] = {
            "format":            fmt.value,
            "extraction_method": "direct",
            "encoding":          encoding,
            "line_count":        text.count("\n") + 1,
        }
        if fmt is DocumentFormat.MD:
            metadata["heading_count"] = len(_MD_HEADING.findall(text))
        return ExtractedContent(text=text, metadata=metadata)


# ---------------------------------------------------------------------------
# EPUB
# ---------------------------------------------------------------------------

class EpubExtractor(BaseExtractor):
    """
    Reads the spine in reading order and strips the XHTML of each chapter.

    Chapters are joined with a blank line; metadata["chapters"] records
    {index, title, offset, length} per chapter, offsets into the output
    text, so downstream splitting can respect chapter boundaries.
    """

    formats = frozenset({DocumentFormat.EPUB})

    def extract(self, data: bytes, fmt: DocumentFormat) -> ExtractedContent:
        book = self._read_book(data)
        chapters = self._chapters(book)
        if not chapters:
            raise ExtractionError(ExtractionErrorKind.CORRUPT, "EPUB contains no readable chapters")

        parts: list[str] = []
        index: list[dict[str, Any]] = []
        offset = 0
        for number, (title, body) in enumerate(chapters):
            if parts:
                offset += 2   # "\n\n" separator
            index.append({"index": number, "title": title, "offset": offset, "length": len(body)})
            parts.append(body)
            offset += len(body)

        metadata: dict[str, Any] = {
            "format":            fmt.value,
            "extraction_method": "epub_spine",
            "chapter_count":     len(index),
            "chapters":          index,
        }
        for key, dc_name in (("title", "title"), ("author", "creator"), ("language", "language")):
            values = book.get_metadata("DC", dc_name)
            if values and values[0][0]:
                metadata[key] = values[0][0]

        logger.info("EPUB | chapters=%d chars=%d", len(index), offset)
        return ExtractedContent(text="\n\n".join(parts), metadata=metadata)

    @staticmethod
    def _read_book(data: bytes):
        from ebooklib import epub

        # ebooklib reads from a path
        fd, path = tempfile.mkstemp(suffix=".epub", prefix="docingest-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            return epub.read_epub(path, options={"ignore_ncx": True})
        except (epub.EpubException, zipfile.BadZipFile, KeyError, ValueError, SyntaxError) as exc:
            raise ExtractionError(ExtractionErrorKind.CORRUPT, f"Unreadable EPUB: {exc}") from exc
        finally:
            os.unlink(path)

    @staticmethod
    def _chapters(book) -> list[tuple[str, str]]:
        import ebooklib
        from bs4 import BeautifulSoup

        chapters: list[tuple[str, str]] = []
        for entry in book.spine:
            idref = entry[0] if isinstance(entry, tuple) else entry
            item = book.get_item_with_id(idref)
            if item is None or item.get_type() != ebooklib.ITEM_DOCUMENT:
                continue

            soup = BeautifulSoup(item.get_content().decode("utf-8", errors="replace"), "html.parser")
            heading = soup.find(_HEADING_TAG)

            text = soup.get_text(separator="\n")
            text = _MULTI_SPACE.sub(" ", text)
            text = _MULTI_NEWLINE.sub("\n\n", text)
            text = "\n".join(line.strip() for line in text.splitlines()).strip()
            text = _MULTI_NEWLINE.sub("\n\n", text)
            if not text:
                continue

            title = heading.get_text(strip=True) if heading else item.get_name()
            chapters.append((title, text))
        return chapters


# ---------------------------------------------------------------------------
# DOC / DOCX
# ---------------------------------------------------------------------------

class WordExtractor(BaseExtractor):
    """
    OCR-only: convert to PDF, rasterise, recognise.

    No native path is assumed reliable for Word documents. A native parser
    would slot in here, before the render step.
    """

    formats = frozenset({DocumentFormat.DOC, DocumentFormat.DOCX})

    def __init__(self, ocr_engine: Optional[OcrEngine], renderer: OfficePageRenderer) -> None:
        self._ocr      = ocr_engine
        self._renderer = renderer

    def extract(self, data: bytes, fmt: DocumentFormat) -> ExtractedContent:
        if self._ocr is None:
            raise ExtractionError(
                ExtractionErrorKind.OCR_UNAVAILABLE,
                f"{fmt.value.upper()} extraction requires OCR and no OCR engine is configured",
            )

        images = self._renderer.render(data, suffix=f".{fmt.value}")
        text, confidence = _ocr_pages(self._ocr, images, f"{fmt.value.upper()} document")

        metadata: dict[str, Any] = {
            "format":            fmt.value,
            "extraction_method": "ocr",
            "ocr_backend":       self._ocr.name,
            "page_count":        len(images),
        }
        if confidence is not None:
            metadata["ocr_confidence"] = confidence
        return ExtractedContent(text=text, metadata=metadata)


# ---------------------------------------------------------------------------
# Lookup table
# ---------------------------------------------------------------------------

class ExtractorSet:
    """Format → extractor table; the single entry point used by the orchestrator."""

    def __init__(self, extractors: Iterable[BaseExtractor]) -> None:
        self._by_format: dict[DocumentFormat, BaseExtractor] = {}
        for extractor in extractors:
            for fmt in extractor.formats:
                self._by_format[fmt] = extractor

    def for_format(self, fmt: DocumentFormat) -> BaseExtractor:
        try:
            return self._by_format[fmt]
        except KeyError:
            raise ExtractionError(
                ExtractionErrorKind.UNSUPPORTED_FORMAT,
                f"No extractor registered for '{fmt.value}'",
            ) from None

    def extract(
        self,
        data: bytes,
        source_name: str,
        declared_format: Optional[str] = None,
    ) -> ExtractedContent:
        fmt = detect_format(source_name, declared_format, data[:512])
        t0 = time.monotonic()
        content = self.for_format(fmt).extract(data, fmt)
        logger.info(
            "Extracted | source=%s format=%s method=%s chars=%d elapsed_ms=%.0f",
            source_name, fmt.value, content.metadata.get("extraction_method"),
            len(content.text), (time.monotonic() - t0) * 1000,
        )
        return content


def build_extractor_set(settings: Settings, ocr_engine: Optional[OcrEngine]) -> ExtractorSet:
    pdf_renderer = PdfPageRenderer(dpi=settings.ocr_render_dpi)
    return ExtractorSet([
        PdfExtractor(
            ocr_engine,
            renderer=pdf_renderer,
            min_chars_per_page=settings.ocr_min_chars_per_page,
        ),
        PlainTextExtractor(),
        EpubExtractor(),
        WordExtractor(
            ocr_engine,
            OfficePageRenderer(
                pdf_renderer,
                binary=settings.office_converter_binary,
                timeout_seconds=settings.office_convert_timeout_seconds,
            ),
        ),
    ])
