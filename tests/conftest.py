"""
Root conftest.py: Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : settings, registry, spool, fake stores, fake OCR engine,
                    extractor set, orchestrator factory, sample document bytes

Environment strategy:
  - The registry is in-memory unless a test builds a SqlDocumentRegistry on
    a tmp_path SQLite file.
  - Vector and graph stores are FakeStore instances: they record every call
    and keep one record set per store key, replacing on re-ingest, exactly
    like the real adapters.
  - OCR is FakeOcrEngine, so no tesseract or AWS is needed.
  - Sample PDF and EPUB bytes are produced with PyMuPDF and ebooklib, the
    same libraries the extractors read them with.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no network)
  pytest -m integration           # HTTP router tests (ASGI in-process)
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Mapping, Optional

import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("REGISTRY_BACKEND",      "memory")
os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DISPATCH_MODE",         "local")
os.environ.setdefault("OCR_BACKEND",           "none")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "false")

from docingest.core.config import Settings  # noqa: E402
from docingest.core.errors import StoreError, StoreErrorKind  # noqa: E402
from docingest.pipeline.orchestrator import IngestionOrchestrator  # noqa: E402
from docingest.pipeline.spool import ContentSpool  # noqa: E402
from docingest.processing.extractors import (  # noqa: E402
    EpubExtractor,
    ExtractorSet,
    PdfExtractor,
    PlainTextExtractor,
)
from docingest.processing.ocr import OcrEngine, OcrPage, PdfPageRenderer  # noqa: E402
from docingest.registry.memory import InMemoryDocumentRegistry  # noqa: E402
from docingest.schemas.documents import GraphBackend  # noqa: E402
from docingest.stores.base import BaseStore, StoreOutcome  # noqa: E402
from docingest.stores.factory import StoreSet  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeStore(BaseStore):
    """
    In-memory store adapter.

    records  : store key → last text written (a re-ingest replaces, never appends)
    calls    : every (text, metadata, key) received, in order
    fail_with: StoreErrorKind to raise on every call, or None
    fail_times: raise only for the first N calls, then succeed
    """

    def __init__(
        self,
        backend: str = "fake-vector",
        role: str = "vector",
        fail_with: Optional[StoreErrorKind] = None,
        fail_times: Optional[int] = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(chunk_size=200, chunk_overlap=20)
        self._backend   = backend
        self.role       = role
        self.fail_with  = fail_with
        self.fail_times = fail_times
        self.delay      = delay
        self.records: dict[str, str] = {}
        self.calls: list[tuple[str, dict[str, Any], str]] = []
        self.active     = 0
        self.max_active = 0
        self.closed     = False

    @property
    def backend(self) -> str:
        return self._backend

    async def ingest(self, text: str, metadata: Mapping[str, Any], submission_id: str) -> StoreOutcome:
        self.calls.append((text, dict(metadata), submission_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with is not None and (self.fail_times is None or len(self.calls) <= self.fail_times):
                raise StoreError(self.fail_with, self.backend, f"{self.backend} refused the write")
            self.records[submission_id] = text
            return StoreOutcome(backend=self.backend, records_written=len(self._chunks(text, metadata)))
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


class FakeOcrEngine(OcrEngine):
    """Returns fixed text per page; counts calls; can be made to fail."""

    def __init__(self, text: str = "Recognised scanned text", confidence: Optional[float] = 0.9,
                 error: Optional[Exception] = None) -> None:
        self.text       = text
        self.confidence = confidence
        self.error      = error
        self.calls      = 0

    @property
    def name(self) -> str:
        return "fake-ocr"

    def recognize(self, page_image: bytes) -> OcrPage:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return OcrPage(text=self.text, confidence=self.confidence)


# ─────────────────────────────────────────────────────────────────────────────
# Settings / registry / spool
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        registry_backend="memory",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}",
        spool_dir=str(tmp_path / "spool"),
        ocr_backend="none",
        dispatch_mode="local",
        worker_pool_size=2,
        worker_queue_maxsize=10,
        max_upload_bytes=1024 * 1024,
        app_env="development",
    )


@pytest.fixture
def registry() -> InMemoryDocumentRegistry:
    return InMemoryDocumentRegistry()


@pytest.fixture
def spool(tmp_path) -> ContentSpool:
    return ContentSpool(str(tmp_path / "spool"))


# ─────────────────────────────────────────────────────────────────────────────
# Stores / OCR / extractors
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_store():
    """Factory: FakeStore(backend=..., role=..., fail_with=..., fail_times=..., delay=...)."""
    return FakeStore


@pytest.fixture
def make_ocr():
    """Factory: FakeOcrEngine(text=..., confidence=..., error=...)."""
    return FakeOcrEngine


@pytest.fixture
def vector_store() -> FakeStore:
    return FakeStore(backend="fake-vector", role="vector")


@pytest.fixture
def graph_store() -> FakeStore:
    return FakeStore(backend="fake-neo4j", role="graph")


@pytest.fixture
def store_set(vector_store, graph_store) -> StoreSet:
    return StoreSet(vector=vector_store, graph={GraphBackend.NEO4J: graph_store})


@pytest.fixture
def fake_ocr() -> FakeOcrEngine:
    return FakeOcrEngine()


@pytest.fixture
def extractors(fake_ocr) -> ExtractorSet:
    return ExtractorSet([
        PdfExtractor(fake_ocr, renderer=PdfPageRenderer(dpi=50), min_chars_per_page=50),
        PlainTextExtractor(),
        EpubExtractor(),
    ])


@pytest.fixture
def make_orchestrator(registry, extractors, store_set, spool):
    """Factory: IngestionOrchestrator over the shared fakes, overridable per test."""
    def _build(policy: str = "fail", stores: Optional[StoreSet] = None,
               extractor_set: Optional[ExtractorSet] = None) -> IngestionOrchestrator:
        return IngestionOrchestrator(
            registry,
            extractor_set or extractors,
            stores or store_set,
            spool=spool,
            mixed_outcome_policy=policy,
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

SAMPLE_TEXT = (
    "Ingestion pipelines normalize documents into plain text.\n"
    "Each submission moves from queued to processing to a terminal state.\n"
)


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return SAMPLE_TEXT.encode("utf-8")


@pytest.fixture
def sample_md_bytes() -> bytes:
    return (
        "# Title\n\nIntro paragraph.\n\n## Section A\n\nBody of section A.\n\n"
        "## Section B\n\nBody of section B.\n"
    ).encode("utf-8")


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Two-page PDF with a real text layer (well above the OCR threshold)."""
    import fitz

    doc = fitz.open()
    for n in range(2):
        page = doc.new_page()
        page.insert_text(
            (72, 72),
            f"Page {n + 1}: the quick brown fox jumps over the lazy dog.\n"
            "A native text layer means no OCR is needed for this page.",
            fontsize=11,
        )
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def scanned_pdf_bytes() -> bytes:
    """PDF whose pages carry no text layer at all, like an image-only scan."""
    import fitz

    doc = fitz.open()
    for _ in range(2):
        page = doc.new_page()
        page.draw_rect(fitz.Rect(72, 72, 300, 200), color=(0, 0, 0), fill=(0.5, 0.5, 0.5))
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def sample_epub_bytes(tmp_path) -> bytes:
    """Two-chapter EPUB written with ebooklib."""
    from ebooklib import epub

    book = epub.EpubBook()
    book.set_identifier("docingest-sample")
    book.set_title("Sample Book")
    book.set_language("en")
    book.add_author("Ada Writer")

    chapters = []
    for n, body in enumerate(("The first chapter opens here.", "The second chapter closes the book."), start=1):
        chapter = epub.EpubHtml(title=f"Chapter {n}", file_name=f"chap_{n}.xhtml", lang="en")
        chapter.content = f"<html><body><h1>Chapter {n}</h1><p>{body}</p></body></html>"
        book.add_item(chapter)
        chapters.append(chapter)

    book.toc = tuple(chapters)
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = chapters

    path = tmp_path / "sample.epub"
    epub.write_epub(str(path), book)
    return path.read_bytes()
