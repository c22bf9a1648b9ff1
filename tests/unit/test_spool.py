"""
Unit Tests: ContentSpool
═════════════════════════
Coverage targets:
  ✅ file bytes + declared format round-trip through disk
  ✅ raw text keeps its kind (no extraction on reload)
  ✅ cached extraction takes precedence over the raw payload
  ✅ drop_raw keeps the cached extraction; discard removes everything
  ✅ unknown ids load as None; discard is idempotent
"""

from __future__ import annotations

import os
import uuid

import pytest

from docingest.pipeline.content import SubmissionContent
from docingest.pipeline.spool import ContentSpool
from docingest.processing.extractors import ExtractedContent


@pytest.mark.unit
class TestContentSpool:

    async def test_file_payload_survives_a_new_spool(self, spool, tmp_path):
        sid = uuid.uuid4()
        await spool.save(sid, SubmissionContent.from_bytes(b"%PDF-1.7 bytes", "application/pdf"))

        reopened = ContentSpool(spool.root)
        loaded = await reopened.load(sid)

        assert loaded.kind == "file"
        assert loaded.data == b"%PDF-1.7 bytes"
        assert loaded.declared_format == "application/pdf"

    async def test_text_payload_stays_text(self, spool):
        sid = uuid.uuid4()
        await spool.save(sid, SubmissionContent.from_text("déjà vu"))

        loaded = await spool.load(sid)
        assert loaded.is_raw_text
        assert loaded.text == "déjà vu"

    async def test_cached_extraction_wins(self, spool):
        sid = uuid.uuid4()
        await spool.save(sid, SubmissionContent.from_bytes(b"raw"))
        await spool.save_extracted(sid, ExtractedContent("clean text", {"format": "pdf", "page_count": 3}))

        loaded = await spool.load(sid)
        assert loaded.kind == "extracted"
        assert loaded.extracted.text == "clean text"
        assert loaded.extracted.metadata == {"format": "pdf", "page_count": 3}

    async def test_drop_raw_keeps_extraction(self, spool):
        sid = uuid.uuid4()
        await spool.save(sid, SubmissionContent.from_bytes(b"raw"))
        await spool.save_extracted(sid, ExtractedContent("clean text"))
        await spool.drop_raw(sid)

        assert await spool.has(sid)
        assert not os.path.exists(os.path.join(spool.root, str(sid), "content.bin"))
        assert (await spool.load_extracted(sid)).text == "clean text"

    async def test_discard_removes_everything(self, spool):
        sid = uuid.uuid4()
        await spool.save(sid, SubmissionContent.from_text("gone soon"))
        await spool.discard(sid)

        assert not await spool.has(sid)
        assert await spool.load(sid) is None
        await spool.discard(sid)   # second discard is a no-op

    async def test_unknown_id(self, spool):
        sid = uuid.uuid4()
        assert await spool.load(sid) is None
        assert await spool.load_extracted(sid) is None
        await spool.drop_raw(sid)

    async def test_saving_extracted_content_object(self, spool):
        sid = uuid.uuid4()
        await spool.save(sid, SubmissionContent.from_extracted(ExtractedContent("cached")))

        loaded = await spool.load(sid)
        assert loaded.kind == "extracted"
        assert loaded.extracted.text == "cached"
