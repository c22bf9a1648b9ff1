"""
Content spool: submission payloads on local disk.

The queue only carries submission ids; the payload waits here until a
worker picks the id up. This is what makes enqueue(id) possible and lets
startup recovery tell a re-runnable queued submission from one whose
content is gone.

Layout, one directory per submission id:

    <spool_dir>/<id>/content.bin     raw bytes (file) or UTF-8 text (text)
    <spool_dir>/<id>/meta.json       {"kind": "file" | "text", "declared_format": ...}
    <spool_dir>/<id>/extracted.json  {"text": ..., "metadata": {...}}  (cached extraction)

Retention (applied by the orchestrator):
  completed                        → everything removed
  store-stage failure              → raw payload dropped, extraction cached for retry
  retryable extraction failure     → raw payload kept
  non-retryable extraction failure → everything removed
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
import shutil
import uuid
from typing import Optional

from docingest.pipeline.content import SubmissionContent
from docingest.processing.extractors import ExtractedContent

logger = logging.getLogger(__name__)

_CONTENT   = "content.bin"
_META      = "meta.json"
_EXTRACTED = "extracted.json"


class ContentSpool:

    def __init__(self, root: str) -> None:
        self._root = os.path.abspath(root)
        os.makedirs(self._root, exist_ok=True)

    @property
    def root(self) -> str:
        return self._root

    def _dir(self, submission_id: uuid.UUID) -> str:
        return os.path.join(self._root, str(uuid.UUID(str(submission_id))))

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def save(self, submission_id: uuid.UUID, content: SubmissionContent) -> None:
        await self._run(self._save_sync, submission_id, content)

    async def save_extracted(self, submission_id: uuid.UUID, extracted: ExtractedContent) -> None:
        await self._run(self._save_extracted_sync, submission_id, extracted)

    async def load(self, submission_id: uuid.UUID) -> Optional[SubmissionContent]:
        """Cached extraction if present, else the raw payload, else None."""
        return await self._run(self._load_sync, submission_id)

    async def load_extracted(self, submission_id: uuid.UUID) -> Optional[ExtractedContent]:
        return await self._run(self._load_extracted_sync, submission_id)

    async def has(self, submission_id: uuid.UUID) -> bool:
        return await self._run(self._has_sync, submission_id)

    async def drop_raw(self, submission_id: uuid.UUID) -> None:
        await self._run(self._drop_raw_sync, submission_id)

    async def discard(self, submission_id: uuid.UUID) -> None:
        await self._run(shutil.rmtree, self._dir(submission_id), True)

    # ------------------------------------------------------------------
    # Blocking internals
    # ------------------------------------------------------------------

    def _save_sync(self, submission_id: uuid.UUID, content: SubmissionContent) -> None:
        if content.extracted is not None:
            self._save_extracted_sync(submission_id, content.extracted)
            return

        path = self._dir(submission_id)
        os.makedirs(path, exist_ok=True)
        payload = content.text.encode("utf-8") if content.is_raw_text else (content.data or b"")
        _atomic_write(os.path.join(path, _CONTENT), payload)
        _atomic_write(
            os.path.join(path, _META),
            json.dumps({"kind": content.kind, "declared_format": content.declared_format}).encode(),
        )
        logger.debug("Spooled | submission=%s kind=%s bytes=%d", submission_id, content.kind, len(payload))

    def _save_extracted_sync(self, submission_id: uuid.UUID, extracted: ExtractedContent) -> None:
        path = self._dir(submission_id)
        os.makedirs(path, exist_ok=True)
        _atomic_write(
            os.path.join(path, _EXTRACTED),
            json.dumps(extracted.to_dict(), ensure_ascii=False).encode("utf-8"),
        )

    def _load_extracted_sync(self, submission_id: uuid.UUID) -> Optional[ExtractedContent]:
        file = os.path.join(self._dir(submission_id), _EXTRACTED)
        if not os.path.exists(file):
            return None
        with open(file, "rb") as fh:
            return ExtractedContent.from_dict(json.loads(fh.read().decode("utf-8")))

    def _load_sync(self, submission_id: uuid.UUID) -> Optional[SubmissionContent]:
        extracted = self._load_extracted_sync(submission_id)
        if extracted is not None:
            return SubmissionContent.from_extracted(extracted)

        path = self._dir(submission_id)
        content_file = os.path.join(path, _CONTENT)
        meta_file = os.path.join(path, _META)
        if not (os.path.exists(content_file) and os.path.exists(meta_file)):
            return None

        with open(meta_file, "rb") as fh:
            meta = json.loads(fh.read())
        with open(content_file, "rb") as fh:
            payload = fh.read()

        if meta.get("kind") == "text":
            return SubmissionContent.from_text(payload.decode("utf-8"))
        return SubmissionContent.from_bytes(payload, meta.get("declared_format"))

    def _has_sync(self, submission_id: uuid.UUID) -> bool:
        path = self._dir(submission_id)
        return (
            os.path.exists(os.path.join(path, _EXTRACTED))
            or os.path.exists(os.path.join(path, _CONTENT))
        )

    def _drop_raw_sync(self, submission_id: uuid.UUID) -> None:
        path = self._dir(submission_id)
        for name in (_CONTENT, _META):
            try:
                os.remove(os.path.join(path, name))
            except FileNotFoundError:
                pass


def _atomic_write(path: str, payload: bytes) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "wb") as fh:
        fh.write(payload)
    os.replace(tmp, path)
