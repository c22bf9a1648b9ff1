"""
Document Ingestion Service

The ingress side of the pipeline. Every entry point reduces to one of:
  - create a submission, spool its content, enqueue its id
  - read a submission
  - transition a queued submission (cancel)
  - create a follow-up submission for a failed one (retry)

Submit flow:
  1. Validate content (non-empty, size, detectable format for files)
  2. registry.create()                 → queued, progress 0
  3. spool.save()                      → payload on disk, keyed by id
  4. dispatcher.enqueue(id)            → local worker pool or Celery broker
  5. QueueFull                         → submission failed(queue_full), error re-raised

Retry never re-opens a terminal record. It creates a new submission whose
metadata carries retry_of and lineage_id (the first submission's id), so
every store write lands on the same key and replaces the earlier records.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Optional

from docingest.core.errors import (
    InvalidSubmission,
    InvalidTransition,
    QueueFull,
    RetryUnavailable,
)
from docingest.pipeline.content import SubmissionContent
from docingest.pipeline.spool import ContentSpool
from docingest.processing.formats import detect_format
from docingest.registry.base import DocumentRegistry, Submission
from docingest.schemas.documents import (
    TEXT_INPUT_SOURCE,
    GraphBackend,
    IngestionTarget,
    SubmissionStatus,
)

logger = logging.getLogger(__name__)

# Written by the pipeline itself; a client may not set them
RESERVED_METADATA_KEYS = frozenset({"lineage_id", "retry_of", "retry_attempt", "stores", "warnings"})


def _source_name(filename: str) -> str:
    """Strip any directory component a client may have sent."""
    return filename.replace("\\", "/").rsplit("/", 1)[-1].strip()


def _client_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    if metadata is None:
        return None
    reserved = sorted(RESERVED_METADATA_KEYS.intersection(metadata))
    if reserved:
        raise InvalidSubmission(f"Metadata keys are reserved: {', '.join(reserved)}")
    return dict(metadata)


def retry_target(original: Submission, only_failed: bool) -> IngestionTarget:
    """Narrow a retry to the stores that failed when the other half succeeded."""
    detail = original.error_detail or {}
    if not only_failed or detail.get("stage") != "ingestion" or not detail.get("succeeded"):
        return original.ingestion_target

    failed = set(detail.get("failed") or [])
    if failed == {"vector"}:
        return IngestionTarget.VECTOR
    if failed == {"graph"}:
        return IngestionTarget.GRAPH
    return original.ingestion_target


class IngestionService:

    def __init__(
        self,
        registry: DocumentRegistry,
        spool: ContentSpool,
        dispatcher,
        max_upload_bytes: Optional[int] = None,
    ) -> None:
        self._registry         = registry
        self._spool            = spool
        self._dispatcher       = dispatcher
        self._max_upload_bytes = max_upload_bytes

    @classmethod
    def from_runtime(cls, runtime) -> "IngestionService":
        return cls(
            runtime.registry,
            runtime.spool,
            runtime.dispatcher,
            max_upload_bytes=runtime.settings.max_upload_bytes,
        )

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit_file(
        self,
        filename: str,
        data: bytes,
        target: IngestionTarget | str,
        graph_backend: GraphBackend | str | None = None,
        declared_format: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Submission:
        """
        Raises:
            InvalidSubmission: empty/oversized file, invalid target or reserved metadata keys
            ExtractionError:   unsupported_format, detected before anything is stored
            QueueFull:         the dispatcher refused the id
        """
        metadata = _client_metadata(metadata)
        source_name = _source_name(filename or "")
        if not data:
            raise InvalidSubmission("Uploaded file is empty")
        if self._max_upload_bytes and len(data) > self._max_upload_bytes:
            raise InvalidSubmission(
                f"File is {len(data)} bytes, limit is {self._max_upload_bytes}"
            )

        fmt = detect_format(source_name, declared_format, data[:512])

        submission_id = await self._registry.create(source_name, target, graph_backend, metadata)
        await self._spool.save(submission_id, SubmissionContent.from_bytes(data, declared_format))
        logger.info(
            "File submitted | submission=%s source=%s format=%s bytes=%d",
            submission_id, source_name, fmt.value, len(data),
        )
        await self._dispatch(submission_id)
        return await self._registry.get(submission_id)

    async def submit_text(
        self,
        text: str,
        target: IngestionTarget | str,
        graph_backend: GraphBackend | str | None = None,
        source_name: str = TEXT_INPUT_SOURCE,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Submission:
        if text is None or not text.strip():
            raise InvalidSubmission("Text must not be empty")
        metadata = _client_metadata(metadata)

        submission_id = await self._registry.create(
            source_name or TEXT_INPUT_SOURCE, target, graph_backend, metadata,
        )
        await self._spool.save(submission_id, SubmissionContent.from_text(text))
        logger.info(
            "Text submitted | submission=%s source=%s chars=%d",
            submission_id, source_name, len(text),
        )
        await self._dispatch(submission_id)
        return await self._registry.get(submission_id)

    async def _dispatch(self, submission_id: uuid.UUID) -> None:
        try:
            await self._dispatcher.enqueue(submission_id)
        except QueueFull as exc:
            await self._registry.transition(
                submission_id, SubmissionStatus.FAILED,
                error_detail={"stage": "queue", "kind": "queue_full", "message": exc.message},
                expected_status=SubmissionStatus.QUEUED,
            )
            await self._spool.discard(submission_id)
            raise

    # ------------------------------------------------------------------
    # Query / control
    # ------------------------------------------------------------------

    async def get_status(self, submission_id: uuid.UUID) -> Submission:
        return await self._registry.get(submission_id)

    async def cancel(self, submission_id: uuid.UUID) -> Submission:
        """Raises NotFound, or InvalidTransition when the submission is no longer queued."""
        current = await self._registry.get(submission_id)
        if not await self._dispatcher.cancel(submission_id):
            latest = await self._registry.get(submission_id)
            raise InvalidTransition(
                f"Submission {current.id} is {latest.status.value}; "
                f"only queued submissions can be cancelled"
            )
        return await self._registry.get(submission_id)

    async def retry(self, submission_id: uuid.UUID, only_failed: bool = True) -> Submission:
        """
        Re-run a failed submission as a new submission.

        Raises:
            NotFound:         unknown id
            RetryUnavailable: not failed, failure is permanent, or content is gone
        """
        original = await self._registry.get(submission_id)
        if original.status is not SubmissionStatus.FAILED:
            raise RetryUnavailable(
                f"Submission {original.id} is {original.status.value}; only failed submissions can be retried"
            )

        detail = original.error_detail or {}
        if detail.get("stage") == "extraction" and not detail.get("retryable", False):
            raise RetryUnavailable(
                f"Submission {original.id} failed extraction with '{detail.get('kind')}', "
                f"which does not change on retry"
            )

        content = await self._spool.load(original.id)
        if content is None:
            raise RetryUnavailable(f"Content for submission {original.id} is no longer available")

        target = retry_target(original, only_failed)
        lineage_id = original.metadata.get("lineage_id") or str(original.id)
        metadata = {
            "retry_of":      str(original.id),
            "lineage_id":    lineage_id,
            "retry_attempt": int(original.metadata.get("retry_attempt", 0)) + 1,
        }

        new_id = await self._registry.create(
            original.source_name,
            target,
            original.graph_backend if target.includes_graph else None,
            metadata,
        )
        await self._spool.save(new_id, content)
        logger.info(
            "Retry submitted | submission=%s retry_of=%s lineage=%s target=%s content=%s",
            new_id, original.id, lineage_id, target.value, content.kind,
        )
        await self._dispatch(new_id)
        await self._spool.discard(original.id)
        return await self._registry.get(new_id)
