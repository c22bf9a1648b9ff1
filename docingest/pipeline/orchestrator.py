"""
Ingestion Orchestrator
══════════════════════

Drives one submission from claim to terminal state.

  1. CLAIM        queued → processing (progress 5). The registry transition is
                  the compare-and-set that guarantees a single run per id.
  2. NORMALIZE    raw text            → used verbatim       (progress 30)
                  cached extraction   → reused as-is        (progress 40)
                  file bytes          → Extractor, executor (progress 40)
  3. RESOLVE      ingestion_target → ordered stores (vector, then graph)
  4. INGEST       one store at a time, outcome recorded before moving on,
                  progress checkpoint after each store but the last
  5. FINALIZE     all ok → completed; otherwise the partial-failure policy

Extraction and store errors end here as a failed transition; registry errors
(NotFound, InvalidTransition) propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Literal, Optional

from docingest.core.errors import ExtractionError, RegistryError, StoreError
from docingest.pipeline.content import SubmissionContent
from docingest.pipeline.spool import ContentSpool
from docingest.processing.extractors import ExtractedContent, ExtractorSet
from docingest.registry.base import DocumentRegistry, Submission
from docingest.schemas.documents import SubmissionStatus
from docingest.stores.factory import StoreSet

logger = logging.getLogger(__name__)

PROGRESS_CLAIMED    = 5
PROGRESS_TEXT_READY = 30
PROGRESS_EXTRACTED  = 40

INTERNAL_ERROR = "internal_error"

MixedOutcomePolicy = Literal["fail", "complete_with_warning"]


def store_key_for(submission: Submission) -> str:
    """Key used for every store write; shared by a submission and its retries."""
    return str(submission.metadata.get("lineage_id") or submission.id)


def checkpoint(base: int, done: int, total: int) -> int:
    return base + (100 - base) * done // total


class IngestionOrchestrator:

    def __init__(
        self,
        registry: DocumentRegistry,
        extractors: ExtractorSet,
        stores: StoreSet,
        spool: Optional[ContentSpool] = None,
        mixed_outcome_policy: MixedOutcomePolicy = "fail",
    ) -> None:
        if mixed_outcome_policy not in ("fail", "complete_with_warning"):
            raise ValueError(f"Unknown mixed outcome policy: {mixed_outcome_policy!r}")
        self._registry   = registry
        self._extractors = extractors
        self._stores     = stores
        self._spool      = spool
        self._policy     = mixed_outcome_policy

    @property
    def registry(self) -> DocumentRegistry:
        return self._registry

    async def run(self, submission_id: uuid.UUID, content: SubmissionContent) -> Submission:
        """
        Process one submission to a terminal state and return the final snapshot.

        Raises:
            NotFound:          unknown id
            InvalidTransition: the submission was already claimed or is terminal
        """
        t0 = time.monotonic()
        submission = await self._registry.transition(
            submission_id, SubmissionStatus.PROCESSING,
            progress=PROGRESS_CLAIMED,
            expected_status=SubmissionStatus.QUEUED,
        )
        logger.info(
            "Run claimed | submission=%s source=%s target=%s graph=%s content=%s",
            submission.id, submission.source_name, submission.ingestion_target.value,
            submission.graph_backend.value if submission.graph_backend else None,
            content.kind,
        )

        # ── Normalize ─────────────────────────────────────────────────
        try:
            extracted, base = await self._normalize(submission, content)
        except ExtractionError as exc:
            logger.warning(
                "Extraction failed | submission=%s kind=%s error=%s",
                submission.id, exc.kind.value, exc.message,
            )
            return await self._fail_extraction(submission, exc.to_detail(), keep_raw=exc.retryable)
        except RegistryError:
            raise
        except Exception as exc:
            logger.exception("Unexpected extraction error | submission=%s", submission.id)
            return await self._fail_extraction(
                submission,
                {"kind": INTERNAL_ERROR, "message": f"{type(exc).__name__}: {exc}", "retryable": True},
                keep_raw=True,
            )

        submission = await self._registry.transition(
            submission.id, SubmissionStatus.PROCESSING,
            progress=base,
            metadata=_extraction_summary(extracted, content),
        )

        # ── Ingest ────────────────────────────────────────────────────
        outcomes = await self._ingest_all(submission, extracted, base)
        final = await self._finalize(submission, extracted, outcomes)

        logger.info(
            "Run finished | submission=%s status=%s progress=%d elapsed_ms=%.0f",
            final.id, final.status.value, final.progress, (time.monotonic() - t0) * 1000,
        )
        return final

    # ------------------------------------------------------------------
    # Normalize
    # ------------------------------------------------------------------

    async def _normalize(
        self,
        submission: Submission,
        content: SubmissionContent,
    ) -> tuple[ExtractedContent, int]:
        if content.extracted is not None:
            logger.info("Reusing cached extraction | submission=%s", submission.id)
            return content.extracted, PROGRESS_EXTRACTED

        if content.is_raw_text:
            text = content.text or ""
            return (
                ExtractedContent(
                    text=text,
                    metadata={"format": "text", "extraction_method": "none", "char_count": len(text)},
                ),
                PROGRESS_TEXT_READY,
            )

        loop = asyncio.get_running_loop()
        extracted = await loop.run_in_executor(
            None,
            self._extractors.extract,
            content.data or b"",
            submission.source_name,
            content.declared_format,
        )
        return extracted, PROGRESS_EXTRACTED

    async def _fail_extraction(
        self,
        submission: Submission,
        detail: dict[str, Any],
        keep_raw: bool,
    ) -> Submission:
        failed = await self._registry.transition(
            submission.id, SubmissionStatus.FAILED,
            error_detail={"stage": "extraction", **detail},
        )
        if self._spool is not None and not keep_raw:
            await self._spool.discard(submission.id)
        return failed

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def _ingest_all(
        self,
        submission: Submission,
        extracted: ExtractedContent,
        base: int,
    ) -> dict[str, dict[str, Any]]:
        outcomes: dict[str, dict[str, Any]] = {}

        try:
            plan = self._stores.resolve(submission.ingestion_target, submission.graph_backend)
        except StoreError as exc:
            outcomes["graph"] = {"status": "failed", **exc.to_detail()}
            return outcomes

        key = store_key_for(submission)
        store_metadata = {
            **extracted.metadata,
            "source_name":   submission.source_name,
            "submission_id": str(submission.id),
        }

        for done, (role, get_store) in enumerate(plan, start=1):
            outcomes[role] = await self._ingest_one(submission, role, get_store, extracted.text, store_metadata, key)

            if done < len(plan):
                progress = checkpoint(base, done, len(plan))
                await self._registry.transition(
                    submission.id, SubmissionStatus.PROCESSING,
                    progress=progress,
                    metadata={"stores": dict(outcomes)},
                )
                logger.info(
                    "Checkpoint | submission=%s store=%s progress=%d",
                    submission.id, role, progress,
                )

        return outcomes

    async def _ingest_one(
        self,
        submission: Submission,
        role: str,
        get_store,
        text: str,
        metadata: dict[str, Any],
        key: str,
    ) -> dict[str, Any]:
        backend = role
        try:
            store = get_store()
            backend = store.backend
            t0 = time.monotonic()
            outcome = await store.ingest(text, metadata, key)
        except StoreError as exc:
            logger.warning(
                "Store failed | submission=%s role=%s backend=%s kind=%s error=%s",
                submission.id, role, exc.backend, exc.kind.value, exc.message,
            )
            return {"status": "failed", **exc.to_detail()}
        except Exception as exc:
            logger.exception(
                "Unexpected store error | submission=%s role=%s backend=%s",
                submission.id, role, backend,
            )
            return {
                "status":  "failed",
                "kind":    INTERNAL_ERROR,
                "backend": backend,
                "message": f"{type(exc).__name__}: {exc}",
            }

        logger.info(
            "Store succeeded | submission=%s role=%s backend=%s records=%d elapsed_ms=%.0f",
            submission.id, role, outcome.backend, outcome.records_written,
            (time.monotonic() - t0) * 1000,
        )
        return outcome.to_dict()

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(
        self,
        submission: Submission,
        extracted: ExtractedContent,
        outcomes: dict[str, dict[str, Any]],
    ) -> Submission:
        succeeded = [role for role, o in outcomes.items() if o["status"] == "success"]
        failed    = [role for role, o in outcomes.items() if o["status"] != "success"]

        if not failed:
            final = await self._registry.transition(
                submission.id, SubmissionStatus.COMPLETED,
                metadata={"stores": outcomes},
            )
            await self._discard(submission.id)
            return final

        if succeeded and self._policy == "complete_with_warning":
            warnings = [
                f"{role} ({outcomes[role].get('backend')}): "
                f"{outcomes[role].get('kind')}: {outcomes[role].get('message')}"
                for role in failed
            ]
            logger.warning(
                "Completed with warnings | submission=%s failed=%s",
                submission.id, ",".join(failed),
            )
            final = await self._registry.transition(
                submission.id, SubmissionStatus.COMPLETED,
                metadata={"stores": outcomes, "warnings": warnings},
            )
            await self._discard(submission.id)
            return final

        kinds = {outcomes[role].get("kind") for role in failed}
        if succeeded:
            kind = "partial_failure"
        elif len(kinds) == 1:
            kind = kinds.pop()
        else:
            kind = "store_failure"

        error_detail = {
            "stage":     "ingestion",
            "kind":      kind,
            "message":   "; ".join(
                f"{role}={outcomes[role].get('kind')}: {outcomes[role].get('message')}"
                for role in failed
            ),
            "succeeded": succeeded,
            "failed":    failed,
            "stores":    outcomes,
        }
        final = await self._registry.transition(
            submission.id, SubmissionStatus.FAILED,
            error_detail=error_detail,
            metadata={"stores": outcomes},
        )

        if self._spool is not None:
            await self._spool.save_extracted(submission.id, extracted)
            await self._spool.drop_raw(submission.id)
        return final

    async def _discard(self, submission_id: uuid.UUID) -> None:
        if self._spool is not None:
            await self._spool.discard(submission_id)


def _extraction_summary(extracted: ExtractedContent, content: SubmissionContent) -> dict[str, Any]:
    meta = extracted.metadata
    summary: dict[str, Any] = {
        "format":            meta.get("format"),
        "extraction_method": meta.get("extraction_method"),
        "char_count":        len(extracted.text),
    }
    for key in ("page_count", "chapter_count", "ocr_backend", "ocr_confidence", "encoding"):
        if meta.get(key) is not None:
            summary[key] = meta[key]
    if content.extracted is not None:
        summary["extraction_reused"] = True
    return summary
