"""
Runtime wiring
══════════════

build_runtime(settings) assembles every collaborator from explicit settings:

    registry      SqlDocumentRegistry (sqlite/postgres) | InMemoryDocumentRegistry
    spool         ContentSpool(settings.spool_dir)
    extractors    ExtractorSet with the configured OCR engine
    stores        StoreSet (vector + graph backends, built lazily)
    orchestrator  IngestionOrchestrator
    dispatcher    IngestionWorkerPool (local) | CeleryTaskPublisher (celery)

The FastAPI lifespan and each Celery task build one Runtime and close it on
the way out. Tests pass ready-made registry / stores / extractors.

recover_submissions() is the crash-recovery sweep run at startup and by
Celery beat.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Protocol

from docingest.core.config import Settings
from docingest.core.errors import InvalidTransition, QueueFull
from docingest.db.session import create_engine_from_settings, init_models
from docingest.pipeline.orchestrator import IngestionOrchestrator
from docingest.pipeline.spool import ContentSpool
from docingest.processing.extractors import ExtractorSet, build_extractor_set
from docingest.processing.ocr import build_ocr_engine
from docingest.registry.base import DocumentRegistry, utcnow
from docingest.registry.memory import InMemoryDocumentRegistry
from docingest.registry.sql import SqlDocumentRegistry
from docingest.schemas.documents import SubmissionStatus
from docingest.stores.factory import StoreSet, build_store_set
from docingest.workers.pool import IngestionWorkerPool
from docingest.workers.publisher import CeleryTaskPublisher

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    async def enqueue(
        self, submission_id: uuid.UUID, block: bool = False, timeout: Optional[float] = None,
    ) -> bool: ...

    async def cancel(self, submission_id: uuid.UUID) -> bool: ...

    def stats(self) -> dict[str, Any]: ...


@dataclass
class Runtime:
    settings:     Settings
    registry:     DocumentRegistry
    spool:        ContentSpool
    extractors:   ExtractorSet
    stores:       StoreSet
    orchestrator: IngestionOrchestrator
    dispatcher:   Optional[Dispatcher] = None
    pool:         Optional[IngestionWorkerPool] = None

    async def start(self) -> None:
        if self.pool is not None:
            self.pool.start()

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.stop()
        await self.stores.close()
        await self.registry.close()
        logger.info("Runtime closed")


async def build_registry(settings: Settings) -> DocumentRegistry:
    if settings.registry_backend == "memory":
        return InMemoryDocumentRegistry()

    engine = create_engine_from_settings(settings)
    await init_models(engine)
    return SqlDocumentRegistry(engine, dispose_engine=True)


async def build_runtime(
    settings: Settings,
    registry: Optional[DocumentRegistry] = None,
    stores: Optional[StoreSet] = None,
    extractors: Optional[ExtractorSet] = None,
    with_dispatcher: bool = True,
) -> Runtime:
    registry   = registry or await build_registry(settings)
    spool      = ContentSpool(settings.spool_dir)
    extractors = extractors or build_extractor_set(settings, build_ocr_engine(settings))
    stores     = stores or build_store_set(settings)

    orchestrator = IngestionOrchestrator(
        registry,
        extractors,
        stores,
        spool=spool,
        mixed_outcome_policy=settings.mixed_outcome_policy,
    )

    runtime = Runtime(
        settings=settings,
        registry=registry,
        spool=spool,
        extractors=extractors,
        stores=stores,
        orchestrator=orchestrator,
    )

    if with_dispatcher:
        if settings.dispatch_mode == "celery":
            runtime.dispatcher = CeleryTaskPublisher(registry, spool)
        else:
            runtime.pool = IngestionWorkerPool(
                orchestrator,
                spool,
                registry,
                size=settings.worker_pool_size,
                max_queue=settings.worker_queue_maxsize,
            )
            runtime.dispatcher = runtime.pool

    logger.info(
        "Runtime built | registry=%s dispatch=%s vector=%s ocr=%s",
        type(registry).__name__,
        settings.dispatch_mode if with_dispatcher else "none",
        settings.vector_store_backend,
        settings.ocr_backend,
    )
    return runtime


# ---------------------------------------------------------------------------
# Crash recovery
# ---------------------------------------------------------------------------

async def recover_submissions(
    registry: DocumentRegistry,
    spool: ContentSpool,
    dispatcher: Optional[Dispatcher],
    stale_after: Optional[timedelta] = None,
    limit: Optional[int] = None,
) -> dict[str, int]:
    """
    Bring submissions orphaned by a crash to a consistent state.

      processing             → failed (stage=worker, kind=interrupted)
      queued, content spooled → re-enqueued
      queued, no content      → failed (stage=queue, kind=content_missing)

    With `stale_after`, only rows idle for at least that long are touched,
    so a periodic sweep leaves runs that are still alive alone.
    """
    counts = {"interrupted": 0, "requeued": 0, "content_missing": 0, "skipped": 0}
    cutoff = utcnow() - stale_after if stale_after is not None else None

    def _is_stale(sub) -> bool:
        return cutoff is None or sub.updated_at <= cutoff

    for sub in await registry.list_by_status(SubmissionStatus.PROCESSING, limit):
        if not _is_stale(sub):
            continue
        try:
            await registry.transition(
                sub.id, SubmissionStatus.FAILED,
                error_detail={
                    "stage":   "worker",
                    "kind":    "interrupted",
                    "message": f"Processing was interrupted at {sub.progress}%",
                },
                expected_status=SubmissionStatus.PROCESSING,
            )
        except InvalidTransition:
            counts["skipped"] += 1
            continue
        counts["interrupted"] += 1
        logger.warning("Recovered interrupted run | submission=%s progress=%d", sub.id, sub.progress)

    for sub in await registry.list_by_status(SubmissionStatus.QUEUED, limit):
        if not _is_stale(sub):
            continue

        if dispatcher is None:
            counts["skipped"] += 1
            continue

        if await spool.has(sub.id):
            try:
                if await dispatcher.enqueue(sub.id, block=True, timeout=5.0):
                    counts["requeued"] += 1
                else:
                    counts["skipped"] += 1
            except QueueFull:
                logger.warning("Recovery stopped, queue full | submission=%s", sub.id)
                break
            continue

        try:
            await registry.transition(
                sub.id, SubmissionStatus.FAILED,
                error_detail={
                    "stage":   "queue",
                    "kind":    "content_missing",
                    "message": "Submission content was lost before processing",
                },
                expected_status=SubmissionStatus.QUEUED,
            )
        except InvalidTransition:
            counts["skipped"] += 1
            continue
        counts["content_missing"] += 1
        logger.warning("Recovered queued submission without content | submission=%s", sub.id)

    logger.info("Recovery complete | %s", " ".join(f"{k}={v}" for k, v in counts.items()))
    return counts
