"""
Celery Tasks: distributed ingestion

Task: process_submission
  1. Build a Runtime (registry, spool, extractors, stores, orchestrator)
  2. Load the submission's content from the shared spool
  3. IngestionOrchestrator.run() → terminal state in the registry
  4. Close the runtime

  A claim conflict (another worker already ran this id) is logged and the
  task returns "skipped"; it is never retried, since the registry already
  holds the outcome.

Task: recover_submissions
  Beat task: fails runs stuck in processing and re-publishes stale queued
  submissions whose content is still spooled.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import uuid
from datetime import timedelta
from typing import Any

from docingest.core.errors import InvalidTransition, NotFound
from docingest.schemas.documents import SubmissionStatus
from docingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docingest.workers.tasks.process_submission",
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_submission(submission_id: str) -> dict[str, Any]:
    return run_async(_process_submission_async(uuid.UUID(submission_id)))


async def _process_submission_async(submission_id: uuid.UUID) -> dict[str, Any]:
    from docingest.core.config import get_settings
    from docingest.runtime import build_runtime

    runtime = await build_runtime(get_settings(), with_dispatcher=False)
    try:
        try:
            current = await runtime.registry.get(submission_id)
        except NotFound:
            logger.error("Submission not found | submission=%s", submission_id)
            return {"status": "not_found"}

        if current.status is not SubmissionStatus.QUEUED:
            logger.warning(
                "Submission already in status=%s, skipping | submission=%s",
                current.status.value, submission_id,
            )
            return {"status": "skipped", "current_status": current.status.value}

        content = await runtime.spool.load(submission_id)
        if content is None:
            logger.error("Content missing | submission=%s", submission_id)
            try:
                await runtime.registry.transition(
                    submission_id, SubmissionStatus.FAILED,
                    error_detail={
                        "stage":   "queue",
                        "kind":    "content_missing",
                        "message": "No spooled content for this submission",
                    },
                    expected_status=SubmissionStatus.QUEUED,
                )
            except InvalidTransition as exc:
                logger.warning("Claim conflict | submission=%s error=%s", submission_id, exc)
                return {"status": "skipped", "reason": "claim_conflict"}
            return {"status": SubmissionStatus.FAILED.value, "submission_id": str(submission_id)}

        try:
            final = await runtime.orchestrator.run(submission_id, content)
        except InvalidTransition as exc:
            logger.warning("Claim conflict | submission=%s error=%s", submission_id, exc)
            return {"status": "skipped", "reason": "claim_conflict"}

        return {
            "status":        final.status.value,
            "submission_id": str(final.id),
            "progress":      final.progress,
        }
    finally:
        await runtime.close()


# ---------------------------------------------------------------------------
# Recovery sweep, every 5 minutes via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docingest.workers.tasks.recover_submissions",
    acks_late=True,
    soft_time_limit=240,
    time_limit=270,
)
def recover_submissions() -> dict[str, int]:
    return run_async(_recover_submissions_async())


async def _recover_submissions_async() -> dict[str, int]:
    from docingest.core.config import get_settings
    from docingest.runtime import build_runtime, recover_submissions as sweep
    from docingest.workers.publisher import CeleryTaskPublisher

    settings = get_settings()
    runtime = await build_runtime(settings, with_dispatcher=False)
    try:
        return await sweep(
            runtime.registry,
            runtime.spool,
            CeleryTaskPublisher(runtime.registry, runtime.spool, task=process_submission),
            stale_after=timedelta(seconds=settings.recovery_stale_after_seconds),
            limit=settings.recovery_batch_size,
        )
    finally:
        await runtime.close()
