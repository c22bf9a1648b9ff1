"""
In-process Worker Pool

A bounded FIFO of submission ids served by K asyncio worker tasks:

    enqueue(id) ──► asyncio.Queue(maxsize=M) ──► worker 1..K
                                                   │ spool.load(id)
                                                   │ orchestrator.run(id, content)
                                                   ▼
                                                registry

Guarantees:
  - at most K orchestrator runs in flight
  - an id is never pending twice (enqueue returns False for a duplicate)
  - no two workers run the same id: the in-flight set covers this process,
    the registry claim (queued → processing) covers everything else
  - a worker survives any single run; claim conflicts are logged, and any
    other error also marks the submission failed(internal_error) before the
    loop moves on
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional

from docingest.core.errors import InvalidTransition, NotFound, QueueFull
from docingest.pipeline.orchestrator import INTERNAL_ERROR, IngestionOrchestrator
from docingest.pipeline.spool import ContentSpool
from docingest.registry.base import DocumentRegistry
from docingest.schemas.documents import SubmissionStatus

logger = logging.getLogger(__name__)

CANCELLED_DETAIL = {
    "stage":   "queue",
    "kind":    "cancelled",
    "message": "Cancelled before processing started",
}


async def cancel_queued(
    registry: DocumentRegistry,
    spool: Optional[ContentSpool],
    submission_id: uuid.UUID,
) -> bool:
    """
    queued → failed(cancelled). Returns False when the submission has
    already been claimed or is terminal. Raises NotFound for unknown ids.
    """
    try:
        await registry.transition(
            submission_id, SubmissionStatus.FAILED,
            error_detail=CANCELLED_DETAIL,
            expected_status=SubmissionStatus.QUEUED,
        )
    except InvalidTransition:
        current = await registry.get(submission_id)
        logger.info(
            "Cancel refused | submission=%s status=%s", submission_id, current.status.value,
        )
        return False

    if spool is not None:
        await spool.discard(submission_id)
    logger.info("Cancelled | submission=%s", submission_id)
    return True


class IngestionWorkerPool:

    def __init__(
        self,
        orchestrator: IngestionOrchestrator,
        spool: ContentSpool,
        registry: Optional[DocumentRegistry] = None,
        size: int = 4,
        max_queue: int = 1000,
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self._orchestrator = orchestrator
        self._spool        = spool
        self._registry     = registry or orchestrator.registry
        self._size         = size
        self._queue: asyncio.Queue[uuid.UUID] = asyncio.Queue(maxsize=max(0, max_queue))

        self._pending:   set[uuid.UUID] = set()
        self._in_flight: set[uuid.UUID] = set()
        self._workers:   list[asyncio.Task] = []

        self._processed      = 0
        self._conflicts      = 0
        self._peak_in_flight = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"docingest-worker-{n}")
            for n in range(self._size)
        ]
        logger.info("Worker pool started | workers=%d max_queue=%d", self._size, self._queue.maxsize)

    async def join(self) -> None:
        """Wait until every enqueued id has been taken and finished."""
        await self._queue.join()

    async def stop(self, drain: bool = False) -> None:
        if drain:
            await self.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Worker pool stopped | stats=%s", self.stats())

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        submission_id: uuid.UUID,
        block: bool = False,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Put an id on the queue.

        Returns False when the id is already pending or in flight.
        Raises QueueFull when the queue is at capacity and the call does not
        block, or blocking exceeded `timeout` seconds.
        """
        sid = uuid.UUID(str(submission_id))
        if sid in self._pending or sid in self._in_flight:
            logger.info("Enqueue skipped, already scheduled | submission=%s", sid)
            return False

        self._pending.add(sid)
        try:
            if block:
                await asyncio.wait_for(self._queue.put(sid), timeout)
            else:
                self._queue.put_nowait(sid)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            self._pending.discard(sid)
            logger.warning(
                "Queue full | submission=%s queued=%d max=%d",
                sid, self._queue.qsize(), self._queue.maxsize,
            )
            raise QueueFull(f"Ingestion queue is full ({self._queue.maxsize} pending)") from None

        logger.info("Enqueued | submission=%s queued=%d", sid, self._queue.qsize())
        return True

    async def cancel(self, submission_id: uuid.UUID) -> bool:
        """Advisory: only a submission nobody has claimed yet can be cancelled."""
        sid = uuid.UUID(str(submission_id))
        if sid in self._in_flight:
            logger.info("Cancel refused, in flight | submission=%s", sid)
            return False
        cancelled = await cancel_queued(self._registry, self._spool, sid)
        if cancelled:
            self._pending.discard(sid)
        return cancelled

    def stats(self) -> dict[str, Any]:
        return {
            "workers":        self._size,
            "queued":         self._queue.qsize(),
            "in_flight":      len(self._in_flight),
            "processed":      self._processed,
            "conflicts":      self._conflicts,
            "peak_in_flight": self._peak_in_flight,
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker(self, n: int) -> None:
        while True:
            sid = await self._queue.get()
            self._pending.discard(sid)
            self._in_flight.add(sid)
            self._peak_in_flight = max(self._peak_in_flight, len(self._in_flight))
            try:
                await self._process(n, sid)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Worker error | worker=%d submission=%s", n, sid)
                await self._fail_unfinished(n, sid, exc)
            finally:
                self._in_flight.discard(sid)
                self._processed += 1
                self._queue.task_done()

    async def _fail_unfinished(self, n: int, sid: uuid.UUID, exc: Exception) -> None:
        """Move a run that died outside the orchestrator's own handling to failed."""
        try:
            await self._registry.transition(
                sid, SubmissionStatus.FAILED,
                error_detail={
                    "stage":     "worker",
                    "kind":      INTERNAL_ERROR,
                    "message":   f"{type(exc).__name__}: {exc}",
                    "retryable": True,
                },
            )
        except InvalidTransition:
            # already terminal
            logger.info("Worker error after terminal state | worker=%d submission=%s", n, sid)
        except Exception:
            # registry unreachable; startup recovery picks the row up
            logger.exception("Could not record worker error | worker=%d submission=%s", n, sid)

    async def _process(self, n: int, sid: uuid.UUID) -> None:
        try:
            current = await self._registry.get(sid)
        except NotFound:
            logger.warning("Dequeued unknown submission | worker=%d submission=%s", n, sid)
            return

        if current.status is not SubmissionStatus.QUEUED:
            logger.info(
                "Skipping, not queued | worker=%d submission=%s status=%s",
                n, sid, current.status.value,
            )
            return

        content = await self._spool.load(sid)
        if content is None:
            logger.error("Content missing | worker=%d submission=%s", n, sid)
            try:
                await self._registry.transition(
                    sid, SubmissionStatus.FAILED,
                    error_detail={
                        "stage":   "queue",
                        "kind":    "content_missing",
                        "message": "No spooled content for this submission",
                    },
                    expected_status=SubmissionStatus.QUEUED,
                )
            except InvalidTransition:
                self._conflicts += 1
                logger.warning("Claim conflict | worker=%d submission=%s", n, sid)
            return

        try:
            final = await self._orchestrator.run(sid, content)
        except InvalidTransition as exc:
            self._conflicts += 1
            logger.warning("Claim conflict | worker=%d submission=%s error=%s", n, sid, exc)
            return

        logger.info(
            "Worker done | worker=%d submission=%s status=%s",
            n, sid, final.status.value,
        )
