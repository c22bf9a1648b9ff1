"""Enqueue side of distributed mode: ids go to the Celery broker instead of the local pool."""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from typing import Any, Optional

from kombu.exceptions import OperationalError

from docingest.core.errors import QueueFull
from docingest.pipeline.spool import ContentSpool
from docingest.registry.base import DocumentRegistry
from docingest.workers.pool import cancel_queued

logger = logging.getLogger(__name__)


class CeleryTaskPublisher:
    """
    Same enqueue/cancel surface as IngestionWorkerPool.

    Duplicate publishes are harmless: the registry claim lets exactly one
    Celery worker run a given id, the rest log a claim conflict.
    """

    def __init__(
        self,
        registry: DocumentRegistry,
        spool: Optional[ContentSpool] = None,
        task: Any = None,
    ) -> None:
        self._registry = registry
        self._spool    = spool
        self._task     = task

    def _get_task(self):
        if self._task is None:
            from docingest.workers.tasks import process_submission
            self._task = process_submission
        return self._task

    async def enqueue(
        self,
        submission_id: uuid.UUID,
        block: bool = False,
        timeout: Optional[float] = None,
    ) -> bool:
        sid = str(submission_id)
        options: dict[str, Any] = {"retry": block}
        if block:
            options["retry_policy"] = {"max_retries": 3, "interval_start": 0, "interval_step": 0.5}
        publish = functools.partial(
            self._get_task().apply_async,
            kwargs={"submission_id": sid},
            **options,
        )
        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(loop.run_in_executor(None, publish), timeout)
        except (OperationalError, asyncio.TimeoutError) as exc:
            logger.error("Broker publish failed | submission=%s error=%s", sid, exc)
            raise QueueFull(f"Task broker unavailable: {exc}") from exc

        logger.info("Published | submission=%s task_id=%s", sid, result.id)
        return True

    async def cancel(self, submission_id: uuid.UUID) -> bool:
        return await cancel_queued(self._registry, self._spool, uuid.UUID(str(submission_id)))

    def stats(self) -> dict[str, Any]:
        return {"mode": "celery"}
