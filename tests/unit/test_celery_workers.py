"""
Unit Tests: Celery dispatch (publisher + tasks)
═══════════════════════════════════════════════
No broker is used: apply_async is mocked, and the task bodies are driven
through their async halves with build_runtime patched to return a Runtime
over the shared in-memory fakes.

Coverage targets:
  ✅ CeleryTaskPublisher.enqueue publishes the id; broker errors → QueueFull
  ✅ CeleryTaskPublisher.cancel uses the registry, not the broker
  ✅ process_submission: runs a queued submission to completion
  ✅ process_submission: unknown id / not queued / missing content
  ✅ recover_submissions: stale rows failed or re-published
  ✅ run_async works with and without a running event loop
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kombu.exceptions import OperationalError

from docingest.core.errors import QueueFull
from docingest.pipeline.content import SubmissionContent
from docingest.runtime import build_runtime
from docingest.schemas.documents import SubmissionStatus
from docingest.workers import tasks
from docingest.workers.publisher import CeleryTaskPublisher


@pytest.fixture
async def worker_runtime(settings, registry, store_set, extractors):
    runtime = await build_runtime(
        settings, registry=registry, stores=store_set, extractors=extractors, with_dispatcher=False,
    )
    with patch("docingest.runtime.build_runtime", AsyncMock(return_value=runtime)):
        yield runtime


# ─────────────────────────────────────────────────────────────────────────────
# Publisher
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCeleryTaskPublisher:

    async def test_enqueue_publishes_id(self, registry):
        task = MagicMock()
        task.apply_async.return_value = MagicMock(id="task-1")
        sid = uuid.uuid4()

        assert await CeleryTaskPublisher(registry, task=task).enqueue(sid) is True

        task.apply_async.assert_called_once_with(kwargs={"submission_id": str(sid)}, retry=False)

    async def test_blocking_enqueue_retries_publish(self, registry):
        task = MagicMock()
        task.apply_async.return_value = MagicMock(id="task-2")

        await CeleryTaskPublisher(registry, task=task).enqueue(uuid.uuid4(), block=True, timeout=1.0)

        kwargs = task.apply_async.call_args.kwargs
        assert kwargs["retry"] is True
        assert kwargs["retry_policy"]["max_retries"] == 3

    async def test_broker_down_is_queue_full(self, registry):
        task = MagicMock()
        task.apply_async.side_effect = OperationalError("Connection refused")

        with pytest.raises(QueueFull, match="broker unavailable"):
            await CeleryTaskPublisher(registry, task=task).enqueue(uuid.uuid4())

    async def test_cancel_goes_through_registry(self, registry, spool):
        sid = await registry.create("a.txt", "vector")
        await spool.save(sid, SubmissionContent.from_text("x"))
        publisher = CeleryTaskPublisher(registry, spool, task=MagicMock())

        assert await publisher.cancel(sid) is True
        assert (await registry.get(sid)).error_detail["kind"] == "cancelled"
        assert not await spool.has(sid)
        assert publisher.stats() == {"mode": "celery"}


# ─────────────────────────────────────────────────────────────────────────────
# process_submission
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProcessSubmissionTask:

    async def test_runs_queued_submission(self, worker_runtime, registry, spool, vector_store):
        sid = await registry.create("text_input", "vector")
        await spool.save(sid, SubmissionContent.from_text("celery processed this"))

        result = await tasks._process_submission_async(sid)

        assert result == {"status": "completed", "submission_id": str(sid), "progress": 100}
        assert str(sid) in vector_store.records
        assert vector_store.closed

    async def test_unknown_id(self, worker_runtime):
        assert await tasks._process_submission_async(uuid.uuid4()) == {"status": "not_found"}

    async def test_not_queued_is_skipped(self, worker_runtime, registry, spool, vector_store):
        sid = await registry.create("a.txt", "vector")
        await spool.save(sid, SubmissionContent.from_text("x"))
        await registry.transition(sid, SubmissionStatus.PROCESSING, progress=5)

        result = await tasks._process_submission_async(sid)

        assert result == {"status": "skipped", "current_status": "processing"}
        assert vector_store.calls == []

    async def test_missing_content(self, worker_runtime, registry):
        sid = await registry.create("lost.txt", "vector")

        result = await tasks._process_submission_async(sid)

        assert result["status"] == "failed"
        assert (await registry.get(sid)).error_detail["kind"] == "content_missing"


# ─────────────────────────────────────────────────────────────────────────────
# recover_submissions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
async def test_recovery_sweep_fails_stale_runs_and_republishes(worker_runtime, settings, registry, spool):
    stuck = await registry.create("a.txt", "vector")
    await registry.transition(stuck, SubmissionStatus.PROCESSING, progress=40)
    waiting = await registry.create("b.txt", "vector")
    await spool.save(waiting, SubmissionContent.from_text("still spooled"))

    sweep_settings = settings.model_copy(update={"recovery_stale_after_seconds": 0})
    with patch("docingest.core.config.get_settings", return_value=sweep_settings), \
         patch.object(tasks.process_submission, "apply_async", return_value=MagicMock(id="t")) as publish:
        counts = await tasks._recover_submissions_async()

    assert counts["interrupted"] == 1
    assert counts["requeued"] == 1
    assert (await registry.get(stuck)).error_detail["kind"] == "interrupted"
    publish.assert_called_once()
    assert publish.call_args.kwargs["kwargs"] == {"submission_id": str(waiting)}


# ─────────────────────────────────────────────────────────────────────────────
# run_async
# ─────────────────────────────────────────────────────────────────────────────

async def _answer() -> int:
    await asyncio.sleep(0)
    return 42


@pytest.mark.unit
class TestRunAsync:

    def test_without_running_loop(self):
        assert tasks.run_async(_answer()) == 42

    async def test_inside_running_loop(self):
        assert tasks.run_async(_answer()) == 42
