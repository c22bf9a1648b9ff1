"""
Unit Tests: IngestionWorkerPool
════════════════════════════════
Coverage targets:
  ✅ 100 submissions, K workers: all reach a terminal state
  ✅ never more than K orchestrator runs in flight
  ✅ no submission is processed twice, even when enqueued twice
  ✅ bounded queue → QueueFull when full; blocking enqueue with timeout
  ✅ cancel: queued → failed(cancelled); refused once in flight
  ✅ missing spooled content → failed(content_missing)
  ✅ a failing run never kills its worker
  ✅ unexpected errors (unreadable spool, crash mid-run) → failed(internal_error)
"""

from __future__ import annotations

import asyncio
import os
import uuid
from unittest.mock import patch

import pytest

from docingest.core.errors import NotFound, QueueFull
from docingest.pipeline.content import SubmissionContent
from docingest.schemas.documents import SubmissionStatus
from docingest.workers.pool import IngestionWorkerPool, cancel_queued


@pytest.fixture
async def make_pool(make_orchestrator, spool, registry):
    pools: list[IngestionWorkerPool] = []

    def _build(size: int = 2, max_queue: int = 1000, **orchestrator_kwargs) -> IngestionWorkerPool:
        pool = IngestionWorkerPool(
            make_orchestrator(**orchestrator_kwargs), spool, registry, size=size, max_queue=max_queue,
        )
        pools.append(pool)
        return pool

    yield _build
    for pool in pools:
        if pool.running:
            await pool.stop()


async def _submit_text(registry, spool, text: str, target: str = "vector") -> uuid.UUID:
    sid = await registry.create("text_input", target, None if target == "vector" else "neo4j")
    await spool.save(sid, SubmissionContent.from_text(text))
    return sid


# ─────────────────────────────────────────────────────────────────────────────
# Throughput and bounds
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestConcurrencyBounds:

    @pytest.mark.parametrize("workers", [1, 3, 8])
    async def test_hundred_submissions_with_k_workers(self, make_pool, registry, spool, vector_store, workers):
        vector_store.delay = 0.002
        pool = make_pool(size=workers)
        ids = [await _submit_text(registry, spool, f"document {n}") for n in range(100)]

        pool.start()
        for sid in ids:
            assert await pool.enqueue(sid) is True
        await pool.join()

        for sid in ids:
            assert (await registry.get(sid)).status is SubmissionStatus.COMPLETED
        assert len(vector_store.calls) == 100
        assert len({key for _, _, key in vector_store.calls}) == 100
        assert vector_store.max_active <= workers
        stats = pool.stats()
        assert stats["peak_in_flight"] <= workers
        assert stats["processed"] == 100
        assert stats["queued"] == 0

    async def test_duplicate_enqueue_is_ignored(self, make_pool, registry, spool, vector_store):
        pool = make_pool(size=2)
        sid = await _submit_text(registry, spool, "only once")

        assert await pool.enqueue(sid) is True
        assert await pool.enqueue(sid) is False

        pool.start()
        await pool.join()
        assert len(vector_store.calls) == 1

    async def test_re_enqueue_after_completion_is_a_no_op(self, make_pool, registry, spool, vector_store):
        pool = make_pool(size=1)
        sid = await _submit_text(registry, spool, "done already")
        pool.start()
        await pool.enqueue(sid)
        await pool.join()

        await pool.enqueue(sid)
        await pool.join()

        assert len(vector_store.calls) == 1
        assert (await registry.get(sid)).status is SubmissionStatus.COMPLETED

    async def test_queue_full(self, make_pool, registry, spool):
        pool = make_pool(size=1, max_queue=2)
        ids = [await _submit_text(registry, spool, f"doc {n}") for n in range(3)]

        await pool.enqueue(ids[0])
        await pool.enqueue(ids[1])
        with pytest.raises(QueueFull):
            await pool.enqueue(ids[2])
        with pytest.raises(QueueFull):
            await pool.enqueue(ids[2], block=True, timeout=0.05)

        # the refused id is not remembered as pending
        pool.start()
        await pool.join()
        assert await pool.enqueue(ids[2]) is True
        await pool.join()
        assert (await registry.get(ids[2])).status is SubmissionStatus.COMPLETED

    def test_size_must_be_positive(self, make_orchestrator, spool):
        with pytest.raises(ValueError):
            IngestionWorkerPool(make_orchestrator(), spool, size=0)


# ─────────────────────────────────────────────────────────────────────────────
# Cancel / content / resilience
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCancelAndFailures:

    async def test_cancel_queued_submission(self, make_pool, registry, spool, vector_store):
        pool = make_pool(size=1)
        sid = await _submit_text(registry, spool, "never processed")
        await pool.enqueue(sid)

        assert await pool.cancel(sid) is True
        pool.start()
        await pool.join()

        sub = await registry.get(sid)
        assert sub.status is SubmissionStatus.FAILED
        assert sub.error_detail["kind"] == "cancelled"
        assert vector_store.calls == []
        assert not await spool.has(sid)

    async def test_cancel_refused_while_in_flight(self, make_pool, registry, spool, vector_store):
        vector_store.delay = 0.2
        pool = make_pool(size=1)
        sid = await _submit_text(registry, spool, "slow one")
        pool.start()
        await pool.enqueue(sid)

        while pool.stats()["in_flight"] == 0:
            await asyncio.sleep(0.005)
        assert await pool.cancel(sid) is False

        await pool.join()
        assert (await registry.get(sid)).status is SubmissionStatus.COMPLETED

    async def test_cancel_refused_after_completion(self, registry, spool):
        sid = await _submit_text(registry, spool, "x")
        await registry.transition(sid, SubmissionStatus.PROCESSING, progress=5)
        await registry.transition(sid, SubmissionStatus.COMPLETED)

        assert await cancel_queued(registry, spool, sid) is False

    async def test_cancel_unknown_id(self, registry, spool):
        with pytest.raises(NotFound):
            await cancel_queued(registry, spool, uuid.uuid4())

    async def test_missing_content_fails_submission(self, make_pool, registry, vector_store):
        pool = make_pool(size=1)
        sid = await registry.create("lost.txt", "vector")
        pool.start()
        await pool.enqueue(sid)
        await pool.join()

        sub = await registry.get(sid)
        assert sub.status is SubmissionStatus.FAILED
        assert sub.error_detail == {
            "stage":   "queue",
            "kind":    "content_missing",
            "message": "No spooled content for this submission",
        }
        assert vector_store.calls == []

    async def test_already_claimed_id_is_skipped(self, make_pool, registry, spool, vector_store):
        pool = make_pool(size=1)
        sid = await _submit_text(registry, spool, "claimed elsewhere")
        await registry.transition(sid, SubmissionStatus.PROCESSING, progress=5)

        pool.start()
        await pool.enqueue(sid)
        await pool.join()

        assert vector_store.calls == []
        assert (await registry.get(sid)).status is SubmissionStatus.PROCESSING

    async def test_unknown_id_does_not_stop_the_worker(self, make_pool, registry, spool):
        pool = make_pool(size=1)
        good = await _submit_text(registry, spool, "after the bad one")
        pool.start()

        await pool.enqueue(uuid.uuid4())
        await pool.enqueue(good)
        await pool.join()

        assert (await registry.get(good)).status is SubmissionStatus.COMPLETED
        assert pool.stats()["processed"] == 2

    async def test_store_failures_do_not_stop_workers(self, make_pool, registry, spool, vector_store):
        from docingest.core.errors import StoreErrorKind

        vector_store.fail_with = StoreErrorKind.CONNECTION_FAILURE
        vector_store.fail_times = 5
        pool = make_pool(size=2)
        ids = [await _submit_text(registry, spool, f"doc {n}") for n in range(10)]

        pool.start()
        for sid in ids:
            await pool.enqueue(sid)
        await pool.join()

        statuses = [(await registry.get(sid)).status for sid in ids]
        assert statuses.count(SubmissionStatus.FAILED) == 5
        assert statuses.count(SubmissionStatus.COMPLETED) == 5

    async def test_unreadable_spool_fails_submission(self, make_pool, registry, spool):
        pool = make_pool(size=1)
        broken = await _submit_text(registry, spool, "meta gets corrupted")
        with open(os.path.join(spool._dir(broken), "meta.json"), "w") as fh:
            fh.write("{")
        good = await _submit_text(registry, spool, "still processed")

        pool.start()
        await pool.enqueue(broken)
        await pool.enqueue(good)
        await pool.join()

        sub = await registry.get(broken)
        assert sub.status is SubmissionStatus.FAILED
        assert sub.error_detail["stage"] == "worker"
        assert sub.error_detail["kind"] == "internal_error"
        assert sub.error_detail["message"].startswith("JSONDecodeError")
        assert (await registry.get(good)).status is SubmissionStatus.COMPLETED

    async def test_unexpected_error_mid_run_fails_submission(self, make_pool, registry, spool):
        pool = make_pool(size=1)
        sid = await _submit_text(registry, spool, "checkpoint write fails")

        async def claim_then_crash(submission_id, content):
            await registry.transition(submission_id, SubmissionStatus.PROCESSING, progress=5)
            raise OSError("registry connection reset")

        with patch.object(pool._orchestrator, "run", side_effect=claim_then_crash):
            pool.start()
            await pool.enqueue(sid)
            await pool.join()

        sub = await registry.get(sid)
        assert sub.status is SubmissionStatus.FAILED
        assert sub.progress == 5
        assert sub.error_detail["message"] == "OSError: registry connection reset"
        assert not pool.stats()["in_flight"]

    async def test_error_recording_failure_keeps_worker_alive(self, make_pool, registry, spool):
        pool = make_pool(size=1)
        sid = await _submit_text(registry, spool, "x")
        good = await _submit_text(registry, spool, "y")

        real_transition = registry.transition

        async def registry_down_for_failures(submission_id, new_status, *args, **kwargs):
            if new_status is SubmissionStatus.FAILED:
                raise OSError("registry unreachable")
            return await real_transition(submission_id, new_status, *args, **kwargs)

        with patch.object(spool, "load", side_effect=[OSError("disk gone"), SubmissionContent.from_text("y")]), \
             patch.object(registry, "transition", side_effect=registry_down_for_failures):
            pool.start()
            await pool.enqueue(sid)
            await pool.enqueue(good)
            await pool.join()

        assert (await registry.get(sid)).status is SubmissionStatus.QUEUED
        assert (await registry.get(good)).status is SubmissionStatus.COMPLETED

    async def test_stop_with_drain_finishes_queued_work(self, make_pool, registry, spool):
        pool = make_pool(size=2)
        ids = [await _submit_text(registry, spool, f"doc {n}") for n in range(6)]
        pool.start()
        for sid in ids:
            await pool.enqueue(sid)

        await pool.stop(drain=True)

        assert not pool.running
        for sid in ids:
            assert (await registry.get(sid)).status is SubmissionStatus.COMPLETED
