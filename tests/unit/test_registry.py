"""
Unit Tests: DocumentRegistry (in-memory + SQLite)
═══════════════════════════════════════════════════
Every test runs against both implementations through the `any_registry`
fixture, so the two backends are held to one state machine.

Coverage targets:
  ✅ create → queued, progress 0
  ✅ invalid target / backend combinations rejected (InvalidSubmission)
  ✅ legal edges: queued→processing→completed, queued→failed, processing→failed
  ✅ illegal edges: completed→*, failed→*, queued→completed
  ✅ progress non-decreasing, pinned to 100 on completed, frozen on failed
  ✅ error_detail required on failed, rejected elsewhere
  ✅ metadata merged across transitions; returned snapshots are copies
  ✅ unknown id → NotFound
  ✅ concurrent claims: exactly one wins
  ✅ list_by_status ordering
  ✅ SQLite: committed state visible to a fresh registry on the same file
"""

from __future__ import annotations

import asyncio
import uuid

import pytest

from docingest.core.errors import InvalidSubmission, InvalidTransition, NotFound
from docingest.db.session import create_engine_from_settings, init_models
from docingest.registry.memory import InMemoryDocumentRegistry
from docingest.registry.sql import SqlDocumentRegistry
from docingest.schemas.documents import GraphBackend, IngestionTarget, SubmissionStatus

Q, P, C, F = (
    SubmissionStatus.QUEUED,
    SubmissionStatus.PROCESSING,
    SubmissionStatus.COMPLETED,
    SubmissionStatus.FAILED,
)
DETAIL = {"stage": "extraction", "kind": "corrupt", "message": "bad bytes"}


async def _sql_registry(settings) -> SqlDocumentRegistry:
    engine = create_engine_from_settings(settings)
    await init_models(engine)
    return SqlDocumentRegistry(engine, dispose_engine=True)


@pytest.fixture(params=["memory", "sql"])
async def any_registry(request, settings):
    if request.param == "memory":
        reg = InMemoryDocumentRegistry()
    else:
        reg = await _sql_registry(settings)
    yield reg
    await reg.close()


# ─────────────────────────────────────────────────────────────────────────────
# Create
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCreate:

    async def test_new_submission_is_queued_at_zero(self, any_registry):
        sid = await any_registry.create("report.pdf", IngestionTarget.VECTOR)
        sub = await any_registry.get(sid)

        assert sub.status is Q
        assert sub.progress == 0
        assert sub.error_detail is None
        assert sub.source_name == "report.pdf"
        assert sub.ingestion_target is IngestionTarget.VECTOR
        assert sub.graph_backend is None

    async def test_graph_target_keeps_backend_and_metadata(self, any_registry):
        sid = await any_registry.create(
            "notes.md", "both", "falkordb", metadata={"owner": "team-a"},
        )
        sub = await any_registry.get(sid)

        assert sub.ingestion_target is IngestionTarget.BOTH
        assert sub.graph_backend is GraphBackend.FALKORDB
        assert sub.metadata == {"owner": "team-a"}

    @pytest.mark.parametrize("target,backend", [
        ("graph", None),
        ("both", None),
        ("vector", "neo4j"),
        ("everything", None),
        ("graph", "mysql"),
    ])
    async def test_invalid_target_backend_rejected(self, any_registry, target, backend):
        with pytest.raises(InvalidSubmission):
            await any_registry.create("a.txt", target, backend)

    async def test_empty_source_name_rejected(self, any_registry):
        with pytest.raises(InvalidSubmission):
            await any_registry.create("   ", "vector")

    async def test_unknown_id_not_found(self, any_registry):
        with pytest.raises(NotFound):
            await any_registry.get(uuid.uuid4())
        with pytest.raises(NotFound):
            await any_registry.transition(uuid.uuid4(), P, progress=5)


# ─────────────────────────────────────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTransitions:

    async def test_happy_path_pins_progress_to_100(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=5)
        await any_registry.transition(sid, P, progress=40)
        done = await any_registry.transition(sid, C, progress=70)

        assert done.status is C
        assert done.progress == 100
        assert done.error_detail is None

    async def test_failed_freezes_progress_and_stores_detail(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=40)
        failed = await any_registry.transition(sid, F, error_detail=DETAIL)

        assert failed.status is F
        assert failed.progress == 40
        assert failed.error_detail == DETAIL

    async def test_failed_rejects_progress_change(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=40)
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, F, progress=60, error_detail=DETAIL)

    async def test_queued_can_fail_directly(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        failed = await any_registry.transition(
            sid, F, error_detail={"stage": "queue", "kind": "cancelled", "message": "x"},
        )
        assert failed.status is F
        assert failed.progress == 0

    async def test_queued_cannot_complete(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, C)

    @pytest.mark.parametrize("terminal", [C, F])
    async def test_terminal_states_are_final(self, any_registry, terminal):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=5)
        if terminal is C:
            await any_registry.transition(sid, C)
        else:
            await any_registry.transition(sid, F, error_detail=DETAIL)

        for target, kwargs in ((Q, {}), (P, {"progress": 50}), (C, {}), (F, {"error_detail": DETAIL})):
            with pytest.raises(InvalidTransition):
                await any_registry.transition(sid, target, **kwargs)

        assert (await any_registry.get(sid)).status is terminal

    async def test_progress_never_decreases(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=40)
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, P, progress=30)
        assert (await any_registry.get(sid)).progress == 40

    @pytest.mark.parametrize("progress", [-1, 101])
    async def test_progress_out_of_range(self, any_registry, progress):
        sid = await any_registry.create("a.txt", "vector")
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, P, progress=progress)

    async def test_failed_requires_error_detail(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, F)

    async def test_error_detail_rejected_when_not_failed(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, P, progress=5, error_detail=DETAIL)

    async def test_unknown_status_string_rejected(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, "paused")

    async def test_metadata_is_merged(self, any_registry):
        sid = await any_registry.create("a.txt", "vector", metadata={"owner": "x"})
        await any_registry.transition(sid, P, progress=5, metadata={"format": "txt"})
        done = await any_registry.transition(sid, C, metadata={"stores": {"vector": {"status": "success"}}})

        assert done.metadata == {
            "owner":  "x",
            "format": "txt",
            "stores": {"vector": {"status": "success"}},
        }

    async def test_snapshots_are_isolated_from_caller_mutation(self, any_registry):
        sid = await any_registry.create("a.txt", "vector", metadata={"tags": ["a"]})
        first = await any_registry.get(sid)
        first.metadata["tags"].append("mutated")

        assert (await any_registry.get(sid)).metadata == {"tags": ["a"]}

    async def test_transition_result_is_a_copy(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=5)
        stores = {"vector": {"status": "success"}}
        done = await any_registry.transition(sid, C, metadata={"stores": stores})

        done.metadata["stores"]["vector"] = "forged"
        stores["graph"] = "forged"
        [listed] = await any_registry.list_by_status(C)
        listed.metadata["stores"].clear()

        current = await any_registry.get(sid)
        assert current.metadata["stores"] == {"vector": {"status": "success"}}
        assert current.version == done.version

    async def test_error_detail_is_a_copy(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        failed = await any_registry.transition(sid, F, error_detail=dict(DETAIL))
        failed.error_detail["kind"] = "forged"

        assert (await any_registry.get(sid)).error_detail["kind"] == "corrupt"


# ─────────────────────────────────────────────────────────────────────────────
# Concurrency
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestConcurrentClaims:

    async def test_exactly_one_claim_wins(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")

        results = await asyncio.gather(
            *(any_registry.transition(sid, P, progress=5, expected_status=Q) for _ in range(8)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers  = [r for r in results if isinstance(r, Exception)]

        assert len(winners) == 1
        assert len(losers) == 7
        assert all(isinstance(e, InvalidTransition) for e in losers)
        assert (await any_registry.get(sid)).status is P

    async def test_claim_requires_queued(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")
        await any_registry.transition(sid, P, progress=5, expected_status=Q)

        with pytest.raises(InvalidTransition):
            await any_registry.transition(sid, P, progress=5, expected_status=Q)
        # without the guard the same edge is an ordinary checkpoint
        assert (await any_registry.transition(sid, P, progress=10)).progress == 10

    async def test_cancel_and_claim_race_leaves_one_outcome(self, any_registry):
        sid = await any_registry.create("a.txt", "vector")

        claim, cancel = await asyncio.gather(
            any_registry.transition(sid, P, progress=5, expected_status=Q),
            any_registry.transition(
                sid, F,
                error_detail={"stage": "queue", "kind": "cancelled", "message": "x"},
                expected_status=Q,
            ),
            return_exceptions=True,
        )
        final = await any_registry.get(sid)

        if final.status is P:
            assert isinstance(cancel, InvalidTransition)
        else:
            assert final.status is F
            assert final.error_detail["kind"] == "cancelled"
            assert isinstance(claim, InvalidTransition)

    async def test_unrelated_ids_progress_independently(self, any_registry):
        ids = [await any_registry.create(f"doc-{n}.txt", "vector") for n in range(10)]
        await asyncio.gather(*(any_registry.transition(i, P, progress=5) for i in ids))
        await asyncio.gather(*(any_registry.transition(i, C) for i in ids))

        for i in ids:
            sub = await any_registry.get(i)
            assert sub.status is C and sub.progress == 100


# ─────────────────────────────────────────────────────────────────────────────
# Listing / persistence
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestListingAndPersistence:

    async def test_list_by_status_oldest_first(self, any_registry):
        a = await any_registry.create("a.txt", "vector")
        b = await any_registry.create("b.txt", "vector")
        c = await any_registry.create("c.txt", "vector")
        await any_registry.transition(b, P, progress=5)

        queued = await any_registry.list_by_status(Q)
        assert [s.id for s in queued] == [a, c]
        assert [s.id for s in await any_registry.list_by_status("processing")] == [b]
        assert len(await any_registry.list_by_status(Q, limit=1)) == 1

    async def test_sqlite_state_survives_a_new_registry(self, settings):
        first = await _sql_registry(settings)
        sid = await first.create("a.txt", "graph", "neo4j", metadata={"k": "v"})
        await first.transition(sid, P, progress=40)
        await first.close()

        second = await _sql_registry(settings)
        try:
            sub = await second.get(sid)
            assert sub.status is P
            assert sub.progress == 40
            assert sub.graph_backend is GraphBackend.NEO4J
            assert sub.metadata == {"k": "v"}
            assert sub.created_at.tzinfo is not None
        finally:
            await second.close()

    async def test_health_reports_ok(self, any_registry):
        assert (await any_registry.health())["status"] == "ok"
