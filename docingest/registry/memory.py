"""In-process registry: snapshots in a dict, one asyncio.Lock per submission."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import replace
from typing import Any, Mapping, Optional

from docingest.core.errors import NotFound
from docingest.registry.base import (
    DocumentRegistry,
    Submission,
    apply_transition,
    new_submission,
)
from docingest.schemas.documents import GraphBackend, IngestionTarget, SubmissionStatus

logger = logging.getLogger(__name__)


def _detached(sub: Submission) -> Submission:
    """Copy of a snapshot whose dicts share nothing with the stored one."""
    return replace(
        sub,
        metadata=copy.deepcopy(sub.metadata),
        error_detail=copy.deepcopy(sub.error_detail),
    )


class InMemoryDocumentRegistry(DocumentRegistry):
    """
    Used by tests and single-process deployments without a database.

    Snapshots are replaced wholesale on every transition, so a concurrent
    get() sees either the old or the new state, never a mix.
    Callers always receive copies; mutating one never reaches the registry.
    """

    def __init__(self) -> None:
        self._items: dict[uuid.UUID, Submission] = {}
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    async def create(
        self,
        source_name: str,
        ingestion_target: IngestionTarget | str,
        graph_backend: GraphBackend | str | None = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> uuid.UUID:
        sub = new_submission(source_name, ingestion_target, graph_backend, metadata)
        self._items[sub.id] = _detached(sub)
        self._locks[sub.id] = asyncio.Lock()
        logger.info(
            "Submission created | id=%s source=%s target=%s",
            sub.id, sub.source_name, sub.ingestion_target.value,
        )
        return sub.id

    async def transition(
        self,
        submission_id: uuid.UUID,
        new_status: SubmissionStatus | str,
        progress: Optional[int] = None,
        error_detail: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        expected_status: SubmissionStatus | str | None = None,
    ) -> Submission:
        lock = self._locks.get(submission_id)
        if lock is None:
            raise NotFound(f"Submission {submission_id} not found")

        async with lock:
            current = self._items[submission_id]
            nxt = apply_transition(
                current, new_status, progress, error_detail, metadata, expected_status,
            )
            self._items[submission_id] = _detached(nxt)

        logger.info(
            "Transition | id=%s %s→%s progress=%d",
            submission_id, current.status.value, nxt.status.value, nxt.progress,
        )
        return _detached(nxt)

    async def get(self, submission_id: uuid.UUID) -> Submission:
        try:
            return _detached(self._items[submission_id])
        except KeyError:
            raise NotFound(f"Submission {submission_id} not found") from None

    async def list_by_status(
        self,
        status: SubmissionStatus | str,
        limit: Optional[int] = None,
    ) -> list[Submission]:
        wanted = SubmissionStatus(status)
        found = sorted(
            (s for s in self._items.values() if s.status is wanted),
            key=lambda s: s.created_at,
        )
        found = found[:limit] if limit is not None else found
        return [_detached(s) for s in found]
