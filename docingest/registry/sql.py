"""
SQL-backed registry (SQLAlchemy async; SQLite or PostgreSQL).

Atomicity of transition():
  Inside a single transaction the row is read (SELECT ... FOR UPDATE on
  PostgreSQL), validated with apply_transition(), then written with

      UPDATE submissions SET ... , version = v + 1
      WHERE id = :id AND version = :v

  If another writer got there first the UPDATE matches zero rows and the
  caller receives InvalidTransition and the row is never overwritten with a
  decision made against stale state. SQLite has no row locks; the version
  guard alone provides the compare-and-set there.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from docingest.core.errors import InvalidTransition, NotFound
from docingest.db.session import check_db_health, create_session_factory, session_scope
from docingest.models.documents import SubmissionRecord
from docingest.registry.base import (
    DocumentRegistry,
    Submission,
    apply_transition,
    new_submission,
)
from docingest.schemas.documents import (
    GraphBackend,
    IngestionTarget,
    SubmissionStatus,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_snapshot(row: SubmissionRecord) -> Submission:
    return Submission(
        id=row.id,
        source_name=row.source_name,
        status=SubmissionStatus(row.status),
        ingestion_target=IngestionTarget(row.ingestion_target),
        graph_backend=GraphBackend(row.graph_backend) if row.graph_backend else None,
        progress=row.progress,
        metadata=dict(row.doc_metadata or {}),
        error_detail=dict(row.error_detail) if row.error_detail is not None else None,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        version=row.version,
    )


class SqlDocumentRegistry(DocumentRegistry):

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        dispose_engine: bool = False,
    ) -> None:
        self._engine          = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._dispose_engine  = dispose_engine

    async def create(
        self,
        source_name: str,
        ingestion_target: IngestionTarget | str,
        graph_backend: GraphBackend | str | None = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> uuid.UUID:
        sub = new_submission(source_name, ingestion_target, graph_backend, metadata)

        async with session_scope(self._session_factory) as session:
            session.add(SubmissionRecord(
                id=sub.id,
                source_name=sub.source_name,
                status=sub.status.value,
                ingestion_target=sub.ingestion_target.value,
                graph_backend=sub.graph_backend.value if sub.graph_backend else None,
                progress=sub.progress,
                doc_metadata=sub.metadata,
                error_detail=None,
                version=sub.version,
                created_at=sub.created_at,
                updated_at=sub.updated_at,
            ))

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
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(SubmissionRecord)
                .where(SubmissionRecord.id == submission_id)
                .with_for_update()
            )
            row = result.scalars().first()
            if row is None:
                raise NotFound(f"Submission {submission_id} not found")

            current = _to_snapshot(row)
            nxt = apply_transition(
                current, new_status, progress, error_detail, metadata, expected_status,
            )

            outcome = await session.execute(
                update(SubmissionRecord)
                .where(
                    SubmissionRecord.id == submission_id,
                    SubmissionRecord.version == current.version,
                )
                .values({
                    SubmissionRecord.status:       nxt.status.value,
                    SubmissionRecord.progress:     nxt.progress,
                    SubmissionRecord.doc_metadata: nxt.metadata,
                    SubmissionRecord.error_detail: nxt.error_detail,
                    SubmissionRecord.version:      nxt.version,
                    SubmissionRecord.updated_at:   nxt.updated_at,
                })
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 0:
                raise InvalidTransition(
                    f"Submission {submission_id}: concurrent update detected "
                    f"(version {current.version} is stale)"
                )

        logger.info(
            "Transition | id=%s %s→%s progress=%d",
            submission_id, current.status.value, nxt.status.value, nxt.progress,
        )
        return nxt

    async def get(self, submission_id: uuid.UUID) -> Submission:
        async with session_scope(self._session_factory) as session:
            row = await session.get(SubmissionRecord, submission_id)
            if row is None:
                raise NotFound(f"Submission {submission_id} not found")
            return _to_snapshot(row)

    async def list_by_status(
        self,
        status: SubmissionStatus | str,
        limit: Optional[int] = None,
    ) -> list[Submission]:
        stmt = (
            select(SubmissionRecord)
            .where(SubmissionRecord.status == SubmissionStatus(status).value)
            .order_by(SubmissionRecord.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_snapshot(r) for r in rows]

    async def close(self) -> None:
        if self._dispose_engine:
            await self._engine.dispose()

    async def health(self) -> dict:
        return await check_db_health(self._engine)
