"""
SQLAlchemy ORM Model: Submissions

Durable form of the document registry: one row per submission, keyed by id.
Using SQLAlchemy 2.x mapped classes for full async support.

Portable column types (Uuid, JSON) keep the same model working on
SQLite (aiosqlite, the default) and PostgreSQL (asyncpg).

`version` is bumped on every transition and is the compare-and-set guard
used by SqlDocumentRegistry.transition().
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Submission model
# ---------------------------------------------------------------------------

class SubmissionRecord(Base):
    """
    Tracks one file or raw-text submission from acceptance to a terminal state.

    State machine (status column):
        queued     : accepted, waiting for a worker
        processing : claimed by a worker; progress advances at checkpoints
        completed  : every targeted store accepted the content (progress=100)
        failed     : terminal; error_detail says which stage / store(s) failed
    """

    __tablename__ = "submissions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="submissions_status_check",
        ),
        CheckConstraint(
            "ingestion_target IN ('vector', 'graph', 'both')",
            name="submissions_target_check",
        ),
        CheckConstraint("progress >= 0 AND progress <= 100", name="submissions_progress_check"),
        Index("idx_submissions_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    source_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename, or 'text_input' for raw text",
    )

    status: Mapped[str]           = mapped_column(String(16), nullable=False, default="queued")
    ingestion_target: Mapped[str] = mapped_column(String(8), nullable=False)
    graph_backend: Mapped[Optional[str]] = mapped_column(
        String(16),
        nullable=True,
        comment="neo4j | falkordb | graphiti; set iff target includes graph",
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    doc_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Orchestrator-owned: format, extraction method, per-store outcomes",
    )
    error_detail: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SubmissionRecord id={self.id} status={self.status} "
            f"progress={self.progress} source={self.source_name!r}>"
        )
