"""
Document Registry: Abstract Base

Single source of truth for submission state. Every read and write of a
submission goes through this interface so status is never observed in an
inconsistent intermediate form.

State machine (the only legal edges):

    queued ──────► processing ──────► completed
      │               │   ▲
      │               └───┘  (progress checkpoint, non-decreasing)
      │               │
      └───────────────┴──────► failed

Progress rules:
  - non-decreasing while queued / processing
  - pinned to 100 on completed
  - frozen at its last value on failed
  - error_detail is present iff status = failed

Readers only ever receive immutable Submission snapshots; a transition
replaces the snapshot as a whole, so status + progress + error_detail are
always observed together.

The transition rules live in apply_transition() and are shared by every
implementation; backends only differ in how they make the
read-validate-write cycle atomic.
"""

from __future__ import annotations

import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from docingest.core.errors import InvalidSubmission, InvalidTransition
from docingest.schemas.documents import (
    GraphBackend,
    IngestionTarget,
    SubmissionStatus,
    validate_target,
)

# ---------------------------------------------------------------------------
# Allowed transitions
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.QUEUED: frozenset({
        SubmissionStatus.PROCESSING,
        SubmissionStatus.FAILED,
    }),
    SubmissionStatus.PROCESSING: frozenset({
        SubmissionStatus.PROCESSING,
        SubmissionStatus.COMPLETED,
        SubmissionStatus.FAILED,
    }),
    SubmissionStatus.COMPLETED: frozenset(),
    SubmissionStatus.FAILED:    frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Submission:
    """Immutable view of one submission at a point in time."""
    id:               uuid.UUID
    source_name:      str
    status:           SubmissionStatus
    ingestion_target: IngestionTarget
    graph_backend:    Optional[GraphBackend]
    progress:         int
    metadata:         dict[str, Any] = field(default_factory=dict)
    error_detail:     Optional[dict[str, Any]] = None
    created_at:       datetime = field(default_factory=utcnow)
    updated_at:       datetime = field(default_factory=utcnow)
    version:          int = 1

    def to_status(self) -> dict[str, Any]:
        """Public status view: {id, source_name, status, progress, error_detail, ...}."""
        return {
            "id":            self.id,
            "source_name":   self.source_name,
            "status":        self.status,
            "progress":      self.progress,
            "target":        self.ingestion_target,
            "graph_backend": self.graph_backend,
            "error_detail":  copy.deepcopy(self.error_detail),
            "metadata":      copy.deepcopy(self.metadata),
            "created_at":    self.created_at,
            "updated_at":    self.updated_at,
        }


# ---------------------------------------------------------------------------
# Shared validation
# ---------------------------------------------------------------------------

def new_submission(
    source_name: str,
    ingestion_target: IngestionTarget | str,
    graph_backend: GraphBackend | str | None = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Submission:
    """Validate creation arguments and build the initial queued snapshot."""
    if not source_name or not source_name.strip():
        raise InvalidSubmission("source_name must not be empty")

    try:
        target  = IngestionTarget(ingestion_target)
        backend = GraphBackend(graph_backend) if graph_backend is not None else None
    except ValueError as exc:
        raise InvalidSubmission(str(exc)) from exc

    problem = validate_target(target, backend)
    if problem:
        raise InvalidSubmission(problem)

    now = utcnow()
    return Submission(
        id=uuid.uuid4(),
        source_name=source_name,
        status=SubmissionStatus.QUEUED,
        ingestion_target=target,
        graph_backend=backend,
        progress=0,
        metadata=copy.deepcopy(dict(metadata or {})),
        error_detail=None,
        created_at=now,
        updated_at=now,
        version=1,
    )


def apply_transition(
    current: Submission,
    new_status: SubmissionStatus | str,
    progress: Optional[int] = None,
    error_detail: Optional[Mapping[str, Any]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    expected_status: SubmissionStatus | str | None = None,
) -> Submission:
    """
    Validate one transition against the state machine and return the next
    snapshot. Raises InvalidTransition without side effects when illegal.

    expected_status turns the call into a compare-and-set: it only applies
    while the submission is still in that status. Claims (queued only) and
    cancels rely on it, since processing → processing is itself legal.
    """
    try:
        target = SubmissionStatus(new_status)
        expected = SubmissionStatus(expected_status) if expected_status is not None else None
    except ValueError as exc:
        raise InvalidTransition(str(exc)) from exc

    if expected is not None and current.status is not expected:
        raise InvalidTransition(
            f"Submission {current.id} is {current.status.value}, expected {expected.value}"
        )

    if target not in ALLOWED_TRANSITIONS[current.status]:
        raise InvalidTransition(
            f"Submission {current.id}: {current.status.value} → {target.value} is not allowed"
        )

    if progress is not None and not (0 <= int(progress) <= 100):
        raise InvalidTransition(f"Submission {current.id}: progress {progress} outside 0..100")

    if target is SubmissionStatus.FAILED:
        if not error_detail:
            raise InvalidTransition(f"Submission {current.id}: failed requires error_detail")
        if progress is not None and int(progress) != current.progress:
            raise InvalidTransition(
                f"Submission {current.id}: progress is frozen at {current.progress} on failure"
            )
        next_progress = current.progress
    else:
        if error_detail:
            raise InvalidTransition(
                f"Submission {current.id}: error_detail is only allowed on failed"
            )
        if target is SubmissionStatus.COMPLETED:
            next_progress = 100
        else:
            next_progress = current.progress if progress is None else int(progress)
            if next_progress < current.progress:
                raise InvalidTransition(
                    f"Submission {current.id}: progress may not decrease "
                    f"({current.progress} → {next_progress})"
                )

    merged = copy.deepcopy(current.metadata)
    if metadata:
        merged.update(copy.deepcopy(dict(metadata)))

    return replace(
        current,
        status=target,
        progress=next_progress,
        metadata=merged,
        error_detail=copy.deepcopy(dict(error_detail)) if target is SubmissionStatus.FAILED else None,
        updated_at=utcnow(),
        version=current.version + 1,
    )


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentRegistry(ABC):
    """
    Persistent record and state machine for every submission.

    Implementations must serialize transitions per id while letting
    unrelated ids proceed concurrently.
    """

    @abstractmethod
    async def create(
        self,
        source_name: str,
        ingestion_target: IngestionTarget | str,
        graph_backend: GraphBackend | str | None = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> uuid.UUID:
        """Register a new submission (status=queued, progress=0) and return its id."""

    @abstractmethod
    async def transition(
        self,
        submission_id: uuid.UUID,
        new_status: SubmissionStatus | str,
        progress: Optional[int] = None,
        error_detail: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        expected_status: SubmissionStatus | str | None = None,
    ) -> Submission:
        """
        Atomically move a submission along the state machine.

        Raises:
            NotFound:          unknown id
            InvalidTransition: illegal edge, decreasing progress, missing or
                               misplaced error_detail, expected_status
                               mismatch, or a lost race
        """

    @abstractmethod
    async def get(self, submission_id: uuid.UUID) -> Submission:
        """Return the latest committed snapshot. Raises NotFound."""

    @abstractmethod
    async def list_by_status(
        self,
        status: SubmissionStatus | str,
        limit: Optional[int] = None,
    ) -> list[Submission]:
        """Submissions currently in `status`, oldest first."""

    async def health(self) -> dict:
        """Readiness check used by /health/ready."""
        return {"status": "ok"}

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
