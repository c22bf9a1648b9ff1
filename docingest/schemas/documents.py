"""
Submission Lifecycle: Enums and Pydantic Request/Response Schemas

Covers:
  - The submission state machine (SubmissionStatus)
  - Target selection (IngestionTarget, GraphBackend)
  - Request bodies for text ingest and retry
  - Status / accepted responses
  - Structured error bodies (400, 404, 409, 503)

Design decisions:
  - submission ids are always server-generated (UUID4); never client-supplied.
  - graph_backend is required iff the target includes the graph store; the
    check lives in one place (validate_target) and is shared by the API
    models and the registry.
  - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class SubmissionStatus(str, Enum):
    """
    Maps to submissions.status.
    Transitions: queued → processing → completed | failed
                 queued → failed (cancelled / rejected / recovery)
    """
    QUEUED      = "queued"       # accepted, waiting for a worker
    PROCESSING  = "processing"   # claimed by exactly one worker
    COMPLETED   = "completed"    # every targeted store succeeded
    FAILED      = "failed"       # terminal; see error_detail

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionStatus.COMPLETED, SubmissionStatus.FAILED)


class IngestionTarget(str, Enum):
    VECTOR = "vector"
    GRAPH  = "graph"
    BOTH   = "both"

    @property
    def includes_vector(self) -> bool:
        return self in (IngestionTarget.VECTOR, IngestionTarget.BOTH)

    @property
    def includes_graph(self) -> bool:
        return self in (IngestionTarget.GRAPH, IngestionTarget.BOTH)


class GraphBackend(str, Enum):
    NEO4J    = "neo4j"
    FALKORDB = "falkordb"
    GRAPHITI = "graphiti"


# Sentinel source names for submissions that carry no file
TEXT_INPUT_SOURCE = "text_input"


def validate_target(
    target: IngestionTarget,
    graph_backend: Optional[GraphBackend],
) -> Optional[str]:
    """Return an error message if the target/backend combination is invalid."""
    if target.includes_graph and graph_backend is None:
        return f"graph_backend is required when target is '{target.value}'"
    if not target.includes_graph and graph_backend is not None:
        return f"graph_backend must not be set when target is '{target.value}'"
    return None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TextIngestRequest(BaseModel):
    """POST /ingest/text body."""
    text:          str                     = Field(..., min_length=1)
    target:        IngestionTarget         = IngestionTarget.VECTOR
    graph_backend: Optional[GraphBackend]  = None
    source_name:   str                     = Field(TEXT_INPUT_SOURCE, min_length=1, max_length=255)
    metadata:      dict[str, Any]          = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_backend(self) -> "TextIngestRequest":
        problem = validate_target(self.target, self.graph_backend)
        if problem:
            raise ValueError(problem)
        return self


class RetryRequest(BaseModel):
    """POST /ingest/{id}/retry body."""
    only_failed: bool = Field(True, description="Re-run only the stores that failed last time")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SubmissionAccepted(BaseModel):
    """HTTP 202: the submission is queued; poll the status endpoint."""
    id:            UUID
    source_name:   str
    status:        SubmissionStatus = SubmissionStatus.QUEUED
    target:        IngestionTarget
    graph_backend: Optional[GraphBackend] = None
    created_at:    datetime


class StatusResponse(BaseModel):
    """Polled by clients to track processing progress."""
    id:            UUID
    source_name:   str
    status:        SubmissionStatus
    progress:      int = Field(0, ge=0, le=100)
    target:        IngestionTarget
    graph_backend: Optional[GraphBackend] = None
    error_detail:  Optional[dict[str, Any]] = None
    metadata:      dict[str, Any] = Field(default_factory=dict)
    created_at:    datetime
    updated_at:    datetime


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error entry."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class IngestErrors:
    """Factories for every documented error case."""

    @staticmethod
    def not_found(submission_id: UUID | str) -> ErrorResponse:
        return ErrorResponse(
            error_code="NOT_FOUND",
            message=f"Submission '{submission_id}' does not exist.",
        )

    @staticmethod
    def invalid_submission(message: str, field: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_SUBMISSION",
            message="The submission was rejected.",
            details=[ErrorDetail(field=field, message=message, code="INVALID_SUBMISSION")],
        )

    @staticmethod
    def unsupported_format(filename: str, message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FORMAT",
            message=f"'{filename}' is not a supported document format.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"{message} Allowed: PDF, DOC, DOCX, TXT, MD, EPUB.",
                    code="UNSUPPORTED_FORMAT",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def invalid_transition(message: str) -> ErrorResponse:
        return ErrorResponse(error_code="INVALID_TRANSITION", message=message)

    @staticmethod
    def retry_unavailable(message: str) -> ErrorResponse:
        return ErrorResponse(error_code="RETRY_UNAVAILABLE", message=message)

    @staticmethod
    def queue_full() -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_FULL",
            message="The ingestion queue is full. Retry the request later.",
        )
