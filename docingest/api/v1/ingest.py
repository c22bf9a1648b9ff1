"""
Document Ingestion API Router

  POST /api/v1/ingest/file            multipart upload        → 202
  POST /api/v1/ingest/text            JSON raw text           → 202
  GET  /api/v1/ingest/status/{id}     poll status / progress  → 200
  POST /api/v1/ingest/{id}/cancel     cancel a queued run     → 200
  POST /api/v1/ingest/{id}/retry      re-run a failed one     → 202

A thin adapter: every handler is one IngestionService call plus error
mapping. Processing is asynchronous; clients poll the status endpoint.

Error mapping (ErrorResponse body on all of them):
  400  InvalidSubmission, unsupported format, malformed metadata
  404  NotFound
  409  InvalidTransition, RetryUnavailable
  413  upload larger than MAX_UPLOAD_BYTES
  503  QueueFull
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from docingest.core.errors import (
    ExtractionError,
    InvalidSubmission,
    InvalidTransition,
    NotFound,
    QueueFull,
    RetryUnavailable,
)
from docingest.processing.formats import is_recognized_format
from docingest.registry.base import Submission
from docingest.schemas.documents import (
    ErrorResponse,
    GraphBackend,
    IngestErrors,
    IngestionTarget,
    RetryRequest,
    StatusResponse,
    SubmissionAccepted,
    TextIngestRequest,
)
from docingest.services.ingestion import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ingest",
    tags=["Document Ingestion"],
)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid submission or unsupported format"},
    404: {"model": ErrorResponse, "description": "Unknown submission id"},
    409: {"model": ErrorResponse, "description": "Invalid transition or retry not possible"},
    503: {"model": ErrorResponse, "description": "Ingestion queue is full"},
}


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


def _error(status_code: int, body: ErrorResponse, request_id: str) -> JSONResponse:
    body.request_id = request_id
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


def _accepted(submission: Submission, request_id: str) -> JSONResponse:
    body = SubmissionAccepted(
        id=submission.id,
        source_name=submission.source_name,
        status=submission.status,
        target=submission.ingestion_target,
        graph_backend=submission.graph_backend,
        created_at=submission.created_at,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Request-ID":    request_id,
            "X-Submission-ID": str(submission.id),
            "Location":        f"/api/v1/ingest/status/{submission.id}",
        },
    )


def _map_error(exc: Exception, request_id: str, filename: str = "") -> JSONResponse:
    if isinstance(exc, NotFound):
        return _error(
            status.HTTP_404_NOT_FOUND,
            ErrorResponse(error_code="NOT_FOUND", message=exc.message),
            request_id,
        )
    if isinstance(exc, InvalidSubmission):
        return _error(status.HTTP_400_BAD_REQUEST, IngestErrors.invalid_submission(exc.message), request_id)
    if isinstance(exc, ExtractionError):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            IngestErrors.unsupported_format(filename, exc.message),
            request_id,
        )
    if isinstance(exc, InvalidTransition):
        return _error(status.HTTP_409_CONFLICT, IngestErrors.invalid_transition(exc.message), request_id)
    if isinstance(exc, RetryUnavailable):
        return _error(status.HTTP_409_CONFLICT, IngestErrors.retry_unavailable(exc.message), request_id)
    if isinstance(exc, QueueFull):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, IngestErrors.queue_full(), request_id)
    raise exc


_HANDLED = (NotFound, InvalidSubmission, ExtractionError, InvalidTransition, RetryUnavailable, QueueFull)


# ---------------------------------------------------------------------------
# POST /ingest/file
# ---------------------------------------------------------------------------

@router.post(
    "/file",
    response_model=SubmissionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a document file for ingestion",
    description=(
        "Accepts PDF, DOC, DOCX, TXT, MD or EPUB. Returns 202 immediately; "
        "poll GET /ingest/status/{id} for progress."
    ),
    responses={**_ERROR_RESPONSES, 413: {"model": ErrorResponse, "description": "File too large"}},
)
async def ingest_file(
    request:         Request,
    file:            UploadFile               = File(..., description="Document file"),
    target:          IngestionTarget          = Form(IngestionTarget.VECTOR),
    graph_backend:   Optional[GraphBackend]   = Form(None),
    declared_format: Optional[str]            = Form(None, description="MIME type or extension; overrides detection"),
    metadata:        Optional[str]            = Form(None, description="Optional JSON object stored with the submission"),
    service:         IngestionService         = Depends(get_ingestion_service),
) -> JSONResponse:
    request_id = _request_id(request)
    filename = file.filename or ""

    parsed_metadata: dict | None = None
    if metadata:
        try:
            parsed_metadata = json.loads(metadata)
            if not isinstance(parsed_metadata, dict):
                raise ValueError("metadata must be a JSON object")
        except (json.JSONDecodeError, ValueError):
            return _error(
                status.HTTP_400_BAD_REQUEST,
                IngestErrors.invalid_submission("metadata must be a valid JSON object string.", "metadata"),
                request_id,
            )

    limit = request.app.state.settings.max_upload_bytes
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit + 4096:   # +4KB form overhead
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            IngestErrors.file_too_large(int(content_length), limit),
            request_id,
        )

    data = await file.read()
    if len(data) > limit:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            IngestErrors.file_too_large(len(data), limit),
            request_id,
        )

    # The upload content type only fills in for a missing or unknown extension
    _, ext = os.path.splitext(filename)
    if not declared_format and not is_recognized_format(ext) and is_recognized_format(file.content_type):
        declared_format = file.content_type

    try:
        submission = await service.submit_file(
            filename, data, target, graph_backend,
            declared_format=declared_format,
            metadata=parsed_metadata,
        )
    except _HANDLED as exc:
        logger.info("File rejected | source=%s error=%s request_id=%s", filename, exc, request_id)
        return _map_error(exc, request_id, filename)

    return _accepted(submission, request_id)


# ---------------------------------------------------------------------------
# POST /ingest/text
# ---------------------------------------------------------------------------

@router.post(
    "/text",
    response_model=SubmissionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit raw text for ingestion",
    responses=_ERROR_RESPONSES,
)
async def ingest_text(
    request: Request,
    body:    TextIngestRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> JSONResponse:
    request_id = _request_id(request)
    try:
        submission = await service.submit_text(
            body.text, body.target, body.graph_backend,
            source_name=body.source_name,
            metadata=body.metadata,
        )
    except _HANDLED as exc:
        logger.info("Text rejected | error=%s request_id=%s", exc, request_id)
        return _map_error(exc, request_id)

    return _accepted(submission, request_id)


# ---------------------------------------------------------------------------
# GET /ingest/status/{id}
# ---------------------------------------------------------------------------

@router.get(
    "/status/{submission_id}",
    response_model=StatusResponse,
    summary="Poll submission status and progress",
    responses={404: _ERROR_RESPONSES[404]},
)
async def get_status(
    submission_id: UUID,
    request:       Request,
    service:       IngestionService = Depends(get_ingestion_service),
):
    try:
        submission = await service.get_status(submission_id)
    except NotFound:
        return _error(status.HTTP_404_NOT_FOUND, IngestErrors.not_found(submission_id), _request_id(request))
    return StatusResponse(**submission.to_status())


# ---------------------------------------------------------------------------
# POST /ingest/{id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{submission_id}/cancel",
    response_model=StatusResponse,
    summary="Cancel a submission that has not started processing",
    responses={404: _ERROR_RESPONSES[404], 409: _ERROR_RESPONSES[409]},
)
async def cancel_submission(
    submission_id: UUID,
    request:       Request,
    service:       IngestionService = Depends(get_ingestion_service),
):
    request_id = _request_id(request)
    try:
        submission = await service.cancel(submission_id)
    except NotFound:
        return _error(status.HTTP_404_NOT_FOUND, IngestErrors.not_found(submission_id), request_id)
    except _HANDLED as exc:
        return _map_error(exc, request_id)
    return StatusResponse(**submission.to_status())


# ---------------------------------------------------------------------------
# POST /ingest/{id}/retry
# ---------------------------------------------------------------------------

@router.post(
    "/{submission_id}/retry",
    response_model=SubmissionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-run a failed submission",
    description=(
        "Creates a new submission linked to the failed one (retry_of / lineage_id). "
        "With only_failed=true a partially failed run is narrowed to the failed stores."
    ),
    responses=_ERROR_RESPONSES,
)
async def retry_submission(
    submission_id: UUID,
    request:       Request,
    body:          Optional[RetryRequest] = None,
    service:       IngestionService       = Depends(get_ingestion_service),
) -> JSONResponse:
    request_id = _request_id(request)
    only_failed = body.only_failed if body is not None else True
    try:
        submission = await service.retry(submission_id, only_failed=only_failed)
    except NotFound:
        return _error(status.HTTP_404_NOT_FOUND, IngestErrors.not_found(submission_id), request_id)
    except _HANDLED as exc:
        logger.info("Retry rejected | submission=%s error=%s", submission_id, exc)
        return _map_error(exc, request_id)

    return _accepted(submission, request_id)
