"""
Error taxonomy for the ingestion pipeline.

  DocIngestError
  ├── ExtractionError   corrupt | unsupported_format | invalid_encoding | ocr_unavailable
  ├── StoreError        connection_failure | auth_failure | malformed_write | not_configured
  ├── RegistryError
  │   ├── NotFound
  │   ├── InvalidTransition
  │   └── InvalidSubmission
  └── QueueError
      ├── QueueFull
      └── RetryUnavailable

Propagation:
  ExtractionError and StoreError are caught by the orchestrator and turned
  into a terminal failed transition (see pipeline/orchestrator.py).
  Registry and queue errors surface to the direct caller.

Every error can render itself into the JSON shape stored in
submissions.error_detail via to_detail().
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ExtractionErrorKind(str, Enum):
    CORRUPT            = "corrupt"
    UNSUPPORTED_FORMAT = "unsupported_format"
    INVALID_ENCODING   = "invalid_encoding"
    OCR_UNAVAILABLE    = "ocr_unavailable"


class StoreErrorKind(str, Enum):
    CONNECTION_FAILURE = "connection_failure"
    AUTH_FAILURE       = "auth_failure"
    MALFORMED_WRITE    = "malformed_write"
    NOT_CONFIGURED     = "not_configured"


# OCR may come back (service restored, binary installed); everything else is
# deterministic on the same bytes.
_RETRYABLE_EXTRACTION_KINDS = frozenset({ExtractionErrorKind.OCR_UNAVAILABLE})


class DocIngestError(Exception):
    """Base class for every error raised by docingest."""

    code: str = "docingest_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        return {"kind": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionError(DocIngestError):
    code = "extraction_error"

    def __init__(self, kind: ExtractionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = ExtractionErrorKind(kind)

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_EXTRACTION_KINDS

    def to_detail(self) -> dict[str, Any]:
        return {
            "kind":      self.kind.value,
            "message":   self.message,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"ExtractionError(kind={self.kind.value!r}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class StoreError(DocIngestError):
    code = "store_error"

    def __init__(self, kind: StoreErrorKind, backend: str, message: str) -> None:
        super().__init__(message)
        self.kind    = StoreErrorKind(kind)
        self.backend = backend

    def to_detail(self) -> dict[str, Any]:
        return {
            "kind":    self.kind.value,
            "backend": self.backend,
            "message": self.message,
        }

    def __repr__(self) -> str:
        return (
            f"StoreError(kind={self.kind.value!r}, backend={self.backend!r}, "
            f"message={self.message!r})"
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class RegistryError(DocIngestError):
    code = "registry_error"


class NotFound(RegistryError):
    code = "not_found"


class InvalidTransition(RegistryError):
    code = "invalid_transition"


class InvalidSubmission(RegistryError):
    code = "invalid_submission"


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class QueueError(DocIngestError):
    code = "queue_error"


class QueueFull(QueueError):
    code = "queue_full"


class RetryUnavailable(QueueError):
    """A retry was requested but the submission cannot be re-run."""

    code = "retry_unavailable"
