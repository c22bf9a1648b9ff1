"""
Store Set: Abstract Base

Every downstream knowledge store (vector index or graph database)
implements this interface. The orchestrator only speaks this protocol, so
backends are swappable without touching the pipeline.

Contract (enforced by ALL implementations):
  - ingest(text, metadata, submission_id) -> StoreOutcome
  - failures raise StoreError(kind, backend); no other exception escapes
  - no internal retries; the caller owns retry policy
  - writes are keyed by submission_id with deterministic record ids and
    replace any prior records for that key, so repeating a call with the
    same key and text never creates duplicates
"""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, TypeVar

import httpx

from docingest.core.errors import StoreError, StoreErrorKind
from docingest.processing.chunking import TextChunk, split_for_store

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class StoreOutcome:
    """Result of one successful ingest call."""
    backend:         str
    records_written: int
    detail:          dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status":          "success",
            "backend":         self.backend,
            "records_written": self.records_written,
            **({"detail": self.detail} if self.detail else {}),
        }


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_AUTH_NAME_HINTS = ("auth", "unauthori", "forbidden", "permission", "credential")


def _status_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def classify_store_exception(
    exc: BaseException,
    backend: str,
    auth_types: tuple[type[BaseException], ...] = (),
    connection_types: tuple[type[BaseException], ...] = (),
) -> StoreError:
    """
    Map a client exception onto the store error taxonomy.

    auth_failure        401/403, or an authentication exception type
    connection_failure  socket / timeout / transport errors, or 5xx
    malformed_write     everything else (schema mismatch, bad query, ...)
    """
    if isinstance(exc, StoreError):
        return exc

    message = f"{type(exc).__name__}: {exc}"
    status  = _status_code(exc)
    name    = type(exc).__name__.lower()

    if (
        isinstance(exc, auth_types)
        or status in (401, 403)
        or any(hint in name for hint in _AUTH_NAME_HINTS)
    ):
        kind = StoreErrorKind.AUTH_FAILURE
    elif (
        isinstance(exc, connection_types)
        or isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError))
        or isinstance(exc, httpx.TransportError)
        or (status is not None and status >= 500)
    ):
        kind = StoreErrorKind.CONNECTION_FAILURE
    else:
        kind = StoreErrorKind.MALFORMED_WRITE

    return StoreError(kind, backend, message)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class BaseStore(ABC):
    """
    One adapter per storage backend.

    Subclasses set `role` ("vector" | "graph") and implement `backend`
    and `ingest`. Blocking clients go through run_blocking() so one slow
    backend never stalls the event loop.
    """

    role: str = "vector"

    # Exception types of the concrete client, for classify_store_exception()
    auth_errors:       tuple[type[BaseException], ...] = ()
    connection_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200) -> None:
        self._chunk_size    = chunk_size
        self._chunk_overlap = chunk_overlap

    @property
    @abstractmethod
    def backend(self) -> str:
        """Backend identifier used in outcomes and error detail."""

    @abstractmethod
    async def ingest(
        self,
        text: str,
        metadata: Mapping[str, Any],
        submission_id: str,
    ) -> StoreOutcome:
        """Write normalized content for `submission_id`. Raises StoreError."""

    async def close(self) -> None:
        """Release client connections (no-op by default)."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _chunks(self, text: str, metadata: Mapping[str, Any]) -> list[TextChunk]:
        return split_for_store(text, metadata, self._chunk_size, self._chunk_overlap)

    def _error(self, exc: BaseException) -> StoreError:
        err = classify_store_exception(
            exc, self.backend, self.auth_errors, self.connection_errors,
        )
        logger.warning(
            "Store write failed | backend=%s kind=%s error=%s",
            self.backend, err.kind.value, err.message,
        )
        return err

    @staticmethod
    async def run_blocking(func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))


def scalar_metadata(metadata: Mapping[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    """Pick flat, non-null values that every backend can store as properties."""
    return {
        k: metadata[k]
        for k in keys
        if k in metadata and isinstance(metadata[k], (str, int, float, bool))
    }
