"""
Chroma Vector Store: HTTP client, server-side embeddings

Records:
  one Chroma document per chunk
  id        "{submission_id}:{chunk_index}"
  metadata  submission_id, chunk_index, source_name, format, chapter

Idempotence:
  every write first deletes the submission's existing chunks, then upserts
  with deterministic ids, so a repeated ingest of the same text leaves exactly
  one copy, and a shorter re-ingest does not leave stale tail chunks.

Embedding is the collection's configured embedding function on the Chroma
server; the pipeline never selects or calls an embedding model.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional

from docingest.core.config import Settings
from docingest.processing.chunking import TextChunk
from docingest.stores.base import BaseStore, StoreOutcome, scalar_metadata

logger = logging.getLogger(__name__)

_UPSERT_BATCH = 100
_CHUNK_METADATA_KEYS = ("source_name", "format", "extraction_method", "retry_of")


def create_chroma_client(settings: Settings):
    """Connect to a Chroma server. Raises on an unreachable server."""
    import chromadb
    from chromadb.config import Settings as ChromaSettings

    headers = (
        {"Authorization": f"Bearer {settings.chroma_auth_token}"}
        if settings.chroma_auth_token else None
    )
    return chromadb.HttpClient(
        host=settings.chroma_host,
        port=settings.chroma_port,
        ssl=settings.chroma_ssl,
        headers=headers,
        settings=ChromaSettings(anonymized_telemetry=False),
    )


class ChromaVectorStore(BaseStore):

    role = "vector"

    def __init__(
        self,
        client_factory: Callable[[], Any],
        collection_name: str = "akashic",
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size, chunk_overlap)
        self._client_factory  = client_factory
        self._client: Optional[Any] = None
        self._client_lock = threading.Lock()
        self._collection_name = collection_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChromaVectorStore":
        return cls(
            client_factory=lambda: create_chroma_client(settings),
            collection_name=settings.chroma_collection,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )

    @property
    def backend(self) -> str:
        return "chroma"

    async def ingest(
        self,
        text: str,
        metadata: Mapping[str, Any],
        submission_id: str,
    ) -> StoreOutcome:
        chunks = self._chunks(text, metadata)
        try:
            written = await self.run_blocking(self._write_sync, submission_id, chunks, metadata)
        except Exception as exc:
            raise self._error(exc) from exc

        logger.info(
            "Chroma upsert | submission=%s collection=%s chunks=%d",
            submission_id, self._collection_name, written,
        )
        return StoreOutcome(
            backend=self.backend,
            records_written=written,
            detail={"collection": self._collection_name},
        )

    def _write_sync(
        self,
        key: str,
        chunks: list[TextChunk],
        metadata: Mapping[str, Any],
    ) -> int:
        with self._client_lock:
            if self._client is None:
                self._client = self._client_factory()

        collection = self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        collection.delete(where={"submission_id": key})

        base = scalar_metadata(metadata, _CHUNK_METADATA_KEYS)
        for start in range(0, len(chunks), _UPSERT_BATCH):
            batch = chunks[start: start + _UPSERT_BATCH]
            collection.upsert(
                ids=[f"{key}:{c.index}" for c in batch],
                documents=[c.text for c in batch],
                metadatas=[
                    {
                        **base,
                        "submission_id": key,
                        "chunk_index":   c.index,
                        **({"chapter": c.chapter} if c.chapter else {}),
                    }
                    for c in batch
                ],
            )
        return len(chunks)
