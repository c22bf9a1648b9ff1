"""
Weaviate Vector Store: single collection, server-side vectorizer

Isolation model:
  All chunks live in one collection (default "DocumentChunk"); each object
  carries its submission_id as a filterable property.

Idempotence:
  object uuid = generate_uuid5("{submission_id}:{chunk_index}")
  every write deletes the submission's objects (delete_many on the
  submission_id filter) before insert_many, so repeats never duplicate.

Vectors are produced by the collection's vectorizer module on the Weaviate
server (weaviate_vectorizer), not by this process.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional

import weaviate
import weaviate.classes as wvc
from weaviate.classes.config import Configure, DataType, Property
from weaviate.classes.init import Auth
from weaviate.classes.query import Filter
from weaviate.exceptions import WeaviateConnectionError
from weaviate.util import generate_uuid5

from docingest.core.config import Settings
from docingest.core.errors import StoreError, StoreErrorKind
from docingest.processing.chunking import TextChunk
from docingest.stores.base import BaseStore, StoreOutcome

logger = logging.getLogger(__name__)

_INSERT_BATCH = 100


def create_weaviate_client(settings: Settings):
    """
    Create and return a connected Weaviate client.
    Supports both local (Docker) and Weaviate Cloud modes.
    """
    if settings.weaviate_url and settings.weaviate_api_key:
        # Weaviate Cloud
        return weaviate.connect_to_weaviate_cloud(
            cluster_url=settings.weaviate_url,
            auth_credentials=Auth.api_key(settings.weaviate_api_key),
        )
    # Local / Docker
    return weaviate.connect_to_local(
        host=settings.weaviate_host,
        port=settings.weaviate_port,
        grpc_port=settings.weaviate_grpc_port,
        auth_credentials=Auth.api_key(settings.weaviate_api_key) if settings.weaviate_api_key else None,
    )


def _vectorizer_config(name: str):
    if name == "none":
        return Configure.Vectorizer.none()
    if name == "text2vec-openai":
        return Configure.Vectorizer.text2vec_openai()
    if name == "text2vec-cohere":
        return Configure.Vectorizer.text2vec_cohere()
    return Configure.Vectorizer.text2vec_transformers()


class WeaviateVectorStore(BaseStore):

    role = "vector"
    connection_errors = (WeaviateConnectionError,)

    def __init__(
        self,
        client_factory: Callable[[], Any],
        collection_name: str = "DocumentChunk",
        vectorizer: str = "text2vec-transformers",
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size, chunk_overlap)
        self._client_factory  = client_factory
        self._client: Optional[Any] = None
        self._client_lock = threading.Lock()
        self._collection_name = collection_name
        self._vectorizer      = vectorizer

    @classmethod
    def from_settings(cls, settings: Settings) -> "WeaviateVectorStore":
        return cls(
            client_factory=lambda: create_weaviate_client(settings),
            collection_name=settings.weaviate_collection,
            vectorizer=settings.weaviate_vectorizer,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )

    @property
    def backend(self) -> str:
        return "weaviate"

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
            "Weaviate insert | submission=%s collection=%s objects=%d",
            submission_id, self._collection_name, written,
        )
        return StoreOutcome(
            backend=self.backend,
            records_written=written,
            detail={"collection": self._collection_name},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self.run_blocking(self._client.close)
            self._client = None

    # ------------------------------------------------------------------
    # Blocking internals, run in the thread executor
    # ------------------------------------------------------------------

    def _ensure_collection(self):
        """Create the collection on first use (cheap if it already exists)."""
        if not self._client.collections.exists(self._collection_name):
            self._client.collections.create(
                name=self._collection_name,
                description="Normalized document chunks",
                vectorizer_config=_vectorizer_config(self._vectorizer),
                properties=[
                    Property(name="submission_id", data_type=DataType.TEXT, index_filterable=True),
                    Property(name="chunk_index",   data_type=DataType.INT,  index_filterable=True),
                    Property(name="text",          data_type=DataType.TEXT, index_searchable=True),
                    Property(name="source_name",   data_type=DataType.TEXT, index_filterable=True),
                    Property(name="chapter",       data_type=DataType.TEXT, index_filterable=True),
                ],
            )
            logger.info("Weaviate collection created: %s", self._collection_name)
        return self._client.collections.get(self._collection_name)

    def _write_sync(
        self,
        key: str,
        chunks: list[TextChunk],
        metadata: Mapping[str, Any],
    ) -> int:
        with self._client_lock:
            if self._client is None:
                self._client = self._client_factory()

        collection = self._ensure_collection()
        collection.data.delete_many(where=Filter.by_property("submission_id").equal(key))

        source_name = str(metadata.get("source_name", ""))
        for start in range(0, len(chunks), _INSERT_BATCH):
            batch = chunks[start: start + _INSERT_BATCH]
            result = collection.data.insert_many([
                wvc.data.DataObject(
                    uuid=generate_uuid5(f"{key}:{c.index}"),
                    properties={
                        "submission_id": key,
                        "chunk_index":   c.index,
                        "text":          c.text,
                        "source_name":   source_name,
                        "chapter":       c.chapter or "",
                    },
                )
                for c in batch
            ])
            if result.has_errors:
                first = next(iter(result.errors.values()))
                raise StoreError(
                    StoreErrorKind.MALFORMED_WRITE,
                    self.backend,
                    f"{len(result.errors)} object(s) rejected: {getattr(first, 'message', first)}",
                )
        return len(chunks)
