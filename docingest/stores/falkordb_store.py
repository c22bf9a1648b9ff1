"""
FalkorDB Graph Store: Cypher over the Redis protocol (GRAPH.QUERY)

Same graph shape and statements as the Neo4j adapter. The falkordb client is
synchronous, so writes run in the thread executor.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Optional

import redis.exceptions
from falkordb import FalkorDB

from docingest.core.config import Settings
from docingest.processing.chunking import TextChunk
from docingest.stores.base import BaseStore, StoreOutcome, scalar_metadata
from docingest.stores.cypher import document_write_statements

logger = logging.getLogger(__name__)

_DOCUMENT_PROP_KEYS = ("source_name", "format", "extraction_method", "page_count", "title", "author")


class FalkorDBGraphStore(BaseStore):

    role = "graph"
    # AuthenticationError subclasses redis ConnectionError; auth is checked first
    auth_errors       = (redis.exceptions.AuthenticationError,)
    connection_errors = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)

    def __init__(
        self,
        client_factory: Callable[[], Any],
        graph_name: str = "akashic",
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size, chunk_overlap)
        self._client_factory = client_factory
        self._graph: Optional[Any] = None
        self._client_lock = threading.Lock()
        self._graph_name = graph_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "FalkorDBGraphStore":
        return cls(
            client_factory=lambda: FalkorDB(
                host=settings.falkordb_host,
                port=settings.falkordb_port,
                password=settings.falkordb_password or None,
            ),
            graph_name=settings.falkordb_graph,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )

    @property
    def backend(self) -> str:
        return "falkordb"

    async def ingest(
        self,
        text: str,
        metadata: Mapping[str, Any],
        submission_id: str,
    ) -> StoreOutcome:
        chunks = self._chunks(text, metadata)
        try:
            await self.run_blocking(self._write_sync, submission_id, chunks, metadata)
        except Exception as exc:
            raise self._error(exc) from exc

        logger.info(
            "FalkorDB write | submission=%s graph=%s chunks=%d",
            submission_id, self._graph_name, len(chunks),
        )
        return StoreOutcome(
            backend=self.backend,
            records_written=len(chunks) + 1,
            detail={"graph": self._graph_name},
        )

    def _write_sync(self, key: str, chunks: list[TextChunk], metadata: Mapping[str, Any]) -> None:
        with self._client_lock:
            if self._graph is None:
                self._graph = self._client_factory().select_graph(self._graph_name)

        statements = document_write_statements(
            key, chunks, scalar_metadata(metadata, _DOCUMENT_PROP_KEYS),
        )
        for query, params in statements:
            self._graph.query(query, params)
