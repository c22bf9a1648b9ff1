"""
Neo4j Graph Store: async Bolt driver, Cypher writes

All four statements from stores/cypher.py run inside one write transaction
(session.execute_write), so a failed write leaves no partial document.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from neo4j import AsyncGraphDatabase
from neo4j.exceptions import AuthError, ServiceUnavailable, SessionExpired

from docingest.core.config import Settings
from docingest.stores.base import BaseStore, StoreOutcome, scalar_metadata
from docingest.stores.cypher import document_write_statements

logger = logging.getLogger(__name__)

_DOCUMENT_PROP_KEYS = ("source_name", "format", "extraction_method", "page_count", "title", "author")


class Neo4jGraphStore(BaseStore):

    role = "graph"
    auth_errors       = (AuthError,)
    connection_errors = (ServiceUnavailable, SessionExpired)

    def __init__(
        self,
        driver_factory: Callable[[], Any],
        database: str = "neo4j",
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size, chunk_overlap)
        self._driver_factory = driver_factory
        self._driver: Optional[Any] = None
        self._database = database

    @classmethod
    def from_settings(cls, settings: Settings) -> "Neo4jGraphStore":
        return cls(
            driver_factory=lambda: AsyncGraphDatabase.driver(
                settings.neo4j_uri,
                auth=(settings.neo4j_user, settings.neo4j_password),
            ),
            database=settings.neo4j_database,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )

    @property
    def backend(self) -> str:
        return "neo4j"

    async def ingest(
        self,
        text: str,
        metadata: Mapping[str, Any],
        submission_id: str,
    ) -> StoreOutcome:
        chunks = self._chunks(text, metadata)
        statements = document_write_statements(
            submission_id, chunks, scalar_metadata(metadata, _DOCUMENT_PROP_KEYS),
        )

        try:
            if self._driver is None:
                self._driver = self._driver_factory()
            async with self._driver.session(database=self._database) as session:
                await session.execute_write(_run_statements, statements)
        except Exception as exc:
            raise self._error(exc) from exc

        logger.info("Neo4j write | submission=%s chunks=%d", submission_id, len(chunks))
        return StoreOutcome(
            backend=self.backend,
            records_written=len(chunks) + 1,   # chunks + document node
            detail={"database": self._database},
        )

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None


async def _run_statements(tx, statements: list[tuple[str, dict[str, Any]]]) -> None:
    for query, params in statements:
        result = await tx.run(query, params)
        await result.consume()
