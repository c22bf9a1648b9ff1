"""
Graphiti Graph Store: temporal knowledge graph on top of Neo4j

Each chunk becomes one text episode named "<submission_id>:<index>";
Graphiti itself extracts entities and relationships from the episode body
(this needs the LLM credentials Graphiti is configured with, e.g.
OPENAI_API_KEY) and resolves them against existing nodes.

Re-ingesting a key first removes the episodes written under it before, through
Graphiti's remove_episode, which also drops the nodes and edges only those
episodes produced. Entities shared with other episodes stay.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from neo4j.exceptions import AuthError, ServiceUnavailable

from docingest.core.config import Settings
from docingest.stores.base import BaseStore, StoreOutcome

logger = logging.getLogger(__name__)

PREVIOUS_EPISODES = """
MATCH (e:Episodic {group_id: $group_id})
WHERE e.name STARTS WITH $prefix
RETURN e.uuid AS uuid
"""


async def create_graphiti_client(settings: Settings):
    from graphiti_core import Graphiti  # heavy; import on first use

    client = Graphiti(settings.graphiti_uri, settings.graphiti_user, settings.graphiti_password)
    await client.build_indices_and_constraints()
    return client


class GraphitiGraphStore(BaseStore):

    role = "graph"
    auth_errors       = (AuthError,)
    connection_errors = (ServiceUnavailable,)

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[Any]],
        group_id: str = "docingest",
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size, chunk_overlap)
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._client_lock = asyncio.Lock()
        self._group_id = group_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "GraphitiGraphStore":
        return cls(
            client_factory=lambda: create_graphiti_client(settings),
            group_id=settings.graphiti_group_id,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )

    @property
    def backend(self) -> str:
        return "graphiti"

    async def ingest(
        self,
        text: str,
        metadata: Mapping[str, Any],
        submission_id: str,
    ) -> StoreOutcome:
        from graphiti_core.nodes import EpisodeType

        chunks = self._chunks(text, metadata)
        source = str(metadata.get("source_name", "document"))

        try:
            async with self._client_lock:
                if self._client is None:
                    self._client = await self._client_factory()
            removed = await self._remove_episodes(submission_id)
            for chunk in chunks:
                await self._client.add_episode(
                    name=f"{submission_id}:{chunk.index}",
                    episode_body=chunk.text,
                    source=EpisodeType.text,
                    source_description=f"{source} chunk {chunk.index}",
                    reference_time=datetime.now(timezone.utc),
                    group_id=self._group_id,
                )
        except Exception as exc:
            raise self._error(exc) from exc

        logger.info(
            "Graphiti episodes | submission=%s group=%s episodes=%d replaced=%d",
            submission_id, self._group_id, len(chunks), removed,
        )
        return StoreOutcome(
            backend=self.backend,
            records_written=len(chunks),
            detail={"group_id": self._group_id},
        )

    async def _remove_episodes(self, key: str) -> int:
        records, _, _ = await self._client.driver.execute_query(
            PREVIOUS_EPISODES, group_id=self._group_id, prefix=f"{key}:",
        )
        for record in records:
            await self._client.remove_episode(record["uuid"])
        return len(records)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
