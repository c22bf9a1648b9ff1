"""
Store Factory

Builds the configured vector store and the graph store for each graph
backend from explicit Settings. Stores are built lazily on first use and
cached; a backend that is not configured (or whose client fails to build)
yields StoreError(not_configured) for that role only, so the orchestrator
records it as one failed store instead of aborting the whole submission.

resolve() fixes the ingestion order: vector first, then graph.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from docingest.core.config import Settings
from docingest.core.errors import StoreError, StoreErrorKind
from docingest.schemas.documents import GraphBackend, IngestionTarget
from docingest.stores.base import BaseStore

logger = logging.getLogger(__name__)

StoreBuilder = Callable[[], BaseStore]


class StoreSet:
    """
    Lazily-built, cached store adapters keyed by ("vector" | GraphBackend).

    Tests construct it directly with ready-made stores:
        StoreSet(vector=fake_vector, graph={GraphBackend.NEO4J: fake_graph})
    """

    def __init__(
        self,
        vector: BaseStore | StoreBuilder | None = None,
        graph: Optional[dict[GraphBackend, BaseStore | StoreBuilder]] = None,
    ) -> None:
        self._builders: dict[str, BaseStore | StoreBuilder | None] = {"vector": vector}
        for backend, entry in (graph or {}).items():
            self._builders[GraphBackend(backend).value] = entry
        self._built: dict[str, BaseStore] = {}

    def _get(self, key: str, backend_name: str) -> BaseStore:
        if key in self._built:
            return self._built[key]

        entry = self._builders.get(key)
        if entry is None:
            raise StoreError(
                StoreErrorKind.NOT_CONFIGURED, backend_name,
                f"No {backend_name} store is configured",
            )

        if isinstance(entry, BaseStore):
            store = entry
        else:
            try:
                store = entry()
            except StoreError:
                raise
            except Exception as exc:
                logger.error("Store build failed | backend=%s error=%s", backend_name, exc)
                raise StoreError(
                    StoreErrorKind.NOT_CONFIGURED, backend_name,
                    f"Could not initialise {backend_name} store: {exc}",
                ) from exc

        self._built[key] = store
        return store

    def vector_store(self) -> BaseStore:
        return self._get("vector", "vector")

    def graph_store(self, backend: GraphBackend | str) -> BaseStore:
        backend = GraphBackend(backend)
        return self._get(backend.value, backend.value)

    def resolve(
        self,
        target: IngestionTarget,
        graph_backend: Optional[GraphBackend],
    ) -> list[tuple[str, Callable[[], BaseStore]]]:
        """
        Ordered (role, getter) pairs for a submission: vector before graph.

        Getters are returned instead of stores so a build failure surfaces
        while that particular store is being attempted.
        """
        plan: list[tuple[str, Callable[[], BaseStore]]] = []
        if target.includes_vector:
            plan.append(("vector", self.vector_store))
        if target.includes_graph:
            if graph_backend is None:
                raise StoreError(
                    StoreErrorKind.NOT_CONFIGURED, "graph",
                    "Target includes graph but no graph backend was selected",
                )
            plan.append(("graph", lambda: self.graph_store(graph_backend)))
        return plan

    async def close(self) -> None:
        for key, store in list(self._built.items()):
            try:
                await store.close()
            except Exception as exc:
                logger.warning("Store close failed | backend=%s error=%s", key, exc)
        self._built.clear()


# ---------------------------------------------------------------------------
# Settings → StoreSet
# ---------------------------------------------------------------------------

def _not_configured(backend: str, setting: str) -> StoreBuilder:
    def _raise() -> BaseStore:
        raise StoreError(
            StoreErrorKind.NOT_CONFIGURED, backend,
            f"{backend} is not configured (set {setting.upper()})",
        )
    return _raise


def _vector_builder(settings: Settings) -> StoreBuilder:
    backend = settings.vector_store_backend.lower()

    if backend == "chroma":
        def _build() -> BaseStore:
            from docingest.stores.chroma_store import ChromaVectorStore
            return ChromaVectorStore.from_settings(settings)
        return _build

    if backend == "weaviate":
        def _build() -> BaseStore:
            from docingest.stores.weaviate_store import WeaviateVectorStore
            return WeaviateVectorStore.from_settings(settings)
        return _build

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'chroma', 'weaviate'"
    )


def build_store_set(settings: Settings) -> StoreSet:
    def _neo4j() -> BaseStore:
        from docingest.stores.neo4j_store import Neo4jGraphStore
        return Neo4jGraphStore.from_settings(settings)

    def _falkordb() -> BaseStore:
        from docingest.stores.falkordb_store import FalkorDBGraphStore
        return FalkorDBGraphStore.from_settings(settings)

    def _graphiti() -> BaseStore:
        from docingest.stores.graphiti_store import GraphitiGraphStore
        return GraphitiGraphStore.from_settings(settings)

    return StoreSet(
        vector=_vector_builder(settings),
        graph={
            GraphBackend.NEO4J:
                _neo4j if settings.neo4j_uri else _not_configured("neo4j", "neo4j_uri"),
            GraphBackend.FALKORDB:
                _falkordb if settings.falkordb_host else _not_configured("falkordb", "falkordb_host"),
            GraphBackend.GRAPHITI:
                _graphiti if settings.graphiti_uri else _not_configured("graphiti", "graphiti_uri"),
        },
    )
