"""
Cypher statements shared by the Neo4j and FalkorDB adapters.

Graph shape per submission key:

    (:Document {id})
        ▲ PART_OF
    (:Chunk {id: "<key>:<index>", index, text, chapter}) -[:NEXT]-> (:Chunk ...)

Every statement is MERGE-based and keyed by deterministic ids, and stale
chunks beyond the new chunk count are removed, so re-ingesting the same
text leaves the graph unchanged.
"""

from __future__ import annotations

from typing import Any, Mapping

from docingest.processing.chunking import TextChunk

MERGE_DOCUMENT = """
MERGE (d:Document {id: $id})
SET d += $props
"""

DELETE_STALE_CHUNKS = """
MATCH (c:Chunk)-[:PART_OF]->(d:Document {id: $id})
WHERE c.index >= $count
DETACH DELETE c
"""

MERGE_CHUNKS = """
MATCH (d:Document {id: $id})
UNWIND $chunks AS chunk
MERGE (c:Chunk {id: chunk.id})
SET c.index = chunk.index, c.text = chunk.text, c.chapter = chunk.chapter
MERGE (c)-[:PART_OF]->(d)
"""

LINK_CHUNKS = """
MATCH (a:Chunk)-[:PART_OF]->(d:Document {id: $id})
MATCH (b:Chunk)-[:PART_OF]->(d)
WHERE b.index = a.index + 1
MERGE (a)-[:NEXT]->(b)
"""


def document_write_statements(
    key: str,
    chunks: list[TextChunk],
    props: Mapping[str, Any],
) -> list[tuple[str, dict[str, Any]]]:
    rows = [
        {"id": f"{key}:{c.index}", "index": c.index, "text": c.text, "chapter": c.chapter}
        for c in chunks
    ]
    return [
        (MERGE_DOCUMENT,      {"id": key, "props": {**props, "chunk_count": len(chunks)}}),
        (DELETE_STALE_CHUNKS, {"id": key, "count": len(chunks)}),
        (MERGE_CHUNKS,        {"id": key, "chunks": rows}),
        (LINK_CHUNKS,         {"id": key}),
    ]
