"""
Fixed-size splitting of normalized text for store writes.

A plain RecursiveCharacterTextSplitter; no semantic chunking. When EPUB
chapter offsets are present in the metadata, each chapter is split on its
own so no chunk straddles a chapter boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter


@dataclass(frozen=True)
class TextChunk:
    index:   int
    text:    str
    chapter: Optional[str] = None


def split_for_store(
    text: str,
    metadata: Optional[Mapping[str, Any]] = None,
    chunk_size: int = 1000,
    chunk_overlap: int = 200,
) -> list[TextChunk]:
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        separators=["\n\n", "\n", ". ", " ", ""],
    )

    chapters = (metadata or {}).get("chapters") or []
    sections: list[tuple[Optional[str], str]]
    if chapters:
        sections = [
            (ch.get("title"), text[ch["offset"]: ch["offset"] + ch["length"]])
            for ch in chapters
        ]
    else:
        sections = [(None, text)]

    chunks: list[TextChunk] = []
    for title, body in sections:
        for piece in splitter.split_text(body):
            if piece.strip():
                chunks.append(TextChunk(index=len(chunks), text=piece, chapter=title))
    return chunks
