"""
Document format detection.

Resolution order:
  1. declared format (MIME type or extension, case-insensitive)
  2. filename extension
  3. magic bytes of the content, when neither of the above is known

Anything unrecognised raises ExtractionError(unsupported_format).
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Optional

from docingest.core.errors import ExtractionError, ExtractionErrorKind


class DocumentFormat(str, Enum):
    PDF  = "pdf"
    TXT  = "txt"
    MD   = "md"
    EPUB = "epub"
    DOC  = "doc"
    DOCX = "docx"


_EXTENSIONS: dict[str, DocumentFormat] = {
    ".pdf":      DocumentFormat.PDF,
    ".txt":      DocumentFormat.TXT,
    ".text":     DocumentFormat.TXT,
    ".md":       DocumentFormat.MD,
    ".markdown": DocumentFormat.MD,
    ".epub":     DocumentFormat.EPUB,
    ".doc":      DocumentFormat.DOC,
    ".docx":     DocumentFormat.DOCX,
}

_MIME_TYPES: dict[str, DocumentFormat] = {
    "application/pdf":      DocumentFormat.PDF,
    "text/plain":           DocumentFormat.TXT,
    "text/markdown":        DocumentFormat.MD,
    "text/x-markdown":      DocumentFormat.MD,
    "application/epub+zip": DocumentFormat.EPUB,
    "application/msword":   DocumentFormat.DOC,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.DOCX,
}

MIME_BY_FORMAT: dict[DocumentFormat, str] = {
    DocumentFormat.PDF:  "application/pdf",
    DocumentFormat.TXT:  "text/plain",
    DocumentFormat.MD:   "text/markdown",
    DocumentFormat.EPUB: "application/epub+zip",
    DocumentFormat.DOC:  "application/msword",
    DocumentFormat.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

_GENERIC_MIME_TYPES = frozenset({"application/octet-stream", "binary/octet-stream"})

# Checked against the first bytes of the file content
_MAGIC_BYTES: dict[bytes, DocumentFormat] = {
    b"%PDF":                             DocumentFormat.PDF,
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1": DocumentFormat.DOC,   # OLE2
}


def _from_declared(declared: str) -> Optional[DocumentFormat]:
    value = declared.strip().lower()
    if not value:
        return None

    mime = value.split(";", 1)[0].strip()
    if mime in _MIME_TYPES:
        return _MIME_TYPES[mime]

    ext = value if value.startswith(".") else f".{value}"
    if ext in _EXTENSIONS:
        return _EXTENSIONS[ext]

    try:
        return DocumentFormat(value)
    except ValueError:
        return None


def is_recognized_format(declared: Optional[str]) -> bool:
    """True when a MIME type or extension maps to a supported format."""
    return bool(declared) and _from_declared(declared) is not None


def _from_magic(head: bytes) -> Optional[DocumentFormat]:
    for magic, fmt in _MAGIC_BYTES.items():
        if head.startswith(magic):
            return fmt
    # ZIP container: EPUB carries its mimetype as the first stored entry
    if head.startswith(b"PK\x03\x04"):
        if b"application/epub+zip" in head[:128]:
            return DocumentFormat.EPUB
        if b"word/" in head or b"[Content_Types].xml" in head:
            return DocumentFormat.DOCX
    return None


def detect_format(
    source_name: str,
    declared_format: Optional[str] = None,
    head: bytes = b"",
) -> DocumentFormat:
    """Resolve the format of a submission, or raise unsupported_format."""
    if declared_format:
        fmt = _from_declared(declared_format)
        if fmt is not None:
            return fmt
        # generic MIME types from browsers carry no information
        if declared_format.strip().lower() not in _GENERIC_MIME_TYPES:
            raise ExtractionError(
                ExtractionErrorKind.UNSUPPORTED_FORMAT,
                f"Declared format '{declared_format}' is not supported",
            )

    _, ext = os.path.splitext(source_name or "")
    if ext.lower() in _EXTENSIONS:
        return _EXTENSIONS[ext.lower()]

    fmt = _from_magic(head[:512]) if head else None
    if fmt is not None:
        return fmt

    raise ExtractionError(
        ExtractionErrorKind.UNSUPPORTED_FORMAT,
        f"Cannot determine a supported format for '{source_name}'",
    )
