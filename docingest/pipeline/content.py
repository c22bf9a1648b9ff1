"""What a worker hands to the orchestrator for one submission."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from docingest.processing.extractors import ExtractedContent


@dataclass(frozen=True)
class SubmissionContent:
    """
    Exactly one of three shapes:

      file       raw bytes + optional declared format → goes through an extractor
      text       raw text → extraction skipped, text used verbatim
      extracted  cached extraction from an earlier run → extraction skipped
    """
    data:            Optional[bytes] = None
    text:            Optional[str] = None
    declared_format: Optional[str] = None
    extracted:       Optional[ExtractedContent] = None

    @classmethod
    def from_bytes(cls, data: bytes, declared_format: Optional[str] = None) -> "SubmissionContent":
        return cls(data=data, declared_format=declared_format)

    @classmethod
    def from_text(cls, text: str) -> "SubmissionContent":
        return cls(text=text)

    @classmethod
    def from_extracted(cls, extracted: ExtractedContent) -> "SubmissionContent":
        return cls(extracted=extracted)

    @property
    def kind(self) -> str:
        if self.extracted is not None:
            return "extracted"
        if self.text is not None:
            return "text"
        return "file"

    @property
    def is_raw_text(self) -> bool:
        return self.kind == "text"
