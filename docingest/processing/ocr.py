"""
OCR Collaborator: Page Rendering and Recognition
════════════════════════════════════════════════════

The pipeline treats OCR as an external capability with its own availability
failure mode. It only needs two things from it:

  PageRenderer.render(bytes) -> list[png bytes]
    PdfPageRenderer     PyMuPDF rasterises each PDF page at a fixed DPI
    OfficePageRenderer  headless LibreOffice converts DOC/DOCX → PDF,
                        then PdfPageRenderer takes over

  OcrEngine.recognize(png bytes) -> OcrPage(text, confidence | None)
    UnstructuredOcrEngine  local, open-source (unstructured + tesseract)
    TextractOcrEngine      AWS Textract DetectDocumentText, per page

Enterprise trade-off:
  Unstructured = zero per-call cost, runs in-cluster, GDPR-friendly
  Textract     = higher accuracy, pay-per-page, adds AWS dependency

Everything here is blocking; extractors run it inside a thread executor.
build_ocr_engine() returns None when OCR is disabled (ocr_backend=none), and
extractors that need OCR then fail with ocr_unavailable.
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from docingest.core.config import Settings
from docingest.core.errors import ExtractionError, ExtractionErrorKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class OcrPage:
    """
    Text recognised on one page image.

    confidence : 0.0–1.0 when the engine reports one, else None
    """
    text:       str
    confidence: Optional[float] = None


# ---------------------------------------------------------------------------
# Recognition engines
# ---------------------------------------------------------------------------

class OcrEngine(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name recorded in extraction metadata."""

    @abstractmethod
    def recognize(self, page_image: bytes) -> OcrPage:
        """
        Recognise text on a single PNG page image.

        May raise any exception when the engine is unreachable or broken;
        callers translate that into ExtractionError(ocr_unavailable).
        """


class UnstructuredOcrEngine(OcrEngine):
    """
    OCR via the open-source Unstructured library (pytesseract underneath).

    Requires the `unstructured[image]` extra plus the tesseract system
    package. Unstructured does not expose a per-element confidence, so
    confidence is reported as None.
    """

    def __init__(self, languages: Optional[list[str]] = None) -> None:
        self._languages = languages or ["eng"]

    @property
    def name(self) -> str:
        return "unstructured"

    def recognize(self, page_image: bytes) -> OcrPage:
        from unstructured.partition.image import partition_image  # heavy; import on first use

        elements = partition_image(
            file=io.BytesIO(page_image),
            strategy="ocr_only",
            languages=self._languages,
        )
        lines = [str(el).strip() for el in elements]
        return OcrPage(text="\n".join(line for line in lines if line), confidence=None)


class TextractOcrEngine(OcrEngine):
    """
    AWS Textract DetectDocumentText, one synchronous call per page image.

    IAM permission required on the worker role: textract:DetectDocumentText
    """

    def __init__(self, region: str = "us-east-1") -> None:
        self._region = region
        self._client = None

    @property
    def name(self) -> str:
        return "textract"

    def _get_client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("textract", region_name=self._region)
        return self._client

    def recognize(self, page_image: bytes) -> OcrPage:
        response = self._get_client().detect_document_text(Document={"Bytes": page_image})

        lines: list[str] = []
        confidences: list[float] = []
        for block in response.get("Blocks", []):
            if block.get("BlockType") != "LINE":
                continue
            lines.append(block.get("Text", ""))
            confidences.append(block.get("Confidence", 0.0) / 100.0)   # normalize to 0–1

        confidence = round(sum(confidences) / len(confidences), 3) if confidences else None
        return OcrPage(text="\n".join(lines), confidence=confidence)


def build_ocr_engine(settings: Settings) -> Optional[OcrEngine]:
    backend = settings.ocr_backend
    if backend == "none":
        return None
    if backend == "unstructured":
        return UnstructuredOcrEngine()
    if backend == "textract":
        return TextractOcrEngine(region=settings.aws_region)
    raise ValueError(
        f"Unknown OCR backend: '{backend}'. Valid options: 'unstructured', 'textract', 'none'"
    )


# ---------------------------------------------------------------------------
# Page renderers
# ---------------------------------------------------------------------------

class PageRenderer(ABC):

    @abstractmethod
    def render(self, data: bytes) -> list[bytes]:
        """Rasterise a document into one PNG image per page."""


class PdfPageRenderer(PageRenderer):

    def __init__(self, dpi: int = 200) -> None:
        self._dpi = dpi

    def render(self, data: bytes) -> list[bytes]:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                return [page.get_pixmap(dpi=self._dpi).tobytes("png") for page in doc]
        except (RuntimeError, ValueError) as exc:   # FileDataError subclasses RuntimeError
            raise ExtractionError(
                ExtractionErrorKind.CORRUPT, f"Cannot render PDF pages: {exc}"
            ) from exc


class OfficePageRenderer(PageRenderer):
    """
    DOC/DOCX → PDF with `soffice --headless --convert-to pdf`, then rasterise.

    A missing converter binary is an availability problem (ocr_unavailable);
    a conversion that runs and produces nothing means the input is corrupt.
    """

    def __init__(
        self,
        pdf_renderer: PdfPageRenderer,
        binary: str = "soffice",
        timeout_seconds: int = 120,
    ) -> None:
        self._pdf_renderer = pdf_renderer
        self._binary       = binary
        self._timeout      = timeout_seconds

    def render(self, data: bytes, suffix: str = ".docx") -> list[bytes]:
        return self._pdf_renderer.render(self.convert_to_pdf(data, suffix))

    def convert_to_pdf(self, data: bytes, suffix: str = ".docx") -> bytes:
        binary = shutil.which(self._binary)
        if binary is None:
            raise ExtractionError(
                ExtractionErrorKind.OCR_UNAVAILABLE,
                f"Office converter '{self._binary}' is not installed",
            )

        with tempfile.TemporaryDirectory(prefix="docingest-office-") as workdir:
            src = os.path.join(workdir, f"input{suffix}")
            with open(src, "wb") as fh:
                fh.write(data)

            t0 = time.monotonic()
            try:
                proc = subprocess.run(
                    [binary, "--headless", "--convert-to", "pdf", "--outdir", workdir, src],
                    capture_output=True,
                    timeout=self._timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise ExtractionError(
                    ExtractionErrorKind.CORRUPT,
                    f"Office conversion timed out after {self._timeout}s",
                ) from exc
            except OSError as exc:
                raise ExtractionError(
                    ExtractionErrorKind.OCR_UNAVAILABLE,
                    f"Office converter could not be started: {exc}",
                ) from exc

            out = os.path.join(workdir, "input.pdf")
            if proc.returncode != 0 or not os.path.exists(out):
                stderr = proc.stderr.decode("utf-8", errors="replace").strip()
                raise ExtractionError(
                    ExtractionErrorKind.CORRUPT,
                    f"Office conversion failed (exit {proc.returncode}): {stderr[:300]}",
                )

            logger.info(
                "Office → PDF | bytes=%d elapsed_ms=%.0f",
                len(data), (time.monotonic() - t0) * 1000,
            )
            with open(out, "rb") as fh:
                return fh.read()
