"""
PDF parsing & rendering via PyMuPDF (fitz).

Responsibilities
- Open a PDF from an in-memory buffer and pull the native text layer.
- Render pages to PNG for the OCR fallback on scanned documents.
- Report page count for evidence metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import fitz  # PyMuPDF

from subsidy_evidence.ingestion.config import ingest_settings

logger = logging.getLogger(__name__)


@dataclass
class PdfText:
    """Native text layer of a whole document."""

    text: str
    page_count: int
    page_texts: list[str]

    @property
    def is_sparse(self) -> bool:
        return len(self.text.strip()) < ingest_settings.sparse_text_threshold


def _page_limit(total: int) -> int:
    return min(total, ingest_settings.max_pages or total)


def extract_pdf_text(data: bytes) -> PdfText:
    """Return the native text of every page (up to ``max_pages``)."""
    with fitz.open(stream=data, filetype="pdf") as doc:
        total = len(doc)
        page_texts: list[str] = []
        for idx in range(_page_limit(total)):
            page: fitz.Page = doc[idx]
            page_texts.append(page.get_text("text").strip())

    text = "\n\n".join(t for t in page_texts if t)
    logger.info("Parsed %d/%d pages, %d chars of native text.", len(page_texts), total, len(text))
    return PdfText(text=text, page_count=total, page_texts=page_texts)


def render_pages(data: bytes, dpi: int | None = None) -> list[bytes]:
    """Render each page (up to ``max_pages``) to PNG bytes."""
    dpi = dpi or ingest_settings.pdf_dpi
    mat = fitz.Matrix(dpi / 72, dpi / 72)
    images: list[bytes] = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for idx in range(_page_limit(len(doc))):
            pix = doc[idx].get_pixmap(matrix=mat)
            images.append(pix.tobytes("png"))
    return images
