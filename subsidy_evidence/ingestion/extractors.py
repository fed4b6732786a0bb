"""
Format extractors – turn raw evidence bytes into ``ExtractedContent``.

Dispatch by evidence type:
  CSV    → stdlib csv reader, one table
  EXCEL  → pandas (openpyxl engine), one table per sheet
  PDF    → PyMuPDF text layer + pdfplumber tables, OCR when text is sparse
  IMAGE  → OCR (unless disabled) + Pillow dimensions
  URL    → httpx fetch + HTML parsing (tables, images, links)
  TEXT   → decoded plain text

Every branch finishes with the structured-data rules.  Any parse failure is
re-raised as ``ProcessingError`` with the original exception chained.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from pathlib import PurePosixPath
from urllib.parse import urljoin

import httpx
import pandas as pd
from PIL import Image

from subsidy_evidence.exceptions import ProcessingError
from subsidy_evidence.ingestion.config import ingest_settings
from subsidy_evidence.ingestion.ocr import OCREngine
from subsidy_evidence.ingestion.pdf_parser import extract_pdf_text, render_pages
from subsidy_evidence.ingestion.schemas import (
    EvidenceType,
    ExtractedContent,
    OCRResult,
    ProcessedImage,
    ProcessingOptions,
    TableData,
)
from subsidy_evidence.ingestion.structured import extract_structured
from subsidy_evidence.ingestion.tables import (
    detect_text_tables,
    extract_tables_pdfplumber,
    parse_csv_text,
    rows_to_table,
    table_to_text,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".tif"}
_URL_RE = re.compile(r"https?://[^\s<>\"'）)」]+")
HTML_MIME_TYPES = frozenset({"text/html", "application/xhtml+xml"})

MIME_EXTENSIONS = {
    "application/pdf": ".pdf",
    "text/csv": ".csv",
    "application/csv": ".csv",
    "text/plain": ".txt",
    "text/html": ".html",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/bmp": ".bmp",
    "image/tiff": ".tiff",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
}


def detect_evidence_type(filename: str, mime_type: str = "") -> EvidenceType:
    """Infer the evidence type from the filename extension and MIME type."""
    name = (filename or "").lower()
    mime = (mime_type or "").lower()
    ext = PurePosixPath(name).suffix

    if name.startswith(("http://", "https://")) or mime == "text/html":
        return EvidenceType.URL
    if ext == ".csv" or "csv" in mime:
        return EvidenceType.CSV
    if ext in (".xlsx", ".xls") or "spreadsheet" in mime or "excel" in mime:
        return EvidenceType.EXCEL
    if ext == ".pdf" or mime == "application/pdf":
        return EvidenceType.PDF
    if ext in IMAGE_EXTENSIONS or mime.startswith("image/"):
        return EvidenceType.IMAGE
    return EvidenceType.TEXT


def decode_text(data: bytes) -> str:
    """UTF-8 (BOM tolerant) first, then Shift-JIS, then lossy UTF-8."""
    for encoding in ("utf-8-sig", "cp932"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


# ═══════════════════════════════════════════════════════════════════════════
# HTML parsing
# ═══════════════════════════════════════════════════════════════════════════

class _EvidenceHTMLParser(HTMLParser):
    """Collect visible text, tables, images and links from an HTML page."""

    SKIP_TAGS = {"script", "style", "nav", "footer", "noscript", "template"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._skip_depth = 0
        self.text_parts: list[str] = []
        self.tables: list[tuple[str, list[list[str]]]] = []
        self.images: list[tuple[str, str]] = []
        self.links: list[str] = []
        self._table_stack: list[dict] = []

    def handle_starttag(self, tag, attrs):
        attr = dict(attrs)
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth:
            return
        if tag == "table":
            self._table_stack.append({"caption": "", "rows": [], "row": None, "cell": None, "in_caption": False})
        elif self._table_stack:
            table = self._table_stack[-1]
            if tag == "tr":
                table["row"] = []
            elif tag in ("td", "th"):
                table["cell"] = []
            elif tag == "caption":
                table["in_caption"] = True
        if tag == "img" and attr.get("src"):
            self.images.append((attr["src"], attr.get("alt") or ""))
        elif tag == "a" and attr.get("href"):
            self.links.append(attr["href"])
        elif tag in ("br", "p", "div", "li", "tr", "td", "th", "h1", "h2", "h3", "h4"):
            self.text_parts.append(" ")

    def handle_endtag(self, tag):
        if tag in self.SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or not self._table_stack:
            return
        table = self._table_stack[-1]
        if tag in ("td", "th") and table["cell"] is not None:
            if table["row"] is None:
                table["row"] = []
            table["row"].append(" ".join("".join(table["cell"]).split()))
            table["cell"] = None
        elif tag == "tr" and table["row"] is not None:
            if table["row"]:
                table["rows"].append(table["row"])
            table["row"] = None
        elif tag == "caption":
            table["in_caption"] = False
        elif tag == "table":
            self._table_stack.pop()
            self.tables.append((table["caption"].strip(), table["rows"]))

    def handle_data(self, data):
        if self._skip_depth:
            return
        self.text_parts.append(data)
        if self._table_stack:
            table = self._table_stack[-1]
            if table["cell"] is not None:
                table["cell"].append(data)
            elif table["in_caption"]:
                table["caption"] += data

    @property
    def text(self) -> str:
        return " ".join("".join(self.text_parts).split())


def parse_html(html: str, base_url: str = "") -> ExtractedContent:
    """Extract text, tables, images and links from an HTML document."""
    parser = _EvidenceHTMLParser()
    parser.feed(html)
    parser.close()

    tables = [
        rows_to_table(rows, title=caption, source=base_url)
        for caption, rows in parser.tables
        if len(rows) >= ingest_settings.table_min_rows
    ]
    images = [
        ProcessedImage(url=urljoin(base_url, src), alt=alt)
        for src, alt in parser.images
    ]
    urls = list(dict.fromkeys(
        urljoin(base_url, href)
        for href in parser.links
        if not href.startswith(("#", "javascript:", "mailto:"))
    ))
    return ExtractedContent(text=parser.text, tables=tables, images=images, urls=urls)


# ═══════════════════════════════════════════════════════════════════════════
# URL fetching
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class FetchedDocument:
    url: str
    content: bytes
    content_type: str

    @property
    def is_html(self) -> bool:
        return self.content_type in HTML_MIME_TYPES


async def fetch_url(
    url: str,
    client: httpx.AsyncClient | None = None,
    user_agent: str | None = None,
) -> FetchedDocument:
    """GET *url* and return its body; HTTP failures become ``ProcessingError``."""
    headers = {"User-Agent": user_agent or ingest_settings.url_user_agent}
    try:
        if client is not None:
            response = await client.get(url, headers=headers, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=ingest_settings.url_fetch_timeout) as own:
                response = await own.get(url, headers=headers, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise ProcessingError(f"Failed to fetch {url}: {exc}") from exc

    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
    logger.info("Fetched %s (%s, %d bytes).", url, content_type or "unknown", len(response.content))
    return FetchedDocument(url=str(response.url), content=response.content, content_type=content_type)


# ═══════════════════════════════════════════════════════════════════════════
# Extractor
# ═══════════════════════════════════════════════════════════════════════════

class FormatExtractor:
    """Format-specific extraction with OCR delegation."""

    def __init__(
        self,
        ocr: OCREngine | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.ocr = ocr or OCREngine()
        self.http_client = http_client

    async def extract(
        self,
        data: bytes,
        evidence_type: EvidenceType,
        options: ProcessingOptions | None = None,
        *,
        filename: str = "",
        source: str = "",
    ) -> ExtractedContent:
        options = options or ProcessingOptions()
        source = source or filename
        handlers = {
            EvidenceType.CSV: self._extract_csv,
            EvidenceType.EXCEL: self._extract_excel,
            EvidenceType.PDF: self._extract_pdf,
            EvidenceType.IMAGE: self._extract_image,
            EvidenceType.URL: self._extract_html,
            EvidenceType.TEXT: self._extract_text,
        }
        handler = handlers.get(evidence_type)
        if handler is None:
            raise ProcessingError(f"Unsupported evidence type: {evidence_type.value}")

        try:
            content = await handler(data, options, source)
        except ProcessingError:
            raise
        except Exception as exc:
            raise ProcessingError(
                f"Failed to extract {evidence_type.value} content from {filename or source}: {exc}"
            ) from exc

        if options.extract_structured:
            structured = extract_structured(content.text, source)
            if not structured.is_empty:
                content = content.model_copy(update={"structured": structured})
        return content

    async def extract_url(self, url: str, options: ProcessingOptions | None = None) -> ExtractedContent:
        """Fetch an HTML page and extract it."""
        doc = await fetch_url(url, self.http_client)
        return await self.extract(doc.content, EvidenceType.URL, options, source=doc.url)

    # ── Per-format handlers ─────────────────────────────────────────────

    async def _extract_csv(self, data: bytes, options: ProcessingOptions, source: str) -> ExtractedContent:
        text = decode_text(data)
        table = parse_csv_text(text, source=source)
        if not table.headers:
            raise ProcessingError("CSV file contains no rows")
        return ExtractedContent(text=text, tables=[table])

    async def _extract_excel(self, data: bytes, options: ProcessingOptions, source: str) -> ExtractedContent:
        sheets: dict[str, pd.DataFrame] = await asyncio.to_thread(
            pd.read_excel, io.BytesIO(data), sheet_name=None, header=None
        )
        tables: list[TableData] = []
        text_parts: list[str] = []
        for sheet_name, df in sheets.items():
            table = rows_to_table(df.values.tolist(), title=str(sheet_name), source=source)
            if not table.headers:
                continue
            tables.append(table)
            text_parts.append(f"{sheet_name}\n{table_to_text(table)}")
        logger.info("Workbook %s: %d sheet(s), %d non-empty.", source, len(sheets), len(tables))
        return ExtractedContent(text="\n\n".join(text_parts), tables=tables)

    async def _extract_pdf(self, data: bytes, options: ProcessingOptions, source: str) -> ExtractedContent:
        native = await asyncio.to_thread(extract_pdf_text, data)
        tables = await asyncio.to_thread(extract_tables_pdfplumber, data, source)
        text = native.text
        ocr_results: list[OCRResult] = []

        if options.enable_ocr and native.is_sparse:
            logger.info("Sparse text layer (%d chars) in %s – trying OCR.", len(text.strip()), source)
            pages = await asyncio.to_thread(render_pages, data)
            results = await self.ocr.recognize_batch(
                pages, options.ocr_languages, options.preprocess
            )
            ocr_text = "\n\n".join(r.text for r in results if r.text)
            if len(ocr_text) > len(text):
                text = ocr_text
                ocr_results = [r for r in results if r.text]

        if not tables:
            tables = detect_text_tables(text, source=source)

        return ExtractedContent(
            text=text,
            tables=tables,
            ocr_results=ocr_results,
            page_count=native.page_count,
        )

    async def _extract_image(self, data: bytes, options: ProcessingOptions, source: str) -> ExtractedContent:
        width, height = await asyncio.to_thread(_image_size, data)
        ocr_results: list[OCRResult] = []
        text = ""
        if options.enable_ocr:
            result = await self.ocr.recognize(data, options.ocr_languages, options.preprocess)
            ocr_results.append(result)
            text = result.text

        image = ProcessedImage(url=source, width=width, height=height, ocr_text=text)
        return ExtractedContent(
            text=text,
            tables=detect_text_tables(text, source=source),
            images=[image],
            ocr_results=ocr_results,
        )

    async def _extract_html(self, data: bytes, options: ProcessingOptions, source: str) -> ExtractedContent:
        return parse_html(decode_text(data), base_url=source)

    async def _extract_text(self, data: bytes, options: ProcessingOptions, source: str) -> ExtractedContent:
        text = decode_text(data)
        urls = list(dict.fromkeys(_URL_RE.findall(text)))
        return ExtractedContent(text=text, urls=urls)


def _image_size(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size