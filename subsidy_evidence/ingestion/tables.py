"""
Table helpers shared by the format extractors.

Sources
-------
1. **CSV text** – quote-aware parsing with the stdlib ``csv`` reader.
2. **pdfplumber** (MIT) – ruled / digitally-drawn tables in PDFs.
3. **Whitespace layout** – tab or multi-space aligned columns in plain text
   (PDF text layer, OCR output), used when no ruled table is found.

Every cell goes through ``coerce_cell`` so numbers arrive as ``int`` /
``float`` and everything else as trimmed strings.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import numbers
import re
from typing import Any

from subsidy_evidence.ingestion.config import ingest_settings
from subsidy_evidence.ingestion.schemas import CellValue, TableData

logger = logging.getLogger(__name__)

_NUMERIC_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_COLUMN_SPLIT_RE = re.compile(r"\t+| {2,}")


def coerce_cell(value: Any) -> CellValue:
    """Numeric coercion: thousands separators stripped, integral → int."""
    if value is None or isinstance(value, bool):
        return "" if value is None else str(value)
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            return ""
        return int(number) if number.is_integer() else number

    text = str(value).strip()
    candidate = text.replace(",", "")
    if not _NUMERIC_RE.match(candidate):
        return text
    if candidate.lstrip("+-").isdigit():
        return int(candidate)
    number = float(candidate)
    return int(number) if number.is_integer() else number


def _header_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return str(coerce_cell(value))


def _normalise_rows(raw_rows: list[list[Any]]) -> tuple[list[str], list[list[CellValue]]]:
    rows = [r for r in raw_rows if any(coerce_cell(c) != "" for c in r)]
    if not rows:
        return [], []
    headers = [_header_text(c) for c in rows[0]]
    body = [[coerce_cell(c) for c in row] for row in rows[1:]]
    return headers, body


# ═══════════════════════════════════════════════════════════════════════════
# 1. CSV
# ═══════════════════════════════════════════════════════════════════════════

def parse_csv_text(text: str, source: str = "") -> TableData:
    """Parse CSV text into a single ``TableData`` (first row = headers)."""
    reader = csv.reader(io.StringIO(text))
    headers, rows = _normalise_rows([row for row in reader])
    return TableData(headers=headers, rows=rows, source=source)


def rows_to_table(raw_rows: list[list[Any]], title: str = "", source: str = "") -> TableData:
    headers, rows = _normalise_rows(raw_rows)
    return TableData(headers=headers, rows=rows, title=title, source=source)


# ═══════════════════════════════════════════════════════════════════════════
# 2. pdfplumber-based extraction
# ═══════════════════════════════════════════════════════════════════════════

def extract_tables_pdfplumber(data: bytes, source: str = "") -> list[TableData]:
    """Extract ruled tables from every page of an in-memory PDF."""
    try:
        import pdfplumber
    except ImportError:
        logger.warning("pdfplumber not installed – skipping vector table extraction.")
        return []

    tables: list[TableData] = []
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            limit = ingest_settings.max_pages or len(pdf.pages)
            for page_number, page in enumerate(pdf.pages[:limit], start=1):
                for raw in page.extract_tables():
                    if not raw:
                        continue
                    rows = [[str(cell) if cell else "" for cell in row] for row in raw]
                    if len(rows) < ingest_settings.table_min_rows:
                        continue
                    if len(rows[0]) < ingest_settings.table_min_cols:
                        continue
                    tables.append(rows_to_table(rows, title=f"Page {page_number}", source=source))
    except Exception as exc:
        logger.warning("pdfplumber failed: %s", exc)

    return tables


# ═══════════════════════════════════════════════════════════════════════════
# 3. Whitespace-aligned tables in free text
# ═══════════════════════════════════════════════════════════════════════════

def detect_text_tables(text: str, source: str = "") -> list[TableData]:
    """Find runs of lines that split into the same number (≥2) of columns."""
    tables: list[TableData] = []
    run: list[list[str]] = []

    def _flush() -> None:
        if len(run) >= ingest_settings.table_min_rows and len(run[0]) >= ingest_settings.table_min_cols:
            tables.append(rows_to_table(list(run), source=source))
        run.clear()

    for line in text.splitlines():
        cells = [c.strip() for c in _COLUMN_SPLIT_RE.split(line.strip()) if c.strip()]
        if len(cells) < 2:
            _flush()
            continue
        if run and len(cells) != len(run[0]):
            _flush()
        run.append(cells)
    _flush()

    return tables


# ═══════════════════════════════════════════════════════════════════════════
# Formatting helpers
# ═══════════════════════════════════════════════════════════════════════════

def rows_to_markdown(headers: list[str], rows: list[list[CellValue]]) -> str:
    all_rows = [list(headers)] + [[str(c) for c in r] for r in rows]
    if not all_rows or not all_rows[0]:
        return ""
    # Pad rows to uniform column count
    max_cols = max(len(r) for r in all_rows)
    padded = [r + [""] * (max_cols - len(r)) for r in all_rows]

    lines: list[str] = []
    lines.append("| " + " | ".join(padded[0]) + " |")
    lines.append("| " + " | ".join(["---"] * max_cols) + " |")
    for row in padded[1:]:
        lines.append("| " + " | ".join(row) + " |")
    return "\n".join(lines)


def table_to_text(table: TableData) -> str:
    """Tab-separated rendering used for full-text search."""
    lines = ["\t".join(table.headers)]
    lines.extend("\t".join(str(c) for c in row) for row in table.rows)
    return "\n".join(lines)
