"""
Data transformer – derive annotated tables from extracted content.

Output order is fixed so identical input always yields identical tables:
  1. structured data tables (market → competitor → financial)
  2. one enhanced table per extracted ``TableData``
  3. a free-text table of numeric amounts found in the plain text

Footnotes carry provenance (citation), interpretation (explanation) and,
when the source quality is below ``CAVEAT_THRESHOLD``, a caveat asking for
manual verification.  Caveats are appended, never substituted.
"""

from __future__ import annotations

import logging
import re

from subsidy_evidence.ingestion.config import ingest_settings
from subsidy_evidence.ingestion.schemas import (
    CellValue,
    DataCategory,
    ExtractedContent,
    Footnote,
    FootnoteType,
    StructuredData,
    TableData,
    TableMetadata,
    TransformedTable,
)
from subsidy_evidence.ingestion.tables import coerce_cell

logger = logging.getLogger(__name__)

CAVEAT_THRESHOLD = 0.8

_AMOUNT_RE = re.compile(
    r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)\s*(兆円|億円|百万円|千円|円|%|％|人|社)"
)
_ITEM_SPLIT_RE = re.compile(r"[\s、。,.:：;（）()「」]+")
_FILLER_WORDS = {"of", "is", "was", "were", "to", "at", "the", "about", "approximately", "around", "約", "は", "が"}

CATEGORY_KEYWORDS: tuple[tuple[DataCategory, tuple[str, ...]], ...] = (
    (DataCategory.MARKET, ("市場", "シェア", "規模", "market", "share")),
    (DataCategory.COMPETITOR, ("競合", "企業", "会社", "competitor", "company")),
    (DataCategory.FINANCIAL, ("売上", "利益", "円", "財務", "revenue", "profit", "sales", "financial")),
)


def infer_category(*texts: str) -> DataCategory:
    haystack = " ".join(texts).lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in haystack for k in keywords):
            return category
    return DataCategory.GENERAL


def caveat_text(quality_score: float) -> str:
    return (
        f"OCR quality score {round(quality_score * 100)}%; "
        "verify these values against the source document"
    )


class _Footnotes:
    """Sequential footnote ids per table."""

    def __init__(self) -> None:
        self.items: list[Footnote] = []

    def add(self, text: str, kind: FootnoteType, source: str = "", confidence: float = 1.0) -> None:
        self.items.append(
            Footnote(
                id=f"fn{len(self.items) + 1}",
                text=text,
                source=source,
                confidence=confidence,
                type=kind,
            )
        )


class DataTransformer:
    """Stateless; ``transform`` is deterministic for identical input."""

    def __init__(self, caveat_threshold: float = CAVEAT_THRESHOLD, context_window: int | None = None) -> None:
        self.caveat_threshold = caveat_threshold
        self.context_window = ingest_settings.context_window if context_window is None else context_window

    def transform(
        self,
        content: ExtractedContent,
        quality_score: float = 1.0,
        source_ref: str = "",
    ) -> list[TransformedTable]:
        quality = min(max(quality_score, 0.0), 1.0)
        tables: list[TransformedTable] = []

        if content.structured is not None:
            tables.extend(self._structured_tables(content.structured, quality, source_ref))

        for idx, table in enumerate(content.tables, start=1):
            tables.append(self._enhance_table(table, idx, quality, source_ref))

        free_text = self._free_text_table(content.text, quality, source_ref)
        if free_text is not None:
            tables.append(free_text)

        logger.info("Transformed content into %d table(s) (quality %.2f).", len(tables), quality)
        return tables

    # ── Builders ────────────────────────────────────────────────────────

    def _finish(
        self,
        title: str,
        headers: list[str],
        rows: list[list[CellValue]],
        notes: _Footnotes,
        category: DataCategory,
        method: str,
        quality: float,
    ) -> TransformedTable:
        if quality < self.caveat_threshold:
            notes.add(caveat_text(quality), FootnoteType.CAVEAT, confidence=quality)
        return TransformedTable(
            title=title,
            headers=headers,
            rows=rows,
            footnotes=notes.items,
            metadata=TableMetadata(category=category, extraction_method=method, source_quality=quality),
            quality_score=quality,
        )

    def _structured_tables(
        self, data: StructuredData, quality: float, source_ref: str
    ) -> list[TransformedTable]:
        tables: list[TransformedTable] = []

        if data.market_data:
            notes = _Footnotes()
            rows: list[list[CellValue]] = []
            for point in data.market_data:
                source = point.source or source_ref
                rows.append([point.metric, coerce_cell(point.value), point.unit, point.date, source])
                if point.footnote or source:
                    notes.add(point.footnote or f"Source: {source}", FootnoteType.CITATION, source, quality)
            tables.append(self._finish(
                "Market data",
                ["Metric", "Value", "Unit", "Period", "Source"],
                rows, notes, DataCategory.MARKET, "structured", quality,
            ))

        if data.competitors:
            notes = _Footnotes()
            rows = []
            for comp in data.competitors:
                source = comp.source or source_ref
                rows.append([
                    comp.name,
                    "" if comp.market_share is None else coerce_cell(comp.market_share),
                    "" if comp.revenue is None else coerce_cell(comp.revenue),
                    "" if comp.employees is None else comp.employees,
                    comp.description,
                ])
                if source:
                    notes.add(f"{comp.name}: source {source}", FootnoteType.CITATION, source, quality)
            tables.append(self._finish(
                "Competitor analysis",
                ["Company", "Market share (%)", "Revenue", "Employees", "Description"],
                rows, notes, DataCategory.COMPETITOR, "structured", quality,
            ))

        if data.financial_data:
            notes = _Footnotes()
            rows = []
            by_currency: dict[str, list] = {}
            for point in data.financial_data:
                by_currency.setdefault(point.currency, []).append(point)
            for currency, points in by_currency.items():
                for point in points:
                    source = point.source or source_ref
                    rows.append([
                        point.category,
                        coerce_cell(point.amount),
                        currency,
                        point.period,
                        source,
                    ])
                    if source:
                        notes.add(f"{point.category}: source {source}", FootnoteType.CITATION, source, quality)
                notes.add(
                    f"Amounts in {currency} ({len(points)} item(s))",
                    FootnoteType.EXPLANATION,
                    source_ref,
                    quality,
                )
            tables.append(self._finish(
                "Financial data",
                ["Category", "Amount", "Currency", "Period", "Source"],
                rows, notes, DataCategory.FINANCIAL, "structured", quality,
            ))

        return tables

    def _enhance_table(
        self, table: TableData, index: int, quality: float, source_ref: str
    ) -> TransformedTable:
        notes = _Footnotes()
        source = table.source or source_ref
        for text in table.footnotes:
            notes.add(text, FootnoteType.CITATION, source, quality)
        if source:
            notes.add(f"Extracted from {source}", FootnoteType.CITATION, source, quality)

        title = table.title or f"Table {index}"
        category = infer_category(title, *table.headers)
        return self._finish(
            title, list(table.headers), [list(r) for r in table.rows],
            notes, category, "table_extraction", quality,
        )

    def _free_text_table(self, text: str, quality: float, source_ref: str) -> TransformedTable | None:
        if not text:
            return None

        notes = _Footnotes()
        rows: list[list[CellValue]] = []
        seen_spans: set[tuple[int, int]] = set()
        for match in _AMOUNT_RE.finditer(text):
            if match.span() in seen_spans:
                continue
            seen_spans.add(match.span())

            start = max(0, match.start() - self.context_window)
            end = min(len(text), match.end() + self.context_window)
            context = " ".join(text[start:end].split())
            item = extract_item_name(text[start:match.start()])
            unit = "%" if match.group(2) == "％" else match.group(2)
            rows.append([item, coerce_cell(match.group(1)), unit, context])
            notes.add(f"Context: {context}", FootnoteType.EXPLANATION, source_ref, quality)

        if not rows:
            return None

        return self._finish(
            "Values extracted from free text",
            ["Item", "Value", "Unit", "Context"],
            rows, notes, infer_category(text[:2000]), "text_pattern", quality,
        )


def extract_item_name(preceding: str) -> str:
    """Label a number with the last word-like token before it."""
    tokens = [
        t for t in _ITEM_SPLIT_RE.split(preceding)
        if t and t.lower() not in _FILLER_WORDS and not t.replace(",", "").isdigit()
    ]
    if not tokens:
        return "Value"
    return tokens[-1][-20:]
