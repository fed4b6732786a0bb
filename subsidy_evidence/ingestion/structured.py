"""
Structured data extraction – a table of regex rules applied to any text.

Each ``StructuredRule`` pairs a compiled pattern with a builder that turns a
match into market / competitor / financial data points.  Rules are plain
module-level data so they can be tested one by one and extended without
touching the extractors.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Union

from subsidy_evidence.ingestion.schemas import (
    CompetitorInfo,
    DataCategory,
    FinancialDataPoint,
    MarketDataPoint,
    StructuredData,
)

logger = logging.getLogger(__name__)

DataPoint = Union[MarketDataPoint, CompetitorInfo, FinancialDataPoint]

JA_MULTIPLIERS = {"兆円": 1e12, "億円": 1e8, "百万円": 1e6, "千円": 1e3, "円": 1.0}
EN_MULTIPLIERS = {"trillion": 1e12, "billion": 1e9, "million": 1e6, "thousand": 1e3}

_JA_UNIT = r"(兆円|億円|百万円|千円|円)"
_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"


def _to_float(raw: str) -> float:
    return float(raw.replace(",", ""))


@dataclass(frozen=True)
class StructuredRule:
    name: str
    pattern: re.Pattern[str]
    category: DataCategory
    build: Callable[[re.Match, str], list[DataPoint]]


# ── Builders ─────────────────────────────────────────────────────────────

def _market_size_ja(m: re.Match, source: str) -> list[DataPoint]:
    return [MarketDataPoint(metric="market_size", value=_to_float(m.group(1)), unit=m.group(2), source=source)]


def _market_size_en(m: re.Match, source: str) -> list[DataPoint]:
    unit = " ".join(g for g in (m.group(2), m.group(3)) if g)
    return [MarketDataPoint(metric="market_size", value=_to_float(m.group(1)), unit=unit, source=source)]


def _market_share(m: re.Match, source: str) -> list[DataPoint]:
    return [MarketDataPoint(metric="market_share", value=_to_float(m.group(1)), unit="%", source=source)]


def _competitor_names(m: re.Match, source: str) -> list[DataPoint]:
    names = re.split(r"[、,，/]|\band\b", m.group(1))
    return [
        CompetitorInfo(name=name.strip(), source=source)
        for name in names
        if len(name.strip()) > 1
    ]


def _financial_ja(m: re.Match, source: str) -> list[DataPoint]:
    amount = _to_float(m.group(2)) * JA_MULTIPLIERS[m.group(3)]
    return [FinancialDataPoint(category=m.group(1), amount=amount, currency="JPY", source=source)]


def _financial_en(m: re.Match, source: str) -> list[DataPoint]:
    symbol, raw, scale, suffix = m.group(2), m.group(3), m.group(4), m.group(5)
    amount = _to_float(raw) * EN_MULTIPLIERS.get((scale or "").lower(), 1.0)
    marker = f"{symbol or ''}{suffix or ''}".lower()
    currency = "USD" if ("$" in marker or "usd" in marker or "dollar" in marker) else "JPY"
    return [FinancialDataPoint(category=m.group(1).lower(), amount=amount, currency=currency, source=source)]


# ── Rule table ───────────────────────────────────────────────────────────

STRUCTURED_RULES: tuple[StructuredRule, ...] = (
    StructuredRule(
        "market_size_ja",
        re.compile(r"市場規模(?:は)?[：:]?\s*" + _NUMBER + r"\s*" + _JA_UNIT),
        DataCategory.MARKET,
        _market_size_ja,
    ),
    StructuredRule(
        "market_size_en",
        re.compile(
            r"market size[^\d\n]{0,20}?" + _NUMBER
            + r"\s*(trillion|billion|million|thousand)?\s*(yen|jpy|usd|dollars)?",
            re.I,
        ),
        DataCategory.MARKET,
        _market_size_en,
    ),
    StructuredRule(
        "market_share_ja",
        re.compile(r"(?:市場)?シェア(?:は)?[：:]?\s*(\d+(?:\.\d+)?)\s*[%％]"),
        DataCategory.MARKET,
        _market_share,
    ),
    StructuredRule(
        "market_share_en",
        re.compile(r"market share[^\d\n]{0,20}?(\d+(?:\.\d+)?)\s*%", re.I),
        DataCategory.MARKET,
        _market_share,
    ),
    StructuredRule(
        "competitors_ja",
        re.compile(r"競合(?:他社|企業)[：:]?\s*([^。\n]+)"),
        DataCategory.COMPETITOR,
        _competitor_names,
    ),
    StructuredRule(
        "major_players_ja",
        re.compile(r"主要(?:競合|プレイヤー)[：:]?\s*([^。\n]+)"),
        DataCategory.COMPETITOR,
        _competitor_names,
    ),
    StructuredRule(
        "competitors_en",
        re.compile(r"(?:competitors|key players)\s*(?:include|are|:)\s*([^.\n]+)", re.I),
        DataCategory.COMPETITOR,
        _competitor_names,
    ),
    StructuredRule(
        "financials_ja",
        re.compile(r"(売上高|営業利益|経常利益|純利益)(?:は)?[：:]?\s*" + _NUMBER + r"\s*" + _JA_UNIT),
        DataCategory.FINANCIAL,
        _financial_ja,
    ),
    StructuredRule(
        "financials_en",
        re.compile(
            r"\b(revenue|sales|operating profit|net income)[^\d\n$¥]{0,20}?([$¥])?\s*" + _NUMBER
            + r"\s*(trillion|billion|million|thousand)?\s*(yen|jpy|usd|dollars)?",
            re.I,
        ),
        DataCategory.FINANCIAL,
        _financial_en,
    ),
)


def extract_structured(
    text: str,
    source: str = "",
    rules: tuple[StructuredRule, ...] = STRUCTURED_RULES,
) -> StructuredData:
    """Apply every rule to *text*; competitor names are de-duplicated."""
    data = StructuredData()
    if not text:
        return data

    seen_competitors: set[str] = set()
    for rule in rules:
        for match in rule.pattern.finditer(text):
            for point in rule.build(match, source):
                if isinstance(point, MarketDataPoint):
                    data.market_data.append(point)
                elif isinstance(point, CompetitorInfo):
                    if point.name in seen_competitors:
                        continue
                    seen_competitors.add(point.name)
                    data.competitors.append(point)
                else:
                    data.financial_data.append(point)

    if not data.is_empty:
        logger.info(
            "Structured data: %d market, %d competitor, %d financial point(s).",
            len(data.market_data), len(data.competitors), len(data.financial_data),
        )
    return data
