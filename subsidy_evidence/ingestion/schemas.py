"""
Pydantic models for every artifact that flows through the evidence pipeline.

  - Evidence            – one processed document (persisted)
  - ExtractedContent    – text / tables / images / structured data of a document
  - SecurityScanResult  – outcome of the pre-processing scan
  - TransformedTable    – annotated table derived on demand from content

``ExtractedContent`` is frozen once built; ``TransformedTable`` is disposable
and can always be recomputed from the owning evidence.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────

class EvidenceType(str, Enum):
    CSV = "CSV"
    EXCEL = "EXCEL"
    PDF = "PDF"
    IMAGE = "IMAGE"
    URL = "URL"
    TEXT = "TEXT"
    UNKNOWN = "UNKNOWN"


class EvidenceSource(str, Enum):
    UPLOAD = "UPLOAD"
    URL_FETCH = "URL_FETCH"


class EvidenceStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AVStatus(str, Enum):
    SKIPPED = "skipped"
    CLEAN = "clean"
    INFECTED = "infected"
    UNAVAILABLE = "unavailable"


class PreprocessingStatus(str, Enum):
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"


class FootnoteType(str, Enum):
    CITATION = "citation"
    EXPLANATION = "explanation"
    CAVEAT = "caveat"


class DataCategory(str, Enum):
    MARKET = "market"
    COMPETITOR = "competitor"
    FINANCIAL = "financial"
    GENERAL = "general"


# A table cell after numeric coercion
CellValue = Union[int, float, str]


# ── Extracted content ────────────────────────────────────────────────────

class TableData(BaseModel):
    """A table pulled out of a document (CSV, sheet, PDF page, HTML)."""

    headers: list[str] = Field(default_factory=list)
    rows: list[list[CellValue]] = Field(default_factory=list)
    title: str = ""
    footnotes: list[str] = Field(default_factory=list)
    source: str = ""


class ProcessedImage(BaseModel):
    url: str = ""
    alt: str = ""
    caption: str = ""
    width: int | None = None  # resolved lazily for remote images
    height: int | None = None
    ocr_text: str = ""


class MarketDataPoint(BaseModel):
    metric: str
    value: float
    unit: str = ""
    source: str = ""
    date: str = ""
    footnote: str = ""


class CompetitorInfo(BaseModel):
    name: str
    market_share: float | None = None
    revenue: float | None = None
    employees: int | None = None
    description: str = ""
    source: str = ""


class FinancialDataPoint(BaseModel):
    category: str
    amount: float
    currency: str = "JPY"
    period: str = ""
    source: str = ""


class StructuredData(BaseModel):
    market_data: list[MarketDataPoint] = Field(default_factory=list)
    competitors: list[CompetitorInfo] = Field(default_factory=list)
    financial_data: list[FinancialDataPoint] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.market_data or self.competitors or self.financial_data)


class BoundingBox(BaseModel):
    x0: int
    y0: int
    x1: int
    y1: int


class OCRWord(BaseModel):
    text: str
    confidence: float  # 0–100
    bbox: BoundingBox


class OCRResult(BaseModel):
    """Recognition output for one image."""

    language: str = "unknown"  # japanese | mixed | english | unknown
    confidence: float = 0.0  # 0–100, mean of kept words
    text: str = ""
    words: list[OCRWord] = Field(default_factory=list)
    preprocessing: PreprocessingStatus = PreprocessingStatus.SKIPPED

    @property
    def bounding_boxes(self) -> list[BoundingBox]:
        return [w.bbox for w in self.words]


class OCRQuality(BaseModel):
    quality: str  # high | medium | low
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ExtractedContent(BaseModel):
    """Normalised output of every format extractor."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    tables: list[TableData] = Field(default_factory=list)
    images: list[ProcessedImage] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    structured: StructuredData | None = None
    ocr_results: list[OCRResult] = Field(default_factory=list)
    page_count: int | None = None


# ── Security ─────────────────────────────────────────────────────────────

class SecurityScanResult(BaseModel):
    """Aggregate scan decision.

    ``checks`` holds the pass/fail outcome of each gating check (size,
    extension, mime_type, signature, malware) so callers can tell a
    validation failure from a security failure.
    """

    is_safe: bool
    file_signature_valid: bool = False
    virus_found: bool = False
    malware_signatures: list[str] = Field(default_factory=list)
    suspicious_patterns: list[str] = Field(default_factory=list)
    checks: dict[str, bool] = Field(default_factory=dict)
    av_status: AVStatus = AVStatus.SKIPPED
    degraded: bool = False  # True when only heuristics decided
    scan_engine: str = "EvidenceSecurityScanner"
    scan_completed_at: datetime = Field(default_factory=_utcnow)

    @property
    def reasons(self) -> list[str]:
        return self.suspicious_patterns + self.malware_signatures


# ── Evidence ─────────────────────────────────────────────────────────────

class EvidenceMetadata(BaseModel):
    language: str = "en"  # ja | en
    page_count: int | None = None
    processing_time_ms: float = 0.0
    extracted_at: datetime = Field(default_factory=_utcnow)
    confidence: float | None = None  # mean OCR confidence, 0–100
    source_url: str = ""
    tags: list[str] = Field(default_factory=list)
    checksum: str = ""


class Evidence(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: EvidenceType = EvidenceType.UNKNOWN
    source: EvidenceSource = EvidenceSource.UPLOAD
    filename: str = ""
    mime_type: str = ""
    size: int = 0
    content: ExtractedContent = Field(default_factory=ExtractedContent)
    metadata: EvidenceMetadata = Field(default_factory=EvidenceMetadata)
    status: EvidenceStatus = EvidenceStatus.PENDING
    security_scan: SecurityScanResult | None = None
    error: str = ""
    previous_attempt_id: str | None = None  # set by reprocessing
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status is not EvidenceStatus.PENDING


class ProcessingOptions(BaseModel):
    """Per-submission switches."""

    enable_ocr: bool = True
    ocr_languages: list[str] | None = None
    preprocess: bool = True
    extract_structured: bool = True
    enable_virus_scan: bool | None = None  # None → IngestSettings default


# ── Transformed tables ───────────────────────────────────────────────────

class Footnote(BaseModel):
    id: str
    text: str
    source: str = ""
    confidence: float = 1.0
    type: FootnoteType = FootnoteType.EXPLANATION


class TableMetadata(BaseModel):
    category: DataCategory = DataCategory.GENERAL
    extraction_method: str = ""
    source_quality: float = 1.0


class TransformedTable(BaseModel):
    title: str
    headers: list[str]
    rows: list[list[CellValue]]
    footnotes: list[Footnote] = Field(default_factory=list)
    metadata: TableMetadata = Field(default_factory=TableMetadata)
    quality_score: float = Field(1.0, ge=0.0, le=1.0)

    def footnotes_of(self, kind: FootnoteType) -> list[Footnote]:
        return [f for f in self.footnotes if f.type is kind]
