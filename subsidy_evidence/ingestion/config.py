"""
Ingestion pipeline configuration.

All values can be overridden via environment variables prefixed with
``INGEST_`` (e.g. ``INGEST_SPARSE_TEXT_THRESHOLD=200``).
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class IngestSettings(BaseSettings):
    """Tuneable knobs for every ingestion stage."""

    # ── Security scan ────────────────────────────────────────────────────
    max_file_size: int = 50 * 1024 * 1024
    enable_virus_scan: bool = False
    clamd_host: str = "localhost"
    clamd_port: int = 3310
    clamd_timeout: float = 3.0
    large_image_bytes: int = 10 * 1024 * 1024  # advisory only

    # ── OCR ──────────────────────────────────────────────────────────────
    ocr_languages: list[str] = ["ja", "en"]
    ocr_gpu: bool = False
    ocr_max_image_dimension: int = 4000
    ocr_max_file_size: int = 10 * 1024 * 1024
    ocr_min_word_confidence: float = 30.0  # drop words below this (0-100)
    ocr_batch_concurrency: int = 3

    # ── PDF ──────────────────────────────────────────────────────────────
    sparse_text_threshold: int = 100  # chars – below this, try OCR
    pdf_dpi: int = 150
    max_pages: int = 0  # 0 = unlimited

    # ── Tables ───────────────────────────────────────────────────────────
    table_min_rows: int = 2
    table_min_cols: int = 2

    # ── URL fetch ────────────────────────────────────────────────────────
    url_fetch_timeout: float = 10.0
    url_user_agent: str = "Evidence-Processor/1.0"

    # ── Structured data ──────────────────────────────────────────────────
    context_window: int = 50  # chars kept either side of a numeric match

    model_config = {
        "env_prefix": "INGEST_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


ingest_settings = IngestSettings()
