"""
OCR engine – preprocessing, recognition, language inference and quality
evaluation.

Stack choice
------------
**EasyOCR** (Apache-2.0) does the actual recognition; it is imported lazily
so the rest of the pipeline works without the model weights.  When it is
missing, ``recognize`` raises ``ProcessingError`` and the caller decides
whether that is fatal (images) or not (sparse PDFs).

Recognition is CPU-bound, so every ``readtext`` call runs in a worker thread
via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import importlib.util
import io
import logging
import re
from typing import Any

from PIL import Image, ImageFilter, ImageOps

from subsidy_evidence.exceptions import ProcessingError
from subsidy_evidence.ingestion.config import ingest_settings
from subsidy_evidence.ingestion.schemas import (
    BoundingBox,
    OCRQuality,
    OCRResult,
    OCRWord,
    PreprocessingStatus,
)

logger = logging.getLogger(__name__)

# Suppress noisy "Using CPU" warning from EasyOCR
logging.getLogger("easyocr.easyocr").setLevel(logging.ERROR)

# Lazy-loaded readers, one per language set
_readers: dict[tuple[str, ...], Any] = {}

_CJK_RE = re.compile(r"[\u3040-\u309f\u30a0-\u30ff\u4e00-\u9faf]")
_LATIN_RE = re.compile(r"[a-zA-Z]")

LOW_WORD_CONFIDENCE = 60.0


def _get_reader(languages: tuple[str, ...]):
    """Lazy-initialise an EasyOCR reader for *languages*."""
    if languages in _readers:
        return _readers[languages]
    try:
        import easyocr  # noqa: F811

        reader = easyocr.Reader(list(languages), gpu=ingest_settings.ocr_gpu)
        logger.info(
            "EasyOCR reader initialised (langs=%s, gpu=%s).",
            ",".join(languages),
            ingest_settings.ocr_gpu,
        )
    except ImportError:
        logger.warning("EasyOCR not installed – OCR will be unavailable.")
        reader = None
    _readers[languages] = reader
    return reader


# ── Pure helpers ─────────────────────────────────────────────────────────

def preprocess_image(data: bytes, max_dimension: int | None = None) -> bytes:
    """Downscale, greyscale, normalise contrast and sharpen; returns PNG bytes."""
    max_dimension = max_dimension or ingest_settings.ocr_max_image_dimension
    img = Image.open(io.BytesIO(data))
    img.load()
    if max(img.size) > max_dimension:
        img.thumbnail((max_dimension, max_dimension))  # keeps aspect ratio
    img = ImageOps.grayscale(img)
    img = ImageOps.autocontrast(img)
    img = img.filter(ImageFilter.SHARPEN)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def detect_language(text: str) -> str:
    """Classify text as japanese / mixed / english / unknown."""
    if not text:
        return "unknown"
    latin_ratio = len(_LATIN_RE.findall(text)) / len(text)
    if _CJK_RE.search(text):
        return "mixed" if latin_ratio > 0.7 else "japanese"
    if latin_ratio > 0.5:
        return "english"
    return "unknown"


def contains_cjk(text: str) -> bool:
    return bool(_CJK_RE.search(text))


def words_from_readtext(
    results: list,
    min_confidence: float | None = None,
) -> list[OCRWord]:
    """Convert EasyOCR ``(bbox, text, conf)`` triples into ``OCRWord`` objects.

    Confidence is rescaled to 0–100 and words at or below *min_confidence*
    are dropped.  Output is sorted top-to-bottom, left-to-right.
    """
    threshold = ingest_settings.ocr_min_word_confidence if min_confidence is None else min_confidence
    words: list[OCRWord] = []
    for bbox_pts, text, conf in results:
        confidence = float(conf) * 100
        text = str(text).strip()
        if not text or confidence <= threshold:
            continue
        # bbox_pts is [[x0,y0],[x1,y0],[x1,y1],[x0,y1]]
        xs = [p[0] for p in bbox_pts]
        ys = [p[1] for p in bbox_pts]
        words.append(
            OCRWord(
                text=text,
                confidence=round(confidence, 2),
                bbox=BoundingBox(
                    x0=int(min(xs)), y0=int(min(ys)), x1=int(max(xs)), y1=int(max(ys))
                ),
            )
        )
    words.sort(key=lambda w: (w.bbox.y0, w.bbox.x0))
    return words


def evaluate_ocr_quality(result: OCRResult) -> OCRQuality:
    """Grade an OCR result and suggest remediation for each issue found."""
    issues: list[str] = []
    recommendations: list[str] = []

    if result.confidence < 50:
        issues.append("Low overall confidence score")
        recommendations.append("Consider image preprocessing or higher resolution")

    if len(result.text.strip()) < 10:
        issues.append("Very short extracted text")
        recommendations.append("Verify image contains readable text")

    if result.words:
        low = sum(1 for w in result.words if w.confidence < LOW_WORD_CONFIDENCE)
        if low / len(result.words) > 0.3:
            issues.append("Many words have low confidence")
            recommendations.append("Try image enhancement or different OCR settings")

    if result.confidence > 80 and not issues:
        quality = "high"
    elif result.confidence > 60 and len(issues) < 2:
        quality = "medium"
    else:
        quality = "low"

    return OCRQuality(quality=quality, issues=issues, recommendations=recommendations)


# ── Engine ───────────────────────────────────────────────────────────────

class OCREngine:
    """Async wrapper around an EasyOCR-compatible reader.

    *reader* may be injected (anything with ``readtext(bytes) -> list``);
    otherwise a shared EasyOCR reader is created on first use.
    """

    def __init__(self, reader=None, languages: list[str] | None = None) -> None:
        self._reader = reader
        self.languages = tuple(languages or ingest_settings.ocr_languages)

    def _resolve_reader(self, languages: tuple[str, ...]):
        if self._reader is not None:
            return self._reader
        return _get_reader(languages)

    @property
    def available(self) -> bool:
        """True if recognition can run (without loading the model)."""
        if self._reader is not None:
            return True
        return importlib.util.find_spec("easyocr") is not None

    async def recognize(
        self,
        data: bytes,
        languages: list[str] | None = None,
        preprocess: bool = True,
    ) -> OCRResult:
        if len(data) > ingest_settings.ocr_max_file_size:
            raise ProcessingError(
                f"Image too large for OCR: {len(data)} > {ingest_settings.ocr_max_file_size} bytes"
            )

        langs = tuple(languages) if languages else self.languages
        reader = self._resolve_reader(langs)
        if reader is None:
            raise ProcessingError("OCR engine unavailable (easyocr not installed)")

        status = PreprocessingStatus.SKIPPED
        image = data
        if preprocess:
            try:
                image = await asyncio.to_thread(preprocess_image, data)
                status = PreprocessingStatus.APPLIED
            except Exception as exc:
                logger.warning("Image preprocessing failed, using original bytes: %s", exc)
                status = PreprocessingStatus.FAILED

        try:
            raw = await asyncio.to_thread(reader.readtext, image)
        except Exception as exc:
            raise ProcessingError(f"OCR recognition failed: {exc}") from exc

        words = words_from_readtext(raw)
        text = " ".join(w.text for w in words)
        confidence = sum(w.confidence for w in words) / len(words) if words else 0.0

        result = OCRResult(
            language=detect_language(text),
            confidence=round(confidence, 2),
            text=text,
            words=words,
            preprocessing=status,
        )
        logger.info(
            "OCR: %d words, confidence %.1f, language %s.",
            len(words), result.confidence, result.language,
        )
        return result

    async def recognize_batch(
        self,
        images: list[bytes],
        languages: list[str] | None = None,
        preprocess: bool = True,
        max_concurrency: int | None = None,
    ) -> list[OCRResult]:
        """Recognise many images; a failing image yields an empty ``OCRResult``."""
        sem = asyncio.Semaphore(max_concurrency or ingest_settings.ocr_batch_concurrency)

        async def _one(data: bytes) -> OCRResult:
            async with sem:
                return await self.recognize(data, languages, preprocess)

        outcomes = await asyncio.gather(*(_one(img) for img in images), return_exceptions=True)
        results: list[OCRResult] = []
        for idx, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("OCR batch item %d failed: %s", idx, outcome)
                results.append(OCRResult())
            else:
                results.append(outcome)
        return results
