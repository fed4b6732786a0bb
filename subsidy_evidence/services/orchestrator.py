"""
Evidence orchestrator – the coordinating service.

Synchronous path (per submission, strictly sequential):
    scan → extract (→ OCR) → persist

A rejected scan raises ``ValidationError`` / ``SecurityError`` and nothing
is stored.  An extraction failure is persisted as a FAILED evidence record
and then re-raised, so no attempt is ever lost.

Deferred work (bulk OCR, transformation, compression, storage) goes through
the ``ProcessingQueue``; the orchestrator registers one handler per job
type.
"""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from subsidy_evidence.exceptions import (
    EvidenceNotFoundError,
    JobNotFoundError,
    ProcessingError,
    SecurityError,
    ValidationError,
)
from subsidy_evidence.ingestion.extractors import (
    HTML_MIME_TYPES,
    MIME_EXTENSIONS,
    FormatExtractor,
    detect_evidence_type,
    fetch_url,
)
from subsidy_evidence.ingestion.ocr import OCREngine, contains_cjk
from subsidy_evidence.ingestion.schemas import (
    Evidence,
    EvidenceMetadata,
    EvidenceSource,
    EvidenceStatus,
    EvidenceType,
    ExtractedContent,
    ProcessingOptions,
    SecurityScanResult,
    TransformedTable,
)
from subsidy_evidence.ingestion.security import SecurityScanner
from subsidy_evidence.ingestion.transform import DataTransformer
from subsidy_evidence.services.queue import (
    CompressJob,
    JobPriority,
    JobType,
    OcrJob,
    ProcessingQueue,
    StorageJob,
    TransformJob,
    job_status_view,
)
from subsidy_evidence.services.repository import EvidenceRepository, InMemoryEvidenceRepository
from subsidy_evidence.services.storage import StorageOptimizer

logger = logging.getLogger(__name__)

_GATING_VALIDATION_CHECKS = ("size", "extension", "mime_type")
_GATING_PAGE_CHECKS = _GATING_VALIDATION_CHECKS + ("signature",)


def quality_score(evidence: Evidence) -> float:
    """0–1 score fed to the transformer: mean OCR confidence, 1.0 without OCR."""
    results = evidence.content.ocr_results
    if not results:
        return 1.0
    return round(sum(r.confidence for r in results) / len(results) / 100, 4)


def filename_from_url(url: str, content_type: str) -> str:
    name = PurePosixPath(urlparse(url).path).name
    if name and PurePosixPath(name).suffix:
        return name
    ext = MIME_EXTENSIONS.get(content_type, ".bin")
    return f"{name or 'download'}{ext}"


class EvidenceOrchestrator:
    def __init__(
        self,
        repository: EvidenceRepository | None = None,
        *,
        scanner: SecurityScanner | None = None,
        ocr: OCREngine | None = None,
        extractor: FormatExtractor | None = None,
        transformer: DataTransformer | None = None,
        queue: ProcessingQueue | None = None,
        storage: StorageOptimizer | None = None,
    ) -> None:
        self.repository = repository or InMemoryEvidenceRepository()
        self.scanner = scanner or SecurityScanner()
        self.ocr = ocr or OCREngine()
        self.extractor = extractor or FormatExtractor(self.ocr)
        self.transformer = transformer or DataTransformer()
        self.queue = queue or ProcessingQueue()
        self.storage = storage or StorageOptimizer()

        self.queue.register_handler(JobType.OCR, self._handle_ocr)
        self.queue.register_handler(JobType.TRANSFORM, self._handle_transform)
        self.queue.register_handler(JobType.COMPRESS, self._handle_compress)
        self.queue.register_handler(JobType.STORAGE, self._handle_storage)

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        self.queue.start()
        self.storage.start_monitor()

    async def shutdown(self) -> None:
        await self.queue.shutdown()
        await self.storage.stop_monitor()

    # ═══════════════════════════════════════════════════════════════════
    # Synchronous ingestion
    # ═══════════════════════════════════════════════════════════════════

    async def submit_upload(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        options: ProcessingOptions | None = None,
        *,
        source: EvidenceSource = EvidenceSource.UPLOAD,
        source_url: str = "",
        previous_attempt_id: str | None = None,
    ) -> Evidence:
        """Scan, extract and persist one uploaded file."""
        options = options or ProcessingOptions()
        t0 = time.time()

        scan = await self.scanner.scan(
            data, filename, mime_type, enable_virus_scan=options.enable_virus_scan
        )
        self._raise_if_unsafe(scan, filename)

        return await self._extract_and_persist(
            data,
            filename=filename,
            mime_type=mime_type,
            evidence_type=detect_evidence_type(filename, mime_type),
            source=source,
            source_url=source_url,
            scan=scan,
            options=options,
            previous_attempt_id=previous_attempt_id,
            t0=t0,
        )

    async def import_from_url(
        self,
        url: str,
        options: ProcessingOptions | None = None,
    ) -> Evidence:
        """Fetch *url*; HTML is parsed as a page, anything else as an upload."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Invalid URL", [f"Only http/https URLs are supported: {url}"])

        options = options or ProcessingOptions()
        t0 = time.time()
        try:
            doc = await fetch_url(url, self.extractor.http_client)
        except ProcessingError as exc:
            self._persist_failure(
                filename=url, mime_type="", size=0, evidence_type=EvidenceType.URL,
                source=EvidenceSource.URL_FETCH, source_url=url, checksum="",
                scan=None, error=exc, previous_attempt_id=None, t0=t0,
            )
            raise

        if doc.is_html:
            filename = filename_from_url(doc.url, doc.content_type)
            scan = await self.scanner.scan(
                doc.content, filename, doc.content_type,
                enable_virus_scan=False,
                text_mime_types=HTML_MIME_TYPES,
            )
            # file-level checks gate a page; rule hits stay on the record
            failed = [name for name in _GATING_PAGE_CHECKS if not scan.checks.get(name, True)]
            if failed:
                logger.warning("Page %s rejected: %s", doc.url, "; ".join(scan.reasons))
                raise ValidationError(f"Page rejected ({', '.join(failed)})", scan.reasons)
            return await self._extract_and_persist(
                doc.content,
                filename=filename,
                mime_type=doc.content_type,
                evidence_type=EvidenceType.URL,
                source=EvidenceSource.URL_FETCH,
                source_url=doc.url,
                scan=scan,
                options=options,
                previous_attempt_id=None,
                t0=t0,
            )

        return await self.submit_upload(
            doc.content,
            filename_from_url(doc.url, doc.content_type),
            doc.content_type,
            options,
            source=EvidenceSource.URL_FETCH,
            source_url=doc.url,
        )

    def _raise_if_unsafe(self, scan: SecurityScanResult, filename: str) -> None:
        if scan.is_safe:
            return
        failed = [name for name in _GATING_VALIDATION_CHECKS if not scan.checks.get(name, True)]
        logger.warning("Upload %s rejected: %s", filename, "; ".join(scan.reasons))
        if failed:
            raise ValidationError(f"Upload rejected ({', '.join(failed)})", scan.reasons)
        raise SecurityError("Upload failed security checks", scan.reasons)

    async def _extract_and_persist(
        self,
        data: bytes,
        *,
        filename: str,
        mime_type: str,
        evidence_type: EvidenceType,
        source: EvidenceSource,
        source_url: str,
        scan: SecurityScanResult | None,
        options: ProcessingOptions,
        previous_attempt_id: str | None,
        t0: float,
    ) -> Evidence:
        checksum = hashlib.sha256(data).hexdigest()
        try:
            content = await self.extractor.extract(
                data, evidence_type, options, filename=filename, source=source_url or filename
            )
        except ProcessingError as exc:
            self._persist_failure(
                filename=filename, mime_type=mime_type, size=len(data),
                evidence_type=evidence_type, source=source, source_url=source_url,
                checksum=checksum, scan=scan, error=exc,
                previous_attempt_id=previous_attempt_id, t0=t0,
            )
            raise

        confidences = [r.confidence for r in content.ocr_results]
        evidence = Evidence(
            type=evidence_type,
            source=source,
            filename=filename,
            mime_type=mime_type,
            size=len(data),
            content=content,
            metadata=EvidenceMetadata(
                language="ja" if contains_cjk(content.text) else "en",
                page_count=content.page_count,
                processing_time_ms=round((time.time() - t0) * 1000, 1),
                confidence=round(sum(confidences) / len(confidences), 2) if confidences else None,
                source_url=source_url,
                checksum=checksum,
            ),
            status=EvidenceStatus.COMPLETED,
            security_scan=scan,
            previous_attempt_id=previous_attempt_id,
        )
        self.repository.create(evidence)
        logger.info(
            "Evidence %s stored: %s %s, %d table(s), %d chars in %.0fms.",
            evidence.id, evidence_type.value, filename, len(content.tables),
            len(content.text), evidence.metadata.processing_time_ms,
        )
        return evidence

    def _persist_failure(
        self,
        *,
        filename: str,
        mime_type: str,
        size: int,
        evidence_type: EvidenceType,
        source: EvidenceSource,
        source_url: str,
        checksum: str,
        scan: SecurityScanResult | None,
        error: Exception,
        previous_attempt_id: str | None,
        t0: float,
    ) -> Evidence:
        evidence = Evidence(
            type=evidence_type,
            source=source,
            filename=filename,
            mime_type=mime_type,
            size=size,
            content=ExtractedContent(),
            metadata=EvidenceMetadata(
                processing_time_ms=round((time.time() - t0) * 1000, 1),
                source_url=source_url,
                checksum=checksum,
            ),
            status=EvidenceStatus.FAILED,
            security_scan=scan,
            error=str(error),
            previous_attempt_id=previous_attempt_id,
        )
        self.repository.create(evidence)
        logger.error("Processing failed for %s (recorded as %s): %s", filename, evidence.id, error)
        return evidence

    # ═══════════════════════════════════════════════════════════════════
    # Administration
    # ═══════════════════════════════════════════════════════════════════

    def get(self, evidence_id: str) -> Evidence:
        evidence = self.repository.find(evidence_id)
        if evidence is None:
            raise EvidenceNotFoundError(f"Evidence not found: {evidence_id}")
        return evidence

    def list(self, **filters: Any) -> list[Evidence]:
        return self.repository.list(**filters)

    def delete(self, evidence_id: str) -> None:
        if not self.repository.delete(evidence_id):
            raise EvidenceNotFoundError(f"Evidence not found: {evidence_id}")
        logger.info("Evidence %s deleted.", evidence_id)

    async def reprocess(
        self,
        evidence_id: str,
        data: bytes,
        options: ProcessingOptions | None = None,
    ) -> Evidence:
        """Run a new attempt for an existing record; the old one is kept."""
        previous = self.get(evidence_id)
        return await self.submit_upload(
            data,
            previous.filename,
            previous.mime_type,
            options,
            source=previous.source,
            source_url=previous.metadata.source_url,
            previous_attempt_id=previous.id,
        )

    def statistics(self) -> dict[str, Any]:
        items = self.repository.list()
        by_type: dict[str, int] = {}
        by_source: dict[str, int] = {}
        for e in items:
            by_type[e.type.value] = by_type.get(e.type.value, 0) + 1
            by_source[e.source.value] = by_source.get(e.source.value, 0) + 1
        completed = [e for e in items if e.status is EvidenceStatus.COMPLETED]
        times = [e.metadata.processing_time_ms for e in completed]
        return {
            "total": len(items),
            "by_type": by_type,
            "by_source": by_source,
            "total_size": sum(e.size for e in items),
            "avg_processing_time_ms": round(sum(times) / len(times), 1) if times else 0.0,
            "success_rate": round(len(completed) / len(items), 4) if items else 0.0,
        }

    def transform(self, evidence_id: str) -> list[TransformedTable]:
        evidence = self.get(evidence_id)
        return self.transformer.transform(
            evidence.content,
            quality_score(evidence),
            source_ref=evidence.metadata.source_url or evidence.filename,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Deferred work
    # ═══════════════════════════════════════════════════════════════════

    def schedule_ocr(
        self,
        images: list[bytes],
        *,
        evidence_id: str | None = None,
        languages: list[str] | None = None,
        priority: JobPriority | str = JobPriority.MEDIUM,
    ) -> str:
        return self.queue.submit(
            OcrJob(evidence_id=evidence_id, images=images, languages=languages), priority
        )

    def schedule_transform(self, evidence_id: str, priority: JobPriority | str = JobPriority.LOW) -> str:
        evidence = self.get(evidence_id)
        table_count = max(1, len(evidence.content.tables))
        return self.queue.submit(TransformJob(evidence_id=evidence_id, table_count=table_count), priority)

    def schedule_compression(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        *,
        evidence_id: str | None = None,
        priority: JobPriority | str = JobPriority.LOW,
    ) -> str:
        return self.queue.submit(
            CompressJob(data=data, filename=filename, mime_type=mime_type, evidence_id=evidence_id),
            priority,
        )

    def schedule_storage(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        *,
        retention_days: float = 1.0,
        priority: JobPriority | str = JobPriority.LOW,
    ) -> str:
        return self.queue.submit(
            StorageJob(data=data, filename=filename, mime_type=mime_type, retention_days=retention_days),
            priority,
        )

    def job_status(self, job_id: str) -> dict[str, Any]:
        job = self.queue.status(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job_status_view(job, datetime.now())

    # ── Queue handlers ──────────────────────────────────────────────────

    async def _handle_ocr(self, job: OcrJob):
        return await self.ocr.recognize_batch(job.images, job.languages, job.preprocess)

    async def _handle_transform(self, job: TransformJob):
        return self.transform(job.evidence_id)

    async def _handle_compress(self, job: CompressJob):
        return await self.storage.optimize_file(job.data, job.filename, job.mime_type)

    async def _handle_storage(self, job: StorageJob):
        return await self.storage.store(job.data, job.filename, job.mime_type)