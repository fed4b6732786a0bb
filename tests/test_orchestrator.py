"""End-to-end tests for the evidence orchestrator."""

import hashlib

import httpx
import pytest

from conftest import make_png

CSV_BYTES = b"name,amount\nFoo,100\nBar,200"

HTML_PAGE = (
    "<html><body><h1>Market overview</h1>"
    "<p>市場規模は3,200億円。</p>"
    "<table><tr><th>Company</th><th>Share</th></tr>"
    "<tr><td>Acme</td><td>35</td></tr></table>"
    "</body></html>"
)


def _with_http(orchestrator, handler):
    orchestrator.extractor.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return orchestrator


class TestSubmitUpload:
    @pytest.mark.asyncio
    async def test_csv_upload(self, orchestrator):
        from subsidy_evidence.ingestion.schemas import EvidenceSource, EvidenceStatus, EvidenceType

        evidence = await orchestrator.submit_upload(CSV_BYTES, "data.csv", "text/csv")

        assert evidence.status is EvidenceStatus.COMPLETED
        assert evidence.type is EvidenceType.CSV
        assert evidence.source is EvidenceSource.UPLOAD
        assert evidence.size == len(CSV_BYTES)
        assert evidence.metadata.checksum == hashlib.sha256(CSV_BYTES).hexdigest()
        assert evidence.metadata.language == "en"
        assert evidence.security_scan.is_safe
        assert evidence.content.tables[0].rows == [["Foo", 100], ["Bar", 200]]
        assert orchestrator.get(evidence.id).filename == "data.csv"

    @pytest.mark.asyncio
    async def test_image_upload_records_ocr_confidence(self, orchestrator):
        evidence = await orchestrator.submit_upload(make_png(), "scan.png", "image/png")

        assert evidence.content.text == "Revenue 1,200"
        assert evidence.metadata.confidence == 90.0

    @pytest.mark.asyncio
    async def test_dangerous_extension_is_validation_error(self, orchestrator):
        from subsidy_evidence.exceptions import ValidationError

        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.submit_upload(b"echo hi", "install.sh", "text/plain")

        assert "Dangerous file extension: .sh" in excinfo.value.reasons
        assert orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_malware_is_security_error(self, orchestrator):
        from subsidy_evidence.exceptions import SecurityError

        with pytest.raises(SecurityError) as excinfo:
            await orchestrator.submit_upload(b"<script>alert(1)</script>", "note.txt", "text/plain")

        assert "script-injection:script-tag" in excinfo.value.reasons
        assert orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_extraction_failure_is_recorded(self, orchestrator):
        from subsidy_evidence.exceptions import ProcessingError
        from subsidy_evidence.ingestion.schemas import EvidenceStatus, EvidenceType

        with pytest.raises(ProcessingError):
            await orchestrator.submit_upload(b"", "empty.csv", "text/csv")

        [failed] = orchestrator.list()
        assert failed.status is EvidenceStatus.FAILED
        assert failed.type is EvidenceType.CSV
        assert failed.error == "CSV file contains no rows"
        assert failed.security_scan is not None

    @pytest.mark.asyncio
    async def test_reprocess_links_attempts(self, orchestrator):
        from subsidy_evidence.exceptions import ProcessingError
        from subsidy_evidence.ingestion.schemas import EvidenceStatus

        with pytest.raises(ProcessingError):
            await orchestrator.submit_upload(b"", "empty.csv", "text/csv")
        [failed] = orchestrator.list()

        retry = await orchestrator.reprocess(failed.id, CSV_BYTES)

        assert retry.id != failed.id
        assert retry.previous_attempt_id == failed.id
        assert retry.status is EvidenceStatus.COMPLETED
        assert orchestrator.get(failed.id).status is EvidenceStatus.FAILED
        assert len(orchestrator.list()) == 2


class TestImportFromUrl:
    @pytest.mark.asyncio
    async def test_html_page(self, orchestrator):
        from subsidy_evidence.ingestion.schemas import EvidenceSource, EvidenceType

        _with_http(
            orchestrator,
            lambda request: httpx.Response(200, text=HTML_PAGE, headers={"content-type": "text/html"}),
        )
        evidence = await orchestrator.import_from_url("https://example.com/market")

        assert evidence.type is EvidenceType.URL
        assert evidence.source is EvidenceSource.URL_FETCH
        assert evidence.filename == "market.html"
        assert evidence.security_scan.is_safe
        assert evidence.security_scan.checks["mime_type"]
        assert evidence.security_scan.checks["signature"]
        assert evidence.metadata.source_url == "https://example.com/market"
        assert evidence.metadata.language == "ja"
        assert evidence.content.tables[0].rows == [["Acme", 35]]
        assert evidence.content.structured.market_data[0].value == 3200

    @pytest.mark.asyncio
    async def test_oversized_html_page_rejected(self, orchestrator):
        from subsidy_evidence.exceptions import ValidationError
        from subsidy_evidence.ingestion.security import SecurityScanner

        orchestrator.scanner = SecurityScanner(max_file_size=100, enable_virus_scan=False)
        page = "<html><body>" + "<p>filler</p>" * 400 + "</body></html>"
        _with_http(
            orchestrator,
            lambda request: httpx.Response(200, text=page, headers={"content-type": "text/html"}),
        )

        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.import_from_url("https://example.com/huge")

        assert any("File size exceeds limit" in r for r in excinfo.value.reasons)
        assert orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_page_scripts_are_recorded_not_executed(self, orchestrator):
        from subsidy_evidence.ingestion.schemas import EvidenceStatus

        page = "<html><body><script>track()</script><p>Revenue 1,200</p></body></html>"
        _with_http(
            orchestrator,
            lambda request: httpx.Response(200, text=page, headers={"content-type": "text/html"}),
        )
        evidence = await orchestrator.import_from_url("https://example.com/report")

        assert evidence.status is EvidenceStatus.COMPLETED
        assert "script-injection:script-tag" in evidence.security_scan.malware_signatures
        assert "track()" not in evidence.content.text

    @pytest.mark.asyncio
    async def test_remote_file_is_scanned(self, orchestrator):
        from subsidy_evidence.ingestion.schemas import EvidenceSource, EvidenceType

        _with_http(
            orchestrator,
            lambda request: httpx.Response(200, content=CSV_BYTES, headers={"content-type": "text/csv"}),
        )
        evidence = await orchestrator.import_from_url("https://example.com/data/sales.csv")

        assert evidence.type is EvidenceType.CSV
        assert evidence.source is EvidenceSource.URL_FETCH
        assert evidence.filename == "sales.csv"
        assert evidence.security_scan is not None

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self, orchestrator):
        from subsidy_evidence.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await orchestrator.import_from_url("ftp://example.com/file.csv")

    @pytest.mark.asyncio
    async def test_fetch_failure_is_recorded(self, orchestrator):
        from subsidy_evidence.exceptions import ProcessingError
        from subsidy_evidence.ingestion.schemas import EvidenceStatus, EvidenceType

        _with_http(orchestrator, lambda request: httpx.Response(503))
        with pytest.raises(ProcessingError):
            await orchestrator.import_from_url("https://example.com/down")

        [failed] = orchestrator.list()
        assert failed.status is EvidenceStatus.FAILED
        assert failed.type is EvidenceType.URL
        assert failed.metadata.source_url == "https://example.com/down"


class TestAdministration:
    @pytest.mark.asyncio
    async def test_transform_and_statistics(self, orchestrator):
        evidence = await orchestrator.submit_upload(CSV_BYTES, "data.csv", "text/csv")

        tables = orchestrator.transform(evidence.id)
        assert [t.title for t in tables] == ["Table 1"]
        assert tables[0].footnotes[0].text == "Extracted from data.csv"

        stats = orchestrator.statistics()
        assert stats["total"] == 1
        assert stats["by_type"] == {"CSV": 1}
        assert stats["success_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_missing_ids(self, orchestrator):
        from subsidy_evidence.exceptions import EvidenceNotFoundError, JobNotFoundError

        with pytest.raises(EvidenceNotFoundError):
            orchestrator.get("nope")
        with pytest.raises(EvidenceNotFoundError):
            orchestrator.delete("nope")
        with pytest.raises(JobNotFoundError):
            orchestrator.job_status("job_nope")

    def test_quality_score(self):
        from subsidy_evidence.ingestion.schemas import Evidence, ExtractedContent, OCRResult
        from subsidy_evidence.services.orchestrator import quality_score

        assert quality_score(Evidence()) == 1.0
        content = ExtractedContent(ocr_results=[OCRResult(confidence=70), OCRResult(confidence=50)])
        assert quality_score(Evidence(content=content)) == 0.6

    def test_filename_from_url(self):
        from subsidy_evidence.services.orchestrator import filename_from_url

        assert filename_from_url("https://example.com/a/report.pdf", "application/pdf") == "report.pdf"
        assert filename_from_url("https://example.com/export", "text/csv") == "export.csv"
        assert filename_from_url("https://example.com/", "application/zip") == "download.bin"


class TestDeferredWork:
    @pytest.mark.asyncio
    async def test_queued_jobs_run_through_handlers(self, orchestrator):
        evidence = await orchestrator.submit_upload(CSV_BYTES, "data.csv", "text/csv")

        orchestrator.start()
        transform_id = orchestrator.schedule_transform(evidence.id)
        ocr_id = orchestrator.schedule_ocr([make_png()], evidence_id=evidence.id)
        compress_id = orchestrator.schedule_compression(CSV_BYTES * 50, "data.csv", "text/csv")
        storage_id = orchestrator.schedule_storage(CSV_BYTES, "data.csv", "text/csv")
        await orchestrator.queue.join(timeout=5)
        await orchestrator.shutdown()

        assert orchestrator.job_status(transform_id)["status"] == "completed"
        assert orchestrator.queue.status(transform_id).result[0].title == "Table 1"
        assert orchestrator.queue.status(ocr_id).result[0].text == "Revenue 1,200"
        assert orchestrator.queue.status(compress_id).result.method == "gzip"
        assert orchestrator.queue.status(storage_id).result.method == "passthrough"
        assert orchestrator.queue.metrics().completed_jobs == 4
