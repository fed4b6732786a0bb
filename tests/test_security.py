"""Tests for the upload security scanner."""

import asyncio
import struct

import pytest

CSV_BYTES = b"name,amount\nFoo,100\nBar,200\n"


class TestSignatures:
    def test_text_types_are_exempt(self):
        from subsidy_evidence.ingestion.security import verify_signature

        assert verify_signature(b"", "text/csv")
        assert verify_signature(b"a,b", "text/plain")

    def test_pdf_signature(self):
        from subsidy_evidence.ingestion.security import verify_signature

        assert verify_signature(b"%PDF-1.7\n", "application/pdf")
        assert not verify_signature(b"\x89PNG\r\n\x1a\n", "application/pdf")

    def test_short_binary_fails(self):
        from subsidy_evidence.ingestion.security import verify_signature

        assert not verify_signature(b"%PD", "application/pdf")

    def test_xlsx_is_a_zip_container(self):
        from subsidy_evidence.ingestion.security import verify_signature

        mime = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        assert verify_signature(b"PK\x03\x04rest", mime)
        assert not verify_signature(b"PK\x03\x04rest", "image/png")


class TestMalwareRules:
    def test_script_tag(self):
        from subsidy_evidence.ingestion.security import match_malware_rules

        hits = match_malware_rules(b"<script>alert(1)</script>")
        assert "script-injection:script-tag" in hits

    def test_encoded_payload(self):
        from subsidy_evidence.ingestion.security import match_malware_rules

        assert "encoded-payload:url-encoded-payload" in match_malware_rules(b"x=%3C%73%63")
        assert "encoded-payload:hex-escaped-payload" in match_malware_rules(rb"\x41\x42")

    def test_executable_header(self):
        from subsidy_evidence.ingestion.security import match_malware_rules

        assert "executable-header:windows-executable" in match_malware_rules(b"MZ\x90\x00")

    def test_clean_csv(self):
        from subsidy_evidence.ingestion.security import match_malware_rules

        assert match_malware_rules(CSV_BYTES) == []


class TestSecurityScanner:
    @pytest.mark.asyncio
    async def test_clean_csv_is_safe_and_degraded_without_av(self):
        from subsidy_evidence.ingestion.schemas import AVStatus
        from subsidy_evidence.ingestion.security import SecurityScanner

        result = await SecurityScanner(enable_virus_scan=False).scan(CSV_BYTES, "data.csv", "text/csv")
        assert result.is_safe
        assert result.file_signature_valid
        assert result.av_status is AVStatus.SKIPPED
        assert result.degraded
        assert set(result.checks) == {"size", "extension", "mime_type", "signature", "malware"}

    @pytest.mark.asyncio
    async def test_oversized_file(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        result = await SecurityScanner(max_file_size=10).scan(CSV_BYTES, "data.csv", "text/csv")
        assert not result.is_safe
        assert result.checks["size"] is False
        assert any("File size exceeds limit" in r for r in result.reasons)

    @pytest.mark.asyncio
    async def test_dangerous_extension(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        result = await SecurityScanner().scan(b"hello", "run.EXE", "text/plain")
        assert not result.is_safe
        assert result.checks["extension"] is False

    @pytest.mark.asyncio
    async def test_mime_not_allowed(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        result = await SecurityScanner().scan(b"hello world", "a.bin", "application/x-msdownload")
        assert result.checks["mime_type"] is False
        assert "MIME type not allowed: application/x-msdownload" in result.suspicious_patterns

    @pytest.mark.asyncio
    async def test_extra_text_types(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        page = b"<html><body><p>Market</p></body></html>"
        scanner = SecurityScanner(enable_virus_scan=False)

        rejected = await scanner.scan(page, "page.html", "text/html")
        assert rejected.checks["mime_type"] is False
        assert rejected.checks["signature"] is False

        accepted = await scanner.scan(
            page, "page.html", "text/html; charset=utf-8",
            text_mime_types=frozenset({"text/html"}),
        )
        assert accepted.is_safe
        assert accepted.file_signature_valid

    @pytest.mark.asyncio
    async def test_signature_mismatch(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        result = await SecurityScanner().scan(b"\x89PNG\r\n\x1a\n0000", "report.pdf", "application/pdf")
        assert not result.is_safe
        assert not result.file_signature_valid
        assert result.checks["signature"] is False

    @pytest.mark.asyncio
    async def test_malware_hit(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        result = await SecurityScanner().scan(b"<script>alert(1)</script>", "note.txt", "text/plain")
        assert not result.is_safe
        assert result.checks["malware"] is False
        assert "script-injection:script-tag" in result.malware_signatures

    @pytest.mark.asyncio
    async def test_pdf_javascript_is_advisory(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        data = b"%PDF-1.4\n1 0 obj << /JavaScript 2 0 R >>\n"
        result = await SecurityScanner().scan(data, "doc.pdf", "application/pdf")
        assert result.is_safe
        assert "PDF contains JavaScript" in result.suspicious_patterns

    @pytest.mark.asyncio
    async def test_av_unavailable_degrades(self):
        from subsidy_evidence.ingestion.schemas import AVStatus
        from subsidy_evidence.ingestion.security import ClamAVUnavailable, SecurityScanner

        async def unreachable(data):
            raise ClamAVUnavailable("connection refused")

        scanner = SecurityScanner(enable_virus_scan=True, av_scan=unreachable)
        result = await scanner.scan(CSV_BYTES, "data.csv", "text/csv")
        assert result.is_safe
        assert result.av_status is AVStatus.UNAVAILABLE
        assert result.degraded

    @pytest.mark.asyncio
    async def test_av_clean_is_not_degraded(self):
        from subsidy_evidence.ingestion.schemas import AVStatus
        from subsidy_evidence.ingestion.security import SecurityScanner

        async def clean(data):
            return None

        result = await SecurityScanner(enable_virus_scan=True, av_scan=clean).scan(
            CSV_BYTES, "data.csv", "text/csv"
        )
        assert result.av_status is AVStatus.CLEAN
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_av_infected(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        async def infected(data):
            return "Eicar-Test-Signature"

        scanner = SecurityScanner(enable_virus_scan=False, av_scan=infected)
        result = await scanner.scan(CSV_BYTES, "data.csv", "text/csv", enable_virus_scan=True)
        assert not result.is_safe
        assert result.virus_found
        assert "virus:Eicar-Test-Signature" in result.malware_signatures

    @pytest.mark.asyncio
    async def test_internal_error_is_unsafe(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        async def broken(data):
            raise RuntimeError("boom")

        result = await SecurityScanner(enable_virus_scan=True, av_scan=broken).scan(
            CSV_BYTES, "data.csv", "text/csv"
        )
        assert not result.is_safe
        assert result.degraded
        assert result.suspicious_patterns == ["Security scan error: boom"]


class TestHelpers:
    def test_secure_filename(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        name = SecurityScanner.generate_secure_filename("Report.PDF")
        assert name.startswith("evidence_")
        assert name.endswith(".pdf")
        assert SecurityScanner.generate_secure_filename("evil.exe").endswith(".bin")

    def test_file_hash(self):
        from subsidy_evidence.ingestion.security import SecurityScanner

        digest = SecurityScanner.calculate_file_hash(b"abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        with pytest.raises(ValueError):
            SecurityScanner.calculate_file_hash(b"abc", "sha1")


class TestClamAV:
    @pytest.mark.asyncio
    async def test_instream_reports_signature(self):
        from subsidy_evidence.ingestion.security import clamav_instream

        received = bytearray()

        async def fake_clamd(reader, writer):
            assert await reader.readexactly(10) == b"zINSTREAM\0"
            while True:
                (size,) = struct.unpack("!L", await reader.readexactly(4))
                if size == 0:
                    break
                received.extend(await reader.readexactly(size))
            writer.write(b"stream: Eicar-Test-Signature FOUND\0")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(fake_clamd, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            virus = await clamav_instream(b"0123456789", host="127.0.0.1", port=port, timeout=2, chunk_size=4)
        finally:
            server.close()
            await server.wait_closed()

        assert virus == "Eicar-Test-Signature"
        assert bytes(received) == b"0123456789"

    @pytest.mark.asyncio
    async def test_unreachable_daemon(self):
        from subsidy_evidence.ingestion.security import ClamAVUnavailable, clamav_instream

        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        with pytest.raises(ClamAVUnavailable):
            await clamav_instream(b"data", host="127.0.0.1", port=port, timeout=1)
