"""
Security scan – runs before any parser touches an untrusted upload.

Gating checks (each feeds ``SecurityScanResult.checks`` and ``is_safe``):
  1. size ceiling
  2. extension blacklist
  3. MIME allowlist
  4. magic-number signature vs declared MIME (text/CSV exempt)
  5. heuristic malware rules + executable headers
  6. optional ClamAV ``INSTREAM`` scan (falls back to 5 when unreachable)

Content heuristics (PDF JavaScript / auto-actions, spreadsheet macros,
oversized images) are advisory: they are reported in
``suspicious_patterns`` but never flip ``is_safe``.

``scan`` never raises – an internal failure yields ``is_safe=False`` with a
diagnostic reason.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import secrets
import struct
import time
from dataclasses import dataclass
from pathlib import PurePosixPath

from subsidy_evidence.ingestion.config import ingest_settings
from subsidy_evidence.ingestion.schemas import AVStatus, SecurityScanResult

logger = logging.getLogger(__name__)

SCAN_ENGINE = "EvidenceSecurityScanner"

DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js",
    ".jar", ".sh", ".py", ".pl", ".php", ".asp", ".aspx", ".jsp",
})

ALLOWED_MIME_TYPES = frozenset({
    "text/csv",
    "application/csv",
    "text/plain",
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/bmp",
    "image/tiff",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
})

# Signature-exempt: plain text has no reliable magic number
TEXT_MIME_TYPES = frozenset({"text/csv", "application/csv", "text/plain"})


# ── Rule tables ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SignatureRule:
    name: str
    magic: bytes
    mime_types: frozenset[str]


SIGNATURE_RULES: tuple[SignatureRule, ...] = (
    SignatureRule("pdf", bytes.fromhex("25504446"), frozenset({"application/pdf"})),
    SignatureRule("png", bytes.fromhex("89504E47"), frozenset({"image/png"})),
    SignatureRule("jpeg", bytes.fromhex("FFD8FF"), frozenset({"image/jpeg"})),
    SignatureRule(
        "zip",
        bytes.fromhex("504B0304"),
        frozenset({
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "application/zip",
        }),
    ),
    SignatureRule("ole2", bytes.fromhex("D0CF11E0"), frozenset({"application/vnd.ms-excel"})),
    SignatureRule("bmp", bytes.fromhex("424D"), frozenset({"image/bmp"})),
    SignatureRule("tiff-le", bytes.fromhex("49492A00"), frozenset({"image/tiff"})),
    SignatureRule("tiff-be", bytes.fromhex("4D4D002A"), frozenset({"image/tiff"})),
    SignatureRule("utf8-bom", bytes.fromhex("EFBBBF"), TEXT_MIME_TYPES),
)


@dataclass(frozen=True)
class MalwareRule:
    name: str
    pattern: re.Pattern[bytes]
    classification: str


MALWARE_RULES: tuple[MalwareRule, ...] = (
    MalwareRule("eval-call", re.compile(rb"eval\s*\(", re.I), "script-injection"),
    MalwareRule("document-write", re.compile(rb"document\.write", re.I), "script-injection"),
    MalwareRule("script-tag", re.compile(rb"<script[^>]*>", re.I), "script-injection"),
    MalwareRule("javascript-uri", re.compile(rb"javascript:", re.I), "script-injection"),
    MalwareRule("vbscript-uri", re.compile(rb"vbscript:", re.I), "script-injection"),
    MalwareRule("inline-event-handler", re.compile(rb"\bon[a-z]+\s*=", re.I), "script-injection"),
    MalwareRule("hex-escaped-payload", re.compile(rb"(?:\\x[0-9a-f]{2}){2,}", re.I), "encoded-payload"),
    MalwareRule("url-encoded-payload", re.compile(rb"(?:%[0-9a-f]{2}){3,}", re.I), "encoded-payload"),
)

EXECUTABLE_HEADERS: tuple[tuple[str, bytes], ...] = (
    ("windows-executable", b"MZ"),
    ("elf-executable", b"\x7fE"),
)


def match_malware_rules(data: bytes) -> list[str]:
    """Return ``classification:name`` for every heuristic rule hit."""
    hits = [
        f"{rule.classification}:{rule.name}"
        for rule in MALWARE_RULES
        if rule.pattern.search(data)
    ]
    for name, header in EXECUTABLE_HEADERS:
        if data[:2] == header:
            hits.append(f"executable-header:{name}")
    return hits


def detect_signature(data: bytes) -> SignatureRule | None:
    for rule in SIGNATURE_RULES:
        if data.startswith(rule.magic):
            return rule
    return None


def verify_signature(data: bytes, mime_type: str) -> bool:
    """True when the leading bytes agree with the declared MIME type."""
    mime = mime_type.lower()
    if mime in TEXT_MIME_TYPES:
        return True
    if len(data) < 4:
        return False
    rule = detect_signature(data)
    if rule is None:
        return False
    if rule.name == "zip":
        # OOXML workbooks are zip containers
        return "excel" in mime or "spreadsheet" in mime or "zip" in mime
    return mime in rule.mime_types


# ── ClamAV ───────────────────────────────────────────────────────────────

class ClamAVUnavailable(Exception):
    """clamd could not be reached or answered unexpectedly."""


async def clamav_instream(
    data: bytes,
    host: str | None = None,
    port: int | None = None,
    timeout: float | None = None,
    chunk_size: int = 1 << 16,
) -> str | None:
    """Stream *data* to clamd; return the signature name if infected, else None."""
    host = host or ingest_settings.clamd_host
    port = port or ingest_settings.clamd_port
    timeout = timeout or ingest_settings.clamd_timeout

    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout
        )
    except (OSError, asyncio.TimeoutError) as exc:
        raise ClamAVUnavailable(str(exc)) from exc

    try:
        writer.write(b"zINSTREAM\0")
        for i in range(0, len(data), chunk_size):
            chunk = data[i:i + chunk_size]
            writer.write(struct.pack("!L", len(chunk)) + chunk)
        writer.write(struct.pack("!L", 0))
        await writer.drain()
        reply = await asyncio.wait_for(reader.read(4096), timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        raise ClamAVUnavailable(str(exc)) from exc
    finally:
        writer.close()

    answer = reply.rstrip(b"\0\n").decode("utf-8", errors="replace")
    # e.g. "stream: Eicar-Test-Signature FOUND" / "stream: OK"
    if answer.endswith("FOUND"):
        return answer.split(":", 1)[-1].removesuffix("FOUND").strip()
    if answer.endswith("OK"):
        return None
    raise ClamAVUnavailable(f"unexpected clamd reply: {answer!r}")


# ── Scanner ──────────────────────────────────────────────────────────────

class SecurityScanner:
    """Stateless scanner; one instance can be shared by every submission."""

    def __init__(
        self,
        max_file_size: int | None = None,
        enable_virus_scan: bool | None = None,
        av_scan=clamav_instream,
    ) -> None:
        self.max_file_size = max_file_size or ingest_settings.max_file_size
        self.enable_virus_scan = (
            ingest_settings.enable_virus_scan if enable_virus_scan is None else enable_virus_scan
        )
        self._av_scan = av_scan

    async def scan(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        *,
        enable_virus_scan: bool | None = None,
        text_mime_types: frozenset[str] = frozenset(),
    ) -> SecurityScanResult:
        """Scan *data*; *text_mime_types* are accepted as signature-exempt text."""
        t0 = time.time()
        try:
            result = await self._scan(data, filename, mime_type, enable_virus_scan, text_mime_types)
        except Exception as exc:
            logger.exception("Security scan failed for %s.", filename)
            return SecurityScanResult(
                is_safe=False,
                suspicious_patterns=[f"Security scan error: {exc}"],
                degraded=True,
                scan_engine=SCAN_ENGINE,
            )

        logger.info(
            "Security scan for %s: safe=%s, av=%s, %d pattern(s) in %.0fms.",
            filename,
            result.is_safe,
            result.av_status.value,
            len(result.suspicious_patterns) + len(result.malware_signatures),
            (time.time() - t0) * 1000,
        )
        return result

    async def _scan(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        enable_virus_scan: bool | None,
        text_mime_types: frozenset[str],
    ) -> SecurityScanResult:
        patterns: list[str] = []
        checks: dict[str, bool] = {}
        mime = (mime_type or "").split(";")[0].strip().lower()

        checks["size"] = len(data) <= self.max_file_size
        if not checks["size"]:
            patterns.append(
                f"File size exceeds limit: {len(data)} > {self.max_file_size} bytes"
            )

        ext = PurePosixPath(filename.lower()).suffix
        checks["extension"] = ext not in DANGEROUS_EXTENSIONS
        if not checks["extension"]:
            patterns.append(f"Dangerous file extension: {ext}")

        checks["mime_type"] = mime in ALLOWED_MIME_TYPES or mime in text_mime_types
        if not checks["mime_type"]:
            patterns.append(f"MIME type not allowed: {mime or '(none)'}")

        signature_ok = mime in text_mime_types or verify_signature(data, mime)
        checks["signature"] = signature_ok
        if not signature_ok:
            patterns.append("File signature does not match declared MIME type")

        malware = match_malware_rules(data)

        av_status = AVStatus.SKIPPED
        run_av = self.enable_virus_scan if enable_virus_scan is None else enable_virus_scan
        if run_av:
            try:
                virus = await self._av_scan(data)
            except ClamAVUnavailable as exc:
                logger.warning("ClamAV unavailable (%s) – using heuristic result only.", exc)
                av_status = AVStatus.UNAVAILABLE
            else:
                if virus:
                    av_status = AVStatus.INFECTED
                    malware.append(f"virus:{virus}")
                else:
                    av_status = AVStatus.CLEAN

        checks["malware"] = not malware
        patterns.extend(content_heuristics(data, ext, mime))

        return SecurityScanResult(
            is_safe=all(checks.values()),
            file_signature_valid=signature_ok,
            virus_found=av_status is AVStatus.INFECTED,
            malware_signatures=malware,
            suspicious_patterns=patterns,
            checks=checks,
            av_status=av_status,
            degraded=av_status in (AVStatus.SKIPPED, AVStatus.UNAVAILABLE),
            scan_engine=SCAN_ENGINE,
        )

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def calculate_file_hash(data: bytes, algorithm: str = "sha256") -> str:
        if algorithm not in ("sha256", "md5"):
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        return hashlib.new(algorithm, data).hexdigest()

    @staticmethod
    def generate_secure_filename(original: str) -> str:
        """Opaque storage name keeping only a sanitised extension."""
        ext = re.sub(r"[^a-z0-9.]", "", PurePosixPath(original.lower()).suffix)
        if ext in DANGEROUS_EXTENSIONS:
            ext = ".bin"
        return f"evidence_{int(time.time() * 1000)}_{secrets.token_hex(6)}{ext}"


def content_heuristics(data: bytes, ext: str, mime: str) -> list[str]:
    """Advisory findings that are expected to have false positives."""
    notes: list[str] = []
    if not data:
        notes.append("Empty file")
        return notes

    if mime == "application/pdf" or ext == ".pdf":
        if b"/JavaScript" in data or b"/JS" in data:
            notes.append("PDF contains JavaScript")
        if b"/OpenAction" in data or b"/AA" in data:
            notes.append("PDF contains auto-actions")

    if ext in (".xlsx", ".xls") or "excel" in mime or "spreadsheet" in mime:
        if b"vbaProject" in data or b"macrosheet" in data:
            notes.append("Excel file may contain macros")

    if mime.startswith("image/") and len(data) > ingest_settings.large_image_bytes:
        notes.append("Image file unusually large")

    return notes
