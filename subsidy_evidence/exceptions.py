"""
Exceptions raised by the evidence pipeline.

Validation, security and budget errors are raised synchronously to the
caller.  Processing errors are recorded as FAILED evidence before they are
re-raised.  Job timeouts never leave the queue: they end up in the job's
``error`` field.
"""

from __future__ import annotations


class EvidenceError(Exception):
    """Base exception for all evidence pipeline errors."""


class ValidationError(EvidenceError):
    """Upload rejected before processing (size, extension, MIME type, URL)."""

    def __init__(self, message: str, reasons: list[str] | None = None) -> None:
        super().__init__(message)
        self.reasons = list(reasons or [])


class SecurityError(EvidenceError):
    """Upload failed the file-signature or malware checks."""

    def __init__(self, message: str, reasons: list[str] | None = None) -> None:
        super().__init__(message)
        self.reasons = list(reasons or [])


class ProcessingError(EvidenceError):
    """Format-specific extraction or OCR failure."""


class BudgetExceededError(EvidenceError):
    """Queue admission rejected because the daily cost cap would be exceeded."""

    def __init__(self, current: float, estimated: float, limit: float) -> None:
        super().__init__(
            f"Daily cost limit exceeded. Current: {current:.2f}, "
            f"estimated: {estimated:.2f}, limit: {limit:.2f}"
        )
        self.current = current
        self.estimated = estimated
        self.limit = limit


class JobTimeoutError(EvidenceError):
    """A queued job exceeded its allotted time."""


class EvidenceNotFoundError(EvidenceError):
    """No evidence record exists for the given id."""


class JobNotFoundError(EvidenceError):
    """No job exists for the given id."""
