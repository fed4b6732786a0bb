"""REST API routes for the evidence pipeline."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from subsidy_evidence.exceptions import (
    BudgetExceededError,
    EvidenceNotFoundError,
    JobNotFoundError,
    ProcessingError,
    SecurityError,
    ValidationError,
)
from subsidy_evidence.ingestion.config import ingest_settings
from subsidy_evidence.ingestion.schemas import Evidence, ProcessingOptions, TransformedTable
from subsidy_evidence.ingestion.tables import rows_to_markdown
from subsidy_evidence.services.orchestrator import EvidenceOrchestrator
from subsidy_evidence.services.queue import QueueMetrics
from subsidy_evidence.services.storage import StorageStats

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class UrlImportRequest(BaseModel):
    url: str = Field(..., min_length=1, description="http(s) URL of the evidence page or file.")
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class TableResponse(BaseModel):
    table: TransformedTable
    markdown: str


class QueueMetricsResponse(BaseModel):
    metrics: QueueMetrics
    cost_control: dict[str, float]


class HealthResponse(BaseModel):
    status: str
    pending_jobs: int
    running_jobs: int
    ocr_available: bool


def _orchestrator(request: Request) -> EvidenceOrchestrator:
    return request.app.state.orchestrator


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, (ValidationError, SecurityError)):
        return HTTPException(status_code=400, detail={"message": str(exc), "reasons": exc.reasons})
    if isinstance(exc, BudgetExceededError):
        return HTTPException(status_code=429, detail=str(exc))
    if isinstance(exc, (EvidenceNotFoundError, JobNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ProcessingError):
        return HTTPException(status_code=422, detail=str(exc))
    logger.exception("Unexpected error.")
    return HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check(request: Request):
    """Return service health and queue state."""
    orch = _orchestrator(request)
    return HealthResponse(
        status="ok",
        pending_jobs=orch.queue.pending_count,
        running_jobs=orch.queue.running_count,
        ocr_available=orch.ocr.available,
    )


@router.post("/evidence/upload", response_model=Evidence, tags=["evidence"])
async def upload_evidence(request: Request, file: UploadFile = File(...)):
    """Upload one evidence file; it is scanned, extracted and stored."""
    data = await file.read(ingest_settings.max_file_size + 1)
    try:
        return await _orchestrator(request).submit_upload(
            data,
            file.filename or "upload",
            file.content_type or "application/octet-stream",
        )
    except Exception as exc:
        raise _translate(exc) from exc


@router.post("/evidence/url", response_model=Evidence, tags=["evidence"])
async def import_evidence_url(request: Request, body: UrlImportRequest):
    """Fetch a web page or remote file and store it as evidence."""
    try:
        return await _orchestrator(request).import_from_url(body.url, body.options)
    except Exception as exc:
        raise _translate(exc) from exc


@router.get("/evidence/{evidence_id}", response_model=Evidence, tags=["evidence"])
async def get_evidence(request: Request, evidence_id: str):
    try:
        return _orchestrator(request).get(evidence_id)
    except Exception as exc:
        raise _translate(exc) from exc


@router.delete("/evidence/{evidence_id}", status_code=204, tags=["evidence"])
async def delete_evidence(request: Request, evidence_id: str):
    try:
        _orchestrator(request).delete(evidence_id)
    except Exception as exc:
        raise _translate(exc) from exc


@router.get("/evidence/{evidence_id}/tables", response_model=list[TableResponse], tags=["evidence"])
async def get_evidence_tables(request: Request, evidence_id: str):
    """Annotated tables derived from the stored content."""
    try:
        tables = _orchestrator(request).transform(evidence_id)
    except Exception as exc:
        raise _translate(exc) from exc
    return [TableResponse(table=t, markdown=rows_to_markdown(t.headers, t.rows)) for t in tables]


@router.get("/jobs/{job_id}", tags=["queue"])
async def get_job(request: Request, job_id: str) -> dict[str, Any]:
    try:
        return _orchestrator(request).job_status(job_id)
    except Exception as exc:
        raise _translate(exc) from exc


@router.get("/queue/metrics", response_model=QueueMetricsResponse, tags=["queue"])
async def queue_metrics(request: Request):
    queue = _orchestrator(request).queue
    return QueueMetricsResponse(
        metrics=queue.metrics(),
        cost_control=queue.cost_governance().model_dump(),
    )


@router.get("/storage/stats", response_model=StorageStats, tags=["storage"])
async def storage_stats(request: Request):
    return _orchestrator(request).storage.get_storage_stats()
