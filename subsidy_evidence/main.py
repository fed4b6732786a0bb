"""Application entry-point – creates the FastAPI app and wires the pipeline."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from subsidy_evidence.api.routes import router
from subsidy_evidence.config import settings
from subsidy_evidence.services.orchestrator import EvidenceOrchestrator
from subsidy_evidence.services.repository import SqliteEvidenceRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logging.getLogger("pdfminer").setLevel(logging.ERROR)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: open the evidence store, start the queue and storage monitor."""
    logger.info("=== Starting evidence pipeline ===")
    orchestrator = EvidenceOrchestrator(SqliteEvidenceRepository(settings.sqlite_path))
    orchestrator.start()
    app.state.orchestrator = orchestrator
    logger.info("=== Startup complete ===")
    yield
    logger.info("=== Shutting down ===")
    await orchestrator.shutdown()


app = FastAPI(
    title="Subsidy Evidence Pipeline",
    description=(
        "Ingests spreadsheets, PDFs, scanned images and web pages submitted as "
        "subsidy-application evidence and turns them into annotated tables."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api")
