"""
Processing queue – admission-controlled, priority-ordered, cost-governed
scheduler for deferred work (bulk OCR, transformation, compression,
storage migration).

Model
-----
* Single asyncio event loop; all queue state is mutated on the loop only,
  so no locks are needed.
* ``submit`` rejects a job outright (``BudgetExceededError``) when it would
  push the running daily cost over the cap.
* The scheduler task wakes whenever a job is submitted or finishes, and at
  least every ``tick_seconds``.  Each wake starts as many eligible jobs as
  the global and OCR caps allow, scanning the pending list in priority order.
* Every job runs under ``asyncio.wait_for``; a timeout or an exception
  sends it back to the pending list (same priority) until ``max_retries``
  is exhausted, then it is terminal.
* The daily cost total resets when the local date changes.

Known gap: a high-priority job whose estimated cost exceeds the remaining
budget is skipped while cheaper jobs behind it keep running, so it can wait
indefinitely.  No budget is reserved for it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, Field

from subsidy_evidence.config import settings
from subsidy_evidence.exceptions import BudgetExceededError, JobTimeoutError, ProcessingError

logger = logging.getLogger(__name__)

DEFAULT_OCR_BUFFER_BYTES = 1_024_000
_MB = 1024 * 1024
_GB = 1024 ** 3


# ── Enums ────────────────────────────────────────────────────────────────

class JobType(str, Enum):
    OCR = "ocr"
    TRANSFORM = "transform"
    COMPRESS = "compress"
    STORAGE = "storage"


class JobPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


# ── Payloads ─────────────────────────────────────────────────────────────

class OcrJob(BaseModel):
    """Recognise a batch of images (e.g. rendered pages of a scanned PDF)."""

    evidence_id: str | None = None
    images: list[bytes] = Field(default_factory=list)
    languages: list[str] | None = None
    preprocess: bool = True

    @property
    def size_bytes(self) -> int:
        return sum(len(i) for i in self.images) or DEFAULT_OCR_BUFFER_BYTES


class TransformJob(BaseModel):
    evidence_id: str
    table_count: int = 1  # used for cost estimation only


class CompressJob(BaseModel):
    data: bytes
    filename: str
    mime_type: str
    evidence_id: str | None = None


class StorageJob(BaseModel):
    """Persist / migrate an artifact; billed per GB per day retained."""

    data: bytes
    filename: str
    mime_type: str = "application/octet-stream"
    evidence_id: str | None = None
    retention_days: float = 1.0


JobPayload = Union[OcrJob, TransformJob, CompressJob, StorageJob]
JobHandler = Callable[[Any], Awaitable[Any]]


def job_type_of(payload: JobPayload) -> JobType:
    if isinstance(payload, OcrJob):
        return JobType.OCR
    if isinstance(payload, TransformJob):
        return JobType.TRANSFORM
    if isinstance(payload, CompressJob):
        return JobType.COMPRESS
    if isinstance(payload, StorageJob):
        return JobType.STORAGE
    raise TypeError(f"Unsupported job payload: {type(payload).__name__}")


def estimate_cost(payload: JobPayload) -> float:
    """Type-specific cost in the configured currency units."""
    if isinstance(payload, OcrJob):
        return max(settings.min_ocr_cost, payload.size_bytes / _MB * settings.cost_per_ocr_mb)
    if isinstance(payload, TransformJob):
        return payload.table_count * settings.cost_per_transform_table
    if isinstance(payload, CompressJob):
        return settings.compression_cost
    if isinstance(payload, StorageJob):
        return len(payload.data) / _GB * payload.retention_days * settings.storage_cost_per_gb_day
    raise TypeError(f"Unsupported job payload: {type(payload).__name__}")


# ── Job record ───────────────────────────────────────────────────────────

@dataclass
class ProcessingJob:
    """One unit of deferred work.  Owned by the queue; callers get copies."""

    id: str
    payload: JobPayload
    priority: JobPriority
    max_retries: int
    timeout: float  # seconds
    estimated_cost: float
    created_at: datetime
    retries: int = 0
    actual_cost: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    failed: bool = False
    result: Any = field(default=None, repr=False)

    @property
    def type(self) -> JobType:
        return job_type_of(self.payload)


def _new_job_id(now: datetime) -> str:
    return f"job_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def _ms(delta) -> float:
    return round(delta.total_seconds() * 1000, 1)


def job_status_view(job: ProcessingJob, now: datetime | None = None) -> dict[str, Any]:
    """Caller-facing view; ``status`` is derived from the timestamps only."""
    now = now or datetime.now()
    if job.completed_at is not None:
        status, progress = "completed", 100
    elif job.started_at is not None:
        status, progress = "running", 50
    else:
        status, progress = "pending", 0

    estimated_completion = None
    if status == "running":
        estimated_completion = (job.started_at + timedelta(seconds=job.timeout)).isoformat()

    return {
        "id": job.id,
        "type": job.type.value,
        "priority": job.priority.value,
        "status": status,
        "progress": progress,
        "createdAt": job.created_at.isoformat(),
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "error": job.error,
        "retries": job.retries,
        "maxRetries": job.max_retries,
        "estimatedCost": job.estimated_cost,
        "actualCost": job.actual_cost,
        "queueTime": _ms((job.started_at or now) - job.created_at),
        "processingTime": (
            _ms((job.completed_at or now) - job.started_at) if job.started_at else None
        ),
        "estimatedCompletion": estimated_completion,
    }


class QueueMetrics(BaseModel):
    total_jobs: int
    pending_jobs: int
    running_jobs: int
    completed_jobs: int
    failed_jobs: int
    total_cost: float
    avg_processing_time: float  # ms, successful jobs only
    queue_wait_time: float  # ms, head of the pending list


class CostGovernance(BaseModel):
    daily_limit: float
    current_usage: float
    utilization: float
    remaining_budget: float


# ── Queue ────────────────────────────────────────────────────────────────

class ProcessingQueue:
    """In-memory job scheduler.  State is lost on process restart."""

    def __init__(
        self,
        *,
        max_concurrent: int | None = None,
        max_ocr_concurrent: int | None = None,
        daily_cost_limit: float | None = None,
        tick_seconds: float | None = None,
        default_timeout: float | None = None,
        default_max_retries: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.max_concurrent = max_concurrent or settings.queue_max_concurrent_jobs
        self.max_ocr_concurrent = max_ocr_concurrent or settings.queue_max_ocr_concurrent
        self.daily_cost_limit = (
            settings.daily_cost_limit if daily_cost_limit is None else daily_cost_limit
        )
        self.tick_seconds = tick_seconds or settings.queue_tick_seconds
        self.default_timeout = default_timeout or settings.queue_default_timeout_seconds
        self.default_max_retries = (
            settings.queue_default_max_retries if default_max_retries is None else default_max_retries
        )
        self._now = clock

        self._pending: list[ProcessingJob] = []
        self._running: dict[str, ProcessingJob] = {}
        self._completed: dict[str, ProcessingJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._handlers: dict[JobType, JobHandler] = {}

        self._daily_cost = 0.0
        self._cost_date: date = self._now().date()

        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._scheduler: asyncio.Task | None = None
        self._closing = False

    # ── Registration / lifecycle ────────────────────────────────────────

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def start(self) -> None:
        """Start the scheduler task on the running loop."""
        if self._scheduler is not None and not self._scheduler.done():
            return
        self._closing = False
        self._scheduler = asyncio.create_task(self._run(), name="processing-queue")
        logger.info(
            "Processing queue started (max %d concurrent, %d OCR, limit %.2f/day).",
            self.max_concurrent, self.max_ocr_concurrent, self.daily_cost_limit,
        )

    async def _run(self) -> None:
        while not self._closing:
            self.tick()
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

    async def join(self, timeout: float | None = None) -> None:
        """Wait until nothing is pending or running."""
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    async def shutdown(self) -> None:
        """Stop scheduling and wait for running jobs to finish."""
        self._closing = True
        self._wake.set()
        if self._scheduler is not None:
            await self._scheduler
            self._scheduler = None
        running = list(self._tasks.values())
        if running:
            logger.info("Waiting for %d running job(s) to finish…", len(running))
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("Processing queue stopped (%d job(s) left pending).", len(self._pending))

    # ── Submission / queries ────────────────────────────────────────────

    def submit(
        self,
        payload: JobPayload,
        priority: JobPriority | str = JobPriority.MEDIUM,
        *,
        max_retries: int | None = None,
        timeout: float | None = None,
        estimated_cost: float | None = None,
    ) -> str:
        """Admit a job or raise ``BudgetExceededError``; returns the job id."""
        self._maybe_reset_daily_cost()
        job_type_of(payload)  # rejects unknown payloads early
        estimate = estimate_cost(payload) if estimated_cost is None else estimated_cost

        if self._daily_cost + estimate > self.daily_cost_limit:
            logger.warning(
                "Job rejected: cost %.2f + %.2f exceeds daily limit %.2f.",
                self._daily_cost, estimate, self.daily_cost_limit,
            )
            raise BudgetExceededError(self._daily_cost, estimate, self.daily_cost_limit)

        now = self._now()
        job = ProcessingJob(
            id=_new_job_id(now),
            payload=payload,
            priority=JobPriority(priority),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            timeout=timeout or self.default_timeout,
            estimated_cost=estimate,
            created_at=now,
        )
        self._insert_by_priority(job)
        self._idle.clear()
        self._wake.set()
        logger.info(
            "Job %s added (type=%s, priority=%s, est. cost %.2f).",
            job.id, job.type.value, job.priority.value, estimate,
        )
        return job.id

    def status(self, job_id: str) -> ProcessingJob | None:
        """Snapshot of a job: running first, then completed, then pending."""
        job = self._running.get(job_id) or self._completed.get(job_id)
        if job is None:
            job = next((j for j in self._pending if j.id == job_id), None)
        return dataclasses.replace(job) if job is not None else None

    def pending_ids(self) -> list[str]:
        return [j.id for j in self._pending]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def running_ocr_count(self) -> int:
        return sum(1 for j in self._running.values() if j.type is JobType.OCR)

    @property
    def daily_cost(self) -> float:
        return self._daily_cost

    def metrics(self) -> QueueMetrics:
        self._maybe_reset_daily_cost()
        now = self._now()
        done = [j for j in self._completed.values() if not j.failed]
        failed = [j for j in self._completed.values() if j.failed]
        durations = [
            (j.completed_at - j.started_at).total_seconds() * 1000
            for j in done
            if j.started_at and j.completed_at
        ]
        head_wait = _ms(now - self._pending[0].created_at) if self._pending else 0.0
        return QueueMetrics(
            total_jobs=len(self._pending) + len(self._running) + len(self._completed),
            pending_jobs=len(self._pending),
            running_jobs=len(self._running),
            completed_jobs=len(done),
            failed_jobs=len(failed),
            total_cost=round(self._daily_cost, 4),
            avg_processing_time=round(sum(durations) / len(durations), 1) if durations else 0.0,
            queue_wait_time=head_wait,
        )

    def cost_governance(self) -> CostGovernance:
        self._maybe_reset_daily_cost()
        limit = self.daily_cost_limit
        return CostGovernance(
            daily_limit=limit,
            current_usage=round(self._daily_cost, 4),
            utilization=round(self._daily_cost / limit, 4) if limit else 1.0,
            remaining_budget=round(max(0.0, limit - self._daily_cost), 4),
        )

    def reset_daily_cost(self) -> None:
        logger.info("Daily cost reset (was %.2f).", self._daily_cost)
        self._daily_cost = 0.0
        self._cost_date = self._now().date()

    # ── Scheduling ──────────────────────────────────────────────────────

    def tick(self) -> int:
        """Start every job the caps allow; returns how many were started."""
        self._maybe_reset_daily_cost()
        started = 0
        while len(self._running) < self.max_concurrent:
            job = self._next_eligible()
            if job is None:
                break
            self._start(job)
            started += 1
        self._update_idle()
        return started

    def _next_eligible(self) -> ProcessingJob | None:
        ocr_full = self.running_ocr_count >= self.max_ocr_concurrent
        for job in self._pending:
            if ocr_full and job.type is JobType.OCR:
                continue
            if self._daily_cost + job.estimated_cost > self.daily_cost_limit:
                continue
            return job
        return None

    def _insert_by_priority(self, job: ProcessingJob) -> None:
        for idx, queued in enumerate(self._pending):
            if queued.priority.rank < job.priority.rank:
                self._pending.insert(idx, job)
                return
        self._pending.append(job)

    def _start(self, job: ProcessingJob) -> None:
        self._pending.remove(job)
        job.started_at = self._now()
        self._running[job.id] = job
        self._tasks[job.id] = asyncio.create_task(self._execute(job), name=job.id)
        logger.info("Job %s started (attempt %d).", job.id, job.retries + 1)

    async def _execute(self, job: ProcessingJob) -> None:
        error: BaseException | None = None
        try:
            handler = self._handlers.get(job.type)
            if handler is None:
                raise ProcessingError(f"No handler registered for {job.type.value} jobs")
            job.result = await asyncio.wait_for(handler(job.payload), timeout=job.timeout)
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"Job {job.id} timed out after {job.timeout}s")
        except asyncio.CancelledError:
            self._running.pop(job.id, None)
            self._tasks.pop(job.id, None)
            job.error = "Job cancelled"
            job.failed = True
            job.completed_at = self._now()
            self._completed[job.id] = job
            self._update_idle()
            raise
        except Exception as exc:
            error = exc

        self._running.pop(job.id, None)
        self._tasks.pop(job.id, None)
        if error is None:
            self._complete(job)
        else:
            self._fail(job, error)
        self._update_idle()
        self._wake.set()

    def _complete(self, job: ProcessingJob) -> None:
        job.completed_at = self._now()
        job.error = None
        if job.actual_cost is None:
            job.actual_cost = estimate_cost(job.payload)
            self._daily_cost += job.actual_cost
        self._completed[job.id] = job
        logger.info(
            "Job %s completed in %.0fms (cost %.2f, daily total %.2f).",
            job.id,
            (job.completed_at - job.started_at).total_seconds() * 1000,
            job.actual_cost,
            self._daily_cost,
        )

    def _fail(self, job: ProcessingJob, error: BaseException) -> None:
        job.error = str(error) or type(error).__name__
        if job.retries < job.max_retries:
            job.retries += 1
            job.started_at = None
            self._insert_by_priority(job)
            logger.warning(
                "Job %s failed (%s), retry %d/%d.",
                job.id, job.error, job.retries, job.max_retries,
            )
            return
        job.failed = True
        job.completed_at = self._now()
        self._completed[job.id] = job
        logger.error("Job %s permanently failed after %d retries: %s", job.id, job.retries, job.error)

    def _maybe_reset_daily_cost(self) -> None:
        today = self._now().date()
        if today != self._cost_date:
            self.reset_daily_cost()

    def _update_idle(self) -> None:
        if self._pending or self._running:
            self._idle.clear()
        else:
            self._idle.set()
