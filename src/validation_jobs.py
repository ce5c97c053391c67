"""
Background validation runs for the HTTP surface.

Each job wraps one StreamValidator.validate call in an asyncio task and keeps
its live progress, the channels found playable so far and the final results.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from config import settings
from models import ValidationResult
from stream_validator import StreamValidator, Targets, ValidationOptions, export_validation_results

logger = logging.getLogger(__name__)


@dataclass
class ValidationJob:
    """State of one validation run."""
    job_id: str
    status: str  # running, completed, cancelled, failed
    total: int
    grouped: bool = False
    completed: int = 0
    playable_channel_ids: List[str] = field(default_factory=list)
    results: List[ValidationResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status != "running"

    def to_dict(self, include_results: bool = True) -> Dict:
        data = {
            "job_id": self.job_id,
            "status": self.status,
            "grouped": self.grouped,
            "completed": self.completed,
            "total": self.total,
            "playable_channel_ids": list(self.playable_channel_ids),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }
        if include_results and self.done:
            data["results"] = [r.to_export_dict() for r in self.results]
        return data

    def export(self) -> str:
        return export_validation_results(self.results, tested_at=self.finished_at)


class ValidationJobManager:
    """Starts, tracks and cancels validation jobs; keeps the newest ones."""

    def __init__(self, validator: StreamValidator, retention: Optional[int] = None):
        self.validator = validator
        self.retention = retention or settings.VALIDATION_JOB_RETENTION
        self.jobs: Dict[str, ValidationJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def start_job(self, targets: Targets, options: ValidationOptions) -> ValidationJob:
        job = ValidationJob(
            job_id=uuid.uuid4().hex,
            status="running",
            total=sum(1 for items in targets.values() if items) if options.grouped else len(targets),
            grouped=options.grouped,
        )

        def on_progress(completed: int, total: int):
            job.completed = completed
            job.total = total

        def on_playable(channel_id: str):
            job.playable_channel_ids.append(channel_id)

        run_options = ValidationOptions(
            concurrency=options.concurrency,
            timeout_ms=options.timeout_ms,
            progress=on_progress,
            on_channel_playable=on_playable,
            grouped=options.grouped,
            exhaustive=options.exhaustive,
        )

        async with self._lock:
            self.jobs[job.job_id] = job
            self._tasks[job.job_id] = asyncio.create_task(self._run(job, targets, run_options))
            self._prune()

        logger.info(f"Validation job {job.job_id} started with {job.total} units")
        return job

    async def _run(self, job: ValidationJob, targets: Targets, options: ValidationOptions):
        try:
            job.results = await self.validator.validate(targets, options)
            job.status = "completed"
        except asyncio.CancelledError:
            job.status = "cancelled"
            raise
        except Exception as e:
            logger.error(f"Validation job {job.job_id} failed: {e}")
            job.status = "failed"
            job.error = str(e)
        finally:
            job.finished_at = datetime.now(timezone.utc)
            self._tasks.pop(job.job_id, None)
            logger.info(
                f"Validation job {job.job_id} {job.status}: {job.completed}/{job.total} done, "
                f"{len(job.playable_channel_ids)} playable channels")

    def _prune(self):
        """Drop the oldest finished jobs beyond the retention limit."""
        finished = sorted(
            (j for j in self.jobs.values() if j.done),
            key=lambda j: j.started_at,
        )
        excess = len(self.jobs) - self.retention
        for job in finished[:max(0, excess)]:
            del self.jobs[job.job_id]

    def get_job(self, job_id: str) -> Optional[ValidationJob]:
        return self.jobs.get(job_id)

    def list_jobs(self) -> List[ValidationJob]:
        return list(self.jobs.values())

    async def wait(self, job_id: str) -> Optional[ValidationJob]:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.jobs.get(job_id)

    async def cancel_job(self, job_id: str) -> Optional[ValidationJob]:
        task = self._tasks.pop(job_id, None)
        job = self.jobs.get(job_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            if job is not None and job.status == "running":
                # Cancelled before the run ever started
                job.status = "cancelled"
                job.finished_at = datetime.now(timezone.utc)
        return job

    async def shutdown(self):
        logger.info("Shutting down ValidationJobManager...")
        for job_id in list(self._tasks):
            await self.cancel_job(job_id)
        logger.info("ValidationJobManager shutdown complete")
