"""Import job tracking for background runs, progress and cancellation."""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from fastapi import status

from rowbridge.core.config import settings
from rowbridge.core.errors import (
    APIException,
    ErrorCategory,
    ErrorCode,
    ImportCancelled,
)
from rowbridge.core.metrics import metrics
from rowbridge.models.import_models import ImportJobStatus, ImportResult, ProgressSnapshot
from rowbridge.services.importer import ImportRun, ProgressSink

logger = logging.getLogger(__name__)

JobFactory = Callable[[ImportRun, ProgressSink], Awaitable[ImportResult]]


class ImportJobTracker:
    """Tracks import runs; at most one runs per session at a time."""

    def __init__(self, max_jobs: Optional[int] = None):
        # job_id -> job info
        self._jobs: Dict[str, Dict] = {}
        self.max_jobs = max_jobs or settings.max_import_jobs

    def _notify(self, job_id: str) -> None:
        info = self._jobs.get(job_id)
        if info:
            info["changed"].set()
            info["changed"] = asyncio.Event()

    def _evict_oldest(self) -> None:
        finished = [
            (info["created_at"], job_id)
            for job_id, info in self._jobs.items()
            if info["status"].is_terminal
        ]
        for _, job_id in sorted(finished)[: max(len(self._jobs) - self.max_jobs + 1, 0)]:
            del self._jobs[job_id]

    def running_job_for(self, session_id: str) -> Optional[str]:
        for job_id, info in self._jobs.items():
            if info["session_id"] == session_id and not info["status"].is_terminal:
                return job_id
        return None

    def start(self, session_id: str, factory: JobFactory) -> ImportJobStatus:
        """
        Start an import in the background.

        Args:
            session_id: Session owning the run
            factory: ``(run, progress_sink) -> ImportResult`` coroutine function

        Raises:
            APIException: 409 when the session already has a running import
        """
        running = self.running_job_for(session_id)
        if running:
            raise APIException(
                code=ErrorCode.IMPORT_ALREADY_RUNNING,
                message="An import is already running for this session",
                category=ErrorCategory.CONFLICT,
                status_code=status.HTTP_409_CONFLICT,
                details={"job_id": running},
            )
        self.cleanup_stale_jobs()
        if len(self._jobs) >= self.max_jobs:
            self._evict_oldest()

        job_id = str(uuid.uuid4())
        job_status = ImportJobStatus(
            job_id=job_id,
            status="pending",
            phase="queued",
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        run = ImportRun(job_id)
        self._jobs[job_id] = {
            "session_id": session_id,
            "status": job_status,
            "run": run,
            "created_at": datetime.now(timezone.utc),
            "changed": asyncio.Event(),
        }
        self._jobs[job_id]["task"] = asyncio.create_task(self._execute(job_id, factory))
        logger.info(f"Started import job {job_id[:8]}...")
        return job_status

    async def _execute(self, job_id: str, factory: JobFactory) -> None:
        info = self._jobs[job_id]
        job_status: ImportJobStatus = info["status"]
        run: ImportRun = info["run"]

        def sink(snapshot: ProgressSnapshot) -> None:
            job_status.progress = snapshot
            job_status.phase = snapshot.phase
            self._notify(job_id)

        job_status.status = "running"
        self._notify(job_id)
        metrics.record_import_started()
        started = time.monotonic()

        try:
            job_status.result = await factory(run, sink)
            job_status.status = "completed"
            job_status.phase = "done"
        except ImportCancelled as e:
            job_status.status = "cancelled"
            job_status.errors.append(e.message)
        except APIException as e:
            job_status.status = "failed"
            job_status.errors.append(e.message)
            metrics.record_error(e.code, e.category)
            logger.warning(f"Import job {job_id[:8]}... failed: {e.code} {e.message}")
        except Exception as e:
            logger.exception(f"Import job {job_id[:8]}... crashed")
            job_status.status = "failed"
            job_status.errors.append(f"Import failed: {e}")
            metrics.record_error(ErrorCode.IMPORT_FAILED, ErrorCategory.INTERNAL)
        finally:
            job_status.completed_at = datetime.now(timezone.utc).isoformat()
            metrics.record_import_finished(job_status.status, time.monotonic() - started)
            self._notify(job_id)

    def get(self, job_id: str, session_id: Optional[str] = None) -> ImportJobStatus:
        info = self._jobs.get(job_id)
        if not info or (session_id is not None and info["session_id"] != session_id):
            raise APIException(
                code=ErrorCode.IMPORT_JOB_NOT_FOUND,
                message=f"Import job {job_id} not found",
                category=ErrorCategory.NOT_FOUND,
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return info["status"]

    def cancel(self, job_id: str, session_id: str) -> bool:
        """
        Request cancellation of a running import.

        Returns:
            True if the run was signalled, False if it already finished
        """
        info = self._jobs.get(job_id)
        if not info:
            logger.warning(f"Import job {job_id[:8]}... not found for cancellation")
            return False

        if info["session_id"] != session_id:
            raise APIException(
                code=ErrorCode.IMPORT_CANCELLED,
                message="Cannot cancel an import owned by another session",
                category=ErrorCategory.AUTHORIZATION,
                status_code=status.HTTP_403_FORBIDDEN,
            )

        if info["status"].is_terminal:
            return False

        info["run"].cancel()
        logger.info(f"Cancellation requested for import job {job_id[:8]}...")
        return True

    async def wait_for_update(self, job_id: str, timeout: float = 1.0) -> None:
        info = self._jobs.get(job_id)
        if not info:
            return
        try:
            await asyncio.wait_for(info["changed"].wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def wait(self, job_id: str) -> ImportJobStatus:
        """Wait for the job to finish and return its final status."""
        info = self._jobs[job_id]
        await asyncio.gather(info["task"], return_exceptions=True)
        return info["status"]

    def cleanup_stale_jobs(self, max_age_seconds: Optional[int] = None) -> int:
        """Remove finished jobs older than max_age_seconds."""
        max_age = max_age_seconds if max_age_seconds is not None else settings.import_job_ttl_seconds
        now = datetime.now(timezone.utc)
        stale = [
            job_id
            for job_id, info in self._jobs.items()
            if info["status"].is_terminal and (now - info["created_at"]).total_seconds() > max_age
        ]
        for job_id in stale:
            logger.info(f"Removing stale import job {job_id[:8]}...")
            del self._jobs[job_id]
        return len(stale)

    async def shutdown(self) -> None:
        """Signal every running import and wait for them to stop."""
        tasks = []
        for info in self._jobs.values():
            if not info["status"].is_terminal:
                info["run"].cancel()
                tasks.append(info["task"])
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
