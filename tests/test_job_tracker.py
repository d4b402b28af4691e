"""Tests for import job tracking."""

import asyncio

import pytest

from rowbridge.core.errors import APIException, ErrorCode, SchemaProvisioningFailed
from rowbridge.models.import_models import ImportResult, ProgressSnapshot
from rowbridge.services.job_tracker import ImportJobTracker


def make_result(**kwargs) -> ImportResult:
    values = {"total": 2, "created": 2, "failed": 0, "table_id": 1, "table_name": "t"}
    values.update(kwargs)
    return ImportResult(**values)


class TestImportJobTracker:
    """Tests for import job tracking and cancellation."""

    @pytest.mark.asyncio
    async def test_completed_job(self):
        tracker = ImportJobTracker(max_jobs=10)

        async def factory(run, progress):
            progress(ProgressSnapshot(current=1, total=2))
            return make_result()

        job = tracker.start("session-a", factory)
        final = await tracker.wait(job.job_id)

        assert final.status == "completed"
        assert final.phase == "done"
        assert final.result.created == 2
        assert final.progress.current == 1
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_job_records_error(self):
        tracker = ImportJobTracker(max_jobs=10)

        async def factory(run, progress):
            raise SchemaProvisioningFailed("create_table", "boom")

        job = tracker.start("session-a", factory)
        final = await tracker.wait(job.job_id)

        assert final.status == "failed"
        assert "create_table" in final.errors[0]

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_job(self):
        tracker = ImportJobTracker(max_jobs=10)

        async def factory(run, progress):
            raise RuntimeError("disk on fire")

        job = tracker.start("session-a", factory)
        final = await tracker.wait(job.job_id)

        assert final.status == "failed"
        assert "disk on fire" in final.errors[0]

    @pytest.mark.asyncio
    async def test_cancel_running_job(self):
        tracker = ImportJobTracker(max_jobs=10)
        started = asyncio.Event()

        async def factory(run, progress):
            started.set()
            while True:
                run.check_cancelled(processed=7)
                await asyncio.sleep(0.001)

        job = tracker.start("session-a", factory)
        await started.wait()

        assert tracker.cancel(job.job_id, "session-a") is True
        final = await tracker.wait(job.job_id)

        assert final.status == "cancelled"
        assert tracker.cancel(job.job_id, "session-a") is False

    @pytest.mark.asyncio
    async def test_one_running_job_per_session(self):
        tracker = ImportJobTracker(max_jobs=10)
        release = asyncio.Event()

        async def factory(run, progress):
            await release.wait()
            return make_result()

        job = tracker.start("session-a", factory)
        with pytest.raises(APIException) as exc_info:
            tracker.start("session-a", factory)
        assert exc_info.value.code == ErrorCode.IMPORT_ALREADY_RUNNING
        assert exc_info.value.status_code == 409

        other = tracker.start("session-b", factory)
        release.set()
        await tracker.wait(job.job_id)
        await tracker.wait(other.job_id)

        assert tracker.running_job_for("session-a") is None

    @pytest.mark.asyncio
    async def test_jobs_are_scoped_to_their_session(self):
        tracker = ImportJobTracker(max_jobs=10)

        async def factory(run, progress):
            return make_result()

        job = tracker.start("session-a", factory)
        await tracker.wait(job.job_id)

        with pytest.raises(APIException) as exc_info:
            tracker.get(job.job_id, "session-b")
        assert exc_info.value.status_code == 404

        with pytest.raises(APIException) as exc_info:
            tracker.cancel(job.job_id, "session-b")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_wait_for_update_wakes_on_progress(self):
        tracker = ImportJobTracker(max_jobs=10)
        proceed = asyncio.Event()

        async def factory(run, progress):
            await proceed.wait()
            progress(ProgressSnapshot(current=1, total=1))
            return make_result()

        job = tracker.start("session-a", factory)
        await asyncio.sleep(0)
        waiter = asyncio.create_task(tracker.wait_for_update(job.job_id, timeout=5))
        await asyncio.sleep(0)
        proceed.set()

        await asyncio.wait_for(waiter, timeout=1)
        await tracker.wait(job.job_id)

    @pytest.mark.asyncio
    async def test_cleanup_and_eviction(self):
        tracker = ImportJobTracker(max_jobs=2)

        async def factory(run, progress):
            return make_result()

        first = tracker.start("a", factory)
        await tracker.wait(first.job_id)
        second = tracker.start("b", factory)
        await tracker.wait(second.job_id)
        third = tracker.start("c", factory)
        await tracker.wait(third.job_id)

        assert first.job_id not in tracker._jobs
        assert tracker.cleanup_stale_jobs(max_age_seconds=0) == 2
        assert tracker._jobs == {}

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self):
        tracker = ImportJobTracker(max_jobs=10)

        async def factory(run, progress):
            while True:
                run.check_cancelled()
                await asyncio.sleep(0.001)

        job = tracker.start("session-a", factory)
        await asyncio.sleep(0.005)
        await tracker.shutdown()

        assert tracker.get(job.job_id).status == "cancelled"
