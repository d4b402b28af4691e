"""Tests for full-content recovery."""

import pytest

from rowbridge.core.errors import ContentUnavailable
from rowbridge.models.import_models import FileSessionRecord
from rowbridge.services.file_store import TRUNCATION_MARKER, optimize_content
from rowbridge.services.recovery import ContentRecoveryManager

FILE_URL = "https://files.test/1_people.csv"


def make_csv(rows: int) -> str:
    return "\n".join(["id,name"] + [f"{i},Person {i}" for i in range(rows)])


@pytest.fixture
def recovery(services):
    return ContentRecoveryManager(
        services.client,
        services.credentials,
        services.memory_cache,
        services.local_cache,
        services.config,
    )


def optimized_record(content: str, **kwargs) -> FileSessionRecord:
    return FileSessionRecord(
        file_name="people.csv",
        original_size=len(content),
        content=optimize_content(content),
        total_lines=len(content.split("\n")),
        is_optimized=True,
        **kwargs,
    )


class TestNeedsRecovery:
    @pytest.mark.asyncio
    async def test_full_record_needs_nothing(self, recovery):
        content = make_csv(10)
        record = FileSessionRecord(file_name="a.csv", original_size=len(content), content=content, total_lines=11)
        assert not recovery.needs_recovery(record, content)

    @pytest.mark.asyncio
    async def test_marker_or_missing_lines(self, recovery):
        record = FileSessionRecord(file_name="a.csv", original_size=10, total_lines=100)
        assert recovery.needs_recovery(record, f"a\n{TRUNCATION_MARKER}\nb")
        assert recovery.needs_recovery(record, make_csv(50))
        assert not recovery.needs_recovery(record, make_csv(95))

    @pytest.mark.asyncio
    async def test_flags(self, recovery):
        for flag in ("is_optimized", "is_header_only", "requires_reupload"):
            record = FileSessionRecord(file_name="a.csv", original_size=10, **{flag: True})
            assert recovery.needs_recovery(record, "")


class TestSufficiency:
    @pytest.mark.asyncio
    async def test_needs_header_and_data(self, recovery):
        record = FileSessionRecord(file_name="a.csv", original_size=10, total_lines=0)
        assert not recovery.is_sufficient(record, "id,name")
        assert recovery.is_sufficient(record, "id,name\n1,a")

    @pytest.mark.asyncio
    async def test_ratio_of_declared_lines(self, recovery):
        record = FileSessionRecord(file_name="a.csv", original_size=10, total_lines=101)
        assert not recovery.is_sufficient(record, make_csv(80))
        assert recovery.is_sufficient(record, make_csv(100))

    @pytest.mark.asyncio
    async def test_unavailable_actions(self, recovery):
        record = FileSessionRecord(file_name="a.csv", original_size=10, total_lines=100, file_url=FILE_URL)
        assert recovery.unavailable(record, "id").action == ContentUnavailable.RETRY_WITH_FILE

        large = record.model_copy(update={"is_large_file": True})
        assert recovery.unavailable(large, "id").action == ContentUnavailable.REUPLOAD_SMALLER_FILE

        no_url = record.model_copy(update={"file_url": None})
        error = recovery.unavailable(no_url, "id")
        assert error.action == ContentUnavailable.REUPLOAD_SMALLER_FILE
        assert error.details["total_lines"] == 100


class TestRecover:
    @pytest.mark.asyncio
    async def test_memory_cache_first(self, recovery, services, datastore):
        content = make_csv(3000)
        record = optimized_record(content, record_id=5)
        services.memory_cache.put("5", content)

        assert await recovery.recover(record) == content
        assert datastore.calls == []

    @pytest.mark.asyncio
    async def test_local_cache_when_memory_is_empty(self, recovery, services):
        content = make_csv(3000)
        record = optimized_record(content, record_id=5)
        services.local_cache.save("5", "people.csv", content)

        assert await recovery.recover(record) == content

    @pytest.mark.asyncio
    async def test_network_download(self, recovery, datastore):
        content = make_csv(3000)
        datastore.files[FILE_URL] = content
        record = optimized_record(content, record_id=5, file_url=FILE_URL)

        assert await recovery.recover(record) == content

    @pytest.mark.asyncio
    async def test_static_token_fetch_when_elevated_token_unavailable(self, recovery, datastore):
        content = make_csv(3000)
        datastore.files[FILE_URL] = content
        datastore.auth_status = 401
        record = optimized_record(content, file_url=FILE_URL)

        assert await recovery.recover(record) == content

    @pytest.mark.asyncio
    async def test_registry_supplies_fresh_url(self, recovery, datastore):
        content = make_csv(3000)
        fresh_url = "https://files.test/2_people.csv"
        datastore.files[fresh_url] = content
        row = datastore.add_registry_row(Datei=[{"url": fresh_url, "name": "people.csv"}])
        record = optimized_record(content, record_id=row["id"], file_url="https://files.test/expired.csv")

        assert await recovery.recover(record) == content

    @pytest.mark.asyncio
    async def test_falls_back_to_stored_copy_without_marker(self, recovery):
        content = make_csv(3000)
        record = optimized_record(content)

        recovered = await recovery.recover(record)

        assert TRUNCATION_MARKER not in recovered
        assert recovered.startswith("id,name\n0,Person 0")
        assert not recovery.is_sufficient(record, recovered)

    @pytest.mark.asyncio
    async def test_shorter_candidate_is_rejected(self, recovery, services):
        content = make_csv(3000)
        record = optimized_record(content, record_id=5)
        services.memory_cache.put("5", "id,name")

        recovered = await recovery.recover(record)

        assert len(recovered) < len(content)
