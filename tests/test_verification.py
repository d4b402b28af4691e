"""Tests for post-import verification."""

import logging

import pytest

from rowbridge.services.verification import VerificationStep, reconcile


@pytest.fixture
def table(datastore):
    datastore.tables[10] = {"name": "t", "fields": [], "rows": [{"id": i} for i in range(25)]}
    return 10


class TestVerificationStep:
    @pytest.mark.asyncio
    async def test_counts_across_pages(self, services, datastore, table):
        config = services.config.model_copy(update={"verification_page_size": 10})
        step = VerificationStep(services.client, services.credentials, config)

        assert await step.count_rows(table) == 25
        assert datastore.count("GET", r"/rows/table/10/$") == 3

    @pytest.mark.asyncio
    async def test_page_limit(self, services, table):
        config = services.config.model_copy(
            update={"verification_page_size": 10, "verification_max_pages": 2}
        )
        step = VerificationStep(services.client, services.credentials, config)

        assert await step.count_rows(table) == 20

    @pytest.mark.asyncio
    async def test_verify_reports_match(self, services, table):
        step = VerificationStep(services.client, services.credentials, services.config)

        report = await step.verify(table, 25)

        assert report.matched
        assert report.actual == 25


def test_mismatch_is_logged_not_raised(caplog):
    with caplog.at_level(logging.WARNING):
        report = reconcile(expected=10, actual=8, table_id=3)

    assert not report.matched
    assert report.message == "Expected 10 rows but found 8"
    assert "VERIFICATION_MISMATCH" in caplog.text
