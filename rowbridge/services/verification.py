"""Post-import row count verification."""

import asyncio
import logging
from typing import Optional

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.datastore import DatastoreClient
from rowbridge.core.errors import ErrorCode
from rowbridge.core.tokens import CredentialManager
from rowbridge.models.import_models import VerificationReport

logger = logging.getLogger(__name__)


class VerificationStep:
    """Counts the rows that actually landed in a table.

    The count is advisory: a mismatch is reported and logged but never fails
    the import.
    """

    def __init__(
        self,
        client: DatastoreClient,
        credentials: CredentialManager,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.credentials = credentials
        self.config = config or default_settings

    async def count_rows(self, table_id: int) -> int:
        """Page through the table; stops at ``verification_max_pages`` pages."""
        page_size = self.config.verification_page_size
        total = 0
        for page in range(self.config.verification_max_pages):
            offset = page * page_size
            data = await self.credentials.call_with_refresh(
                lambda t, o=offset: self.client.list_rows(t, table_id, page_size, o)
            )
            results = data.get("results", [])
            total += len(results)
            if len(results) < page_size or not data.get("next", True):
                break
        else:
            logger.warning(
                f"Stopped counting table {table_id} after {self.config.verification_max_pages} pages"
            )
        return total

    async def verify(self, table_id: int, expected: int) -> VerificationReport:
        if self.config.verification_settle_seconds:
            await asyncio.sleep(self.config.verification_settle_seconds)
        actual = await self.count_rows(table_id)
        return reconcile(expected, actual, table_id)


def reconcile(expected: int, actual: int, table_id: Optional[int] = None) -> VerificationReport:
    matched = expected == actual
    if matched:
        message = f"All {actual} rows verified"
    else:
        message = f"Expected {expected} rows but found {actual}"
        logger.warning(
            f"{ErrorCode.VERIFICATION_MISMATCH}: {message}",
            extra={"table_id": table_id, "expected": expected, "actual": actual},
        )
    return VerificationReport(expected=expected, actual=actual, matched=matched, message=message)
