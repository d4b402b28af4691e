"""Reconstruction of full file content before an import."""

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.datastore import AuthKind, DatastoreClient
from rowbridge.core.errors import APIException, ContentUnavailable
from rowbridge.core.metrics import metrics
from rowbridge.core.tokens import CredentialManager
from rowbridge.models.import_models import FileSessionRecord
from rowbridge.services.csv_parser import split_lines
from rowbridge.services.file_store import (
    TRUNCATION_MARKER,
    LocalFileCache,
    TempContentCache,
    cache_key,
    strip_truncation_marker,
)

logger = logging.getLogger(__name__)

Strategy = Callable[[FileSessionRecord, str], Awaitable[Optional[str]]]


class ContentRecoveryManager:
    """
    Rebuilds the complete text of an uploaded file.

    The session may only hold an excerpt of the file. When it does, the
    strategies below are tried in order until one yields more content than
    the session copy:

    1. the in-memory full-content cache (consumed on use)
    2. the local file cache, newest entry first
    3. the stored file URL, with the elevated token, the static token and no
       credentials in turn
    4. a fresh file URL read back from the registry row, then step 3 again

    If every strategy fails, the session copy is returned as the best
    available content. The truncation marker never survives recovery.
    """

    def __init__(
        self,
        client: DatastoreClient,
        credentials: Optional[CredentialManager],
        memory_cache: TempContentCache,
        local_cache: LocalFileCache,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.credentials = credentials
        self.memory_cache = memory_cache
        self.local_cache = local_cache
        self.config = config or default_settings

    @property
    def strategies(self) -> List[Tuple[str, Strategy]]:
        return [
            ("memory_cache", self._from_memory_cache),
            ("local_cache", self._from_local_cache),
            ("network", self._from_network),
            ("registry_refresh", self._from_registry),
        ]

    def needs_recovery(self, record: FileSessionRecord, content: str) -> bool:
        if record.is_optimized or record.is_header_only or record.requires_reupload:
            return True
        if TRUNCATION_MARKER in content:
            return True
        lines = len(split_lines(content))
        if record.total_lines and lines < self.config.recovery_min_ratio * record.total_lines:
            return True
        if lines <= self.config.optimize_head_lines and record.original_size > self.config.large_file_bytes:
            return True
        return False

    def is_sufficient(self, record: FileSessionRecord, content: str) -> bool:
        """Whether ``content`` holds enough lines to import as row data."""
        if record.is_header_only and not content.strip():
            return False
        lines = len(split_lines(content))
        if lines < 2:
            return False
        return not record.total_lines or lines >= self.config.recovery_min_ratio * record.total_lines

    def unavailable(self, record: FileSessionRecord, content: str) -> ContentUnavailable:
        """Actionable error for content that could not be recovered."""
        lines = len(split_lines(content))
        details = {"lines_available": lines, "total_lines": record.total_lines}
        if record.file_url and not record.is_large_file and not record.requires_reupload:
            return ContentUnavailable(
                f"Only {lines} of {record.total_lines} lines of {record.file_name} are available. "
                "Keep the original file reachable and retry the import.",
                action=ContentUnavailable.RETRY_WITH_FILE,
                details=details,
            )
        return ContentUnavailable(
            f"The full content of {record.file_name} could not be recovered. "
            "Upload the file again, split into smaller files if necessary.",
            action=ContentUnavailable.REUPLOAD_SMALLER_FILE,
            details=details,
        )

    async def recover(self, record: FileSessionRecord, current: Optional[str] = None) -> str:
        current = record.content if current is None else current
        if not self.needs_recovery(record, current):
            return strip_truncation_marker(current)

        logger.info(
            f"Recovering full content of {record.file_name}",
            extra={
                "record_id": record.record_id,
                "shape": record.shape,
                "total_lines": record.total_lines,
            },
        )
        for name, strategy in self.strategies:
            try:
                candidate = await strategy(record, current)
            except APIException as e:
                logger.warning(f"Recovery strategy {name} failed: {e.message}")
                candidate = None
            if candidate and len(candidate) > len(current):
                metrics.record_recovery(name, "success")
                logger.info(
                    f"Recovered {len(candidate)} chars via {name}",
                    extra={"record_id": record.record_id},
                )
                return strip_truncation_marker(candidate)
            metrics.record_recovery(name, "miss")

        logger.warning(f"No recovery strategy improved on the stored copy of {record.file_name}")
        return strip_truncation_marker(current)

    async def _from_memory_cache(self, record: FileSessionRecord, current: str) -> Optional[str]:
        return self.memory_cache.pop(cache_key(record))

    async def _from_local_cache(self, record: FileSessionRecord, current: str) -> Optional[str]:
        return self.local_cache.latest(cache_key(record))

    async def _fetch(self, url: str, current: str) -> Optional[str]:
        attempts: List[Tuple[str, Optional[str]]] = []
        if self.credentials is not None:
            try:
                attempts.append((AuthKind.ELEVATED, await self.credentials.get_token()))
            except APIException as e:
                logger.info(f"Skipping elevated file fetch: {e.message}")
        if self.config.api_token:
            attempts.append((AuthKind.STATIC, self.config.api_token))
        attempts.append((AuthKind.NONE, None))

        for kind, token in attempts:
            try:
                body = await self.client.download_file(url, kind=kind, token=token)
            except APIException as e:
                logger.info(f"File fetch with {kind} credentials failed: {e.message}")
                continue
            if len(body) > len(current):
                return body
            logger.info(f"File fetch with {kind} credentials returned no more than the stored copy")
        return None

    async def _from_network(self, record: FileSessionRecord, current: str) -> Optional[str]:
        if not record.file_url:
            return None
        return await self._fetch(record.file_url, current)

    async def _from_registry(self, record: FileSessionRecord, current: str) -> Optional[str]:
        if record.record_id is None:
            return None
        row = await self.client.get_registry_row(record.record_id)
        files = row.get(self.config.registry_file_field) or []
        url = files[0].get("url") if files else None
        if not url or url == record.file_url:
            return None
        return await self._fetch(url, current)
