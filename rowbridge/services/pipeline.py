"""End-to-end import of the session's uploaded file."""

import logging
import time
from datetime import datetime
from pathlib import PurePath
from typing import Dict, List, Optional

from fastapi import status

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.datastore import DatastoreClient
from rowbridge.core.errors import (
    APIException,
    ContentUnavailable,
    ErrorCategory,
    ErrorCode,
)
from rowbridge.core.tokens import CredentialManager
from rowbridge.models.import_models import (
    FileSessionRecord,
    ImportResult,
    ProgressSnapshot,
)
from rowbridge.services.csv_parser import clean_header, parse_line, split_lines
from rowbridge.services.file_store import FileSessionStore
from rowbridge.services.importer import (
    BatchImportEngine,
    ImportRun,
    ProgressSink,
    summarize_failures,
)
from rowbridge.services.provisioner import SchemaProvisioner
from rowbridge.services.recovery import ContentRecoveryManager
from rowbridge.services.uploads import UploadService
from rowbridge.services.verification import VerificationStep

logger = logging.getLogger(__name__)


def mapped_columns(header: List[str], mapping: Dict[str, str]) -> List[str]:
    """Distinct target fields in header order."""
    columns: List[str] = []
    for column in header:
        target = mapping.get(column)
        if target and target not in columns:
            columns.append(target)
    return columns


def table_name_for(record: FileSessionRecord, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H-%M")
    operator = record.operator
    if operator is None:
        return f"{PurePath(record.file_name).stem}_{stamp}"
    return f"{operator.company}_{operator.first_name}_{operator.last_name}_{stamp}"


class ImportPipeline:
    """
    Drives one import from the stored upload to a verified table.

    Steps: credentials, content recovery, parsing, table provisioning, batch
    import, verification. Token and schema failures abort the run; row
    failures only show up in the result.
    """

    def __init__(
        self,
        client: DatastoreClient,
        credentials: CredentialManager,
        store: FileSessionStore,
        uploads: UploadService,
        recovery: ContentRecoveryManager,
        provisioner: SchemaProvisioner,
        engine: BatchImportEngine,
        verification: VerificationStep,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.credentials = credentials
        self.store = store
        self.uploads = uploads
        self.recovery = recovery
        self.provisioner = provisioner
        self.engine = engine
        self.verification = verification
        self.config = config or default_settings

    @staticmethod
    def _phase(progress: Optional[ProgressSink], phase: str, total: int = 0, current: int = 0) -> None:
        if progress is not None:
            progress(ProgressSnapshot(current=current, total=total, phase=phase))

    async def _delete_previous_table(self, record: FileSessionRecord) -> None:
        if record.record_id is None:
            return
        try:
            row = await self.client.get_registry_row(record.record_id)
        except APIException as e:
            logger.warning(f"Could not read registry row {record.record_id}: {e.message}")
            return
        await self.uploads.delete_created_table(row)

    async def _link_table(self, record: FileSessionRecord, table_id: int) -> None:
        if record.record_id is None:
            return
        try:
            await self.client.update_registry_row(
                record.record_id, {self.config.registry_table_id_field: table_id}
            )
        except APIException as e:
            logger.warning(f"Could not store table {table_id} on registry row {record.record_id}: {e.message}")

    async def run(
        self,
        session: dict,
        mapping: Dict[str, str],
        run: ImportRun,
        progress: Optional[ProgressSink] = None,
    ) -> ImportResult:
        started = time.monotonic()
        self._phase(progress, "preparing")

        # Fail fast on credentials before any work
        await self.credentials.get_token()

        record = self.store.load(session)
        if record is None:
            raise APIException(
                code=ErrorCode.UPLOAD_NOT_FOUND,
                message="No uploaded file in this session",
                category=ErrorCategory.NOT_FOUND,
                status_code=status.HTTP_404_NOT_FOUND,
            )
        if record.requires_reupload:
            raise ContentUnavailable(
                f"{record.file_name} was too large to keep between steps. Upload it again, "
                "split into smaller files if necessary.",
                action=ContentUnavailable.REUPLOAD_SMALLER_FILE,
                details={"original_size": record.original_size},
            )

        run.check_cancelled()
        self._phase(progress, "recovering_content")
        partial = self.recovery.needs_recovery(record, record.content)
        content = await self.recovery.recover(record)
        if partial and not self.recovery.is_sufficient(record, content):
            raise self.recovery.unavailable(record, content)

        lines = split_lines(content)
        header = [clean_header(name) for name in parse_line(lines[0])] if lines else []
        data_lines = lines[1:]
        mapping = {source: target for source, target in mapping.items() if target and source in header}
        columns = mapped_columns(header, mapping)
        if not data_lines or not columns:
            raise APIException(
                code=ErrorCode.IMPORT_VALIDATION_ERROR,
                message="Nothing to import: the file needs data rows and at least one mapped column",
                category=ErrorCategory.VALIDATION,
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                details={"data_rows": len(data_lines), "mapped_columns": len(columns)},
            )

        run.check_cancelled()
        self._phase(progress, "provisioning", total=len(data_lines))
        await self._delete_previous_table(record)
        table_name = table_name_for(record)
        table = await self.provisioner.provision(table_name, columns)
        await self.provisioner.purge_default_rows(table.table_id)
        await self._link_table(record, table.table_id)

        outcome = await self.engine.run(
            data_lines,
            header,
            mapping,
            table.field_map,
            table.table_id,
            run,
            progress,
        )

        self._phase(progress, "verifying", total=outcome.attempted, current=outcome.attempted)
        verification = None
        try:
            verification = await self.verification.verify(table.table_id, outcome.created)
        except APIException as e:
            logger.warning(f"Verification of table {table.table_id} skipped: {e.message}")

        self.store.clear(session, record)

        result = ImportResult(
            total=outcome.attempted,
            created=outcome.created,
            updated=0,
            failed=outcome.failed,
            table_id=table.table_id,
            table_name=table.table_name,
            verified=verification.actual if verification else None,
            verification=verification,
            failure_summary=summarize_failures(outcome.failed_records) if outcome.failed else None,
            duration_seconds=round(time.monotonic() - started, 2),
        )
        logger.info(
            f"Import into {table.table_name} complete",
            extra={
                "run_id": run.run_id,
                "table_id": table.table_id,
                "created": result.created,
                "failed": result.failed,
                "verified": result.verified,
            },
        )
        return result
