"""Upload flow: registry row bookkeeping and session storage of the file."""

import logging
from typing import Any, Dict, Optional

from fastapi import status

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.datastore import DatastoreClient
from rowbridge.core.errors import (
    APIException,
    ErrorCategory,
    ErrorCode,
)
from rowbridge.core.tokens import CredentialManager
from rowbridge.models.import_models import FileSessionRecord, OperatorInfo
from rowbridge.services.file_store import FileSessionStore

logger = logging.getLogger(__name__)

ACCEPTED_CONTENT_TYPES = {
    "text/csv",
    "text/plain",
    "application/csv",
    "application/vnd.ms-excel",  # Browsers label .csv this way on Windows
    "application/octet-stream",
}


def decode_content(raw: bytes) -> str:
    """Decode uploaded bytes as UTF-8 (BOM tolerated), falling back to latin-1."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("Upload is not valid UTF-8, decoding as latin-1")
        return raw.decode("latin-1")


class UploadService:
    """
    Registers an uploaded file and keeps it for the mapping and import steps.

    Each operator (first name, last name, email, company; compared
    case-insensitively) owns at most one registry row. Uploading again reuses
    that row and removes the table the previous import created.
    """

    def __init__(
        self,
        client: DatastoreClient,
        credentials: CredentialManager,
        store: FileSessionStore,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.credentials = credentials
        self.store = store
        self.config = config or default_settings

    def validate(self, file_name: str, content_type: Optional[str], size: int) -> None:
        if not file_name.lower().endswith(".csv") and (content_type or "") not in ACCEPTED_CONTENT_TYPES:
            raise APIException(
                code=ErrorCode.UPLOAD_INVALID_FILE,
                message="Only comma-separated text files (.csv) can be imported",
                category=ErrorCategory.VALIDATION,
                status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                details={"file_name": file_name, "content_type": content_type},
            )
        if size == 0:
            raise APIException(
                code=ErrorCode.UPLOAD_INVALID_FILE,
                message="The uploaded file is empty",
                category=ErrorCategory.VALIDATION,
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            )
        if size > self.config.import_max_file_size:
            raise APIException(
                code=ErrorCode.UPLOAD_INVALID_FILE,
                message=f"File exceeds the {self.config.import_max_file_size // (1024 * 1024)}MB limit",
                category=ErrorCategory.VALIDATION,
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            )

    def registry_fields(self, operator: OperatorInfo) -> Dict[str, Any]:
        c = self.config
        return {
            c.registry_first_name_field: operator.first_name,
            c.registry_last_name_field: operator.last_name,
            c.registry_email_field: operator.email,
            c.registry_company_field: operator.company,
        }

    async def find_existing_record(self, operator: OperatorInfo) -> Optional[Dict[str, Any]]:
        """The operator's registry row, matched case-insensitively on all four fields."""
        wanted = {k: v.strip().lower() for k, v in self.registry_fields(operator).items()}
        for row in await self.client.list_registry_rows():
            if all(str(row.get(k) or "").strip().lower() == v for k, v in wanted.items()):
                return row
        return None

    async def delete_created_table(self, row: Dict[str, Any]) -> bool:
        """Delete the table a previous import created for this row. Best-effort."""
        table_id = row.get(self.config.registry_table_id_field)
        if not table_id:
            return False
        try:
            await self.credentials.call_with_refresh(
                lambda t: self.client.delete_table(t, int(table_id))
            )
        except (APIException, ValueError) as e:
            logger.warning(f"Could not delete previous table {table_id}: {e}")
            return False
        logger.info(f"Deleted previous table {table_id} of registry row {row.get('id')}")
        return True

    async def upload(
        self,
        session: dict,
        file_name: str,
        raw: bytes,
        content_type: Optional[str],
        operator: OperatorInfo,
    ) -> FileSessionRecord:
        self.validate(file_name, content_type, len(raw))
        content = decode_content(raw)

        descriptor = await self.client.upload_file(file_name, raw, content_type or "text/csv")
        fields = {
            **self.registry_fields(operator),
            self.config.registry_file_field: [descriptor],
            self.config.registry_file_name_field: file_name,
            self.config.registry_table_id_field: None,
        }

        existing = await self.find_existing_record(operator)
        if existing is not None:
            await self.delete_created_table(existing)
            row = await self.client.update_registry_row(existing["id"], fields)
            logger.info(f"Updated registry row {existing['id']} for {operator.email}")
        else:
            row = await self.client.create_registry_row(fields)
            logger.info(f"Created registry row {row.get('id')} for {operator.email}")

        return self.store.store(
            session,
            file_name=file_name,
            content=content,
            original_size=len(raw),
            record_id=row.get("id"),
            file_url=descriptor.get("url"),
            mime_type=descriptor.get("mime_type"),
            operator=operator,
        )
