"""Target table provisioning."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from rowbridge.core.datastore import DatastoreClient
from rowbridge.core.errors import (
    DatastoreError,
    MissingFieldMapping,
    SchemaProvisioningFailed,
)
from rowbridge.core.tokens import CredentialManager

logger = logging.getLogger(__name__)

# Fields the datastore adds to every new table
SCAFFOLD_FIELDS = frozenset({"Notes", "Active"})


@dataclass
class ProvisionedTable:
    table_id: int
    table_name: str
    field_map: Dict[str, int] = field(default_factory=dict)

    def record_key(self, column: str) -> str:
        return f"field_{self.field_map[column]}"


class SchemaProvisioner:
    """Creates a table whose text fields match the mapped columns."""

    def __init__(self, client: DatastoreClient, credentials: CredentialManager):
        self.client = client
        self.credentials = credentials

    async def _call(self, fn):
        return await self.credentials.call_with_refresh(fn)

    async def provision(self, table_name: str, columns: List[str]) -> ProvisionedTable:
        """
        Create ``table_name`` with one text field per column.

        The table's primary field is renamed to the first column rather than
        deleted. Scaffold fields are removed best-effort. Field creation
        skips names that already exist, so running this again against the
        same table is harmless.

        Raises:
            SchemaProvisioningFailed: table creation, primary rename or field
                creation failed
            MissingFieldMapping: a column has no field after provisioning
        """
        if not columns:
            raise SchemaProvisioningFailed("validate", "no mapped columns")

        try:
            table = await self._call(lambda t: self.client.create_table(t, table_name))
        except DatastoreError as e:
            raise SchemaProvisioningFailed("create_table", e.message) from e
        table_id = table["id"]
        logger.info(f"Created table {table_name} ({table_id})", extra={"table_id": table_id})

        fields = await self._list_fields(table_id)
        primary = next((f for f in fields if f.get("primary")), None)
        if primary is None:
            raise SchemaProvisioningFailed("rename_primary", "table has no primary field", table_id)

        first = columns[0]
        if primary["name"] != first:
            try:
                await self._call(lambda t: self.client.rename_field(t, primary["id"], first))
            except DatastoreError as e:
                raise SchemaProvisioningFailed("rename_primary", e.message, table_id) from e

        for scaffold in fields:
            if scaffold.get("primary") or scaffold["name"] not in SCAFFOLD_FIELDS:
                continue
            if scaffold["name"] in columns:
                continue
            try:
                await self._call(lambda t, fid=scaffold["id"]: self.client.delete_field(t, fid))
            except DatastoreError as e:
                logger.warning(f"Could not delete scaffold field {scaffold['name']}: {e.message}")

        existing = {f["name"] for f in fields if not f.get("primary")} | {first}
        for column in columns[1:]:
            if column in existing:
                continue
            try:
                await self._call(lambda t, name=column: self.client.create_field(t, table_id, name))
            except DatastoreError as e:
                raise SchemaProvisioningFailed(f"create_field:{column}", e.message, table_id) from e
            existing.add(column)

        fields = await self._list_fields(table_id)
        field_map = {f["name"]: f["id"] for f in fields}
        missing = [c for c in columns if c not in field_map]
        if missing:
            raise MissingFieldMapping(missing, table_id)

        provisioned = ProvisionedTable(
            table_id=table_id,
            table_name=table_name,
            field_map={c: field_map[c] for c in columns},
        )
        logger.info(
            f"Provisioned {len(columns)} fields on table {table_id}",
            extra={"table_id": table_id, "fields": len(columns)},
        )
        return provisioned

    async def _list_fields(self, table_id: int) -> List[dict]:
        try:
            return await self._call(lambda t: self.client.list_fields(t, table_id))
        except DatastoreError as e:
            raise SchemaProvisioningFailed("list_fields", e.message, table_id) from e

    async def purge_default_rows(self, table_id: int, page_size: int = 200) -> int:
        """Delete rows the datastore seeds into a new table. Best-effort."""
        try:
            page = await self._call(lambda t: self.client.list_rows(t, table_id, page_size, 0))
        except DatastoreError as e:
            logger.warning(f"Could not list seeded rows of table {table_id}: {e.message}")
            return 0

        deleted = 0
        for row in page.get("results", []):
            try:
                await self._call(lambda t, rid=row["id"]: self.client.delete_row(t, table_id, rid))
                deleted += 1
            except DatastoreError as e:
                logger.warning(f"Could not delete seeded row {row['id']}: {e.message}")
        if deleted:
            logger.info(f"Removed {deleted} seeded rows from table {table_id}")
        return deleted
