"""Async client for the remote tabular datastore REST API."""

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.errors import AuthenticationFailed, DatastoreError
from rowbridge.core.metrics import metrics

logger = logging.getLogger(__name__)

TOKEN_AUTH_PATHS = ("/user/token-auth/", "/auth/token/")


class AuthKind:
    """Authorization header flavours understood by the datastore."""

    ELEVATED = "jwt"  # Short-lived token for schema and bulk operations
    STATIC = "token"  # Long-lived database token for row/file operations
    NONE = "none"


def auth_header(kind: str, token: Optional[str]) -> Dict[str, str]:
    if kind == AuthKind.ELEVATED and token:
        return {"Authorization": f"JWT {token}"}
    if kind == AuthKind.STATIC and token:
        return {"Authorization": f"Token {token}"}
    return {}


class DatastoreClient:
    """
    Thin wrapper around ``httpx.AsyncClient`` for every datastore call.

    Calls go either straight to ``{datastore_url}/api`` or, when a relay is
    configured, to ``{relay_url}/api/baserow``; nothing else in the client
    depends on which. Non-2xx answers raise :class:`DatastoreError` carrying
    the upstream status so callers can tell a 401 apart from anything else.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or default_settings
        self.base_url = self.config.api_base_url
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=self.config.http_timeout,
            follow_redirects=True,
        )

    async def __aenter__(self) -> "DatastoreClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        kind: str = AuthKind.STATIC,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        files: Any = None,
        timeout: Optional[float] = None,
        url: Optional[str] = None,
    ) -> httpx.Response:
        if kind == AuthKind.STATIC and token is None:
            token = self.config.api_token
        target = url or f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method,
                target,
                headers=auth_header(kind, token),
                params=params,
                json=json,
                files=files,
                timeout=timeout or self.config.http_timeout,
            )
        except httpx.HTTPError as e:
            metrics.record_datastore_request(operation, 0)
            logger.warning(f"{operation} transport error: {e}")
            raise DatastoreError(operation, None, str(e)) from e

        metrics.record_datastore_request(operation, response.status_code)
        if response.is_error:
            raise DatastoreError(operation, response.status_code, response.text)
        return response

    # Credentials

    async def authenticate(self, username: str, password: str) -> str:
        """Exchange username/password for an elevated token.

        The primary endpoint is tried first, then the alternative one. Returns
        the token string; raises AuthenticationFailed with the last upstream
        status when neither endpoint yields a token.
        """
        last_status: Optional[int] = None
        last_body = ""
        for path in TOKEN_AUTH_PATHS:
            try:
                response = await self._request(
                    "authenticate",
                    "POST",
                    path,
                    kind=AuthKind.NONE,
                    json={"username": username, "email": username, "password": password},
                )
            except DatastoreError as e:
                last_status, last_body = e.upstream_status, e.body
                logger.info(f"Token endpoint {path} rejected credentials ({last_status})")
                continue
            data = response.json()
            token = data.get("token") or data.get("access_token")
            if token:
                return token
            last_status = response.status_code
            last_body = "response carried no token"

        raise AuthenticationFailed(
            f"Authentication failed ({last_status}): {last_body[:200]}",
            upstream_status=last_status,
        )

    # Files

    async def upload_file(
        self, file_name: str, content: bytes, content_type: str = "text/csv"
    ) -> Dict[str, Any]:
        """Upload a file to user-file storage and return its descriptor."""
        response = await self._request(
            "upload_file",
            "POST",
            "/user-files/upload-file/",
            files={"file": (file_name, content, content_type)},
            timeout=self.config.http_upload_timeout,
        )
        return response.json()

    def proxied_file_url(self, url: str, token: Optional[str]) -> str:
        request = httpx.Request(
            "GET",
            f"{self.config.relay_url.rstrip('/')}/api/proxy-baserow-file",
            params={"url": url, "token": token or ""},
        )
        return str(request.url)

    async def download_file(
        self, url: str, kind: str = AuthKind.NONE, token: Optional[str] = None
    ) -> str:
        """Fetch a stored file's text, through the relay's file endpoint when enabled."""
        if self.config.relay_url:
            target = self.proxied_file_url(url, token)
            kind = AuthKind.NONE
        else:
            target = url
        response = await self._request(
            f"download_file_{kind}",
            "GET",
            "",
            kind=kind,
            token=token,
            url=target,
            timeout=self.config.http_download_timeout,
        )
        return response.text

    # Registry rows

    async def list_registry_rows(self) -> List[Dict[str, Any]]:
        """Every row of the registry table, keyed by user field names."""
        rows: List[Dict[str, Any]] = []
        page = 1
        while True:
            response = await self._request(
                "list_registry_rows",
                "GET",
                f"/database/rows/table/{self.config.registry_table_id}/",
                params={"user_field_names": "true", "page": page, "size": 200},
            )
            data = response.json()
            rows.extend(data.get("results", []))
            if not data.get("next"):
                return rows
            page += 1

    async def get_registry_row(self, row_id: int) -> Dict[str, Any]:
        response = await self._request(
            "get_registry_row",
            "GET",
            f"/database/rows/table/{self.config.registry_table_id}/{row_id}/",
            params={"user_field_names": "true"},
        )
        return response.json()

    async def create_registry_row(self, data: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "create_registry_row",
            "POST",
            f"/database/rows/table/{self.config.registry_table_id}/",
            params={"user_field_names": "true"},
            json=data,
        )
        return response.json()

    async def update_registry_row(self, row_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "update_registry_row",
            "PATCH",
            f"/database/rows/table/{self.config.registry_table_id}/{row_id}/",
            params={"user_field_names": "true"},
            json=data,
        )
        return response.json()

    # Tables and fields (elevated token)

    async def create_table(self, token: str, name: str) -> Dict[str, Any]:
        response = await self._request(
            "create_table",
            "POST",
            f"/database/tables/database/{self.config.database_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
            json={"name": name},
        )
        return response.json()

    async def delete_table(self, token: str, table_id: int) -> None:
        await self._request(
            "delete_table",
            "DELETE",
            f"/database/tables/{table_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
        )

    async def list_fields(self, token: str, table_id: int) -> List[Dict[str, Any]]:
        response = await self._request(
            "list_fields",
            "GET",
            f"/database/fields/table/{table_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
        )
        return response.json()

    async def rename_field(self, token: str, field_id: int, name: str) -> Dict[str, Any]:
        response = await self._request(
            "rename_field",
            "PATCH",
            f"/database/fields/{field_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
            json={"name": name},
        )
        return response.json()

    async def delete_field(self, token: str, field_id: int) -> None:
        await self._request(
            "delete_field",
            "DELETE",
            f"/database/fields/{field_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
        )

    async def create_field(
        self, token: str, table_id: int, name: str, field_type: str = "text"
    ) -> Dict[str, Any]:
        response = await self._request(
            "create_field",
            "POST",
            f"/database/fields/table/{table_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
            json={"name": name, "type": field_type},
        )
        return response.json()

    # Data rows (elevated token)

    async def batch_create_rows(
        self,
        token: str,
        table_id: int,
        items: Iterable[Dict[str, Any]],
        user_field_names: bool = True,
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "batch_create_rows",
            "POST",
            f"/database/rows/table/{table_id}/batch/",
            kind=AuthKind.ELEVATED,
            token=token,
            json={"items": list(items), "user_field_names": user_field_names},
        )
        try:
            return response.json().get("items", [])
        except ValueError:
            # An empty 2xx body still means the rows were created
            logger.debug(f"Batch create on table {table_id} returned no JSON body")
            return []

    async def create_row(
        self, token: str, table_id: int, record: Dict[str, Any]
    ) -> None:
        await self._request(
            "create_row",
            "POST",
            f"/database/rows/table/{table_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
            json=record,
        )

    async def list_rows(
        self, token: str, table_id: int, limit: int, offset: int
    ) -> Dict[str, Any]:
        response = await self._request(
            "list_rows",
            "GET",
            f"/database/rows/table/{table_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
            params={"limit": limit, "offset": offset},
        )
        return response.json()

    async def delete_row(self, token: str, table_id: int, row_id: int) -> None:
        await self._request(
            "delete_row",
            "DELETE",
            f"/database/rows/table/{table_id}/{row_id}/",
            kind=AuthKind.ELEVATED,
            token=token,
        )
