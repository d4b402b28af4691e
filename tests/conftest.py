"""Pytest configuration and fixtures."""

import itertools
import json
import re
import sys
from typing import Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from rowbridge.core.config import Settings
from rowbridge.core.deps import build_services
from rowbridge.core.session import SessionManager

REGISTRY_TABLE_ID = 1
DATABASE_ID = 7
FILE_HOST = "https://files.test"


class FakeDatastore:
    """In-memory stand-in for the datastore REST API, served through httpx.MockTransport."""

    def __init__(self):
        self._ids = itertools.count(100)
        self.tables: Dict[int, dict] = {}
        self.registry: Dict[int, dict] = {}
        self.files: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.valid_tokens: set = set()
        self.tokens_issued = 0
        self.seed_rows = 2

        # Failure injection
        self.auth_status: Optional[int] = None
        self.primary_auth_status: Optional[int] = None
        self.batch_status: Optional[int] = None
        self.reject_next_jwt = 0
        self.fail_row_values: set = set()
        self.fail_create_field: Optional[str] = None
        self.fail_rename = False
        self.file_requires_auth = False

    # Helpers

    def next_id(self) -> int:
        return next(self._ids)

    def count(self, method: str, pattern: str) -> int:
        return sum(1 for m, p in self.calls if m == method and re.search(pattern, p))

    def add_registry_row(self, **fields) -> dict:
        row = {"id": self.next_id(), **fields}
        self.registry[row["id"]] = row
        return row

    def table_rows(self, table_id: int) -> List[dict]:
        return self.tables[table_id]["rows"]

    # Transport

    def _json(self, request: httpx.Request):
        return json.loads(request.content or b"null")

    def _jwt_ok(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization", "")
        if not header.startswith("JWT "):
            return False
        if self.reject_next_jwt:
            self.reject_next_jwt -= 1
            return False
        return header[4:] in self.valid_tokens

    def _issue(self) -> str:
        self.tokens_issued += 1
        token = f"jwt-{self.tokens_issued}"
        self.valid_tokens.add(token)
        return token

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        path = request.url.path
        method = request.method
        self.calls.append((method, path))

        if url.startswith(FILE_HOST):
            if self.file_requires_auth and not request.headers.get("Authorization"):
                return httpx.Response(403, text="forbidden")
            body = self.files.get(url.split("?")[0])
            if body is None:
                return httpx.Response(404, text="missing")
            return httpx.Response(200, text=body)

        if path == "/api/user/token-auth/" and method == "POST":
            status = self.primary_auth_status or self.auth_status
            if status:
                return httpx.Response(status, json={"error": "bad credentials"})
            return httpx.Response(200, json={"token": self._issue()})

        if path == "/api/auth/token/" and method == "POST":
            if self.auth_status:
                return httpx.Response(self.auth_status, json={"error": "bad credentials"})
            return httpx.Response(200, json={"access_token": self._issue()})

        if path == "/api/user-files/upload-file/" and method == "POST":
            match = re.search(rb'filename="([^"]+)"', request.content)
            name = match.group(1).decode() if match else "file.csv"
            body = request.content.split(b"\r\n\r\n", 1)[1].rsplit(b"\r\n--", 1)[0]
            file_url = f"{FILE_HOST}/{self.next_id()}_{name}"
            self.files[file_url] = body.decode("utf-8", errors="replace")
            return httpx.Response(
                200, json={"url": file_url, "name": name, "mime_type": "text/csv", "size": len(body)}
            )

        m = re.fullmatch(rf"/api/database/rows/table/{REGISTRY_TABLE_ID}/(?:(\d+)/)?", path)
        if m:
            return self._registry(request, m.group(1))

        if not self._jwt_ok(request):
            return httpx.Response(401, json={"error": "ERROR_INVALID_ACCESS_TOKEN"})

        m = re.fullmatch(r"/api/database/tables/database/(\d+)/", path)
        if m and method == "POST":
            table_id = self.next_id()
            fields = [
                {"id": self.next_id(), "name": "Name", "type": "text", "primary": True},
                {"id": self.next_id(), "name": "Notes", "type": "long_text", "primary": False},
                {"id": self.next_id(), "name": "Active", "type": "boolean", "primary": False},
            ]
            rows = [{"id": self.next_id()} for _ in range(self.seed_rows)]
            self.tables[table_id] = {"name": self._json(request)["name"], "fields": fields, "rows": rows}
            return httpx.Response(200, json={"id": table_id, "name": self.tables[table_id]["name"]})

        m = re.fullmatch(r"/api/database/tables/(\d+)/", path)
        if m and method == "DELETE":
            self.tables.pop(int(m.group(1)), None)
            return httpx.Response(204)

        m = re.fullmatch(r"/api/database/fields/table/(\d+)/", path)
        if m:
            table = self.tables.get(int(m.group(1)))
            if table is None:
                return httpx.Response(404)
            if method == "GET":
                return httpx.Response(200, json=table["fields"])
            data = self._json(request)
            if data["name"] == self.fail_create_field:
                return httpx.Response(400, json={"error": "field rejected"})
            field = {"id": self.next_id(), "name": data["name"], "type": data["type"], "primary": False}
            table["fields"].append(field)
            return httpx.Response(200, json=field)

        m = re.fullmatch(r"/api/database/fields/(\d+)/", path)
        if m:
            field_id = int(m.group(1))
            for table in self.tables.values():
                for field in table["fields"]:
                    if field["id"] != field_id:
                        continue
                    if method == "DELETE":
                        table["fields"].remove(field)
                        return httpx.Response(204)
                    if self.fail_rename:
                        return httpx.Response(500, text="rename failed")
                    field["name"] = self._json(request)["name"]
                    return httpx.Response(200, json=field)
            return httpx.Response(404)

        m = re.fullmatch(r"/api/database/rows/table/(\d+)/batch/", path)
        if m and method == "POST":
            if self.batch_status:
                return httpx.Response(self.batch_status, json={"error": "batch rejected"})
            table = self.tables.get(int(m.group(1)))
            if table is None:
                return httpx.Response(404)
            items = self._json(request)["items"]
            created = [{"id": self.next_id(), **item} for item in items]
            table["rows"].extend(created)
            return httpx.Response(200, json={"items": created})

        m = re.fullmatch(r"/api/database/rows/table/(\d+)/", path)
        if m:
            table = self.tables.get(int(m.group(1)))
            if table is None:
                return httpx.Response(404)
            if method == "POST":
                record = self._json(request)
                if any(v in self.fail_row_values for v in record.values()):
                    return httpx.Response(400, json={"error": "ERROR_REQUEST_BODY_VALIDATION"})
                row = {"id": self.next_id(), **record}
                table["rows"].append(row)
                return httpx.Response(200, json=row)
            params = parse_qs(request.url.query.decode())
            limit = int(params.get("limit", ["100"])[0])
            offset = int(params.get("offset", ["0"])[0])
            page = table["rows"][offset:offset + limit]
            has_next = offset + limit < len(table["rows"])
            return httpx.Response(
                200,
                json={"count": len(table["rows"]), "next": "more" if has_next else None, "results": page},
            )

        m = re.fullmatch(r"/api/database/rows/table/(\d+)/(\d+)/", path)
        if m and method == "DELETE":
            table = self.tables.get(int(m.group(1)))
            if table is None:
                return httpx.Response(404)
            table["rows"] = [r for r in table["rows"] if r["id"] != int(m.group(2))]
            return httpx.Response(204)

        return httpx.Response(404, json={"error": f"no route for {method} {path}"})

    def _registry(self, request: httpx.Request, row_id: Optional[str]) -> httpx.Response:
        if request.headers.get("Authorization") != "Token static-token":
            return httpx.Response(401, json={"error": "ERROR_INVALID_TOKEN"})
        if row_id is None:
            if request.method == "GET":
                return httpx.Response(
                    200, json={"count": len(self.registry), "next": None, "results": list(self.registry.values())}
                )
            row = self.add_registry_row(**self._json(request))
            return httpx.Response(200, json=row)
        row = self.registry.get(int(row_id))
        if row is None:
            return httpx.Response(404)
        if request.method == "PATCH":
            row.update(self._json(request))
        return httpx.Response(200, json=row)


@pytest.fixture
def datastore():
    return FakeDatastore()


@pytest.fixture
def config(tmp_path):
    """Settings pointing at the fake datastore, with delays switched off."""
    return Settings(
        environment="test",
        session_secret_key="test-secret-key-for-unit-tests",
        datastore_url="https://baserow.test",
        api_token="static-token",
        datastore_username="importer@example.com",
        datastore_password="secret",
        database_id=DATABASE_ID,
        registry_table_id=REGISTRY_TABLE_ID,
        cohort_pause_ms=0,
        failure_throttle_ms=0,
        verification_settle_seconds=0,
        local_cache_dir=str(tmp_path / "file_cache"),
    )


@pytest_asyncio.fixture
async def services(config, datastore):
    """Service graph wired to the fake datastore."""
    built = build_services(
        config,
        transport=httpx.MockTransport(datastore.handler),
        sessions=SessionManager(quota_bytes=config.session_storage_quota_bytes),
    )
    yield built
    await built.aclose()


@pytest.fixture
def session(services):
    session_id = services.sessions.create_session()
    return services.sessions.get_session(session_id)


@pytest.fixture
def test_app(monkeypatch, datastore, tmp_path):
    """
    Create FastAPI app wired to the fake datastore.
    Settings are re-read from the environment set here.
    """
    monkeypatch.setenv("SESSION_SECRET_KEY", "test-secret-key-for-unit-tests")
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATASTORE_URL", "https://baserow.test")
    monkeypatch.setenv("API_TOKEN", "static-token")
    monkeypatch.setenv("DATASTORE_USERNAME", "importer@example.com")
    monkeypatch.setenv("DATASTORE_PASSWORD", "secret")
    monkeypatch.setenv("DATABASE_ID", str(DATABASE_ID))
    monkeypatch.setenv("REGISTRY_TABLE_ID", str(REGISTRY_TABLE_ID))
    monkeypatch.setenv("COHORT_PAUSE_MS", "0")
    monkeypatch.setenv("VERIFICATION_SETTLE_SECONDS", "0")
    monkeypatch.setenv("LOCAL_CACHE_DIR", str(tmp_path / "file_cache"))
    for mod in ("rowbridge.core.config", "rowbridge.main"):
        if mod in sys.modules:
            del sys.modules[mod]
    from rowbridge.main import create_app
    app = create_app(transport=httpx.MockTransport(datastore.handler))
    # These two layers can deadlock under test transports in some environments.
    app.user_middleware = [
        m
        for m in app.user_middleware
        if m.cls.__name__ not in {"RequestIDMiddleware", "MetricsMiddleware"}
    ]
    app.middleware_stack = app.build_middleware_stack()
    return app


@pytest.fixture
def client(test_app):
    """Test client for FastAPI app (runs the lifespan)."""
    with TestClient(test_app, base_url="http://testserver") as c:
        yield c


@pytest.fixture(autouse=True)
def cleanup_sessions():
    """Clean up sessions after each test to avoid state leakage."""
    yield
    from rowbridge.core.session import session_manager
    session_manager._sessions.clear()
