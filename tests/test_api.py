"""Tests for the HTTP API."""

import json

from fastapi.testclient import TestClient

CSV = (
    "Vorname,Nachname,EMAIL\n"
    "Ada,Lovelace,ada@example.com\n"
    "Grace,Hopper,grace@example.com\n"
    "Edsger,Dijkstra,edsger@example.com\n"
)
OPERATOR = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@example.com",
    "company": "Acme",
}


def upload(client: TestClient, content: str = CSV, name: str = "people.csv"):
    return client.post(
        "/api/v1/uploads",
        files={"file": (name, content.encode(), "text/csv")},
        data=OPERATOR,
    )


def read_events(client: TestClient, job_id: str):
    response = client.get(f"/api/v1/imports/{job_id}/events")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    return [json.loads(line) for line in response.text.splitlines() if line]


class TestHealth:
    def test_health(self, client: TestClient):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, client: TestClient):
        response = client.get("/api/v1/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["datastore"]["url"] == "https://baserow.test/api"
        assert data["datastore"]["credentials"] is True

    def test_metrics(self, client: TestClient):
        response = client.get("/api/v1/metrics")
        assert response.status_code == 200
        assert "import_runs_total" in response.text


class TestUploads:
    def test_upload_returns_columns(self, client: TestClient, datastore):
        response = upload(client)

        assert response.status_code == 201
        data = response.json()
        assert data["columns"] == ["Vorname", "Nachname", "EMAIL"]
        assert data["total_lines"] == 4
        assert data["storage"] == "full"
        assert data["record_id"] in datastore.registry

        current = client.get("/api/v1/uploads/current")
        assert current.status_code == 200
        assert current.json()["file_name"] == "people.csv"

    def test_upload_requires_operator_fields(self, client: TestClient):
        response = client.post(
            "/api/v1/uploads",
            files={"file": ("people.csv", CSV.encode(), "text/csv")},
            data={**OPERATOR, "company": "  "},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "UPLOAD_INVALID_FILE"

    def test_rejects_non_csv(self, client: TestClient):
        response = client.post(
            "/api/v1/uploads",
            files={"file": ("people.pdf", b"%PDF-1.4", "application/pdf")},
            data=OPERATOR,
        )
        assert response.status_code == 415

    def test_current_without_session(self, client: TestClient):
        response = client.get("/api/v1/uploads/current")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "SESSION_REQUIRED"


class TestMapping:
    def test_proposed_mapping(self, client: TestClient):
        upload(client)

        response = client.get("/api/v1/mapping")

        assert response.status_code == 200
        data = response.json()
        assert data["stats"]["matched"] == 3
        assert data["unmapped_columns"] == []

    def test_locked_mapping_needs_force(self, client: TestClient):
        upload(client)

        response = client.put(
            "/api/v1/mapping", json={"source_column": "Vorname", "target": "Nachname"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "MAPPING_LOCKED"

        response = client.put(
            "/api/v1/mapping",
            json={"source_column": "Vorname", "target": "Nachname", "force": True},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["unmapped_columns"] == ["Nachname"]
        targets = [m["target_field"] for m in data["mappings"] if m["target_field"]]
        assert len(targets) == len(set(targets))

        response = client.post("/api/v1/imports", json={})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "MAPPING_INCOMPLETE"

    def test_ignore_and_reset(self, client: TestClient):
        upload(client)

        response = client.put("/api/v1/mapping", json={"source_column": "EMAIL", "target": "ignore"})
        assert response.json()["stats"]["ignored"] == 1

        assert client.delete("/api/v1/mapping").status_code == 204
        assert client.get("/api/v1/mapping").json()["stats"]["ignored"] == 0

    def test_unknown_column(self, client: TestClient):
        upload(client)
        response = client.put("/api/v1/mapping", json={"source_column": "Nope", "target": "EMAIL"})
        assert response.status_code == 422


class TestImports:
    def test_import_runs_to_completion(self, client: TestClient, datastore):
        upload(client)

        response = client.post("/api/v1/imports", json={})
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        events = read_events(client, job_id)
        final = events[-1]
        assert final["status"] == "completed"
        assert final["result"]["created"] == 3
        assert final["result"]["verified"] == 3
        assert len(datastore.table_rows(final["result"]["table_id"])) == 3

        status = client.get(f"/api/v1/imports/{job_id}").json()
        assert status["status"] == "completed"

        cancel = client.post(f"/api/v1/imports/{job_id}/cancel")
        assert cancel.json() == {"job_id": job_id, "cancelled": False}

    def test_explicit_mapping_in_request(self, client: TestClient, datastore):
        upload(client)

        response = client.post(
            "/api/v1/imports", json={"mapping": {"Vorname": "First", "EMAIL": "Mail", "Nachname": ""}}
        )
        job_id = response.json()["job_id"]

        final = read_events(client, job_id)[-1]
        assert final["status"] == "completed"
        fields = [f["name"] for f in datastore.tables[final["result"]["table_id"]]["fields"]]
        assert fields == ["First", "Mail"]

    def test_duplicate_targets_rejected(self, client: TestClient):
        upload(client)
        response = client.post(
            "/api/v1/imports", json={"mapping": {"Vorname": "Name", "Nachname": "Name"}}
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "IMPORT_VALIDATION_ERROR"

    def test_failed_import_reports_errors(self, client: TestClient, datastore):
        upload(client)
        datastore.auth_status = 401

        job_id = client.post("/api/v1/imports", json={}).json()["job_id"]

        final = read_events(client, job_id)[-1]
        assert final["status"] == "failed"
        assert final["errors"]

    def test_unknown_job(self, client: TestClient):
        upload(client)
        response = client.get("/api/v1/imports/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "IMPORT_JOB_NOT_FOUND"


class TestCredentialStatus:
    def test_status_and_refresh(self, client: TestClient):
        assert client.get("/api/v1/auth/status").json()["state"] == "empty"

        response = client.post("/api/v1/auth/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "valid"
        assert data["token"].endswith("...")

    def test_refresh_failure(self, client: TestClient, datastore):
        datastore.auth_status = 401
        response = client.post("/api/v1/auth/refresh")
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "AUTH_FAILED"
