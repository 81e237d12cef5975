from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.persistence import SqlPersistence


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("ATS_WEBHOOK_SECRET", "")
    monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "3")
    monkeypatch.setenv("WEBHOOK_RETRY_BACKOFF_SECONDS", "1")
    return TestClient(create_app())


def _create_connection(client: TestClient) -> int:
    response = client.post(
        "/ats/connections",
        json={
            "name": "Persistent Lever",
            "provider": "lever",
            "api_endpoint": "https://api.lever.example.com",
            "credentials": {"api_key": "k"},
        },
    )
    assert response.status_code == 201
    return response.json()["connection_id"]


def test_webhooks_persist_across_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "ats_pipeline.sqlite3"
    body = {"webhook_id": "wh-persist-1", "event_type": "job_created", "job": {"id": "J-1"}}

    first_client = _new_client(monkeypatch, db_path)
    connection_id = _create_connection(first_client)
    first = first_client.post(f"/ats/webhooks/{connection_id}", json=body)
    assert first.json()["status"] == "accepted"

    restarted_client = _new_client(monkeypatch, db_path)
    second = restarted_client.post(f"/ats/webhooks/{connection_id}", json=body)
    assert second.json()["status"] == "duplicate"
    assert second.json()["webhook_id"] == first.json()["webhook_id"]

    pending = restarted_client.get("/ats/webhooks?status=pending").json()
    assert [item["external_webhook_id"] for item in pending] == ["wh-persist-1"]


def test_connections_and_processed_state_persist_across_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "ats_pipeline.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    connection_id = _create_connection(first_client)
    first_client.post(
        f"/ats/webhooks/{connection_id}",
        json={"webhook_id": "wh-1", "event_type": "job_created", "job": {"id": "J-1"}},
    )
    report = first_client.post("/ats/webhooks/process").json()
    assert report["processed"] == 1

    restarted_client = _new_client(monkeypatch, db_path)
    connections = restarted_client.get("/ats/connections").json()
    assert [item["name"] for item in connections] == ["Persistent Lever"]

    processed = restarted_client.get("/ats/webhooks?status=processed").json()
    assert len(processed) == 1
    assert processed[0]["outcome"] == "applied"

    store = restarted_client.app.state.services.store
    assert [job.external_job_id for job in store.list_job_postings(connection_id)] == ["J-1"]

    next_id = restarted_client.post(
        f"/ats/webhooks/{connection_id}",
        json={"webhook_id": "wh-2", "event_type": "job_updated", "job": {"id": "J-1"}},
    ).json()["webhook_id"]
    assert next_id == processed[0]["id"] + 1


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "ats_pipeline.sqlite3"
    persistence = SqlPersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()
