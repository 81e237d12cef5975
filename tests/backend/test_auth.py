from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from backend.app.main import create_app

CONNECTION_PAYLOAD = {
    "name": "Auth Test",
    "provider": "lever",
    "api_endpoint": "https://api.lever.example.com",
    "credentials": {"api_key": "secret"},
}


def _token(secret: str, subject: str, roles: list[str]) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("ATS_WEBHOOK_SECRET", "")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)

    response = client.post("/ats/connections", json=CONNECTION_PAYLOAD)
    assert response.status_code == 401


def test_auth_rejects_token_signed_with_another_secret(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("other-secret", "integrator-1", ["integrator"])

    response = client.get("/ats/connections", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_auth_allows_integrator_token(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "integrator-1", ["integrator"])

    response = client.post(
        "/ats/connections",
        headers={"Authorization": f"Bearer {token}"},
        json=CONNECTION_PAYLOAD,
    )
    assert response.status_code == 201
    assert response.json()["provider_display_name"] == "Lever"


def test_service_role_can_process_but_not_configure(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    headers = {"Authorization": f"Bearer {_token('test-secret', 'worker-1', ['service'])}"}

    configure = client.post("/ats/connections", headers=headers, json=CONNECTION_PAYLOAD)
    process = client.post("/ats/webhooks/process", headers=headers)
    reset = client.post("/ats/webhooks/1/reset", headers=headers)

    assert configure.status_code == 403
    assert process.status_code == 200
    assert reset.status_code == 403


def test_health_is_public_when_auth_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)

    assert client.get("/health").status_code == 200
    assert client.get("/metrics").status_code == 200
