from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.webhooks import (
    SignatureVerificationError,
    sign_payload,
    verify_ats_signature,
)


def _signed_client(monkeypatch, secret: str) -> tuple[TestClient, int]:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("ATS_WEBHOOK_SECRET", secret)
    client = TestClient(create_app())
    created = client.post(
        "/ats/connections",
        json={
            "name": "Signed Provider",
            "provider": "bamboohr",
            "api_endpoint": "https://acme.bamboohr.example.com",
            "credentials": {"api_key": "k", "subdomain": "acme"},
        },
    )
    return client, created.json()["connection_id"]


def _body(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def test_ats_signature_required_when_secret_set(monkeypatch) -> None:
    client, connection_id = _signed_client(monkeypatch, "topsecret")
    body = _body({"webhook_id": "wh-sig-1", "event_type": "candidate_created"})

    response = client.post(
        f"/ats/webhooks/{connection_id}",
        content=body,
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 403


def test_ats_signature_valid_accepts_event(monkeypatch) -> None:
    secret = "topsecret"
    client, connection_id = _signed_client(monkeypatch, secret)
    body = _body(
        {
            "webhook_id": "wh-sig-2",
            "event_type": "candidate_created",
            "candidate": {"id": "C-2", "first_name": "Nisha"},
        }
    )

    response = client.post(
        f"/ats/webhooks/{connection_id}",
        content=body,
        headers={
            "content-type": "application/json",
            "x-hub-signature-256": sign_payload(body, secret),
        },
    )
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    assert response.json()["event_type"] == "candidate_created"


def test_ats_signature_mismatch_is_rejected(monkeypatch) -> None:
    client, connection_id = _signed_client(monkeypatch, "topsecret")
    body = _body({"webhook_id": "wh-sig-3", "event_type": "job_created"})

    response = client.post(
        f"/ats/webhooks/{connection_id}",
        content=body,
        headers={
            "content-type": "application/json",
            "x-ats-signature": sign_payload(body, "wrong-secret"),
        },
    )
    assert response.status_code == 403
    assert client.get("/ats/webhooks").json() == []


def test_event_headers_fill_in_missing_body_fields(monkeypatch) -> None:
    client, connection_id = _signed_client(monkeypatch, "")

    response = client.post(
        f"/ats/webhooks/{connection_id}",
        json={"job": {"id": "J-4"}},
        headers={"x-webhook-id": "hdr-4", "x-event-type": "job_updated"},
    )
    assert response.json()["external_webhook_id"] == "hdr-4"
    assert response.json()["event_type"] == "job_updated"


def test_verify_signature_accepts_bare_and_prefixed_digests() -> None:
    body = b'{"event_type":"hire_completed"}'
    prefixed = sign_payload(body, "s3cret")
    bare = prefixed.split("=", 1)[1]

    verify_ats_signature({"x-webhook-signature": prefixed}, body, "s3cret")
    verify_ats_signature({"x-ats-signature": bare}, body, "s3cret")
    verify_ats_signature({}, body, "")

    with pytest.raises(SignatureVerificationError, match="missing"):
        verify_ats_signature({}, body, "s3cret")
    with pytest.raises(SignatureVerificationError, match="invalid"):
        verify_ats_signature({"x-ats-signature": bare}, body + b" ", "s3cret")


def test_connection_secret_overrides_the_global_secret(monkeypatch) -> None:
    client, _ = _signed_client(monkeypatch, "global-secret")
    created = client.post(
        "/ats/connections",
        json={
            "name": "Own Secret",
            "provider": "greenhouse",
            "api_endpoint": "https://harvest.example.com",
            "credentials": {"api_key": "k"},
            "configuration": {"webhook_secret": "per-connection"},
        },
    )
    connection_id = created.json()["connection_id"]
    body = _body({"webhook_id": "wh-own-1", "event_type": "job_created", "job": {"id": "J-1"}})
    digest = sign_payload(body, "per-connection").split("=", 1)[1]

    accepted = client.post(
        f"/ats/webhooks/{connection_id}",
        content=body,
        headers={"content-type": "application/json", "x-ats-signature": f"sha256 {digest}"},
    )
    rejected = client.post(
        f"/ats/webhooks/{connection_id}",
        content=body,
        headers={
            "content-type": "application/json",
            "x-ats-signature": sign_payload(body, "global-secret"),
        },
    )
    assert accepted.status_code == 200
    assert rejected.status_code == 403
