from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.connections import ConnectionRegistry
from backend.app.main import create_app
from backend.app.models import (
    AtsProvider,
    ConnectionCreateRequest,
    ConnectionRecord,
    EntitySyncCounts,
    SyncResult,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.event_router import EventRouter
from backend.app.services.retry_policy import RetryPolicy
from backend.app.services.webhook_processor import WebhookProcessor
from backend.app.store import RecordStore
from backend.app.webhook_store import WebhookStore


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSyncService:
    """Stands in for the provider sync; results are keyed by connection id."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, dict]] = []
        self.results: dict[int, SyncResult] = {}
        self.errors: dict[int, Exception] = {}

    def sync_connection(
        self, connection: ConnectionRecord, filters: Optional[dict] = None
    ) -> SyncResult:
        self.calls.append((connection.id, dict(filters or {})))
        if connection.id in self.errors:
            raise self.errors[connection.id]
        return self.results.get(
            connection.id,
            SyncResult(success=True, jobs=EntitySyncCounts(processed=2, created=2)),
        )


def connection_request(
    name: str = "Acme Greenhouse",
    provider: AtsProvider = AtsProvider.greenhouse,
    **overrides,
) -> ConnectionCreateRequest:
    data = {
        "name": name,
        "provider": provider,
        "api_endpoint": "https://harvest.example.com",
        "credentials": {"api_key": "test-key"},
    }
    data.update(overrides)
    return ConnectionCreateRequest(**data)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("ATS_WEBHOOK_SECRET", "")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry(clock: FakeClock) -> ConnectionRegistry:
    return ConnectionRegistry(clock=clock)


@pytest.fixture()
def connection(registry: ConnectionRegistry) -> ConnectionRecord:
    return registry.create(connection_request())


@pytest.fixture()
def webhook_store(registry: ConnectionRegistry, clock: FakeClock) -> WebhookStore:
    return WebhookStore(
        registry,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0, jitter_ratio=0.0),
        clock=clock,
    )


@pytest.fixture()
def store() -> RecordStore:
    return RecordStore()


@pytest.fixture()
def router(store: RecordStore, webhook_store: WebhookStore) -> EventRouter:
    return EventRouter(store, webhook_store)


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def processor(
    webhook_store: WebhookStore,
    registry: ConnectionRegistry,
    router: EventRouter,
    metrics: MetricsRegistry,
) -> WebhookProcessor:
    return WebhookProcessor(webhook_store, registry, router, metrics=metrics, max_workers=4)


@pytest.fixture()
def make_connection(registry: ConnectionRegistry):
    def factory(
        name: str = "Acme Greenhouse",
        provider: AtsProvider = AtsProvider.greenhouse,
        **overrides,
    ) -> ConnectionRecord:
        return registry.create(connection_request(name, provider, **overrides))

    return factory


@pytest.fixture()
def fake_sync() -> FakeSyncService:
    return FakeSyncService()
