from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from backend.app.connections import ConnectionRegistry
from backend.app.observability import MetricsRegistry
from backend.app.persistence import MEMORY_URL, SqlPersistence
from backend.app.services.ats_client import AtsProviderClient
from backend.app.services.ats_sync import AtsSyncService
from backend.app.services.event_router import EventRouter
from backend.app.services.retry_policy import RetryPolicy
from backend.app.services.sync_scheduler import SyncCapability, SyncScheduler
from backend.app.services.webhook_processor import WebhookProcessor
from backend.app.settings import Settings
from backend.app.store import RecordStore
from backend.app.webhook_store import WebhookStore


@dataclass
class Services:
    settings: Settings
    persistence: SqlPersistence
    metrics: MetricsRegistry
    registry: ConnectionRegistry
    store: RecordStore
    webhook_store: WebhookStore
    router: EventRouter
    processor: WebhookProcessor
    sync_service: SyncCapability
    scheduler: SyncScheduler


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.webhook_max_retries,
        backoff_seconds=settings.webhook_retry_backoff_seconds,
        max_backoff_seconds=settings.webhook_retry_max_backoff_seconds,
        jitter_ratio=settings.webhook_retry_jitter_ratio,
    )


def build_services(
    settings: Settings,
    *,
    sync_service: Optional[SyncCapability] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> Services:
    # Without persistence every component shares one in-memory database.
    persistence = SqlPersistence(
        settings.database_url if settings.persistence_enabled else MEMORY_URL
    )
    metrics = metrics or MetricsRegistry()
    registry = ConnectionRegistry(persistence=persistence)
    store = RecordStore(persistence=persistence)
    webhook_store = WebhookStore(
        registry,
        persistence,
        retry_policy=retry_policy_from_settings(settings),
    )
    router = EventRouter(store, webhook_store)
    processor = WebhookProcessor(
        webhook_store,
        registry,
        router,
        metrics=metrics,
        max_workers=settings.webhook_max_workers,
        lease_seconds=settings.webhook_lease_seconds,
    )
    sync_service = sync_service or AtsSyncService(
        store, AtsProviderClient(timeout_seconds=settings.sync_http_timeout_seconds)
    )
    scheduler = SyncScheduler(
        registry,
        sync_service,
        metrics=metrics,
        max_workers=settings.sync_max_workers,
    )
    return Services(
        settings=settings,
        persistence=persistence,
        metrics=metrics,
        registry=registry,
        store=store,
        webhook_store=webhook_store,
        router=router,
        processor=processor,
        sync_service=sync_service,
        scheduler=scheduler,
    )
