from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.auth import (
    ROLE_ADMIN,
    ROLE_INTEGRATOR,
    ROLE_SERVICE,
    AuthContext,
    require_roles,
)
from backend.app.connections import parse_provider
from backend.app.models import (
    ApplicationItem,
    ConnectionCreateRequest,
    ConnectionItem,
    ConnectionRecord,
    SyncLogRecord,
    SyncRunResponse,
    WebhookBatchReportResponse,
    WebhookIngestResponse,
    WebhookRecord,
    WebhookStatus,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.runtime import Services, build_services
from backend.app.services.sync_scheduler import RateLimitedError
from backend.app.services.webhooks import (
    SignatureVerificationError,
    verify_ats_signature,
    webhook_secret_for,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import InvalidStateError, StoreNotFoundError, new_id
from backend.app.webhook_store import WebhookValidationError

PROCESS_MODES = {"pending", "failed", "retry"}


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="ATS Webhook Pipeline API", version="0.1.0")
    settings = services.settings if services else load_settings()
    configure_logging(settings.log_level)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    services = services or build_services(settings)
    app.state.services = services
    app.state.settings = settings
    app.state.metrics = services.metrics

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def _connection_item(services: Services, connection: ConnectionRecord) -> ConnectionItem:
    return ConnectionItem(
        connection_id=connection.id,
        name=connection.name,
        provider=connection.provider,
        provider_display_name=connection.provider_display_name,
        is_active=connection.is_active,
        can_sync=services.registry.can_sync(connection),
        last_synced_at_utc=connection.last_synced_at_utc,
        next_eligible_at_utc=connection.next_eligible_at_utc,
        sync_stats=connection.sync_stats,
    )


def _require_connection(services: Services, connection_id: int) -> ConnectionRecord:
    try:
        return services.registry.get(connection_id)
    except StoreNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        persistence = get_services(request).persistence
        if not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        queue_depth = get_services(request).webhook_store.counts_by_status()
        return PlainTextResponse(registry.to_prometheus(queue_depth=queue_depth))

    @router.post(
        "/ats/connections",
        response_model=ConnectionItem,
        status_code=status.HTTP_201_CREATED,
    )
    def create_connection(
        payload: ConnectionCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(ROLE_INTEGRATOR, ROLE_ADMIN)),
    ) -> ConnectionItem:
        services = get_services(request)
        connection = services.registry.create(payload)
        return _connection_item(services, connection)

    @router.get("/ats/connections", response_model=list[ConnectionItem])
    def list_connections(
        request: Request,
        provider: Optional[str] = Query(default=None),
        active_only: bool = Query(default=False),
        _: AuthContext = Depends(require_roles(ROLE_INTEGRATOR, ROLE_ADMIN, ROLE_SERVICE)),
    ) -> list[ConnectionItem]:
        services = get_services(request)
        if provider and parse_provider(provider) is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown provider: {provider}",
            )
        if active_only:
            connections = services.registry.list_active(provider)
        else:
            target = parse_provider(provider)
            connections = [
                item
                for item in services.registry.list_all()
                if target is None or item.provider == target
            ]
        return [_connection_item(services, item) for item in connections]

    @router.post("/ats/connections/{connection_id}/sync", response_model=SyncRunResponse)
    def sync_connection(
        connection_id: int,
        request: Request,
        force: bool = Query(default=False),
        location: Optional[str] = Query(default=None),
        keywords: Optional[str] = Query(default=None),
        department: Optional[str] = Query(default=None),
        _: AuthContext = Depends(require_roles(ROLE_INTEGRATOR, ROLE_ADMIN)),
    ) -> SyncRunResponse:
        services = get_services(request)
        connection = _require_connection(services, connection_id)
        filters = {
            key: value
            for key, value in (
                ("location", location),
                ("keywords", keywords),
                ("department", department),
            )
            if value
        }
        try:
            result = services.scheduler.run_for_connection(connection, filters, force=force)
        except RateLimitedError as exc:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)
            ) from exc
        return SyncRunResponse(
            connection_id=connection.id,
            connection_name=connection.name,
            result=result,
            total_failed=result.total_failed,
        )

    @router.get("/ats/connections/{connection_id}/sync-logs", response_model=list[SyncLogRecord])
    def list_sync_logs(
        connection_id: int,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        _: AuthContext = Depends(require_roles(ROLE_INTEGRATOR, ROLE_ADMIN)),
    ) -> list[SyncLogRecord]:
        services = get_services(request)
        _require_connection(services, connection_id)
        return services.registry.list_sync_logs(connection_id, limit=limit)

    @router.get(
        "/ats/connections/{connection_id}/applications",
        response_model=list[ApplicationItem],
    )
    def list_applications(
        connection_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(ROLE_INTEGRATOR, ROLE_ADMIN)),
    ) -> list[ApplicationItem]:
        services = get_services(request)
        _require_connection(services, connection_id)
        return [
            ApplicationItem(
                application_id=item.id,
                external_application_id=item.external_application_id,
                job_posting_id=item.job_posting_id,
                candidate_id=item.candidate_id,
                status=item.status,
                offered_salary=item.offered_salary,
                notes=[note.note for note in item.notes],
            )
            for item in services.store.list_applications(connection_id)
        ]

    @router.get("/ats/webhooks", response_model=list[WebhookRecord])
    def list_webhooks(
        request: Request,
        status_filter: Optional[WebhookStatus] = Query(default=None, alias="status"),
        connection_id: Optional[int] = Query(default=None),
        event_type: Optional[str] = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
        _: AuthContext = Depends(require_roles(ROLE_INTEGRATOR, ROLE_ADMIN)),
    ) -> list[WebhookRecord]:
        services = get_services(request)
        return services.webhook_store.fetch_batch(
            status_filter,
            connection_id=connection_id,
            event_type=event_type,
            limit=limit,
        )

    # Declared before the ingestion route so "process" is never read as a connection id.
    @router.post("/ats/webhooks/process", response_model=WebhookBatchReportResponse)
    def process_webhooks(
        request: Request,
        mode: str = Query(default="pending"),
        connection_id: Optional[int] = Query(default=None),
        event_type: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=None, ge=1, le=1000),
        workers: Optional[int] = Query(default=None, ge=1, le=32),
        _: AuthContext = Depends(require_roles(ROLE_ADMIN, ROLE_SERVICE)),
    ) -> WebhookBatchReportResponse:
        services = get_services(request)
        if mode not in PROCESS_MODES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"mode must be one of {sorted(PROCESS_MODES)}",
            )
        options = {
            "connection_id": connection_id,
            "event_type": event_type,
            "limit": limit or services.settings.webhook_batch_limit,
            "workers": workers,
        }
        processor = services.processor
        if mode == "retry":
            report = processor.retry_failed(**options)
        elif mode == "failed":
            report = processor.process_failed(**options)
        else:
            report = processor.process_pending(**options)
        return report.to_response()

    @router.post("/ats/webhooks/{webhook_id}/reset", response_model=WebhookRecord)
    def reset_webhook(
        webhook_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(ROLE_ADMIN)),
    ) -> WebhookRecord:
        services = get_services(request)
        try:
            return services.webhook_store.reset_for_retry(webhook_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidStateError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.post("/ats/webhooks/{connection_id}", response_model=WebhookIngestResponse)
    async def ingest_webhook(
        connection_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(ROLE_SERVICE, ROLE_INTEGRATOR, ROLE_ADMIN)),
    ) -> WebhookIngestResponse:
        services = get_services(request)
        settings = get_settings(request)
        connection = _require_connection(services, connection_id)
        raw_body = await request.body()
        try:
            verify_ats_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=webhook_secret_for(connection, settings.ats_webhook_secret),
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            body = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc
        if not isinstance(body, dict):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="payload must be a JSON object",
            )

        external_id = (
            body.get("webhook_id")
            or body.get("id")
            or request.headers.get("x-webhook-id")
            or new_id("wh")
        )
        event_type = body.get("event_type") or request.headers.get("x-event-type") or "unknown"
        payload = {
            key: value for key, value in body.items() if key not in ("event_type", "webhook_id")
        }
        try:
            record, created = services.webhook_store.ingest(
                connection_id, str(event_type), str(external_id), payload
            )
        except WebhookValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc
        return WebhookIngestResponse(
            status="accepted" if created else "duplicate",
            webhook_id=record.id,
            external_webhook_id=record.external_webhook_id,
            event_type=record.event_type,
        )

    return router
