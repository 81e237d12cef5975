from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from backend.app.models import (
    AtsProvider,
    ConnectionRecord,
    DispatchOutcome,
    SyncLogRecord,
    SyncLogStatus,
    WebhookEventType,
    WebhookRecord,
    WebhookStatus,
    utc_now,
)

MEMORY_URL = "sqlite://"


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value in ("", MEMORY_URL, "sqlite:///:memory:"):
        return MEMORY_URL
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path:
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _load_json(value: Optional[str], default):
    if not value:
        return default
    return json.loads(value)


def _use_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front so a
    # read-then-update inside one transaction is serialized across processes.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlPersistence:
    """
    SQLAlchemy Core storage for the pipeline. Works with SQLite and PostgreSQL URLs.

    The tables are the only copy of state: the stores read rows inside
    ``transaction()`` and write them back before it commits, so several API
    and CLI processes can share one database. ``sqlite://`` keeps everything in
    a single in-memory database for tests and throwaway runs.
    """

    def __init__(self, database_url: str = MEMORY_URL) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = RLock()
        self.is_sqlite = self.database_url.startswith("sqlite")
        if self.database_url == MEMORY_URL:
            self.engine: Engine = create_engine(
                self.database_url,
                future=True,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif self.is_sqlite:
            self.engine = create_engine(
                self.database_url,
                future=True,
                pool_pre_ping=True,
                connect_args={"timeout": 30},
            )
        else:
            self.engine = create_engine(self.database_url, future=True, pool_pre_ping=True)
        if self.is_sqlite:
            _use_immediate_transactions(self.engine)

        self.metadata = MetaData()
        self.ats_connections = Table(
            "ats_connections",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("name", String(120), nullable=False),
            Column("provider", String(50), nullable=False, index=True),
            Column("api_endpoint", String(500), nullable=False),
            Column("credentials_json", Text, nullable=False),
            Column("configuration_json", Text, nullable=False),
            Column("field_mapping_json", Text, nullable=False),
            Column("is_active", Boolean, nullable=False),
            Column("last_synced_at_utc", DateTime, nullable=True),
            Column("next_eligible_at_utc", DateTime, nullable=True),
            Column("sync_stats_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.ats_webhooks = Table(
            "ats_webhooks",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("connection_id", Integer, nullable=False, index=True),
            Column("external_webhook_id", String(255), nullable=False),
            Column("event_type", String(50), nullable=False),
            Column("raw_event_type", String(120), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("status", String(20), nullable=False, index=True),
            Column("retry_count", Integer, nullable=False),
            Column("last_error", Text, nullable=True),
            Column("outcome", String(50), nullable=True),
            Column("received_at_utc", DateTime, nullable=False, index=True),
            Column("processed_at_utc", DateTime, nullable=True),
            Column("next_attempt_utc", DateTime, nullable=True),
            Column("claimed_by", String(120), nullable=True),
            Column("lease_expires_utc", DateTime, nullable=True),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint(
                "connection_id", "external_webhook_id", name="uq_ats_webhooks_external"
            ),
        )
        self.ats_sync_logs = Table(
            "ats_sync_logs",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("connection_id", Integer, nullable=False, index=True),
            Column("status", String(20), nullable=False),
            Column("filters_json", Text, nullable=False),
            Column("records_processed", Integer, nullable=False),
            Column("records_created", Integer, nullable=False),
            Column("records_updated", Integer, nullable=False),
            Column("records_failed", Integer, nullable=False),
            Column("errors_json", Text, nullable=False),
            Column("started_at_utc", DateTime, nullable=False, index=True),
            Column("completed_at_utc", DateTime, nullable=False),
            Column("duration_seconds", Float, nullable=False),
        )
        self.ats_job_postings = Table(
            "ats_job_postings",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("connection_id", Integer, nullable=False),
            Column("external_job_id", String(255), nullable=False),
            Column("record_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint(
                "connection_id", "external_job_id", name="uq_ats_job_postings_external"
            ),
        )
        self.ats_candidates = Table(
            "ats_candidates",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("connection_id", Integer, nullable=False),
            Column("external_candidate_id", String(255), nullable=False),
            Column("record_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint(
                "connection_id", "external_candidate_id", name="uq_ats_candidates_external"
            ),
        )
        self.ats_applications = Table(
            "ats_applications",
            self.metadata,
            Column("id", String(40), primary_key=True),
            Column("connection_id", Integer, nullable=False, index=True),
            Column("external_application_id", String(255), nullable=False, index=True),
            Column("job_posting_id", String(40), nullable=False),
            Column("candidate_id", String(40), nullable=False),
            Column("record_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint("job_posting_id", "candidate_id", name="uq_ats_applications_pair"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._lock:
            self.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """One serialized unit of work; reads inside it see the rows it will update."""
        with self._lock:
            with self.engine.begin() as conn:
                yield conn

    def ping(self) -> bool:
        try:
            with self.transaction() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def locked(self, query):
        """Adds ``FOR UPDATE`` where the backend supports row locks."""
        return query if self.is_sqlite else query.with_for_update()

    @staticmethod
    def connection_values(record: ConnectionRecord) -> dict[str, Any]:
        return {
            "name": record.name,
            "provider": record.provider.value,
            "api_endpoint": record.api_endpoint,
            "credentials_json": json.dumps(record.credentials),
            "configuration_json": json.dumps(record.configuration),
            "field_mapping_json": json.dumps(record.field_mapping),
            "is_active": record.is_active,
            "last_synced_at_utc": record.last_synced_at_utc,
            "next_eligible_at_utc": record.next_eligible_at_utc,
            "sync_stats_json": json.dumps(record.sync_stats),
            "created_at_utc": record.created_at_utc,
            "updated_at_utc": record.updated_at_utc,
        }

    @staticmethod
    def connection_from_row(row: Row) -> ConnectionRecord:
        return ConnectionRecord(
            id=row.id,
            name=row.name,
            provider=AtsProvider(row.provider),
            api_endpoint=row.api_endpoint,
            credentials=_load_json(row.credentials_json, {}),
            configuration=_load_json(row.configuration_json, {}),
            field_mapping=_load_json(row.field_mapping_json, {}),
            is_active=bool(row.is_active),
            last_synced_at_utc=row.last_synced_at_utc,
            next_eligible_at_utc=row.next_eligible_at_utc,
            sync_stats=_load_json(row.sync_stats_json, {}),
            created_at_utc=row.created_at_utc or utc_now(),
            updated_at_utc=row.updated_at_utc or utc_now(),
        )

    @staticmethod
    def webhook_values(record: WebhookRecord) -> dict[str, Any]:
        return {
            "connection_id": record.connection_id,
            "external_webhook_id": record.external_webhook_id,
            "event_type": record.event_type.value,
            "raw_event_type": record.raw_event_type,
            "payload_json": json.dumps(record.payload),
            "status": record.status.value,
            "retry_count": record.retry_count,
            "last_error": record.last_error,
            "outcome": record.outcome.value if record.outcome else None,
            "received_at_utc": record.received_at_utc,
            "processed_at_utc": record.processed_at_utc,
            "next_attempt_utc": record.next_attempt_utc,
            "claimed_by": record.claimed_by,
            "lease_expires_utc": record.lease_expires_utc,
            "updated_at_utc": record.updated_at_utc,
        }

    @staticmethod
    def webhook_from_row(row: Row) -> WebhookRecord:
        return WebhookRecord(
            id=row.id,
            connection_id=row.connection_id,
            external_webhook_id=row.external_webhook_id,
            event_type=WebhookEventType(row.event_type),
            raw_event_type=row.raw_event_type,
            payload=_load_json(row.payload_json, {}),
            status=WebhookStatus(row.status),
            retry_count=row.retry_count,
            last_error=row.last_error,
            outcome=DispatchOutcome(row.outcome) if row.outcome else None,
            received_at_utc=row.received_at_utc,
            processed_at_utc=row.processed_at_utc,
            next_attempt_utc=row.next_attempt_utc,
            claimed_by=row.claimed_by,
            lease_expires_utc=row.lease_expires_utc,
            updated_at_utc=row.updated_at_utc or utc_now(),
        )

    @staticmethod
    def sync_log_values(record: SyncLogRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "connection_id": record.connection_id,
            "status": record.status.value,
            "filters_json": json.dumps(record.filters),
            "records_processed": record.records_processed,
            "records_created": record.records_created,
            "records_updated": record.records_updated,
            "records_failed": record.records_failed,
            "errors_json": json.dumps(record.errors),
            "started_at_utc": record.started_at_utc,
            "completed_at_utc": record.completed_at_utc,
            "duration_seconds": record.duration_seconds,
        }

    @staticmethod
    def sync_log_from_row(row: Row) -> SyncLogRecord:
        return SyncLogRecord(
            id=row.id,
            connection_id=row.connection_id,
            status=SyncLogStatus(row.status),
            filters=_load_json(row.filters_json, {}),
            records_processed=row.records_processed,
            records_created=row.records_created,
            records_updated=row.records_updated,
            records_failed=row.records_failed,
            errors=_load_json(row.errors_json, []),
            started_at_utc=row.started_at_utc,
            completed_at_utc=row.completed_at_utc,
            duration_seconds=float(row.duration_seconds),
        )
