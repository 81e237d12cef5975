from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.engine import Connection

from backend.app.models import (
    AtsProvider,
    ConnectionCreateRequest,
    ConnectionRecord,
    SyncLogRecord,
    SyncLogStatus,
    SyncResult,
    utc_now,
)
from backend.app.persistence import SqlPersistence
from backend.app.store import StoreNotFoundError, new_id

logger = logging.getLogger("ats_pipeline.connections")

# Requests per hour each provider tolerates; one full sync is budgeted as one request.
PROVIDER_HOURLY_LIMITS = {
    AtsProvider.workday: 100,
    AtsProvider.greenhouse: 200,
    AtsProvider.lever: 150,
    AtsProvider.bamboohr: 50,
    AtsProvider.successfactors: 75,
    AtsProvider.taleo: 100,
    AtsProvider.icims: 120,
    AtsProvider.jazz: 180,
    AtsProvider.bullhorn: 250,
    AtsProvider.jobvite: 160,
}
DEFAULT_HOURLY_LIMIT = 100


def min_sync_interval(connection: ConnectionRecord) -> timedelta:
    override = connection.configuration.get("min_sync_interval_seconds")
    if override is not None:
        try:
            return timedelta(seconds=max(0.0, float(override)))
        except (TypeError, ValueError):
            logger.warning(
                "invalid_min_sync_interval connection_id=%s value=%r",
                connection.id,
                override,
            )
    hourly_limit = PROVIDER_HOURLY_LIMITS.get(connection.provider, DEFAULT_HOURLY_LIMIT)
    return timedelta(seconds=3600 / hourly_limit)


def parse_provider(value: Union[AtsProvider, str, None]) -> Optional[AtsProvider]:
    if value is None or isinstance(value, AtsProvider):
        return value
    try:
        return AtsProvider(value.strip().lower())
    except ValueError:
        return None

class ConnectionRegistry:
    """ATS connections and their sync history, read from ``ats_connections`` on every call."""

    def __init__(
        self,
        persistence: Optional[SqlPersistence] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self.persistence = persistence or SqlPersistence()
        self.table = self.persistence.ats_connections
        self.logs = self.persistence.ats_sync_logs

    def create(self, request: ConnectionCreateRequest) -> ConnectionRecord:
        now = self._clock()
        draft = ConnectionRecord(
            id=0,
            name=request.name.strip(),
            provider=request.provider,
            api_endpoint=request.api_endpoint.strip().rstrip("/"),
            credentials=request.credentials,
            configuration=request.configuration,
            field_mapping=request.field_mapping,
            is_active=request.is_active,
            created_at_utc=now,
            updated_at_utc=now,
        )
        with self.persistence.transaction() as conn:
            result = conn.execute(
                self.table.insert().values(**self.persistence.connection_values(draft))
            )
        connection = draft.model_copy(update={"id": result.inserted_primary_key[0]})
        logger.info(
            "connection_created connection_id=%s provider=%s",
            connection.id,
            connection.provider.value,
        )
        return connection

    def get(self, connection_id: int) -> ConnectionRecord:
        with self.persistence.transaction() as conn:
            return self._require(conn, connection_id)

    def exists(self, connection_id: int) -> bool:
        with self.persistence.transaction() as conn:
            row = conn.execute(
                select(self.table.c.id).where(self.table.c.id == connection_id)
            ).first()
        return row is not None

    def list_all(self) -> list[ConnectionRecord]:
        with self.persistence.transaction() as conn:
            rows = conn.execute(select(self.table).order_by(self.table.c.id)).all()
        return [self.persistence.connection_from_row(row) for row in rows]

    def list_active(
        self, provider: Union[AtsProvider, str, None] = None
    ) -> list[ConnectionRecord]:
        target = parse_provider(provider)
        if provider is not None and target is None:
            return []
        return [
            connection
            for connection in self.list_all()
            if connection.is_active and (target is None or connection.provider == target)
        ]

    def set_active(self, connection_id: int, is_active: bool) -> ConnectionRecord:
        with self.persistence.transaction() as conn:
            connection = self._require(conn, connection_id, for_update=True)
            return self._write(
                conn, connection, is_active=is_active, updated_at_utc=self._clock()
            )

    def can_sync(self, connection: ConnectionRecord, now: Optional[datetime] = None) -> bool:
        with self.persistence.transaction() as conn:
            row = conn.execute(select(self.table).where(self.table.c.id == connection.id)).first()
        current = self.persistence.connection_from_row(row) if row else connection
        if not current.is_active:
            return False
        if current.next_eligible_at_utc is None:
            return True
        return (now or self._clock()) >= current.next_eligible_at_utc

    def record_sync_attempt(
        self,
        connection: ConnectionRecord,
        result: SyncResult,
        *,
        started_at_utc: Optional[datetime] = None,
        filters: Optional[dict[str, str]] = None,
    ) -> ConnectionRecord:
        with self.persistence.transaction() as conn:
            current = self._require(conn, connection.id, for_update=True)
            now = self._clock()
            started = started_at_utc or now
            sync_stats = dict(current.sync_stats)
            if result.success:
                processed = result.total_processed
                sync_stats.update(
                    {
                        "last_sync": now.isoformat(),
                        "total_synced": processed,
                        "success_rate": (
                            round(((processed - result.total_failed) / processed) * 100, 2)
                            if processed
                            else 0
                        ),
                    }
                )
            updated = self._write(
                conn,
                current,
                last_synced_at_utc=now,
                next_eligible_at_utc=now + min_sync_interval(current),
                sync_stats=sync_stats,
                updated_at_utc=now,
            )
            log = SyncLogRecord(
                id=new_id("sync"),
                connection_id=current.id,
                status=SyncLogStatus.completed if result.success else SyncLogStatus.failed,
                filters=dict(filters or {}),
                records_processed=result.total_processed,
                records_created=result.total_created,
                records_updated=result.total_updated,
                records_failed=result.total_failed,
                errors=[result.error] if result.error else [],
                started_at_utc=started,
                completed_at_utc=now,
                duration_seconds=round(max((now - started).total_seconds(), 0.0), 2),
            )
            conn.execute(self.logs.insert().values(**self.persistence.sync_log_values(log)))
        return updated

    def list_sync_logs(
        self, connection_id: Optional[int] = None, limit: int = 50
    ) -> list[SyncLogRecord]:
        query = select(self.logs).order_by(self.logs.c.started_at_utc.desc())
        if connection_id is not None:
            query = query.where(self.logs.c.connection_id == connection_id)
        query = query.limit(max(1, min(limit, 500)))
        with self.persistence.transaction() as conn:
            rows = conn.execute(query).all()
        return [self.persistence.sync_log_from_row(row) for row in rows]

    def _require(
        self, conn: Connection, connection_id: int, *, for_update: bool = False
    ) -> ConnectionRecord:
        query = select(self.table).where(self.table.c.id == connection_id)
        if for_update:
            query = self.persistence.locked(query)
        row = conn.execute(query).first()
        if not row:
            raise StoreNotFoundError(f"connection not found: {connection_id}")
        return self.persistence.connection_from_row(row)

    def _write(self, conn: Connection, record: ConnectionRecord, **changes) -> ConnectionRecord:
        updated = record.model_copy(update=changes)
        conn.execute(
            self.table.update()
            .where(self.table.c.id == record.id)
            .values(**self.persistence.connection_values(updated))
        )
        return updated
