from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from sqlalchemy import and_, func, or_, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    DispatchOutcome,
    WebhookEventType,
    WebhookRecord,
    WebhookStatus,
    utc_now,
)
from backend.app.persistence import SqlPersistence
from backend.app.services.retry_policy import RetryPolicy
from backend.app.services.workflow import can_transition
from backend.app.store import InvalidStateError, StoreNotFoundError

if TYPE_CHECKING:
    from backend.app.connections import ConnectionRegistry

logger = logging.getLogger("ats_pipeline.webhooks")

EventTypeArg = Union[WebhookEventType, str, None]


class WebhookValidationError(Exception):
    pass


class LeaseLostError(InvalidStateError):
    """The caller's claim expired or was taken over by another worker."""


def _event_type_filter(event_type: EventTypeArg) -> Optional[WebhookEventType]:
    if event_type is None or isinstance(event_type, WebhookEventType):
        return event_type
    return WebhookEventType.parse(event_type)


class WebhookStore:
    """Durable queue of inbound ATS webhooks.

    The ``ats_webhooks`` table is the queue. Ids come from the database, a
    claim is a guarded ``UPDATE`` that only succeeds on an unleased row, and
    every transition re-reads its row inside the transaction that writes it.
    Several processes can therefore ingest and drain the same queue.

    A record leased to a worker can only be finished by that worker while the
    lease is live; callers without a lease are refused while someone else
    holds one.
    """

    def __init__(
        self,
        registry: Optional["ConnectionRegistry"] = None,
        persistence: Optional[SqlPersistence] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self.registry = registry
        self.persistence = persistence or SqlPersistence()
        self.table = self.persistence.ats_webhooks
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def max_retries(self) -> int:
        return self.retry_policy.max_attempts

    def ingest(
        self,
        connection_id: int,
        event_type: Union[WebhookEventType, str],
        external_id: str,
        payload: Any,
    ) -> tuple[WebhookRecord, bool]:
        """Stores a delivery and reports whether it was new.

        A repeated ``(connection_id, external_id)`` returns the stored record untouched.
        """
        if not isinstance(payload, Mapping):
            raise WebhookValidationError("payload must be a JSON object")
        external_id = str(external_id or "").strip()
        if not external_id:
            raise WebhookValidationError("external webhook id is required")
        if self.registry is not None and not self.registry.exists(connection_id):
            raise WebhookValidationError(f"unknown connection: {connection_id}")

        raw_event_type = event_type.value if isinstance(event_type, WebhookEventType) else str(
            event_type or ""
        )
        now = self._clock()
        draft = WebhookRecord(
            id=0,
            connection_id=connection_id,
            external_webhook_id=external_id,
            event_type=WebhookEventType.parse(raw_event_type),
            raw_event_type=raw_event_type,
            payload=copy.deepcopy(dict(payload)),
            received_at_utc=now,
            updated_at_utc=now,
        )
        try:
            with self.persistence.transaction() as conn:
                existing = self._find_external(conn, connection_id, external_id)
                if existing is None:
                    result = conn.execute(
                        self.table.insert().values(**self.persistence.webhook_values(draft))
                    )
                    record = draft.model_copy(update={"id": result.inserted_primary_key[0]})
        except IntegrityError:
            # Another process stored the same delivery between our read and insert.
            with self.persistence.transaction() as conn:
                existing = self._find_external(conn, connection_id, external_id)
            if existing is None:
                raise

        if existing is not None:
            logger.info(
                "webhook_duplicate connection_id=%s external_webhook_id=%s webhook_id=%s",
                connection_id,
                external_id,
                existing.id,
            )
            return existing, False
        logger.info(
            "webhook_received webhook_id=%s connection_id=%s event_type=%s",
            record.id,
            connection_id,
            record.event_type.value,
        )
        return record, True

    def enqueue(
        self,
        connection_id: int,
        event_type: Union[WebhookEventType, str],
        external_id: str,
        payload: Any,
    ) -> WebhookRecord:
        record, _ = self.ingest(connection_id, event_type, external_id, payload)
        return record

    def get(self, webhook_id: int) -> WebhookRecord:
        with self.persistence.transaction() as conn:
            return self._require(conn, webhook_id)

    def fetch_batch(
        self,
        status: Optional[WebhookStatus] = WebhookStatus.pending,
        *,
        connection_id: Optional[int] = None,
        event_type: EventTypeArg = None,
        limit: Optional[int] = 100,
    ) -> list[WebhookRecord]:
        query = self._filtered(status, connection_id, event_type)
        if limit is not None:
            query = query.limit(max(limit, 0))
        with self.persistence.transaction() as conn:
            rows = conn.execute(query).all()
        return [self.persistence.webhook_from_row(row) for row in rows]

    def retryable_batch(
        self,
        limit: int = 100,
        *,
        connection_id: Optional[int] = None,
        event_type: EventTypeArg = None,
        now: Optional[datetime] = None,
    ) -> list[WebhookRecord]:
        query = self._retryable(
            self._filtered(WebhookStatus.failed, connection_id, event_type),
            now or self._clock(),
        ).limit(max(limit, 0))
        with self.persistence.transaction() as conn:
            rows = conn.execute(query).all()
        return [self.persistence.webhook_from_row(row) for row in rows]

    def exhausted_batch(
        self,
        *,
        connection_id: Optional[int] = None,
        event_type: EventTypeArg = None,
    ) -> list[WebhookRecord]:
        query = self._filtered(WebhookStatus.failed, connection_id, event_type).where(
            self.table.c.retry_count >= self.max_retries
        )
        with self.persistence.transaction() as conn:
            rows = conn.execute(query).all()
        return [self.persistence.webhook_from_row(row) for row in rows]

    def claim_batch(
        self,
        worker_id: str,
        *,
        status: WebhookStatus = WebhookStatus.pending,
        connection_id: Optional[int] = None,
        event_type: EventTypeArg = None,
        limit: int = 1,
        lease_seconds: int = 300,
        exclude_ids: Optional[set[int]] = None,
    ) -> list[WebhookRecord]:
        """Leases up to ``limit`` unclaimed records in receipt order.

        Claiming ``failed`` records only returns ones that are still retryable
        and past their backoff.
        """
        now = self._clock()
        query = self._filtered(status, connection_id, event_type).where(self._unleased(now))
        if exclude_ids:
            query = query.where(self.table.c.id.not_in(sorted(exclude_ids)))
        if status == WebhookStatus.failed:
            query = self._retryable(query, now)
        query = query.limit(max(limit, 0))
        if not self.persistence.is_sqlite:
            query = query.with_for_update(skip_locked=True)

        lease = {
            "claimed_by": worker_id,
            "lease_expires_utc": now + timedelta(seconds=lease_seconds),
            "updated_at_utc": now,
        }
        claimed: list[WebhookRecord] = []
        with self.persistence.transaction() as conn:
            for row in conn.execute(query).all():
                result = conn.execute(
                    self.table.update()
                    .where(
                        self.table.c.id == row.id,
                        self.table.c.status == status.value,
                        self._unleased(now),
                    )
                    .values(**lease)
                )
                if result.rowcount == 1:
                    claimed.append(
                        self.persistence.webhook_from_row(row).model_copy(update=lease)
                    )
        return claimed

    def release(self, webhook_id: int, worker_id: str) -> None:
        with self.persistence.transaction() as conn:
            conn.execute(
                self.table.update()
                .where(self.table.c.id == webhook_id, self.table.c.claimed_by == worker_id)
                .values(claimed_by=None, lease_expires_utc=None, updated_at_utc=self._clock())
            )

    def mark_processed(
        self,
        webhook_id: int,
        outcome: DispatchOutcome = DispatchOutcome.applied,
        *,
        claimed_by: Optional[str] = None,
    ) -> WebhookRecord:
        with self.persistence.transaction() as conn:
            record = self._require(conn, webhook_id, for_update=True)
            now = self._clock()
            self._ensure_holder(record, claimed_by, now)
            self._ensure_transition(record, WebhookStatus.processed)
            return self._write(
                conn,
                record,
                status=WebhookStatus.processed,
                outcome=outcome,
                last_error=None,
                processed_at_utc=now,
                next_attempt_utc=None,
                claimed_by=None,
                lease_expires_utc=None,
                updated_at_utc=now,
            )

    def mark_failed(
        self,
        webhook_id: int,
        reason: str,
        *,
        claimed_by: Optional[str] = None,
    ) -> WebhookRecord:
        with self.persistence.transaction() as conn:
            record = self._require(conn, webhook_id, for_update=True)
            now = self._clock()
            self._ensure_holder(record, claimed_by, now)
            if record.status != WebhookStatus.failed:
                self._ensure_transition(record, WebhookStatus.failed)
            retry_count = min(record.retry_count + 1, self.max_retries)
            updated = self._write(
                conn,
                record,
                status=WebhookStatus.failed,
                retry_count=retry_count,
                last_error=reason,
                next_attempt_utc=self.retry_policy.next_eligible_at(retry_count, now),
                claimed_by=None,
                lease_expires_utc=None,
                updated_at_utc=now,
            )
        if self.retry_policy.is_exhausted(updated):
            logger.warning(
                "webhook_retries_exhausted webhook_id=%s retry_count=%s error=%s",
                webhook_id,
                retry_count,
                reason,
            )
        return updated

    def reset_for_retry(
        self,
        webhook_id: int,
        *,
        claimed_by: Optional[str] = None,
    ) -> WebhookRecord:
        """Moves a retryable failed record back to pending; a caller's own lease is kept."""
        with self.persistence.transaction() as conn:
            record = self._require(conn, webhook_id, for_update=True)
            now = self._clock()
            self._ensure_holder(record, claimed_by, now)
            if record.status != WebhookStatus.failed:
                raise InvalidStateError(
                    f"webhook {webhook_id} is {record.status.value}, "
                    "only failed webhooks can be retried"
                )
            if record.retry_count >= self.max_retries:
                raise InvalidStateError(
                    f"webhook {webhook_id} exhausted its {self.max_retries} retries"
                )
            self._ensure_transition(record, WebhookStatus.pending)
            return self._write(
                conn,
                record,
                status=WebhookStatus.pending,
                next_attempt_utc=None,
                updated_at_utc=now,
            )

    def counts_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in WebhookStatus}
        query = select(self.table.c.status, func.count()).group_by(self.table.c.status)
        with self.persistence.transaction() as conn:
            for status, count in conn.execute(query).all():
                counts[status] = count
        return counts

    def _filtered(
        self,
        status: Optional[WebhookStatus],
        connection_id: Optional[int],
        event_type: EventTypeArg,
    ):
        target_type = _event_type_filter(event_type)
        query = select(self.table)
        if status is not None:
            query = query.where(self.table.c.status == status.value)
        if connection_id is not None:
            query = query.where(self.table.c.connection_id == connection_id)
        if target_type is not None:
            query = query.where(self.table.c.event_type == target_type.value)
        return query.order_by(self.table.c.received_at_utc, self.table.c.id)

    def _retryable(self, query, now: datetime):
        return query.where(
            self.table.c.retry_count < self.max_retries,
            or_(self.table.c.next_attempt_utc.is_(None), self.table.c.next_attempt_utc <= now),
        )

    def _unleased(self, now: datetime):
        return or_(
            self.table.c.claimed_by.is_(None),
            self.table.c.lease_expires_utc.is_(None),
            self.table.c.lease_expires_utc <= now,
        )

    def _find_external(
        self, conn: Connection, connection_id: int, external_id: str
    ) -> Optional[WebhookRecord]:
        row = conn.execute(
            select(self.table).where(
                and_(
                    self.table.c.connection_id == connection_id,
                    self.table.c.external_webhook_id == external_id,
                )
            )
        ).first()
        return self.persistence.webhook_from_row(row) if row else None

    def _require(
        self, conn: Connection, webhook_id: int, *, for_update: bool = False
    ) -> WebhookRecord:
        query = select(self.table).where(self.table.c.id == webhook_id)
        if for_update:
            query = self.persistence.locked(query)
        row = conn.execute(query).first()
        if not row:
            raise StoreNotFoundError(f"webhook not found: {webhook_id}")
        return self.persistence.webhook_from_row(row)

    def _write(self, conn: Connection, record: WebhookRecord, **changes) -> WebhookRecord:
        updated = record.model_copy(update=changes)
        conn.execute(
            self.table.update()
            .where(self.table.c.id == record.id)
            .values(**self.persistence.webhook_values(updated))
        )
        return updated

    @staticmethod
    def _is_leased(record: WebhookRecord, now: datetime) -> bool:
        return (
            record.claimed_by is not None
            and record.lease_expires_utc is not None
            and record.lease_expires_utc > now
        )

    def _ensure_holder(
        self, record: WebhookRecord, claimed_by: Optional[str], now: datetime
    ) -> None:
        if claimed_by is None:
            if self._is_leased(record, now):
                raise LeaseLostError(
                    f"webhook {record.id} is leased to {record.claimed_by}"
                )
            return
        if record.claimed_by != claimed_by or not self._is_leased(record, now):
            raise LeaseLostError(
                f"webhook {record.id} lease held by {claimed_by} expired or was taken over"
            )

    @staticmethod
    def _ensure_transition(record: WebhookRecord, target: WebhookStatus) -> None:
        if not can_transition(record.status, target):
            raise InvalidStateError(
                f"webhook {record.id} cannot move from {record.status.value} to {target.value}"
            )
