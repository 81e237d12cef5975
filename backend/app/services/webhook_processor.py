from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Hashable, Iterator, Optional, Union

from backend.app.connections import ConnectionRegistry
from backend.app.models import (
    WebhookBatchReportResponse,
    WebhookEventType,
    WebhookRecord,
    WebhookStatus,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.event_router import EventRouter, HandlerError
from backend.app.store import InvalidStateError, StoreNotFoundError, new_id
from backend.app.webhook_store import WebhookStore

logger = logging.getLogger("ats_pipeline.processor")

MODE_PENDING = "pending"
MODE_FAILED = "failed"
MODE_RETRY = "retry"


class KeyedLocks:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[Hashable, Lock] = {}
        self._users: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class BatchReport:
    mode: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    outcomes: dict[str, int] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return self.processed + self.failed

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def to_response(self) -> WebhookBatchReportResponse:
        return WebhookBatchReportResponse(
            mode=self.mode,
            processed=self.processed,
            failed=self.failed,
            skipped=self.skipped,
            outcomes=dict(self.outcomes),
            errors={str(key): value for key, value in self.errors.items()},
        )


class _Budget:
    def __init__(self, limit: int) -> None:
        self._lock = Lock()
        self._remaining = max(limit, 0)

    def take(self) -> bool:
        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def give_back(self) -> None:
        with self._lock:
            self._remaining += 1


class WebhookProcessor:
    """Drains the webhook queue with a small worker pool.

    Workers claim one record at a time through ``WebhookStore.claim_batch``,
    so a record is leased to exactly one worker. Records touching the same
    downstream entity are serialized with ``KeyedLocks``. A shared budget caps
    the number of claims per run at ``limit``.
    """

    def __init__(
        self,
        webhook_store: WebhookStore,
        registry: ConnectionRegistry,
        router: EventRouter,
        *,
        metrics: Optional[MetricsRegistry] = None,
        max_workers: int = 4,
        lease_seconds: int = 300,
    ) -> None:
        self.webhook_store = webhook_store
        self.registry = registry
        self.router = router
        self.metrics = metrics
        self.max_workers = max(1, max_workers)
        self.lease_seconds = lease_seconds
        self.entity_locks = KeyedLocks()

    def process_pending(self, **options) -> BatchReport:
        return self._run(MODE_PENDING, **options)

    def process_failed(self, **options) -> BatchReport:
        """Re-dispatches failed records in place; exhausted records are skipped."""
        return self._run(MODE_FAILED, **options)

    def retry_failed(self, **options) -> BatchReport:
        """Resets each retryable failed record to pending, then dispatches it."""
        return self._run(MODE_RETRY, **options)

    def _run(
        self,
        mode: str,
        *,
        connection_id: Optional[int] = None,
        event_type: Union[WebhookEventType, str, None] = None,
        limit: int = 100,
        workers: Optional[int] = None,
        cancel_event: Optional[Event] = None,
        deadline: Optional[float] = None,
    ) -> BatchReport:
        report = BatchReport(mode=mode)
        report_lock = Lock()
        budget = _Budget(limit)
        seen: set[int] = set()
        status = WebhookStatus.pending if mode == MODE_PENDING else WebhookStatus.failed
        stop = cancel_event or Event()
        run_id = new_id("run")

        if mode != MODE_PENDING:
            report.skipped = self._count_exhausted(connection_id, event_type)

        def should_stop() -> bool:
            if stop.is_set():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                stop.set()
                return True
            return False

        def work(worker_index: int) -> None:
            worker_id = f"{run_id}-{worker_index}"
            while not should_stop():
                if not budget.take():
                    return
                with report_lock:
                    exclude = set(seen)
                claimed = self.webhook_store.claim_batch(
                    worker_id,
                    status=status,
                    connection_id=connection_id,
                    event_type=event_type,
                    limit=1,
                    lease_seconds=self.lease_seconds,
                    exclude_ids=exclude,
                )
                if not claimed:
                    budget.give_back()
                    return
                record = claimed[0]
                with report_lock:
                    seen.add(record.id)
                self._process_one(mode, worker_id, record, report, report_lock)

        pool_size = max(1, min(workers or self.max_workers, max(limit, 1)))
        logger.info(
            "webhook_batch_started mode=%s run_id=%s workers=%s limit=%s connection_id=%s",
            mode,
            run_id,
            pool_size,
            limit,
            connection_id,
        )
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="webhook") as pool:
            futures = [pool.submit(work, index) for index in range(pool_size)]
            for future in futures:
                future.result()

        report.cancelled = stop.is_set()
        logger.info(
            "webhook_batch_completed mode=%s run_id=%s processed=%s failed=%s "
            "skipped=%s cancelled=%s",
            mode,
            run_id,
            report.processed,
            report.failed,
            report.skipped,
            report.cancelled,
        )
        return report

    def _process_one(
        self,
        mode: str,
        worker_id: str,
        record: WebhookRecord,
        report: BatchReport,
        report_lock: Lock,
    ) -> None:
        attempt = self.webhook_store.retry_policy.next_attempt_number(record)
        logger.info(
            "webhook_processing webhook_id=%s event_type=%s mode=%s attempt=%s/%s worker=%s",
            record.id,
            record.event_type.value,
            mode,
            attempt if mode != MODE_PENDING else 1,
            self.webhook_store.max_retries,
            worker_id,
        )
        try:
            connection = self.registry.get(record.connection_id)
            if mode == MODE_RETRY:
                record = self.webhook_store.reset_for_retry(record.id, claimed_by=worker_id)
            key = self.router.entity_key(record)
            with self.entity_locks.hold(key) if key else nullcontext():
                outcome = self.router.dispatch(connection, record)
        except InvalidStateError as exc:
            logger.warning(
                "webhook_skipped webhook_id=%s worker=%s reason=%s", record.id, worker_id, exc
            )
            self.webhook_store.release(record.id, worker_id)
            with report_lock:
                report.skipped += 1
            return
        except (HandlerError, StoreNotFoundError) as exc:
            self._fail(record, str(exc), report, report_lock)
            return
        except Exception as exc:
            logger.exception("webhook_unexpected_error webhook_id=%s", record.id)
            self._fail(record, str(exc) or exc.__class__.__name__, report, report_lock)
            return

        with report_lock:
            report.processed += 1
            report.outcomes[outcome.value] = report.outcomes.get(outcome.value, 0) + 1
        if self.metrics:
            self.metrics.record_webhook(event_type=record.event_type.value, result=outcome.value)

    def _fail(
        self,
        record: WebhookRecord,
        reason: str,
        report: BatchReport,
        report_lock: Lock,
    ) -> None:
        try:
            failed = self.webhook_store.mark_failed(
                record.id, reason, claimed_by=record.claimed_by
            )
        except (InvalidStateError, StoreNotFoundError) as exc:
            # Lease lost or record finished elsewhere; the current holder owns the outcome.
            logger.warning(
                "webhook_fail_skipped webhook_id=%s worker=%s reason=%s error=%s",
                record.id,
                record.claimed_by,
                reason,
                exc,
            )
            with report_lock:
                report.skipped += 1
            return
        logger.warning(
            "webhook_failed webhook_id=%s retry_count=%s error=%s",
            record.id,
            failed.retry_count,
            reason,
        )
        with report_lock:
            report.failed += 1
            report.errors[record.id] = reason
        if self.metrics:
            self.metrics.record_webhook(event_type=record.event_type.value, result="failed")

    def _count_exhausted(
        self,
        connection_id: Optional[int],
        event_type: Union[WebhookEventType, str, None],
    ) -> int:
        exhausted = self.webhook_store.exhausted_batch(
            connection_id=connection_id, event_type=event_type
        )
        if exhausted:
            logger.warning(
                "webhook_retries_exhausted_skipped count=%s ids=%s",
                len(exhausted),
                ",".join(str(record.id) for record in exhausted[:20]),
            )
        return len(exhausted)
