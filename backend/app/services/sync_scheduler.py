from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from threading import Event, Lock
from typing import Callable, Mapping, Optional, Protocol, Union

from backend.app.connections import ConnectionRegistry
from backend.app.models import AtsProvider, ConnectionRecord, SyncResult, utc_now
from backend.app.observability import MetricsRegistry

logger = logging.getLogger("ats_pipeline.scheduler")

RATE_LIMITED_ERROR = "Rate limited"
INELIGIBLE_ERROR = "Rate limit exceeded or connection inactive"
CANCELLED_ERROR = "Cancelled"


class RateLimitedError(Exception):
    def __init__(self, connection: ConnectionRecord) -> None:
        super().__init__(
            f"connection {connection.id} ({connection.name}) is rate limited until "
            f"{connection.next_eligible_at_utc}"
        )
        self.connection = connection


class SyncCapability(Protocol):
    def sync_connection(
        self, connection: ConnectionRecord, filters: Optional[dict[str, str]] = None
    ) -> SyncResult: ...


def any_failed(results: Mapping[str, SyncResult]) -> bool:
    return any(not result.success for result in results.values())


class _ResultCollector:
    """Thread-safe result map keyed by connection name; duplicate names get an ``#id`` suffix."""

    def __init__(self, connections: list[ConnectionRecord]) -> None:
        self._lock = Lock()
        self._results: dict[str, SyncResult] = {}
        seen = Counter(connection.name for connection in connections)
        self._keys = {
            connection.id: (
                connection.name if seen[connection.name] == 1
                else f"{connection.name}#{connection.id}"
            )
            for connection in connections
        }

    def add(self, connection: ConnectionRecord, result: SyncResult) -> None:
        with self._lock:
            self._results[self._keys.get(connection.id, connection.name)] = result

    def results(self) -> dict[str, SyncResult]:
        with self._lock:
            return {
                key: self._results[key] for key in self._keys.values() if key in self._results
            }


class SyncScheduler:
    """Rate-limit gate plus bounded fan-out over connection syncs.

    One connection's failure or rate limit never affects its siblings: each
    connection always produces exactly one entry in the result map.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        sync_service: SyncCapability,
        *,
        metrics: Optional[MetricsRegistry] = None,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.sync_service = sync_service
        self.metrics = metrics
        self.max_workers = max(1, max_workers)
        self._clock = clock

    def run_for_connection(
        self,
        connection: ConnectionRecord,
        filters: Optional[dict[str, str]] = None,
        force: bool = False,
    ) -> SyncResult:
        if not force and not self.registry.can_sync(connection, self._clock()):
            raise RateLimitedError(self.registry.get(connection.id))
        return self._attempt(connection, filters or {})

    def run_for_provider(
        self,
        provider: Union[AtsProvider, str],
        filters: Optional[dict[str, str]] = None,
        force: bool = False,
        *,
        cancel_event: Optional[Event] = None,
    ) -> dict[str, SyncResult]:
        connections = self.registry.list_active(provider)
        return self._fan_out(connections, filters or {}, force, RATE_LIMITED_ERROR, cancel_event)

    def run_for_all(
        self,
        filters: Optional[dict[str, str]] = None,
        force: bool = False,
        *,
        cancel_event: Optional[Event] = None,
    ) -> dict[str, SyncResult]:
        connections = self.registry.list_active()
        return self._fan_out(connections, filters or {}, force, INELIGIBLE_ERROR, cancel_event)

    def _fan_out(
        self,
        connections: list[ConnectionRecord],
        filters: dict[str, str],
        force: bool,
        ineligible_error: str,
        cancel_event: Optional[Event],
    ) -> dict[str, SyncResult]:
        collector = _ResultCollector(connections)
        stop = cancel_event or Event()

        def run(connection: ConnectionRecord) -> None:
            if stop.is_set():
                collector.add(connection, SyncResult.failure(CANCELLED_ERROR))
                return
            if not force and not self.registry.can_sync(connection, self._clock()):
                logger.info(
                    "sync_rate_limited connection_id=%s provider=%s",
                    connection.id,
                    connection.provider.value,
                )
                self._count(connection, "rate_limited")
                collector.add(connection, SyncResult.failure(ineligible_error))
                return
            collector.add(connection, self._attempt(connection, filters))

        if connections:
            pool_size = min(self.max_workers, len(connections))
            with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="sync") as pool:
                for future in [pool.submit(run, connection) for connection in connections]:
                    future.result()
        return collector.results()

    def _attempt(self, connection: ConnectionRecord, filters: dict[str, str]) -> SyncResult:
        started = self._clock()
        logger.info(
            "sync_started connection_id=%s provider=%s filters=%s",
            connection.id,
            connection.provider.value,
            filters,
        )
        try:
            result = self.sync_service.sync_connection(connection, filters)
        except Exception as exc:
            logger.exception("sync_failed connection_id=%s", connection.id)
            result = SyncResult.failure(str(exc) or exc.__class__.__name__)
        self.registry.record_sync_attempt(
            connection, result, started_at_utc=started, filters=filters
        )
        self._count(connection, "success" if result.success else "failed")
        return result

    def _count(self, connection: ConnectionRecord, result: str) -> None:
        if self.metrics:
            self.metrics.record_sync(provider=connection.provider.value, result=result)
