from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.connections import min_sync_interval, parse_provider
from backend.app.models import AtsProvider, EntitySyncCounts, SyncLogStatus, SyncResult
from backend.app.store import StoreNotFoundError


def test_new_connection_can_sync_immediately(registry, connection) -> None:
    assert connection.id == 1
    assert connection.api_endpoint == "https://harvest.example.com"
    assert connection.provider_display_name == "Greenhouse"
    assert registry.can_sync(connection)


def test_inactive_connection_cannot_sync(registry, connection) -> None:
    inactive = registry.set_active(connection.id, False)
    assert not registry.can_sync(inactive)
    assert registry.list_active() == []


def test_sync_attempt_opens_a_cool_down_window(registry, connection, clock) -> None:
    updated = registry.record_sync_attempt(connection, SyncResult.failure("HTTP 500"))

    assert updated.last_synced_at_utc == clock.now
    assert updated.next_eligible_at_utc == clock.now + timedelta(seconds=18)
    assert not registry.can_sync(connection)

    clock.advance(seconds=17)
    assert not registry.can_sync(connection)
    clock.advance(seconds=1)
    assert registry.can_sync(connection)


def test_interval_follows_provider_limits(make_connection) -> None:
    bamboo = make_connection(name="Bamboo", provider=AtsProvider.bamboohr)
    bullhorn = make_connection(name="Bullhorn", provider=AtsProvider.bullhorn)
    tuned = make_connection(
        name="Tuned", configuration={"min_sync_interval_seconds": 900}
    )
    broken = make_connection(name="Broken", configuration={"min_sync_interval_seconds": "x"})

    assert min_sync_interval(bamboo) == timedelta(seconds=72)
    assert min_sync_interval(bullhorn) == timedelta(seconds=14.4)
    assert min_sync_interval(tuned) == timedelta(seconds=900)
    assert min_sync_interval(broken) == timedelta(seconds=18)


def test_list_active_filters_by_provider(registry, make_connection) -> None:
    greenhouse = make_connection(name="Greenhouse A")
    lever = make_connection(name="Lever A", provider=AtsProvider.lever)
    make_connection(name="Lever B", provider=AtsProvider.lever, is_active=False)

    assert [item.id for item in registry.list_active()] == [greenhouse.id, lever.id]
    assert [item.id for item in registry.list_active("LEVER")] == [lever.id]
    assert [item.id for item in registry.list_active(AtsProvider.greenhouse)] == [greenhouse.id]
    assert registry.list_active("not-a-provider") == []


def test_parse_provider() -> None:
    assert parse_provider(" Greenhouse ") == AtsProvider.greenhouse
    assert parse_provider(AtsProvider.icims) == AtsProvider.icims
    assert parse_provider("unknown") is None
    assert parse_provider(None) is None


def test_sync_logs_capture_each_attempt(registry, connection, clock) -> None:
    started = clock.now
    clock.advance(seconds=3)
    registry.record_sync_attempt(
        connection,
        SyncResult(
            success=True,
            jobs=EntitySyncCounts(processed=4, created=3, updated=1),
            candidates=EntitySyncCounts(processed=1, failed=1),
        ),
        started_at_utc=started,
        filters={"location": "Remote"},
    )
    clock.advance(seconds=30)
    registry.record_sync_attempt(connection, SyncResult.failure("Failed to fetch jobs: 503"))

    logs = registry.list_sync_logs(connection.id)
    assert [log.status for log in logs] == [SyncLogStatus.failed, SyncLogStatus.completed]
    failed, completed = logs
    assert failed.errors == ["Failed to fetch jobs: 503"]
    assert completed.records_processed == 5
    assert completed.records_created == 3
    assert completed.records_updated == 1
    assert completed.records_failed == 1
    assert completed.filters == {"location": "Remote"}
    assert completed.duration_seconds == 3.0


def test_success_updates_sync_stats(registry, connection) -> None:
    updated = registry.record_sync_attempt(
        connection,
        SyncResult(success=True, jobs=EntitySyncCounts(processed=4, created=4, failed=1)),
    )
    assert updated.sync_stats["total_synced"] == 4
    assert updated.sync_stats["success_rate"] == 75.0

    after_failure = registry.record_sync_attempt(connection, SyncResult.failure("boom"))
    assert after_failure.sync_stats["total_synced"] == 4


def test_unknown_connection_raises(registry) -> None:
    assert not registry.exists(42)
    with pytest.raises(StoreNotFoundError):
        registry.get(42)


def test_returned_connections_are_copies(registry, connection) -> None:
    connection.credentials["api_key"] = "tampered"
    assert registry.get(connection.id).credentials == {"api_key": "test-key"}
