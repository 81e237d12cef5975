from __future__ import annotations

import pytest

from backend.app.models import DispatchOutcome, WebhookEventType, WebhookStatus
from backend.app.services.retry_policy import RetryPolicy
from backend.app.store import InvalidStateError, StoreNotFoundError
from backend.app.webhook_store import LeaseLostError, WebhookStore, WebhookValidationError


def _job_payload(job_id: str) -> dict:
    return {"job": {"id": job_id, "title": "Backend Engineer"}}


def test_ingest_deduplicates_on_connection_and_external_id(webhook_store, make_connection) -> None:
    first_connection = make_connection()
    second_connection = make_connection(name="Beta Greenhouse")

    first, created = webhook_store.ingest(
        first_connection.id, "job_created", "wh-1", _job_payload("J1")
    )
    again, created_again = webhook_store.ingest(
        first_connection.id, "job_created", "wh-1", _job_payload("J-other")
    )
    other, created_other = webhook_store.ingest(
        second_connection.id, "job_created", "wh-1", _job_payload("J1")
    )

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.payload == _job_payload("J1")
    assert created_other is True
    assert other.id != first.id


def test_ingest_rejects_bad_input(webhook_store, connection) -> None:
    with pytest.raises(WebhookValidationError):
        webhook_store.enqueue(connection.id, "job_created", "wh-1", ["not", "an", "object"])
    with pytest.raises(WebhookValidationError):
        webhook_store.enqueue(connection.id, "job_created", "   ", {})
    with pytest.raises(WebhookValidationError):
        webhook_store.enqueue(999, "job_created", "wh-2", {})
    assert webhook_store.counts_by_status() == {"pending": 0, "processed": 0, "failed": 0}


def test_new_record_starts_pending_with_zero_retries(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "Job_Created", "wh-1", _job_payload("J1"))
    assert record.status == WebhookStatus.pending
    assert record.retry_count == 0
    assert record.event_type == WebhookEventType.job_created
    assert record.processed_at_utc is None


def test_unknown_event_type_keeps_raw_tag(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "candidate_merged", "wh-1", {})
    assert record.event_type == WebhookEventType.unknown
    assert record.raw_event_type == "candidate_merged"


def test_payload_is_isolated_from_callers(webhook_store, connection) -> None:
    payload = {"job": {"id": "J1", "tags": ["python"]}}
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", payload)

    payload["job"]["tags"].append("mutated")
    record.payload["job"]["id"] = "changed"

    stored = webhook_store.get(record.id)
    assert stored.payload == {"job": {"id": "J1", "tags": ["python"]}}


def test_fetch_batch_orders_by_receipt_then_id(webhook_store, connection, clock) -> None:
    late = webhook_store.enqueue(connection.id, "job_created", "wh-late", _job_payload("J1"))
    clock.now = clock.now.replace(hour=8)
    early_a = webhook_store.enqueue(connection.id, "job_created", "wh-a", _job_payload("J2"))
    early_b = webhook_store.enqueue(connection.id, "job_updated", "wh-b", _job_payload("J3"))

    batch = webhook_store.fetch_batch(WebhookStatus.pending, limit=10)
    assert [item.id for item in batch] == [early_a.id, early_b.id, late.id]

    limited = webhook_store.fetch_batch(WebhookStatus.pending, limit=2)
    assert len(limited) == 2
    assert all(item.status == WebhookStatus.pending for item in limited)

    updates = webhook_store.fetch_batch(event_type="job_updated")
    assert [item.id for item in updates] == [early_b.id]


def test_fetch_batch_filters_by_connection(webhook_store, make_connection) -> None:
    first = make_connection()
    second = make_connection(name="Second Greenhouse")
    webhook_store.enqueue(first.id, "job_created", "wh-1", _job_payload("J1"))
    mine = webhook_store.enqueue(second.id, "job_created", "wh-2", _job_payload("J2"))

    batch = webhook_store.fetch_batch(connection_id=second.id)
    assert [item.id for item in batch] == [mine.id]


def test_mark_processed_twice_is_rejected(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))

    processed = webhook_store.mark_processed(record.id)
    assert processed.status == WebhookStatus.processed
    assert processed.processed_at_utc is not None
    assert processed.outcome == DispatchOutcome.applied

    with pytest.raises(InvalidStateError):
        webhook_store.mark_processed(record.id)
    with pytest.raises(InvalidStateError):
        webhook_store.mark_failed(record.id, "late failure")


def test_unknown_ids_raise_not_found(webhook_store) -> None:
    with pytest.raises(StoreNotFoundError):
        webhook_store.mark_processed(404)
    with pytest.raises(StoreNotFoundError):
        webhook_store.mark_failed(404, "boom")
    with pytest.raises(StoreNotFoundError):
        webhook_store.reset_for_retry(404)


def test_mark_failed_counts_attempts_up_to_the_limit(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))

    failed = webhook_store.mark_failed(record.id, "first")
    assert failed.status == WebhookStatus.failed
    assert failed.retry_count == 1
    assert failed.last_error == "first"

    for attempt in range(5):
        failed = webhook_store.mark_failed(record.id, f"again {attempt}")

    assert failed.retry_count == webhook_store.max_retries == 3
    assert failed.last_error == "again 4"


def test_reset_for_retry_keeps_retry_count(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))

    with pytest.raises(InvalidStateError):
        webhook_store.reset_for_retry(record.id)

    webhook_store.mark_failed(record.id, "boom")
    reset = webhook_store.reset_for_retry(record.id)
    assert reset.status == WebhookStatus.pending
    assert reset.retry_count == 1
    assert reset.next_attempt_utc is None


def test_reset_for_retry_rejects_exhausted_records(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    for _ in range(3):
        webhook_store.mark_failed(record.id, "boom")

    with pytest.raises(InvalidStateError):
        webhook_store.reset_for_retry(record.id)
    assert webhook_store.get(record.id).status == WebhookStatus.failed


def test_failed_record_can_still_be_processed(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    webhook_store.mark_failed(record.id, "boom")

    processed = webhook_store.mark_processed(record.id)
    assert processed.status == WebhookStatus.processed
    assert processed.last_error is None


def test_retryable_batch_excludes_exhausted_records(webhook_store, connection) -> None:
    exhausted = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    retryable = webhook_store.enqueue(connection.id, "job_created", "wh-2", _job_payload("J2"))
    webhook_store.enqueue(connection.id, "job_created", "wh-3", _job_payload("J3"))
    for _ in range(3):
        webhook_store.mark_failed(exhausted.id, "boom")
    webhook_store.mark_failed(retryable.id, "boom")

    batch = webhook_store.retryable_batch(limit=10)
    assert [item.id for item in batch] == [retryable.id]


def test_retryable_batch_waits_for_backoff(registry, connection, clock) -> None:
    webhook_store = WebhookStore(
        registry,
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=60, jitter_ratio=0.0),
        clock=clock,
    )
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    failed = webhook_store.mark_failed(record.id, "boom")
    assert failed.next_attempt_utc == clock.now.replace(minute=1)

    assert webhook_store.retryable_batch() == []
    assert webhook_store.claim_batch("worker-a", status=WebhookStatus.failed) == []

    clock.advance(seconds=60)
    assert [item.id for item in webhook_store.retryable_batch()] == [record.id]


def test_claimed_records_are_hidden_from_other_workers(webhook_store, connection, clock) -> None:
    first = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    second = webhook_store.enqueue(connection.id, "job_created", "wh-2", _job_payload("J2"))

    claimed_a = webhook_store.claim_batch("worker-a", lease_seconds=30)
    claimed_b = webhook_store.claim_batch("worker-b", lease_seconds=30)
    claimed_c = webhook_store.claim_batch("worker-c", lease_seconds=30)

    assert [item.id for item in claimed_a] == [first.id]
    assert claimed_a[0].claimed_by == "worker-a"
    assert [item.id for item in claimed_b] == [second.id]
    assert claimed_c == []

    clock.advance(seconds=31)
    reclaimed = webhook_store.claim_batch("worker-c", lease_seconds=30)
    assert [item.id for item in reclaimed] == [first.id]


def test_release_only_applies_to_the_lease_holder(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    webhook_store.claim_batch("worker-a")

    webhook_store.release(record.id, "worker-b")
    assert webhook_store.get(record.id).claimed_by == "worker-a"

    webhook_store.release(record.id, "worker-a")
    assert webhook_store.get(record.id).claimed_by is None
    assert [item.id for item in webhook_store.claim_batch("worker-b")] == [record.id]


def test_claim_batch_honours_exclusions(webhook_store, connection) -> None:
    first = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    second = webhook_store.enqueue(connection.id, "job_created", "wh-2", _job_payload("J2"))

    claimed = webhook_store.claim_batch("worker-a", limit=5, exclude_ids={first.id})
    assert [item.id for item in claimed] == [second.id]


def test_counts_by_status(webhook_store, connection) -> None:
    first = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    second = webhook_store.enqueue(connection.id, "job_created", "wh-2", _job_payload("J2"))
    webhook_store.enqueue(connection.id, "job_created", "wh-3", _job_payload("J3"))
    webhook_store.mark_processed(first.id)
    webhook_store.mark_failed(second.id, "boom")

    assert webhook_store.counts_by_status() == {"pending": 1, "processed": 1, "failed": 1}


def test_expired_lease_holder_cannot_finish_the_record(webhook_store, connection, clock) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    webhook_store.claim_batch("worker-a", lease_seconds=5)
    clock.advance(seconds=6)
    webhook_store.claim_batch("worker-b", lease_seconds=30)

    with pytest.raises(LeaseLostError):
        webhook_store.mark_processed(record.id, claimed_by="worker-a")
    with pytest.raises(LeaseLostError):
        webhook_store.mark_failed(record.id, "late failure", claimed_by="worker-a")

    stored = webhook_store.get(record.id)
    assert stored.status == WebhookStatus.pending
    assert stored.claimed_by == "worker-b"

    done = webhook_store.mark_processed(record.id, claimed_by="worker-b")
    assert done.status == WebhookStatus.processed
    assert done.claimed_by is None


def test_unleased_callers_wait_for_a_live_lease(webhook_store, connection, clock) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    webhook_store.mark_failed(record.id, "boom")
    webhook_store.claim_batch("worker-a", status=WebhookStatus.failed, lease_seconds=30)

    with pytest.raises(LeaseLostError):
        webhook_store.reset_for_retry(record.id)
    with pytest.raises(LeaseLostError):
        webhook_store.mark_processed(record.id)

    clock.advance(seconds=31)
    assert webhook_store.reset_for_retry(record.id).status == WebhookStatus.pending


def test_own_lease_survives_reset_for_retry(webhook_store, connection) -> None:
    record = webhook_store.enqueue(connection.id, "job_created", "wh-1", _job_payload("J1"))
    webhook_store.mark_failed(record.id, "boom")
    webhook_store.claim_batch("worker-a", status=WebhookStatus.failed)

    reset = webhook_store.reset_for_retry(record.id, claimed_by="worker-a")

    assert reset.status == WebhookStatus.pending
    assert reset.claimed_by == "worker-a"
    assert webhook_store.claim_batch("worker-b") == []
