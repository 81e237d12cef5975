from __future__ import annotations

from datetime import datetime, timedelta

from backend.app.models import WebhookEventType, WebhookRecord, WebhookStatus
from backend.app.services.retry_policy import RetryPolicy
from backend.app.services.workflow import can_transition

NOW = datetime(2026, 1, 5, 9, 0, 0)


def _record(status: WebhookStatus, retry_count: int, next_attempt=None) -> WebhookRecord:
    return WebhookRecord(
        id=1,
        connection_id=1,
        external_webhook_id="wh-1",
        event_type=WebhookEventType.job_created,
        raw_event_type="job_created",
        status=status,
        retry_count=retry_count,
        next_attempt_utc=next_attempt,
        received_at_utc=NOW,
        updated_at_utc=NOW,
    )


def test_only_failed_records_under_the_limit_are_retryable() -> None:
    policy = RetryPolicy(max_attempts=3)
    assert policy.is_retryable(_record(WebhookStatus.failed, 0))
    assert policy.is_retryable(_record(WebhookStatus.failed, 2))
    assert not policy.is_retryable(_record(WebhookStatus.failed, 3))
    assert not policy.is_retryable(_record(WebhookStatus.pending, 0))
    assert not policy.is_retryable(_record(WebhookStatus.processed, 1))


def test_exhaustion_and_attempt_numbers() -> None:
    policy = RetryPolicy(max_attempts=3)
    assert policy.is_exhausted(_record(WebhookStatus.failed, 3))
    assert not policy.is_exhausted(_record(WebhookStatus.failed, 2))
    assert policy.next_attempt_number(_record(WebhookStatus.failed, 2)) == 3


def test_backoff_doubles_and_caps() -> None:
    policy = RetryPolicy(backoff_seconds=60, max_backoff_seconds=300, jitter_ratio=0.0)
    assert policy.backoff_delay(0) == timedelta(0)
    assert policy.backoff_delay(1) == timedelta(seconds=60)
    assert policy.backoff_delay(2) == timedelta(seconds=120)
    assert policy.backoff_delay(3) == timedelta(seconds=240)
    assert policy.backoff_delay(4) == timedelta(seconds=300)
    assert policy.backoff_delay(12) == timedelta(seconds=300)


def test_jitter_spreads_up_to_the_ratio() -> None:
    policy = RetryPolicy(backoff_seconds=100, jitter_ratio=0.2)
    assert policy.backoff_delay(1, rng=lambda: 0.0) == timedelta(seconds=100)
    assert policy.backoff_delay(1, rng=lambda: 1.0) == timedelta(seconds=120)
    assert policy.backoff_delay(1, rng=lambda: 0.5) == timedelta(seconds=110)


def test_due_once_the_eligibility_time_passes() -> None:
    policy = RetryPolicy()
    eligible_at = policy.next_eligible_at(1, NOW, rng=lambda: 0.0)
    assert eligible_at == NOW + timedelta(seconds=60)

    waiting = _record(WebhookStatus.failed, 1, next_attempt=eligible_at)
    assert not policy.is_due(waiting, NOW)
    assert policy.is_due(waiting, eligible_at)
    assert policy.is_due(_record(WebhookStatus.failed, 1), NOW)


def test_status_transitions() -> None:
    assert can_transition(WebhookStatus.pending, WebhookStatus.processed)
    assert can_transition(WebhookStatus.pending, WebhookStatus.failed)
    assert can_transition(WebhookStatus.failed, WebhookStatus.pending)
    assert can_transition(WebhookStatus.failed, WebhookStatus.processed)
    assert not can_transition(WebhookStatus.processed, WebhookStatus.pending)
    assert not can_transition(WebhookStatus.processed, WebhookStatus.failed)
    assert not can_transition(WebhookStatus.pending, WebhookStatus.pending)
