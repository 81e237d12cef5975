from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from backend.app.models import WebhookRecord, WebhookStatus


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded-attempt retry gate shared by webhook processing and its backoff schedule.

    The attempt bound is the only hard limit. The backoff only decides when a
    failed record becomes eligible again: ``base * 2 ** (retry_count - 1)``,
    capped at ``max_backoff_seconds``, plus up to ``jitter_ratio`` of random spread.
    """

    max_attempts: int = 3
    backoff_seconds: int = 60
    max_backoff_seconds: int = 3600
    jitter_ratio: float = 0.2

    def is_retryable(self, record: WebhookRecord) -> bool:
        return record.status == WebhookStatus.failed and record.retry_count < self.max_attempts

    def is_exhausted(self, record: WebhookRecord) -> bool:
        return record.retry_count >= self.max_attempts

    def next_attempt_number(self, record: WebhookRecord) -> int:
        return record.retry_count + 1

    def backoff_delay(
        self,
        retry_count: int,
        *,
        rng: Optional[Callable[[], float]] = None,
    ) -> timedelta:
        if retry_count <= 0:
            return timedelta(0)
        base = min(self.backoff_seconds * (2 ** (retry_count - 1)), self.max_backoff_seconds)
        spread = base * self.jitter_ratio * (rng or random.random)()
        return timedelta(seconds=base + spread)

    def next_eligible_at(
        self,
        retry_count: int,
        now: datetime,
        *,
        rng: Optional[Callable[[], float]] = None,
    ) -> datetime:
        return now + self.backoff_delay(retry_count, rng=rng)

    def is_due(self, record: WebhookRecord, now: datetime) -> bool:
        return record.next_attempt_utc is None or record.next_attempt_utc <= now
