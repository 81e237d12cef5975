from __future__ import annotations

from backend.app.models import WebhookStatus

ALLOWED_TRANSITIONS = {
    WebhookStatus.pending: {WebhookStatus.processed, WebhookStatus.failed},
    WebhookStatus.failed: {WebhookStatus.pending, WebhookStatus.processed},
    WebhookStatus.processed: set(),
}


def can_transition(from_status: WebhookStatus, to_status: WebhookStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]
