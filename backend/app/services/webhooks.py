from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from typing import Optional

from backend.app.models import ConnectionRecord

logger = logging.getLogger("ats_pipeline.webhooks")

# Checked in order; the first non-empty header wins.
SIGNATURE_HEADERS = ("x-ats-signature", "x-webhook-signature", "x-hub-signature-256")


class SignatureVerificationError(Exception):
    pass


def webhook_secret_for(connection: ConnectionRecord, default_secret: str) -> str:
    """A connection's own ``configuration.webhook_secret`` overrides the global one."""
    override = connection.configuration.get("webhook_secret")
    if isinstance(override, str) and override.strip():
        return override.strip()
    return default_secret


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _digest_from_header(value: str) -> str:
    # Providers send "sha256=<hex>", "sha256 <hex>" or the bare hex digest.
    text = value.strip()
    for separator in ("=", " "):
        prefix = f"sha256{separator}"
        if text.lower().startswith(prefix):
            return text[len(prefix):].strip()
    return text


def _signature_header(headers: Mapping[str, str]) -> Optional[str]:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value and value.strip():
            return value
    return None


def verify_ats_signature(headers: Mapping[str, str], raw_body: bytes, secret: str) -> None:
    """No-op when no shared secret is configured."""
    if not secret:
        return
    signature = _signature_header(headers)
    if not signature:
        raise SignatureVerificationError("missing ats signature header")
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, _digest_from_header(signature).lower()):
        logger.warning("webhook_signature_mismatch body_bytes=%s", len(raw_body))
        raise SignatureVerificationError("invalid ats signature")
