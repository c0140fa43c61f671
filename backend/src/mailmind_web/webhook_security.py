from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import Settings

SIGNATURE_MAX_AGE_SECONDS = 300


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def compute_mailgun_signature(*, signing_key: str, timestamp: str, token: str) -> str:
    return hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}{token}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_mailgun_signature(
    *,
    signing_key: str,
    timestamp: str | None,
    token: str | None,
    signature: str | None,
    max_age_seconds: int = SIGNATURE_MAX_AGE_SECONDS,
    now: datetime | None = None,
) -> WebhookSignatureVerification:
    secret = signing_key.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    timestamp_text = (timestamp or "").strip()
    token_text = (token or "").strip()
    if not timestamp_text:
        return WebhookSignatureVerification(verified=False, reason="timestamp_missing")
    if not token_text:
        return WebhookSignatureVerification(verified=False, reason="token_missing")

    normalized_signature = _normalize_signature(signature)
    if normalized_signature is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    try:
        event_epoch = int(timestamp_text)
    except ValueError:
        return WebhookSignatureVerification(verified=False, reason="timestamp_invalid")

    # A matching digest does not rescue a stale timestamp.
    current_time = now or datetime.now(timezone.utc)
    current_epoch = int(current_time.timestamp())
    if abs(current_epoch - event_epoch) > max(0, max_age_seconds):
        return WebhookSignatureVerification(verified=False, reason="timestamp_out_of_window")

    expected_signature = compute_mailgun_signature(
        signing_key=secret,
        timestamp=timestamp_text,
        token=token_text,
    )
    if not hmac.compare_digest(normalized_signature, expected_signature):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)


def verify_inbound_webhook(
    *,
    settings: Settings,
    timestamp: str | None,
    token: str | None,
    signature: str | None,
    now: datetime | None = None,
) -> WebhookSignatureVerification:
    if settings.mailgun_webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)
    return verify_mailgun_signature(
        signing_key=settings.mailgun_webhook_signing_key,
        timestamp=timestamp,
        token=token,
        signature=signature,
        max_age_seconds=settings.mailgun_webhook_max_age_seconds,
        now=now,
    )
