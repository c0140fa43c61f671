from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .conversation_store import ConversationRepository, WebhookEventRecord
from .email_headers import normalize_message_id

logger = logging.getLogger(__name__)


def normalize_provider_message_id(value: str | None) -> str | None:
    return normalize_message_id(value)


class EventDeduplicator:
    """Idempotency guard for at-least-once webhook deliveries.

    The webhook event insert is the linearization point: whichever delivery
    inserts the row first owns the event, every other delivery is a duplicate.
    """

    def __init__(self, *, repository: ConversationRepository, provider: str = "mailgun") -> None:
        self._repository = repository
        self._provider = provider

    def is_duplicate(self, provider_message_id: str) -> bool:
        if self._repository.get_webhook_event(provider_message_id) is not None:
            return True
        return self._repository.find_message_by_provider_message_id(provider_message_id) is not None

    def claim(
        self,
        provider_message_id: str,
        *,
        event_type: str,
        raw_payload: dict[str, Any],
    ) -> WebhookEventRecord | None:
        """Return the new event row, or ``None`` when the delivery is a duplicate."""
        if self.is_duplicate(provider_message_id):
            logger.info("duplicate webhook delivery for message %s", provider_message_id)
            return None
        event = self._repository.insert_webhook_event(
            provider_message_id=provider_message_id,
            provider=self._provider,
            event_type=event_type,
            raw_payload=raw_payload,
        )
        if event is None:
            logger.info("lost webhook insert race for message %s; treating as duplicate", provider_message_id)
        return event

    def complete(self, provider_message_id: str) -> None:
        self._repository.mark_webhook_event_processed(provider_message_id)

    def fail(self, provider_message_id: str, error: str) -> None:
        self._repository.record_webhook_event_error(provider_message_id, error)

    def find_stuck_events(self, *, older_than: datetime) -> list[WebhookEventRecord]:
        return self._repository.list_unprocessed_webhook_events(created_before=older_than)
