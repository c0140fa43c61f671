from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from .conversation_store import ConversationRecord, ConversationRepository, MessageRecord
from .email_headers import EmailThreadingHeaders
from .models import MessageDirection, MessageSenderType, MessageStatus

logger = logging.getLogger(__name__)


def generate_thread_id(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return f"thread-{int(current.timestamp() * 1000)}-{secrets.token_hex(4)}"


class ConversationService:
    """Resolves inbound mail to a conversation and keeps its message log."""

    def __init__(self, *, repository: ConversationRepository) -> None:
        self._repository = repository

    def resolve_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        headers: EmailThreadingHeaders,
        subject: str | None = None,
        campaign_id: str | None = None,
    ) -> ConversationRecord:
        """Find or create the conversation an email belongs to.

        Lookup order is the thread token, then the message being replied to
        (In-Reply-To, then References newest first), then the active
        conversation for the agent/lead/campaign identity. Creation races are
        settled by the store's uniqueness rules: the loser re-reads.
        """
        if headers.thread_id:
            by_thread = self._repository.find_conversation_by_thread_id(headers.thread_id)
            if by_thread is not None:
                return by_thread

        by_reply = self._find_by_replied_message(headers)
        if by_reply is not None:
            return by_reply

        active = self._repository.find_active_conversation(
            agent_id=agent_id,
            lead_id=lead_id,
            campaign_id=campaign_id,
        )
        if active is not None:
            return active

        thread_id = headers.thread_id or generate_thread_id()
        created = self._repository.create_conversation(
            agent_id=agent_id,
            lead_id=lead_id,
            campaign_id=campaign_id,
            thread_id=thread_id,
            initial_message_id=headers.message_id,
            subject=subject,
        )
        if created is not None:
            logger.info("created conversation %s with thread %s", created.conversation_id, created.thread_id)
            return created

        winner = self._repository.find_conversation_by_thread_id(thread_id) or self._repository.find_active_conversation(
            agent_id=agent_id,
            lead_id=lead_id,
            campaign_id=campaign_id,
        )
        if winner is None:
            raise RuntimeError(f"conversation create conflicted but no winner found for thread {thread_id}")
        return winner

    def _find_by_replied_message(self, headers: EmailThreadingHeaders) -> ConversationRecord | None:
        candidates: list[str] = []
        if headers.in_reply_to:
            candidates.append(headers.in_reply_to)
        candidates.extend(reversed(headers.references))
        for candidate in candidates:
            message = self._repository.find_message_by_provider_message_id(candidate)
            if message is not None:
                return self._repository.get_conversation(message.conversation_id)
        return None

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        sender_type: MessageSenderType,
        content: str,
        status: MessageStatus,
        provider_message_id: str | None = None,
        in_reply_to: str | None = None,
        references: tuple[str, ...] = (),
        subject: str | None = None,
        ai_confidence: float | None = None,
    ) -> tuple[MessageRecord, ConversationRecord]:
        message = self._repository.append_message(
            conversation_id=conversation_id,
            direction=direction,
            sender_type=sender_type,
            provider_message_id=provider_message_id,
            in_reply_to=in_reply_to,
            references=references,
            subject=subject,
            content=content,
            status=status,
            ai_confidence=ai_confidence,
        )
        conversation = self._repository.refresh_conversation_metrics(conversation_id)
        return message, conversation

    def recent_messages(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        return self._repository.list_messages(conversation_id, limit=limit)

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        return conversation
