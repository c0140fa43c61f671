from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from .conversation_store import (
    AgentRecord,
    ConversationRecord,
    ConversationRepository,
    HandoverRecord,
)
from .llm import GenerationError, SummaryGenerator
from .models import HandoverTriggerType

logger = logging.getLogger(__name__)

SUMMARY_WINDOW = 10


def classify_trigger_type(reason: str) -> HandoverTriggerType:
    lowered = reason.lower()
    if "keyword" in lowered or "mentioned" in lowered:
        return "keyword"
    if "message limit" in lowered or "max" in lowered:
        return "max_messages"
    if "confidence" in lowered:
        return "low_confidence"
    return "manual"


class HandoverNotifier(Protocol):
    def notify(
        self,
        *,
        agent: AgentRecord,
        conversation: ConversationRecord,
        handover: HandoverRecord,
    ) -> None: ...


class LoggingHandoverNotifier:
    def notify(
        self,
        *,
        agent: AgentRecord,
        conversation: ConversationRecord,
        handover: HandoverRecord,
    ) -> None:
        logger.info(
            "handover %s for conversation %s (%s) ready for %s",
            handover.handover_id,
            conversation.conversation_id,
            handover.trigger_type,
            agent.handover_email or agent.sender_email,
        )


class HandoverCoordinator:
    def __init__(
        self,
        *,
        repository: ConversationRepository,
        summarizer: SummaryGenerator,
        notifier: HandoverNotifier | None = None,
    ) -> None:
        self._repository = repository
        self._summarizer = summarizer
        self._notifier = notifier or LoggingHandoverNotifier()

    def trigger_handover(
        self,
        *,
        agent: AgentRecord,
        conversation: ConversationRecord,
        reason: str,
    ) -> HandoverRecord | None:
        """Hand the conversation to a human.

        Returns the new handover, or ``None`` when one is already pending.
        """
        if self._repository.find_pending_handover(conversation.conversation_id) is not None:
            logger.info("handover already pending for conversation %s", conversation.conversation_id)
            return None

        summary = self.summarize(conversation)
        handover = self._repository.create_handover(
            conversation_id=conversation.conversation_id,
            trigger_type=classify_trigger_type(reason),
            trigger_detail=reason,
            conversation_summary=summary,
        )
        if handover is None:
            logger.info("lost handover race for conversation %s", conversation.conversation_id)
            return None

        updated = self._repository.mark_conversation_handed_over(
            conversation_id=conversation.conversation_id,
            reason=reason,
            handed_over_at=datetime.now(timezone.utc),
        )
        logger.info(
            "conversation %s handed over: %s",
            conversation.conversation_id,
            reason,
        )

        try:
            self._notifier.notify(agent=agent, conversation=updated, handover=handover)
        except Exception:
            logger.exception("handover notification failed for conversation %s", conversation.conversation_id)
        return handover

    def summarize(self, conversation: ConversationRecord) -> str:
        messages = self._repository.list_messages(conversation.conversation_id, limit=SUMMARY_WINDOW)
        if not messages:
            return "New conversation with no messages yet."
        try:
            return self._summarizer.summarize(messages)
        except GenerationError as exc:
            logger.warning(
                "summary generation failed for conversation %s: %s (%s)",
                conversation.conversation_id,
                exc.message,
                exc.error_code,
            )
        except Exception:
            logger.exception("summary generator raised for conversation %s", conversation.conversation_id)
        last_lead_message = next((item for item in reversed(messages) if item.sender_type == "lead"), None)
        if last_lead_message is None:
            return "Conversation requires human attention."
        return f'Customer\'s last message: "{last_lead_message.content[:100]}..."'
