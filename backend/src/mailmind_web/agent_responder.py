from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .conversation_store import AgentRecord, ConversationRecord, MessageRecord
from .llm import GenerationError, GenerationRequest, ResponseGenerator

logger = logging.getLogger(__name__)

HANDOVER_SENTINEL = "[HANDOVER_NEEDED]"
CONTEXT_WINDOW = 5
BASE_CONFIDENCE = 0.8

KEYWORD_HANDOVER_REPLY = (
    "I'd be happy to connect you with one of our specialists who can better assist you with that. "
    "They'll be in touch with you shortly."
)
MESSAGE_LIMIT_REPLY = (
    "I've enjoyed our conversation! To provide you with the best service, I'd like to connect you with "
    "one of our specialists who can help you with the next steps. They'll be reaching out to you soon."
)
GENERATION_FAILURE_REPLY = (
    "Thank you for your message. I'll make sure one of our team members follows up with you shortly."
)

_UNCERTAINTY_MARKERS = (
    "i think",
    "maybe",
    "possibly",
    "might",
    "could be",
    "not sure",
    "i believe",
    "perhaps",
    "probably",
)


@dataclass(frozen=True)
class AgentResponse:
    content: str
    confidence: float
    should_handover: bool
    handover_reason: str | None = None


def build_system_prompt(agent: AgentRecord, *, ai_message_count: int = 0) -> str:
    prompt = agent.system_prompt
    for key, value in agent.prompt_variables.items():
        prompt = prompt.replace(f"{{{key}}}", str(value))

    if agent.handover_triggers:
        trigger_lines = "\n".join(f"- {trigger}" for trigger in agent.handover_triggers)
        prompt += (
            "\n\n## Handover Triggers\n"
            "If the customer mentions any of these topics, politely indicate that you'll connect them "
            f"with a specialist:\n{trigger_lines}\n\n"
            f"When a handover is needed, end your response with: {HANDOVER_SENTINEL}"
        )

    # Budget guidance only kicks in for the last two automated replies.
    if agent.max_messages and ai_message_count >= agent.max_messages - 2:
        prompt += (
            f"\n\nNote: You are limited to {agent.max_messages} exchanges. "
            f"After {agent.max_messages - 2} messages, start guiding the conversation toward a concrete next step."
        )
    return prompt


def build_conversation_context(messages: Sequence[MessageRecord]) -> str:
    if not messages:
        return "This is the first message in the conversation."
    lines = [
        f"{'Assistant' if message.sender_type == 'agent' else 'Customer'}: {message.content}"
        for message in list(messages)[-CONTEXT_WINDOW:]
    ]
    return "Previous conversation:\n" + "\n\n".join(lines)


def check_handover_triggers(message: str, triggers: Sequence[str]) -> str | None:
    """Return the first configured trigger mentioned in ``message``."""
    lowered = message.lower()
    for trigger in triggers:
        if trigger and trigger.lower() in lowered:
            return trigger
    return None


def calculate_confidence(reply: str) -> float:
    confidence = BASE_CONFIDENCE
    if len(reply) < 20:
        confidence -= 0.2
    lowered = reply.lower()
    for marker in _UNCERTAINTY_MARKERS:
        if marker in lowered:
            confidence -= 0.1
    if reply.count("?") > reply.count("."):
        confidence -= 0.1
    return round(max(0.0, min(1.0, confidence)), 2)


def _generation_failure() -> AgentResponse:
    return AgentResponse(
        content=GENERATION_FAILURE_REPLY,
        confidence=0.0,
        should_handover=True,
        handover_reason="AI service error",
    )


class AgentResponder:
    """Decides the automated reply for one inbound message.

    Keyword triggers win over the message limit, and both short-circuit the
    generator. A generator failure never propagates: the lead gets a fixed
    apology and the conversation is handed over.
    """

    def __init__(self, *, generator: ResponseGenerator) -> None:
        self._generator = generator

    def generate_response(
        self,
        *,
        agent: AgentRecord,
        conversation: ConversationRecord,
        history: Sequence[MessageRecord],
        lead_message: str,
    ) -> AgentResponse:
        trigger = check_handover_triggers(lead_message, agent.handover_triggers)
        if trigger is not None:
            return AgentResponse(
                content=KEYWORD_HANDOVER_REPLY,
                confidence=1.0,
                should_handover=True,
                handover_reason=f'Customer mentioned: "{trigger}"',
            )

        if agent.max_messages and conversation.ai_message_count >= agent.max_messages:
            return AgentResponse(
                content=MESSAGE_LIMIT_REPLY,
                confidence=1.0,
                should_handover=True,
                handover_reason=f"Reached maximum message limit ({agent.max_messages})",
            )

        request = GenerationRequest(
            system_prompt=build_system_prompt(agent, ai_message_count=conversation.ai_message_count),
            context=build_conversation_context(history),
            user_message=lead_message,
        )
        try:
            raw_reply = self._generator.generate(request)
        except GenerationError as exc:
            logger.warning(
                "response generation failed for conversation %s: %s (%s)",
                conversation.conversation_id,
                exc.message,
                exc.error_code,
            )
            return _generation_failure()
        except Exception:
            logger.exception("response generator raised for conversation %s", conversation.conversation_id)
            return _generation_failure()

        sentinel_present = HANDOVER_SENTINEL in raw_reply
        reply = raw_reply.replace(HANDOVER_SENTINEL, "").strip()
        confidence = calculate_confidence(reply)

        threshold = agent.confidence_threshold
        low_confidence = threshold is not None and confidence < threshold
        if sentinel_present:
            reason: str | None = "AI determined handover needed"
        elif low_confidence:
            reason = f"Low confidence ({confidence:.2f} < {threshold})"
        else:
            reason = None

        return AgentResponse(
            content=reply,
            confidence=confidence,
            should_handover=sentinel_present or low_confidence,
            handover_reason=reason,
        )
