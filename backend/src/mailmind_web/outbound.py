from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Sequence

from .conversation_store import AgentRecord, ConversationRecord, MessageRecord
from .conversations import ConversationService
from .email_headers import EmailThreadingHeaders, normalize_message_id, truncate_references
from .mail_transport import EmailTransport, OutboundEmail

logger = logging.getLogger(__name__)


def generate_message_id(*, subdomain: str, base_domain: str, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return f"<{int(current.timestamp() * 1000)}.{secrets.token_hex(4)}@{subdomain}.{base_domain}>"


def reply_subject(subject: str | None) -> str:
    normalized = (subject or "").strip()
    if normalized.lower().startswith("re:"):
        return normalized
    return f"Re: {normalized}"


def select_in_reply_to(
    *,
    inbound: EmailThreadingHeaders,
    history: Sequence[MessageRecord],
) -> str | None:
    """Pick the system-sent Message-ID this reply answers.

    Only ids of our own outbound messages qualify, so the lead's own
    Message-ID is never echoed back. ``None`` means we never wrote into the
    conversation.
    """
    outbound_ids = [
        message.provider_message_id
        for message in history
        if message.direction == "outbound" and message.provider_message_id
    ]
    known = set(outbound_ids)
    candidates = [inbound.in_reply_to] if inbound.in_reply_to else []
    candidates.extend(reversed(inbound.references))
    for candidate in candidates:
        if candidate in known:
            return candidate
    return outbound_ids[-1] if outbound_ids else None


def build_threading_headers(
    *,
    message_id: str,
    thread_id: str,
    in_reply_to: str | None,
    references: Sequence[str],
) -> EmailThreadingHeaders:
    chain = list(truncate_references(tuple(references)))
    if in_reply_to and in_reply_to not in chain:
        chain.append(in_reply_to)
    return EmailThreadingHeaders(
        message_id=normalize_message_id(message_id),
        in_reply_to=in_reply_to,
        references=tuple(chain),
        thread_id=thread_id,
    )


def format_wire_headers(headers: EmailThreadingHeaders) -> dict[str, str]:
    wire: dict[str, str] = {}
    if headers.message_id:
        wire["Message-ID"] = f"<{headers.message_id}>"
    if headers.in_reply_to:
        wire["In-Reply-To"] = f"<{headers.in_reply_to}>"
    if headers.references:
        wire["References"] = " ".join(f"<{value}>" for value in headers.references)
    if headers.thread_id:
        wire["X-Thread-ID"] = headers.thread_id
    return wire


class OutboundDispatcher:
    def __init__(
        self,
        *,
        conversations: ConversationService,
        transport: EmailTransport,
        base_domain: str,
    ) -> None:
        self._conversations = conversations
        self._transport = transport
        self._base_domain = base_domain

    def send_reply(
        self,
        *,
        agent: AgentRecord,
        conversation: ConversationRecord,
        to: str,
        subject: str | None,
        inbound: EmailThreadingHeaders,
        content: str,
        ai_confidence: float | None,
    ) -> MessageRecord | None:
        """Send a threaded reply and record it.

        Returns ``None`` when the transport refuses the mail; the conversation
        is left untouched and the send is not retried.
        """
        history = self._conversations.recent_messages(conversation.conversation_id, limit=None)
        in_reply_to = select_in_reply_to(inbound=inbound, history=history)
        prior_chain = inbound.references or tuple(
            message.provider_message_id for message in history if message.provider_message_id
        )
        threading = build_threading_headers(
            message_id=generate_message_id(subdomain=agent.subdomain, base_domain=self._base_domain),
            thread_id=conversation.thread_id,
            in_reply_to=in_reply_to,
            references=prior_chain,
        )
        wire_headers = format_wire_headers(threading)
        wire_headers["X-Agent-ID"] = agent.agent_id
        final_subject = reply_subject(subject or conversation.subject)

        result = self._transport.send(
            OutboundEmail(
                to=to,
                subject=final_subject,
                text=content,
                from_name=agent.sender_name,
                from_email=agent.sender_email,
                sending_domain=f"{agent.subdomain}.{self._base_domain}",
                headers=wire_headers,
            )
        )
        if not result.success:
            logger.warning(
                "reply for conversation %s not sent: %s (%s)",
                conversation.conversation_id,
                result.error_message,
                result.error_code,
            )
            return None

        message, _ = self._conversations.append_message(
            conversation_id=conversation.conversation_id,
            direction="outbound",
            sender_type="agent",
            content=content,
            status="sent",
            provider_message_id=threading.message_id,
            in_reply_to=threading.in_reply_to,
            references=threading.references,
            subject=final_subject,
            ai_confidence=ai_confidence,
        )
        logger.info(
            "sent reply %s for conversation %s",
            threading.message_id,
            conversation.conversation_id,
        )
        return message
