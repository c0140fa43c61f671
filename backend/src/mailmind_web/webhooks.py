from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .agent_responder import CONTEXT_WINDOW, AgentResponder
from .config import Settings
from .conversation_store import ConversationRepository, WebhookEventRecord
from .conversations import ConversationService
from .deduplication import EventDeduplicator
from .email_headers import EmailThreadingHeaders, extract_email_address, parse_email_headers
from .handover import HandoverCoordinator
from .models import MailgunInboundPayload, WebhookStatus
from .outbound import OutboundDispatcher
from .webhook_security import verify_inbound_webhook

logger = logging.getLogger(__name__)

INBOUND_EVENT_TYPE = "inbound_email"


class WebhookAuthenticationError(ValueError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"webhook signature rejected: {reason}")
        self.reason = reason


class WebhookValidationError(ValueError):
    pass


@dataclass(frozen=True)
class WebhookOutcome:
    status: WebhookStatus
    conversation_id: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class SweepReport:
    examined: int = 0
    completed_without_replay: int = 0
    replayed: int = 0
    failed: int = 0


class InboundEmailPipeline:
    """Runs one inbound email from the provider webhook to the threaded reply."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: ConversationRepository,
        deduplicator: EventDeduplicator,
        conversations: ConversationService,
        responder: AgentResponder,
        handover: HandoverCoordinator,
        dispatcher: OutboundDispatcher,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._deduplicator = deduplicator
        self._conversations = conversations
        self._responder = responder
        self._handover = handover
        self._dispatcher = dispatcher

    def authenticate(
        self,
        *,
        timestamp: str | None,
        token: str | None,
        signature: str | None,
        now: datetime | None = None,
    ) -> None:
        """Check the provider signature; runs before the body is parsed."""
        verification = verify_inbound_webhook(
            settings=self._settings,
            timestamp=timestamp,
            token=token,
            signature=signature,
            now=now,
        )
        if not verification.verified:
            reason = verification.reason or "unknown"
            if self._settings.mailgun_webhook_signature_mode == "log_only":
                logger.warning("webhook signature check failed (%s); continuing in log_only mode", reason)
            else:
                logger.warning("webhook signature check failed: %s", reason)
                raise WebhookAuthenticationError(reason)

    def handle(self, payload: MailgunInboundPayload) -> WebhookOutcome:
        fields = payload.provider_fields()
        headers = parse_email_headers(fields)
        if not headers.message_id:
            raise WebhookValidationError("Message-ID header is required")

        provider_message_id = headers.message_id
        event = self._deduplicator.claim(
            provider_message_id,
            event_type=INBOUND_EVENT_TYPE,
            raw_payload=fields,
        )
        if event is None:
            return WebhookOutcome(status="duplicate")

        try:
            outcome = self.process(payload, headers)
        except Exception as exc:
            logger.exception("inbound email %s failed", provider_message_id)
            self._deduplicator.fail(provider_message_id, f"{type(exc).__name__}: {exc}")
            raise
        self._deduplicator.complete(provider_message_id)
        return outcome

    def process(self, payload: MailgunInboundPayload, headers: EmailThreadingHeaders) -> WebhookOutcome:
        """Everything after authentication and dedupe; also the sweeper's replay entry."""
        recipient = extract_email_address(payload.recipient)
        agent = self._repository.find_agent_by_email(recipient)
        if agent is None:
            logger.warning("no active agent for recipient %s; dropping inbound %s", recipient, headers.message_id)
            return WebhookOutcome(status="processed")

        lead_email = extract_email_address(payload.sender)
        lead = self._repository.get_or_create_lead(lead_email)
        conversation = self._conversations.resolve_conversation(
            agent_id=agent.agent_id,
            lead_id=lead.lead_id,
            headers=headers,
            subject=payload.subject or None,
        )
        history = self._conversations.recent_messages(conversation.conversation_id, limit=CONTEXT_WINDOW)
        inbound, conversation = self._conversations.append_message(
            conversation_id=conversation.conversation_id,
            direction="inbound",
            sender_type="lead",
            content=payload.content,
            status="delivered",
            provider_message_id=headers.message_id,
            in_reply_to=headers.in_reply_to or (headers.references[-1] if headers.references else None),
            references=headers.references,
            subject=payload.subject or None,
        )

        if conversation.status != "active":
            logger.info(
                "conversation %s is %s; stored inbound without automated reply",
                conversation.conversation_id,
                conversation.status,
            )
            return WebhookOutcome(
                status="processed",
                conversation_id=conversation.conversation_id,
                message_id=inbound.message_id,
            )

        response = self._responder.generate_response(
            agent=agent,
            conversation=conversation,
            history=history,
            lead_message=payload.content,
        )
        if response.should_handover:
            self._handover.trigger_handover(
                agent=agent,
                conversation=conversation,
                reason=response.handover_reason or "Handover requested",
            )

        self._dispatcher.send_reply(
            agent=agent,
            conversation=conversation,
            to=lead.email,
            subject=payload.subject or None,
            inbound=headers,
            content=response.content,
            ai_confidence=response.confidence,
        )
        return WebhookOutcome(
            status="processed",
            conversation_id=conversation.conversation_id,
            message_id=inbound.message_id,
        )


class WebhookRecoverySweeper:
    """Re-drives webhook events that were claimed but never completed."""

    def __init__(
        self,
        *,
        pipeline: InboundEmailPipeline,
        deduplicator: EventDeduplicator,
        repository: ConversationRepository,
    ) -> None:
        self._pipeline = pipeline
        self._deduplicator = deduplicator
        self._repository = repository

    def sweep(self, *, older_than_seconds: int, now: datetime | None = None) -> SweepReport:
        current = now or datetime.now(timezone.utc)
        cutoff = current - timedelta(seconds=max(0, older_than_seconds))
        examined = completed = replayed = failed = 0
        for event in self._deduplicator.find_stuck_events(older_than=cutoff):
            examined += 1
            result = self._recover(event)
            if result == "completed":
                completed += 1
            elif result == "replayed":
                replayed += 1
            else:
                failed += 1
        return SweepReport(
            examined=examined,
            completed_without_replay=completed,
            replayed=replayed,
            failed=failed,
        )

    def _recover(self, event: WebhookEventRecord) -> str:
        provider_message_id = event.provider_message_id
        # The inbound already landed, so a reply may have gone out too; never send twice.
        if self._repository.find_message_by_provider_message_id(provider_message_id) is not None:
            self._deduplicator.complete(provider_message_id)
            logger.info("stuck event %s already stored; marked processed", provider_message_id)
            return "completed"

        try:
            payload = MailgunInboundPayload.model_validate(event.raw_payload)
            self._pipeline.process(payload, parse_email_headers(payload.provider_fields()))
        except Exception as exc:
            logger.exception("replay of stuck event %s failed", provider_message_id)
            self._deduplicator.fail(provider_message_id, f"{type(exc).__name__}: {exc}")
            return "failed"
        self._deduplicator.complete(provider_message_id)
        logger.info("replayed stuck event %s", provider_message_id)
        return "replayed"
