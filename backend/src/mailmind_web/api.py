from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from .agent_responder import AgentResponder
from .config import Settings, get_settings
from .conversation_store import ConversationRepository, create_conversation_repository
from .conversations import ConversationService
from .deduplication import EventDeduplicator
from .handover import HandoverCoordinator, HandoverNotifier
from .llm import HttpChatCompletionClient, ResponseGenerator, StubResponseGenerator, StubSummaryGenerator, SummaryGenerator
from .mail_transport import EmailTransport, MailgunEmailTransport, StubEmailTransport
from .models import MailgunInboundPayload, WebhookProcessResponse
from .outbound import OutboundDispatcher
from .webhooks import (
    InboundEmailPipeline,
    WebhookAuthenticationError,
    WebhookRecoverySweeper,
    WebhookValidationError,
)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/webhooks", tags=["webhooks"])


def _create_repository(settings: Settings) -> ConversationRepository:
    return create_conversation_repository(
        backend=settings.conversation_store_backend,
        database_url=settings.database_url,
    )


def _create_transport(settings: Settings) -> EmailTransport:
    if settings.email_transport_type == "mailgun":
        return MailgunEmailTransport(
            api_key=settings.mailgun_api_key,
            base_url=settings.mailgun_api_base_url,
            timeout_seconds=settings.email_transport_timeout_seconds,
        )
    return StubEmailTransport()


def _create_llm_client(settings: Settings) -> tuple[ResponseGenerator, SummaryGenerator]:
    if settings.llm_client_type == "http":
        client = HttpChatCompletionClient(
            base_url=settings.llm_api_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        return client, client
    return StubResponseGenerator(), StubSummaryGenerator()


def build_pipeline(
    *,
    settings: Settings,
    repository: ConversationRepository,
    transport: EmailTransport,
    generator: ResponseGenerator,
    summarizer: SummaryGenerator,
    notifier: HandoverNotifier | None = None,
) -> InboundEmailPipeline:
    conversations = ConversationService(repository=repository)
    return InboundEmailPipeline(
        settings=settings,
        repository=repository,
        deduplicator=EventDeduplicator(repository=repository),
        conversations=conversations,
        responder=AgentResponder(generator=generator),
        handover=HandoverCoordinator(repository=repository, summarizer=summarizer, notifier=notifier),
        dispatcher=OutboundDispatcher(
            conversations=conversations,
            transport=transport,
            base_domain=settings.email_base_domain,
        ),
    )


def build_sweeper(*, pipeline: InboundEmailPipeline, repository: ConversationRepository) -> WebhookRecoverySweeper:
    return WebhookRecoverySweeper(
        pipeline=pipeline,
        deduplicator=EventDeduplicator(repository=repository),
        repository=repository,
    )


conversation_repo: ConversationRepository = _create_repository(_settings)
email_transport: EmailTransport = _create_transport(_settings)
response_generator, summary_generator = _create_llm_client(_settings)
pipeline: InboundEmailPipeline = build_pipeline(
    settings=_settings,
    repository=conversation_repo,
    transport=email_transport,
    generator=response_generator,
    summarizer=summary_generator,
)


def reset_runtime_state_for_tests() -> None:
    conversation_repo.reset()
    if isinstance(email_transport, StubEmailTransport):
        email_transport.reset()


async def _read_inbound_fields(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(400, "malformed JSON body") from exc
        if not isinstance(body, dict):
            raise HTTPException(400, "webhook body must be an object")
        return body
    form = await request.form()
    # Attachments arrive as uploads; only the string fields matter here.
    return {key: value for key, value in form.multi_items() if isinstance(value, str)}


def _signature_field(fields: dict[str, Any], name: str) -> str | None:
    value = fields.get(name)
    if value is None or isinstance(value, bool):
        return None
    # JSON deliveries may send the timestamp as a number.
    if isinstance(value, (int, str)):
        return str(value)
    return None


@router.post("/mailgun/inbound", response_model=WebhookProcessResponse)
def receive_mailgun_inbound(fields: dict[str, Any] = Depends(_read_inbound_fields)) -> WebhookProcessResponse:
    try:
        pipeline.authenticate(
            timestamp=_signature_field(fields, "timestamp"),
            token=_signature_field(fields, "token"),
            signature=_signature_field(fields, "signature"),
        )
    except WebhookAuthenticationError as exc:
        raise HTTPException(401, str(exc)) from exc

    try:
        payload = MailgunInboundPayload.model_validate(fields)
    except ValidationError as exc:
        raise HTTPException(400, f"malformed webhook payload: {exc.error_count()} invalid field(s)") from exc

    try:
        outcome = pipeline.handle(payload)
    except WebhookValidationError as exc:
        raise HTTPException(400, str(exc)) from exc

    return WebhookProcessResponse(
        status=outcome.status,
        conversation_id=outcome.conversation_id,
        message_id=outcome.message_id,
    )
