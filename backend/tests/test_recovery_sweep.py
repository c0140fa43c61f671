from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from mailmind_web.api import build_pipeline, build_sweeper
from mailmind_web.config import get_settings
from mailmind_web.conversation_store import AgentRecord, InMemoryConversationRepository
from mailmind_web.deduplication import EventDeduplicator
from mailmind_web.llm import StubResponseGenerator, StubSummaryGenerator
from mailmind_web.mail_transport import StubEmailTransport
from mailmind_web.models import MailgunInboundPayload

AGENT_EMAIL = "riley@sales.example.com"


class _CrashingTransport(StubEmailTransport):
    def send(self, email):
        raise RuntimeError("transport crashed")


def _raw_payload(message_id: str) -> dict[str, str]:
    return {
        "sender": "Jane Lead <lead@example.com>",
        "recipient": AGENT_EMAIL,
        "subject": "Test drive",
        "stripped-text": "Is the Civic still available?",
        "Message-Id": f"<{message_id}>",
    }


@pytest.fixture
def repository() -> InMemoryConversationRepository:
    repo = InMemoryConversationRepository()
    repo.upsert_agent(
        AgentRecord(
            agent_id="agent-1",
            name="Sales Agent",
            sender_name="Riley",
            sender_email=AGENT_EMAIL,
            subdomain="sales",
            system_prompt="You help customers book test drives.",
        )
    )
    return repo


def _settings():
    return replace(get_settings(), mailgun_webhook_signature_mode="off", email_base_domain="mailmind.local")


def _pipeline(repository, transport):
    return build_pipeline(
        settings=_settings(),
        repository=repository,
        transport=transport,
        generator=StubResponseGenerator(),
        summarizer=StubSummaryGenerator(),
    )


def _later() -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=10)


def test_claimed_event_without_stored_message_is_replayed(repository) -> None:
    transport = StubEmailTransport()
    sweeper = build_sweeper(pipeline=_pipeline(repository, transport), repository=repository)
    EventDeduplicator(repository=repository).claim(
        "m1@lead.example.com",
        event_type="inbound_email",
        raw_payload=_raw_payload("m1@lead.example.com"),
    )

    report = sweeper.sweep(older_than_seconds=300, now=_later())

    assert report.examined == 1
    assert report.replayed == 1
    assert report.failed == 0
    event = repository.get_webhook_event("m1@lead.example.com")
    assert event is not None
    assert event.processed is True
    assert repository.find_message_by_provider_message_id("m1@lead.example.com") is not None
    assert len(transport.sent) == 1


def test_event_whose_inbound_was_stored_is_completed_without_second_reply(repository) -> None:
    transport = StubEmailTransport()
    crashing = _pipeline(repository, _CrashingTransport())
    payload = MailgunInboundPayload.model_validate(_raw_payload("m1@lead.example.com"))
    with pytest.raises(RuntimeError):
        crashing.handle(payload)
    event = repository.get_webhook_event("m1@lead.example.com")
    assert event is not None
    assert event.processed is False
    assert event.error == "RuntimeError: transport crashed"

    sweeper = build_sweeper(pipeline=_pipeline(repository, transport), repository=repository)
    report = sweeper.sweep(older_than_seconds=300, now=_later())

    assert report.examined == 1
    assert report.completed_without_replay == 1
    assert report.replayed == 0
    assert transport.sent == []
    completed = repository.get_webhook_event("m1@lead.example.com")
    assert completed is not None
    assert completed.processed is True


def test_recent_events_are_left_alone(repository) -> None:
    transport = StubEmailTransport()
    sweeper = build_sweeper(pipeline=_pipeline(repository, transport), repository=repository)
    EventDeduplicator(repository=repository).claim(
        "m1@lead.example.com",
        event_type="inbound_email",
        raw_payload=_raw_payload("m1@lead.example.com"),
    )

    report = sweeper.sweep(older_than_seconds=300)

    assert report.examined == 0
    event = repository.get_webhook_event("m1@lead.example.com")
    assert event is not None
    assert event.processed is False


def test_unreplayable_event_is_counted_as_failed(repository) -> None:
    transport = StubEmailTransport()
    sweeper = build_sweeper(pipeline=_pipeline(repository, transport), repository=repository)
    broken = _raw_payload("m1@lead.example.com")
    del broken["sender"]
    EventDeduplicator(repository=repository).claim("m1@lead.example.com", event_type="inbound_email", raw_payload=broken)

    report = sweeper.sweep(older_than_seconds=300, now=_later())

    assert report.examined == 1
    assert report.failed == 1
    event = repository.get_webhook_event("m1@lead.example.com")
    assert event is not None
    assert event.processed is False
    assert event.error is not None
    assert event.error.startswith("ValidationError")
