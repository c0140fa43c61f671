from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mailmind_web.conversation_store import (
    AgentRecord,
    ConversationRepository,
    InMemoryConversationRepository,
    SqlAlchemyConversationRepository,
    create_conversation_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request: pytest.FixtureRequest, tmp_path: Path) -> ConversationRepository:
    if request.param == "inmemory":
        return InMemoryConversationRepository()
    return SqlAlchemyConversationRepository(f"sqlite:///{tmp_path / 'conversations.db'}")


def _agent(**overrides: object) -> AgentRecord:
    values: dict[str, object] = {
        "agent_id": "agent-1",
        "name": "Sales Agent",
        "sender_name": "Riley",
        "sender_email": "Riley@Sales.Example.com",
        "subdomain": "sales",
        "system_prompt": "You help {dealer} customers.",
        "prompt_variables": {"dealer": "Quincy Motors"},
        "handover_triggers": ("pricing",),
        "max_messages": 5,
    }
    values.update(overrides)
    return AgentRecord(**values)  # type: ignore[arg-type]


def _conversation(repository: ConversationRepository, *, thread_id: str = "thread-1", campaign_id: str | None = None):
    repository.upsert_agent(_agent())
    lead = repository.get_or_create_lead("lead@example.com")
    conversation = repository.create_conversation(
        agent_id="agent-1",
        lead_id=lead.lead_id,
        campaign_id=campaign_id,
        thread_id=thread_id,
        initial_message_id="first@lead",
        subject="Test drive",
    )
    assert conversation is not None
    return conversation


def _append(repository: ConversationRepository, conversation_id: str, *, provider_message_id: str | None, sender_type: str = "lead"):
    return repository.append_message(
        conversation_id=conversation_id,
        direction="inbound" if sender_type == "lead" else "outbound",
        sender_type=sender_type,  # type: ignore[arg-type]
        provider_message_id=provider_message_id,
        in_reply_to=None,
        references=(),
        subject="Test drive",
        content=f"body for {provider_message_id}",
        status="delivered" if sender_type == "lead" else "sent",
        ai_confidence=None,
    )


def test_agent_lookup_is_case_insensitive_and_skips_inactive(repository: ConversationRepository) -> None:
    stored = repository.upsert_agent(_agent())
    assert stored.sender_email == "riley@sales.example.com"
    found = repository.find_agent_by_email("RILEY@sales.example.com")
    assert found is not None
    assert found.prompt_variables == {"dealer": "Quincy Motors"}
    assert found.handover_triggers == ("pricing",)

    repository.upsert_agent(_agent(is_active=False))
    assert repository.find_agent_by_email("riley@sales.example.com") is None


def test_get_or_create_lead_is_idempotent(repository: ConversationRepository) -> None:
    first = repository.get_or_create_lead("Lead@Example.com")
    second = repository.get_or_create_lead("lead@example.com ")
    assert first.lead_id == second.lead_id
    assert second.email == "lead@example.com"


def test_webhook_event_insert_is_unique_per_provider_message_id(repository: ConversationRepository) -> None:
    first = repository.insert_webhook_event(
        provider_message_id="abc@mail",
        provider="mailgun",
        event_type="inbound_email",
        raw_payload={"sender": "lead@example.com"},
    )
    second = repository.insert_webhook_event(
        provider_message_id="abc@mail",
        provider="mailgun",
        event_type="inbound_email",
        raw_payload={"sender": "lead@example.com"},
    )
    assert first is not None
    assert first.processed is False
    assert second is None

    repository.record_webhook_event_error("abc@mail", "RuntimeError: boom")
    failed = repository.get_webhook_event("abc@mail")
    assert failed is not None
    assert failed.error == "RuntimeError: boom"
    assert failed.processed is False

    repository.mark_webhook_event_processed("abc@mail")
    done = repository.get_webhook_event("abc@mail")
    assert done is not None
    assert done.processed is True
    assert done.processed_at is not None
    assert done.error is None
    assert done.raw_payload == {"sender": "lead@example.com"}


def test_unprocessed_events_are_listed_by_cutoff(repository: ConversationRepository) -> None:
    for key in ("a@mail", "b@mail"):
        repository.insert_webhook_event(provider_message_id=key, provider="mailgun", event_type="inbound_email", raw_payload={})
    repository.mark_webhook_event_processed("b@mail")

    future = datetime.now(timezone.utc) + timedelta(minutes=1)
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert [event.provider_message_id for event in repository.list_unprocessed_webhook_events(created_before=future)] == ["a@mail"]
    assert repository.list_unprocessed_webhook_events(created_before=past) == []


def test_thread_id_is_unique(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    other_lead = repository.get_or_create_lead("other@example.com")
    duplicate = repository.create_conversation(
        agent_id="agent-1",
        lead_id=other_lead.lead_id,
        campaign_id=None,
        thread_id=conversation.thread_id,
        initial_message_id=None,
        subject=None,
    )
    assert duplicate is None


def test_only_one_active_conversation_per_identity(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    second = repository.create_conversation(
        agent_id="agent-1",
        lead_id=conversation.lead_id,
        campaign_id=None,
        thread_id="thread-2",
        initial_message_id=None,
        subject=None,
    )
    assert second is None

    repository.mark_conversation_handed_over(
        conversation_id=conversation.conversation_id,
        reason="manual",
        handed_over_at=datetime.now(timezone.utc),
    )
    third = repository.create_conversation(
        agent_id="agent-1",
        lead_id=conversation.lead_id,
        campaign_id=None,
        thread_id="thread-3",
        initial_message_id=None,
        subject=None,
    )
    assert third is not None
    active = repository.find_active_conversation(agent_id="agent-1", lead_id=conversation.lead_id, campaign_id=None)
    assert active is not None
    assert active.conversation_id == third.conversation_id


def test_find_active_conversation_narrows_by_campaign(repository: ConversationRepository) -> None:
    conversation = _conversation(repository, campaign_id="campaign-a")
    assert (
        repository.find_active_conversation(agent_id="agent-1", lead_id=conversation.lead_id, campaign_id="campaign-b")
        is None
    )
    found = repository.find_active_conversation(agent_id="agent-1", lead_id=conversation.lead_id, campaign_id="campaign-a")
    assert found is not None
    assert found.campaign_id == "campaign-a"


def test_metrics_are_recomputed_from_rows(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    _append(repository, conversation.conversation_id, provider_message_id="m1@lead")
    _append(repository, conversation.conversation_id, provider_message_id="m2@agent", sender_type="agent")
    _append(repository, conversation.conversation_id, provider_message_id="m3@lead")

    refreshed = repository.refresh_conversation_metrics(conversation.conversation_id)
    again = repository.refresh_conversation_metrics(conversation.conversation_id)
    assert refreshed.message_count == 3
    assert refreshed.ai_message_count == 1
    assert refreshed.last_message_at is not None
    assert again.message_count == 3


def test_list_messages_returns_most_recent_in_order(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    for index in range(7):
        _append(repository, conversation.conversation_id, provider_message_id=f"m{index}@lead")

    recent = repository.list_messages(conversation.conversation_id, limit=5)
    assert [item.provider_message_id for item in recent] == [f"m{index}@lead" for index in range(2, 7)]
    assert len(repository.list_messages(conversation.conversation_id)) == 7


def test_stored_references_are_capped_at_ten(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    references = tuple(f"r{index}@x" for index in range(12))
    message = repository.append_message(
        conversation_id=conversation.conversation_id,
        direction="inbound",
        sender_type="lead",
        provider_message_id="with-refs@lead",
        in_reply_to="r11@x",
        references=references,
        subject=None,
        content="hello",
        status="delivered",
        ai_confidence=None,
    )
    assert message.references == references[-10:]
    stored = repository.find_message_by_provider_message_id("with-refs@lead")
    assert stored is not None
    assert stored.references == references[-10:]


def test_only_one_pending_handover_per_conversation(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    first = repository.create_handover(
        conversation_id=conversation.conversation_id,
        trigger_type="keyword",
        trigger_detail='Customer mentioned: "pricing"',
        conversation_summary="wants pricing",
    )
    second = repository.create_handover(
        conversation_id=conversation.conversation_id,
        trigger_type="max_messages",
        trigger_detail="Reached maximum message limit (5)",
        conversation_summary="limit",
    )
    assert first is not None
    assert second is None
    pending = repository.find_pending_handover(conversation.conversation_id)
    assert pending is not None
    assert pending.handover_id == first.handover_id
    assert len(repository.list_handovers(conversation_id=conversation.conversation_id)) == 1


def test_reset_clears_everything(repository: ConversationRepository) -> None:
    conversation = _conversation(repository)
    _append(repository, conversation.conversation_id, provider_message_id="m1@lead")
    repository.reset()
    assert repository.get_conversation(conversation.conversation_id) is None
    assert repository.find_message_by_provider_message_id("m1@lead") is None
    assert repository.find_agent_by_email("riley@sales.example.com") is None


def test_create_conversation_repository_rejects_unknown_backend() -> None:
    assert isinstance(
        create_conversation_repository(backend="inmemory", database_url=""),
        InMemoryConversationRepository,
    )
    with pytest.raises(RuntimeError):
        create_conversation_repository(backend="redis", database_url="")
