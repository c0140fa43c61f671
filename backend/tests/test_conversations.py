from __future__ import annotations

import re

from mailmind_web.conversation_store import InMemoryConversationRepository
from mailmind_web.conversations import ConversationService, generate_thread_id
from mailmind_web.email_headers import EmailThreadingHeaders


def _service() -> tuple[ConversationService, InMemoryConversationRepository, str]:
    repository = InMemoryConversationRepository()
    lead = repository.get_or_create_lead("lead@example.com")
    return ConversationService(repository=repository), repository, lead.lead_id


def test_generate_thread_id_format() -> None:
    assert re.fullmatch(r"thread-\d{13}-[0-9a-f]{8}", generate_thread_id())


def test_first_inbound_creates_conversation_with_generated_thread() -> None:
    service, _, lead_id = _service()

    conversation = service.resolve_conversation(
        agent_id="agent-1",
        lead_id=lead_id,
        headers=EmailThreadingHeaders(message_id="first@lead"),
        subject="Test drive",
    )

    assert conversation.status == "active"
    assert conversation.thread_id.startswith("thread-")
    assert conversation.initial_message_id == "first@lead"
    assert conversation.subject == "Test drive"


def test_caller_supplied_thread_token_is_used_for_new_conversation() -> None:
    service, _, lead_id = _service()
    conversation = service.resolve_conversation(
        agent_id="agent-1",
        lead_id=lead_id,
        headers=EmailThreadingHeaders(message_id="first@lead", thread_id="thread-custom"),
    )
    assert conversation.thread_id == "thread-custom"


def test_thread_token_match_wins_over_identity() -> None:
    service, repository, lead_id = _service()
    original = service.resolve_conversation(
        agent_id="agent-1", lead_id=lead_id, headers=EmailThreadingHeaders(message_id="m1@lead")
    )
    other_lead = repository.get_or_create_lead("other@example.com")

    resolved = service.resolve_conversation(
        agent_id="agent-1",
        lead_id=other_lead.lead_id,
        headers=EmailThreadingHeaders(message_id="m2@lead", thread_id=original.thread_id),
    )

    assert resolved.conversation_id == original.conversation_id


def test_reply_to_stored_message_resolves_without_thread_token() -> None:
    service, repository, lead_id = _service()
    original = service.resolve_conversation(
        agent_id="agent-1", lead_id=lead_id, headers=EmailThreadingHeaders(message_id="m1@lead")
    )
    service.append_message(
        conversation_id=original.conversation_id,
        direction="outbound",
        sender_type="agent",
        content="hi",
        status="sent",
        provider_message_id="reply@sales.mailmind.local",
    )
    repository.mark_conversation_handed_over(
        conversation_id=original.conversation_id,
        reason="manual",
        handed_over_at=original.created_at,
    )

    resolved = service.resolve_conversation(
        agent_id="agent-1",
        lead_id=lead_id,
        headers=EmailThreadingHeaders(
            message_id="m2@lead",
            references=("unknown@x", "reply@sales.mailmind.local"),
        ),
    )

    assert resolved.conversation_id == original.conversation_id
    assert resolved.status == "handed_over"


def test_identity_match_reuses_active_conversation() -> None:
    service, _, lead_id = _service()
    first = service.resolve_conversation(
        agent_id="agent-1", lead_id=lead_id, headers=EmailThreadingHeaders(message_id="m1@lead")
    )
    second = service.resolve_conversation(
        agent_id="agent-1", lead_id=lead_id, headers=EmailThreadingHeaders(message_id="m2@lead")
    )
    assert second.conversation_id == first.conversation_id


def test_lost_create_race_rereads_winner() -> None:
    service, repository, lead_id = _service()
    winner = repository.create_conversation(
        agent_id="agent-1",
        lead_id=lead_id,
        campaign_id=None,
        thread_id="thread-winner",
        initial_message_id=None,
        subject=None,
    )
    assert winner is not None
    original_find_active = repository.find_active_conversation
    calls = {"count": 0}

    def _miss_once(**kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original_find_active(**kwargs)

    repository.find_active_conversation = _miss_once  # type: ignore[method-assign]

    resolved = service.resolve_conversation(
        agent_id="agent-1", lead_id=lead_id, headers=EmailThreadingHeaders(message_id="m1@lead")
    )

    assert resolved.conversation_id == winner.conversation_id
    assert calls["count"] == 2


def test_append_message_recomputes_counters() -> None:
    service, _, lead_id = _service()
    conversation = service.resolve_conversation(
        agent_id="agent-1", lead_id=lead_id, headers=EmailThreadingHeaders(message_id="m1@lead")
    )
    _, after_inbound = service.append_message(
        conversation_id=conversation.conversation_id,
        direction="inbound",
        sender_type="lead",
        content="hello",
        status="delivered",
        provider_message_id="m1@lead",
    )
    _, after_reply = service.append_message(
        conversation_id=conversation.conversation_id,
        direction="outbound",
        sender_type="agent",
        content="hi there",
        status="sent",
        provider_message_id="r1@agent",
        ai_confidence=0.8,
    )
    assert (after_inbound.message_count, after_inbound.ai_message_count) == (1, 0)
    assert (after_reply.message_count, after_reply.ai_message_count) == (2, 1)
    assert [item.content for item in service.recent_messages(conversation.conversation_id, limit=5)] == [
        "hello",
        "hi there",
    ]
