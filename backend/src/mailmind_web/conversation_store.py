from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .email_headers import truncate_references
from .models import (
    ConversationStatus,
    HandoverStatus,
    HandoverTriggerType,
    MessageDirection,
    MessageSenderType,
    MessageStatus,
)


@dataclass(frozen=True)
class AgentRecord:
    agent_id: str
    name: str
    sender_name: str
    sender_email: str
    subdomain: str
    system_prompt: str
    prompt_variables: dict[str, str] = field(default_factory=dict)
    handover_triggers: tuple[str, ...] = ()
    max_messages: int | None = 8
    confidence_threshold: float | None = 0.7
    handover_email: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class LeadRecord:
    lead_id: str
    email: str
    first_name: str | None
    last_name: str | None
    status: str
    created_at: datetime


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    agent_id: str
    lead_id: str
    campaign_id: str | None
    thread_id: str
    initial_message_id: str | None
    subject: str | None
    status: ConversationStatus
    message_count: int
    ai_message_count: int
    last_message_at: datetime | None
    handover_reason: str | None
    handed_over_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    direction: MessageDirection
    sender_type: MessageSenderType
    provider_message_id: str | None
    in_reply_to: str | None
    references: tuple[str, ...]
    subject: str | None
    content: str
    status: MessageStatus
    ai_confidence: float | None
    created_at: datetime


@dataclass(frozen=True)
class WebhookEventRecord:
    event_id: str
    provider_message_id: str
    provider: str
    event_type: str
    raw_payload: dict[str, Any]
    processed: bool
    processed_at: datetime | None
    error: str | None
    created_at: datetime


@dataclass(frozen=True)
class HandoverRecord:
    handover_id: str
    conversation_id: str
    trigger_type: HandoverTriggerType
    trigger_detail: str
    status: HandoverStatus
    conversation_summary: str
    created_at: datetime


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_agent(self, agent: AgentRecord) -> AgentRecord: ...

    def get_agent(self, agent_id: str) -> AgentRecord | None: ...

    def find_agent_by_email(self, email: str) -> AgentRecord | None: ...

    def get_or_create_lead(self, email: str) -> LeadRecord: ...

    def get_lead(self, lead_id: str) -> LeadRecord | None: ...

    def insert_webhook_event(
        self,
        *,
        provider_message_id: str,
        provider: str,
        event_type: str,
        raw_payload: dict[str, Any],
    ) -> WebhookEventRecord | None: ...

    def get_webhook_event(self, provider_message_id: str) -> WebhookEventRecord | None: ...

    def mark_webhook_event_processed(self, provider_message_id: str) -> None: ...

    def record_webhook_event_error(self, provider_message_id: str, error: str) -> None: ...

    def list_unprocessed_webhook_events(self, *, created_before: datetime) -> list[WebhookEventRecord]: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def find_conversation_by_thread_id(self, thread_id: str) -> ConversationRecord | None: ...

    def find_active_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        campaign_id: str | None,
    ) -> ConversationRecord | None: ...

    def create_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        campaign_id: str | None,
        thread_id: str,
        initial_message_id: str | None,
        subject: str | None,
    ) -> ConversationRecord | None: ...

    def mark_conversation_handed_over(
        self,
        *,
        conversation_id: str,
        reason: str,
        handed_over_at: datetime,
    ) -> ConversationRecord: ...

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        sender_type: MessageSenderType,
        provider_message_id: str | None,
        in_reply_to: str | None,
        references: tuple[str, ...],
        subject: str | None,
        content: str,
        status: MessageStatus,
        ai_confidence: float | None,
    ) -> MessageRecord: ...

    def refresh_conversation_metrics(self, conversation_id: str) -> ConversationRecord: ...

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None: ...

    def list_messages(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]: ...

    def find_pending_handover(self, conversation_id: str) -> HandoverRecord | None: ...

    def create_handover(
        self,
        *,
        conversation_id: str,
        trigger_type: HandoverTriggerType,
        trigger_detail: str,
        conversation_summary: str,
    ) -> HandoverRecord | None: ...

    def list_handovers(self, *, conversation_id: str | None = None) -> list[HandoverRecord]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _campaign_key(campaign_id: str | None) -> str:
    return campaign_id or ""


class InMemoryConversationRepository:
    """Process-local repository.

    Uniqueness is enforced under a single lock, so it only holds for one
    process. Multi-instance deployments use the SQLAlchemy backend.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._agents: dict[str, AgentRecord] = {}
        self._leads: dict[str, LeadRecord] = {}
        self._lead_by_email: dict[str, str] = {}
        self._events: dict[str, WebhookEventRecord] = {}
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_thread: dict[str, str] = {}
        self._active_identity: dict[tuple[str, str, str], str] = {}
        self._messages: dict[str, list[MessageRecord]] = {}
        self._message_by_provider_id: dict[str, MessageRecord] = {}
        self._handovers: list[HandoverRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._agents.clear()
            self._leads.clear()
            self._lead_by_email.clear()
            self._events.clear()
            self._conversations.clear()
            self._conversation_by_thread.clear()
            self._active_identity.clear()
            self._messages.clear()
            self._message_by_provider_id.clear()
            self._handovers.clear()

    def upsert_agent(self, agent: AgentRecord) -> AgentRecord:
        normalized = replace(agent, sender_email=agent.sender_email.strip().lower())
        with self._lock:
            self._agents[normalized.agent_id] = normalized
        return normalized

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        return self._agents.get(agent_id)

    def find_agent_by_email(self, email: str) -> AgentRecord | None:
        normalized = email.strip().lower()
        for agent in self._agents.values():
            if agent.is_active and agent.sender_email == normalized:
                return agent
        return None

    def get_or_create_lead(self, email: str) -> LeadRecord:
        normalized = email.strip().lower()
        with self._lock:
            existing_id = self._lead_by_email.get(normalized)
            if existing_id is not None:
                return self._leads[existing_id]
            lead = LeadRecord(
                lead_id=_new_id("lead"),
                email=normalized,
                first_name=None,
                last_name=None,
                status="active",
                created_at=_now_utc(),
            )
            self._leads[lead.lead_id] = lead
            self._lead_by_email[normalized] = lead.lead_id
            return lead

    def get_lead(self, lead_id: str) -> LeadRecord | None:
        return self._leads.get(lead_id)

    def insert_webhook_event(
        self,
        *,
        provider_message_id: str,
        provider: str,
        event_type: str,
        raw_payload: dict[str, Any],
    ) -> WebhookEventRecord | None:
        with self._lock:
            if provider_message_id in self._events:
                return None
            event = WebhookEventRecord(
                event_id=_new_id("evt"),
                provider_message_id=provider_message_id,
                provider=provider,
                event_type=event_type,
                raw_payload=dict(raw_payload),
                processed=False,
                processed_at=None,
                error=None,
                created_at=_now_utc(),
            )
            self._events[provider_message_id] = event
            return event

    def get_webhook_event(self, provider_message_id: str) -> WebhookEventRecord | None:
        return self._events.get(provider_message_id)

    def mark_webhook_event_processed(self, provider_message_id: str) -> None:
        with self._lock:
            current = self._events[provider_message_id]
            self._events[provider_message_id] = replace(
                current,
                processed=True,
                processed_at=_now_utc(),
                error=None,
            )

    def record_webhook_event_error(self, provider_message_id: str, error: str) -> None:
        with self._lock:
            current = self._events.get(provider_message_id)
            if current is not None:
                self._events[provider_message_id] = replace(current, error=error)

    def list_unprocessed_webhook_events(self, *, created_before: datetime) -> list[WebhookEventRecord]:
        return sorted(
            (
                event
                for event in self._events.values()
                if not event.processed and event.created_at < created_before
            ),
            key=lambda value: value.created_at,
        )

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return self._conversations.get(conversation_id)

    def find_conversation_by_thread_id(self, thread_id: str) -> ConversationRecord | None:
        conversation_id = self._conversation_by_thread.get(thread_id)
        if conversation_id is None:
            return None
        return self._conversations[conversation_id]

    def find_active_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        campaign_id: str | None,
    ) -> ConversationRecord | None:
        candidates = [
            value
            for value in self._conversations.values()
            if value.agent_id == agent_id
            and value.lead_id == lead_id
            and value.status == "active"
            and (campaign_id is None or value.campaign_id == campaign_id)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda value: value.updated_at)

    def create_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        campaign_id: str | None,
        thread_id: str,
        initial_message_id: str | None,
        subject: str | None,
    ) -> ConversationRecord | None:
        identity = (agent_id, lead_id, _campaign_key(campaign_id))
        with self._lock:
            if thread_id in self._conversation_by_thread or identity in self._active_identity:
                return None
            now = _now_utc()
            conversation = ConversationRecord(
                conversation_id=_new_id("conv"),
                agent_id=agent_id,
                lead_id=lead_id,
                campaign_id=campaign_id,
                thread_id=thread_id,
                initial_message_id=initial_message_id,
                subject=subject,
                status="active",
                message_count=0,
                ai_message_count=0,
                last_message_at=None,
                handover_reason=None,
                handed_over_at=None,
                created_at=now,
                updated_at=now,
            )
            self._conversations[conversation.conversation_id] = conversation
            self._conversation_by_thread[thread_id] = conversation.conversation_id
            self._active_identity[identity] = conversation.conversation_id
            self._messages[conversation.conversation_id] = []
            return conversation

    def mark_conversation_handed_over(
        self,
        *,
        conversation_id: str,
        reason: str,
        handed_over_at: datetime,
    ) -> ConversationRecord:
        with self._lock:
            current = self._conversations[conversation_id]
            updated = replace(
                current,
                status="handed_over",
                handover_reason=reason,
                handed_over_at=handed_over_at,
                updated_at=_now_utc(),
            )
            self._conversations[conversation_id] = updated
            identity = (current.agent_id, current.lead_id, _campaign_key(current.campaign_id))
            if self._active_identity.get(identity) == conversation_id:
                del self._active_identity[identity]
            return updated

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        sender_type: MessageSenderType,
        provider_message_id: str | None,
        in_reply_to: str | None,
        references: tuple[str, ...],
        subject: str | None,
        content: str,
        status: MessageStatus,
        ai_confidence: float | None,
    ) -> MessageRecord:
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(conversation_id)
            if provider_message_id and provider_message_id in self._message_by_provider_id:
                raise ValueError(f"message already stored: {provider_message_id}")
            message = MessageRecord(
                message_id=_new_id("msg"),
                conversation_id=conversation_id,
                direction=direction,
                sender_type=sender_type,
                provider_message_id=provider_message_id,
                in_reply_to=in_reply_to,
                references=truncate_references(references),
                subject=subject,
                content=content,
                status=status,
                ai_confidence=ai_confidence,
                created_at=_now_utc(),
            )
            self._messages[conversation_id].append(message)
            if provider_message_id:
                self._message_by_provider_id[provider_message_id] = message
            return message

    def refresh_conversation_metrics(self, conversation_id: str) -> ConversationRecord:
        with self._lock:
            current = self._conversations[conversation_id]
            messages = self._messages.get(conversation_id, [])
            now = _now_utc()
            updated = replace(
                current,
                message_count=len(messages),
                ai_message_count=sum(1 for item in messages if item.sender_type == "agent"),
                last_message_at=now,
                updated_at=now,
            )
            self._conversations[conversation_id] = updated
            return updated

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        return self._message_by_provider_id.get(provider_message_id)

    def list_messages(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        messages = list(self._messages.get(conversation_id, []))
        if limit is None:
            return messages
        return messages[-limit:] if limit > 0 else []

    def find_pending_handover(self, conversation_id: str) -> HandoverRecord | None:
        for handover in self._handovers:
            if handover.conversation_id == conversation_id and handover.status == "pending":
                return handover
        return None

    def create_handover(
        self,
        *,
        conversation_id: str,
        trigger_type: HandoverTriggerType,
        trigger_detail: str,
        conversation_summary: str,
    ) -> HandoverRecord | None:
        with self._lock:
            if any(
                value.conversation_id == conversation_id and value.status == "pending"
                for value in self._handovers
            ):
                return None
            handover = HandoverRecord(
                handover_id=_new_id("hnd"),
                conversation_id=conversation_id,
                trigger_type=trigger_type,
                trigger_detail=trigger_detail,
                status="pending",
                conversation_summary=conversation_summary,
                created_at=_now_utc(),
            )
            self._handovers.append(handover)
            return handover

    def list_handovers(self, *, conversation_id: str | None = None) -> list[HandoverRecord]:
        return [
            value
            for value in self._handovers
            if conversation_id is None or value.conversation_id == conversation_id
        ]


class ConversationsBase(DeclarativeBase):
    pass


class _AgentRow(ConversationsBase):
    __tablename__ = "agents"

    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sender_email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    subdomain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_variables_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    handover_triggers_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    max_messages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    handover_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _LeadRow(ConversationsBase):
    __tablename__ = "leads"

    lead_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "uq_conversations_active_identity",
            "agent_id",
            "lead_id",
            "campaign_key",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(64), ForeignKey("agents.agent_id"), nullable=False, index=True)
    lead_id: Mapped[str] = mapped_column(String(64), ForeignKey("leads.lead_id"), nullable=False, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    campaign_key: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    initial_message_id: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", index=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ai_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    handover_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    handed_over_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _MessageRow(ConversationsBase):
    __tablename__ = "messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(500), nullable=True, unique=True)
    in_reply_to: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reference_ids: Mapped[str] = mapped_column(Text, nullable=False, default="")
    subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    ai_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _WebhookEventRow(ConversationsBase):
    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_message_id: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    raw_payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _HandoverRow(ConversationsBase):
    __tablename__ = "handovers"
    __table_args__ = (
        Index(
            "uq_handovers_pending_conversation",
            "conversation_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    handover_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_detail: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    conversation_summary: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_HandoverRow).delete()
                session.query(_MessageRow).delete()
                session.query(_WebhookEventRow).delete()
                session.query(_ConversationRow).delete()
                session.query(_LeadRow).delete()
                session.query(_AgentRow).delete()

    def upsert_agent(self, agent: AgentRecord) -> AgentRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_AgentRow, agent.agent_id)
                if row is None:
                    row = _AgentRow(agent_id=agent.agent_id)
                    session.add(row)
                row.name = agent.name
                row.sender_name = agent.sender_name
                row.sender_email = agent.sender_email.strip().lower()
                row.subdomain = agent.subdomain
                row.system_prompt = agent.system_prompt
                row.prompt_variables_json = json.dumps(agent.prompt_variables, sort_keys=True)
                row.handover_triggers_json = json.dumps(list(agent.handover_triggers))
                row.max_messages = agent.max_messages
                row.confidence_threshold = agent.confidence_threshold
                row.handover_email = agent.handover_email
                row.is_active = agent.is_active
                session.flush()
                return self._agent_record(row)

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._session() as session:
            row = session.get(_AgentRow, agent_id)
            return self._agent_record(row) if row is not None else None

    def find_agent_by_email(self, email: str) -> AgentRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_AgentRow)
                .where(_AgentRow.sender_email == email.strip().lower())
                .where(_AgentRow.is_active.is_(True))
            )
            return self._agent_record(row) if row is not None else None

    def get_or_create_lead(self, email: str) -> LeadRecord:
        normalized = email.strip().lower()
        existing = self._find_lead_by_email(normalized)
        if existing is not None:
            return existing
        try:
            with self._session() as session:
                with session.begin():
                    row = _LeadRow(
                        lead_id=_new_id("lead"),
                        email=normalized,
                        status="active",
                        created_at=_now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    return self._lead_record(row)
        except IntegrityError:
            winner = self._find_lead_by_email(normalized)
            if winner is None:
                raise
            return winner

    def _find_lead_by_email(self, email: str) -> LeadRecord | None:
        with self._session() as session:
            row = session.scalar(select(_LeadRow).where(_LeadRow.email == email))
            return self._lead_record(row) if row is not None else None

    def get_lead(self, lead_id: str) -> LeadRecord | None:
        with self._session() as session:
            row = session.get(_LeadRow, lead_id)
            return self._lead_record(row) if row is not None else None

    def insert_webhook_event(
        self,
        *,
        provider_message_id: str,
        provider: str,
        event_type: str,
        raw_payload: dict[str, Any],
    ) -> WebhookEventRecord | None:
        try:
            with self._session() as session:
                with session.begin():
                    row = _WebhookEventRow(
                        event_id=_new_id("evt"),
                        provider_message_id=provider_message_id,
                        provider=provider,
                        event_type=event_type,
                        raw_payload_json=json.dumps(raw_payload, sort_keys=True, separators=(",", ":")),
                        processed=False,
                        created_at=_now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    return self._event_record(row)
        except IntegrityError:
            return None

    def get_webhook_event(self, provider_message_id: str) -> WebhookEventRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_WebhookEventRow).where(_WebhookEventRow.provider_message_id == provider_message_id)
            )
            return self._event_record(row) if row is not None else None

    def mark_webhook_event_processed(self, provider_message_id: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_WebhookEventRow).where(_WebhookEventRow.provider_message_id == provider_message_id)
                )
                if row is None:
                    raise KeyError(provider_message_id)
                row.processed = True
                row.processed_at = _now_utc()
                row.error = None

    def record_webhook_event_error(self, provider_message_id: str, error: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_WebhookEventRow).where(_WebhookEventRow.provider_message_id == provider_message_id)
                )
                if row is not None:
                    row.error = error

    def list_unprocessed_webhook_events(self, *, created_before: datetime) -> list[WebhookEventRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_WebhookEventRow)
                .where(_WebhookEventRow.processed.is_(False))
                .where(_WebhookEventRow.created_at < created_before)
                .order_by(_WebhookEventRow.created_at.asc())
            ).all()
            return [self._event_record(row) for row in rows]

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def find_conversation_by_thread_id(self, thread_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ConversationRow).where(_ConversationRow.thread_id == thread_id))
            return self._conversation_record(row) if row is not None else None

    def find_active_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        campaign_id: str | None,
    ) -> ConversationRecord | None:
        statement = (
            select(_ConversationRow)
            .where(_ConversationRow.agent_id == agent_id)
            .where(_ConversationRow.lead_id == lead_id)
            .where(_ConversationRow.status == "active")
        )
        if campaign_id is not None:
            statement = statement.where(_ConversationRow.campaign_id == campaign_id)
        with self._session() as session:
            row = session.scalar(statement.order_by(_ConversationRow.updated_at.desc()).limit(1))
            return self._conversation_record(row) if row is not None else None

    def create_conversation(
        self,
        *,
        agent_id: str,
        lead_id: str,
        campaign_id: str | None,
        thread_id: str,
        initial_message_id: str | None,
        subject: str | None,
    ) -> ConversationRecord | None:
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    row = _ConversationRow(
                        conversation_id=_new_id("conv"),
                        agent_id=agent_id,
                        lead_id=lead_id,
                        campaign_id=campaign_id,
                        campaign_key=_campaign_key(campaign_id),
                        thread_id=thread_id,
                        initial_message_id=initial_message_id,
                        subject=subject,
                        status="active",
                        message_count=0,
                        ai_message_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    session.flush()
                    return self._conversation_record(row)
        except IntegrityError:
            return None

    def mark_conversation_handed_over(
        self,
        *,
        conversation_id: str,
        reason: str,
        handed_over_at: datetime,
    ) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    raise KeyError(conversation_id)
                row.status = "handed_over"
                row.handover_reason = reason
                row.handed_over_at = handed_over_at
                row.updated_at = _now_utc()
                session.flush()
                return self._conversation_record(row)

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        sender_type: MessageSenderType,
        provider_message_id: str | None,
        in_reply_to: str | None,
        references: tuple[str, ...],
        subject: str | None,
        content: str,
        status: MessageStatus,
        ai_confidence: float | None,
    ) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_ConversationRow, conversation_id) is None:
                    raise KeyError(conversation_id)
                row = _MessageRow(
                    message_id=_new_id("msg"),
                    conversation_id=conversation_id,
                    direction=direction,
                    sender_type=sender_type,
                    provider_message_id=provider_message_id,
                    in_reply_to=in_reply_to,
                    reference_ids=" ".join(truncate_references(references)),
                    subject=subject,
                    content=content,
                    status=status,
                    ai_confidence=ai_confidence,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._message_record(row)

    def refresh_conversation_metrics(self, conversation_id: str) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    raise KeyError(conversation_id)
                total = session.scalar(
                    select(func.count())
                    .select_from(_MessageRow)
                    .where(_MessageRow.conversation_id == conversation_id)
                )
                ai_total = session.scalar(
                    select(func.count())
                    .select_from(_MessageRow)
                    .where(_MessageRow.conversation_id == conversation_id)
                    .where(_MessageRow.sender_type == "agent")
                )
                now = _now_utc()
                row.message_count = int(total or 0)
                row.ai_message_count = int(ai_total or 0)
                row.last_message_at = now
                row.updated_at = now
                session.flush()
                return self._conversation_record(row)

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_MessageRow).where(_MessageRow.provider_message_id == provider_message_id)
            )
            return self._message_record(row) if row is not None else None

    def list_messages(self, conversation_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        statement = (
            select(_MessageRow)
            .where(_MessageRow.conversation_id == conversation_id)
            .order_by(_MessageRow.created_at.desc())
        )
        if limit is not None:
            statement = statement.limit(max(0, limit))
        with self._session() as session:
            rows = session.scalars(statement).all()
            return [self._message_record(row) for row in reversed(rows)]

    def find_pending_handover(self, conversation_id: str) -> HandoverRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_HandoverRow)
                .where(_HandoverRow.conversation_id == conversation_id)
                .where(_HandoverRow.status == "pending")
            )
            return self._handover_record(row) if row is not None else None

    def create_handover(
        self,
        *,
        conversation_id: str,
        trigger_type: HandoverTriggerType,
        trigger_detail: str,
        conversation_summary: str,
    ) -> HandoverRecord | None:
        try:
            with self._session() as session:
                with session.begin():
                    row = _HandoverRow(
                        handover_id=_new_id("hnd"),
                        conversation_id=conversation_id,
                        trigger_type=trigger_type,
                        trigger_detail=trigger_detail,
                        status="pending",
                        conversation_summary=conversation_summary,
                        created_at=_now_utc(),
                    )
                    session.add(row)
                    session.flush()
                    return self._handover_record(row)
        except IntegrityError:
            return None

    def list_handovers(self, *, conversation_id: str | None = None) -> list[HandoverRecord]:
        statement = select(_HandoverRow).order_by(_HandoverRow.created_at.asc())
        if conversation_id is not None:
            statement = statement.where(_HandoverRow.conversation_id == conversation_id)
        with self._session() as session:
            return [self._handover_record(row) for row in session.scalars(statement).all()]

    @staticmethod
    def _agent_record(row: _AgentRow) -> AgentRecord:
        return AgentRecord(
            agent_id=row.agent_id,
            name=row.name,
            sender_name=row.sender_name,
            sender_email=row.sender_email,
            subdomain=row.subdomain,
            system_prompt=row.system_prompt,
            prompt_variables=json.loads(row.prompt_variables_json or "{}"),
            handover_triggers=tuple(json.loads(row.handover_triggers_json or "[]")),
            max_messages=row.max_messages,
            confidence_threshold=row.confidence_threshold,
            handover_email=row.handover_email,
            is_active=row.is_active,
        )

    @staticmethod
    def _lead_record(row: _LeadRow) -> LeadRecord:
        return LeadRecord(
            lead_id=row.lead_id,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
            status=row.status,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _event_record(row: _WebhookEventRow) -> WebhookEventRecord:
        return WebhookEventRecord(
            event_id=row.event_id,
            provider_message_id=row.provider_message_id,
            provider=row.provider,
            event_type=row.event_type,
            raw_payload=json.loads(row.raw_payload_json),
            processed=row.processed,
            processed_at=_coerce_utc(row.processed_at),
            error=row.error,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            agent_id=row.agent_id,
            lead_id=row.lead_id,
            campaign_id=row.campaign_id,
            thread_id=row.thread_id,
            initial_message_id=row.initial_message_id,
            subject=row.subject,
            status=row.status,  # type: ignore[arg-type]
            message_count=row.message_count,
            ai_message_count=row.ai_message_count,
            last_message_at=_coerce_utc(row.last_message_at),
            handover_reason=row.handover_reason,
            handed_over_at=_coerce_utc(row.handed_over_at),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            direction=row.direction,  # type: ignore[arg-type]
            sender_type=row.sender_type,  # type: ignore[arg-type]
            provider_message_id=row.provider_message_id,
            in_reply_to=row.in_reply_to,
            references=tuple(row.reference_ids.split()) if row.reference_ids else (),
            subject=row.subject,
            content=row.content,
            status=row.status,  # type: ignore[arg-type]
            ai_confidence=row.ai_confidence,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _handover_record(row: _HandoverRow) -> HandoverRecord:
        return HandoverRecord(
            handover_id=row.handover_id,
            conversation_id=row.conversation_id,
            trigger_type=row.trigger_type,  # type: ignore[arg-type]
            trigger_detail=row.trigger_detail,
            status=row.status,  # type: ignore[arg-type]
            conversation_summary=row.conversation_summary,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
