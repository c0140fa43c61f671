from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ConversationStatus = Literal["active", "handed_over", "completed"]
MessageDirection = Literal["inbound", "outbound"]
MessageSenderType = Literal["lead", "agent"]
MessageStatus = Literal["delivered", "sent", "failed"]
HandoverTriggerType = Literal["keyword", "max_messages", "low_confidence", "manual"]
HandoverStatus = Literal["pending", "resolved"]
WebhookStatus = Literal["processed", "duplicate"]


class MailgunInboundPayload(BaseModel):
    """Inbound email as posted by the provider's routing webhook.

    Known fields are explicit; any other provider field (``Message-Id``,
    ``In-Reply-To``, ``X-Mailgun-*``...) is kept as an extra string value so
    the header extractor can look it up case-insensitively. Non-string values
    are rejected.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    sender: str = Field(min_length=1, max_length=512)
    recipient: str = Field(min_length=1, max_length=512)
    subject: str = Field(default="", max_length=998)
    timestamp: str | None = None
    token: str | None = None
    signature: str | None = None
    body_plain: str | None = Field(default=None, alias="body-plain")
    stripped_text: str | None = Field(default=None, alias="stripped-text")
    message_headers: str | list[list[str]] | None = Field(default=None, alias="message-headers")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("sender", "recipient")
    @classmethod
    def _strip_address(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("address cannot be blank")
        return normalized

    @model_validator(mode="after")
    def _extra_fields_are_strings(self) -> "MailgunInboundPayload":
        for key, value in (self.model_extra or {}).items():
            if not isinstance(value, str):
                raise ValueError(f"unsupported value type for field {key!r}")
        return self

    @property
    def content(self) -> str:
        return self.stripped_text or self.body_plain or ""

    def provider_fields(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WebhookProcessResponse(BaseModel):
    status: WebhookStatus
    conversation_id: str | None = None
    message_id: str | None = None


class HealthResponse(BaseModel):
    ok: bool = True
