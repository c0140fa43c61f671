from __future__ import annotations

import os
from dataclasses import dataclass


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "MailMind Webhooks"
    api_prefix: str = "/api/v1"
    database_url: str = ""
    conversation_store_backend: str = "inmemory"
    # Inbound webhook verification.
    mailgun_webhook_signing_key: str = ""
    mailgun_webhook_signature_mode: str = "enforce"
    mailgun_webhook_max_age_seconds: int = 300
    # Outbound transport.
    email_transport_type: str = "stub"
    email_base_domain: str = "mailmind.local"
    email_transport_timeout_seconds: int = 10
    mailgun_api_key: str = ""
    mailgun_api_base_url: str = "https://api.mailgun.net"
    # Response and summary generation.
    llm_client_type: str = "stub"
    llm_api_base_url: str = "https://openrouter.ai/api"
    llm_api_key: str = ""
    llm_model: str = "openai/gpt-4o-mini"
    llm_timeout_seconds: int = 10
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("MAILMIND_APP_NAME", "MailMind Webhooks"),
        api_prefix=os.getenv("MAILMIND_API_PREFIX", "/api/v1"),
        database_url=os.getenv("DATABASE_URL", ""),
        conversation_store_backend=os.getenv("CONVERSATION_STORE_BACKEND", "inmemory"),
        mailgun_webhook_signing_key=os.getenv("MAILGUN_WEBHOOK_SIGNING_KEY", ""),
        mailgun_webhook_signature_mode=_normalize_mode(
            os.getenv("MAILGUN_WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        mailgun_webhook_max_age_seconds=_as_int(os.getenv("MAILGUN_WEBHOOK_MAX_AGE_SECONDS"), 300),
        email_transport_type=_normalize_mode(
            os.getenv("EMAIL_TRANSPORT_TYPE"),
            default="stub",
            allowed={"stub", "mailgun"},
        ),
        email_base_domain=os.getenv("EMAIL_BASE_DOMAIN", "mailmind.local"),
        email_transport_timeout_seconds=_as_int(os.getenv("EMAIL_TRANSPORT_TIMEOUT_SECONDS"), 10),
        mailgun_api_key=os.getenv("MAILGUN_API_KEY", ""),
        mailgun_api_base_url=os.getenv("MAILGUN_API_BASE_URL", "https://api.mailgun.net"),
        llm_client_type=_normalize_mode(
            os.getenv("LLM_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        llm_api_base_url=os.getenv("LLM_API_BASE_URL", "https://openrouter.ai/api"),
        llm_api_key=os.getenv("LLM_API_KEY", ""),
        llm_model=os.getenv("LLM_MODEL", "openai/gpt-4o-mini"),
        llm_timeout_seconds=_as_int(os.getenv("LLM_TIMEOUT_SECONDS"), 10),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.mailgun_webhook_signature_mode != "off" and _is_placeholder(
        settings.mailgun_webhook_signing_key,
        defaults={"dev-signing-key", "change-me-in-production"},
    ):
        issues.append(
            "MAILGUN_WEBHOOK_SIGNING_KEY is empty or uses a placeholder value "
            "while MAILGUN_WEBHOOK_SIGNATURE_MODE is not off"
        )
    if settings.email_transport_type == "mailgun" and not settings.mailgun_api_key.strip():
        issues.append("MAILGUN_API_KEY is required when EMAIL_TRANSPORT_TYPE=mailgun")
    if settings.llm_client_type == "http" and not settings.llm_api_key.strip():
        issues.append("LLM_API_KEY is required when LLM_CLIENT_TYPE=http")
    if settings.conversation_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when CONVERSATION_STORE_BACKEND=postgres")
    return tuple(issues)
