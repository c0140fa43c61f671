from __future__ import annotations

import base64
import html
import http.client
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    p {{ margin: 10px 0; }}
  </style>
</head>
<body>
  {body}
</body>
</html>"""


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    text: str
    from_name: str
    from_email: str
    sending_domain: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def from_identity(self) -> str:
        return f"{self.from_name} <{self.from_email}>"


@dataclass(frozen=True)
class TransportResult:
    success: bool
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class EmailTransport(Protocol):
    def send(self, email: OutboundEmail) -> TransportResult: ...


def render_html_body(text: str) -> str:
    paragraphs = "\n".join(
        f"<p>{html.escape(line.strip())}</p>" for line in text.split("\n") if line.strip()
    )
    return _HTML_TEMPLATE.format(body=paragraphs)


class StubEmailTransport:
    """Records outbound mail in memory; recipients containing ``fail`` are refused."""

    def __init__(self) -> None:
        self.sent: list[OutboundEmail] = []

    def reset(self) -> None:
        self.sent.clear()

    def send(self, email: OutboundEmail) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in email.to.lower():
            return TransportResult(
                success=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub transport forced failure for recipient",
            )
        self.sent.append(email)
        return TransportResult(
            success=True,
            attempted_at=attempted_at,
            provider_message_id=email.headers.get("Message-ID"),
        )


class _MailgunSendError(Exception):
    """Internal error raised when a Mailgun API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class MailgunEmailTransport:
    """Sends mail through the Mailgun messages API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.mailgun.net",
        timeout_seconds: int = 10,
        campaign_system: str = "MailMind-v2",
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds
        self._campaign_system = campaign_system

    def send(self, email: OutboundEmail) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        fields: list[tuple[str, str]] = [
            ("from", email.from_identity),
            ("to", email.to),
            ("subject", email.subject),
            ("text", email.text),
            ("html", render_html_body(email.text)),
        ]
        fields.extend((f"h:{name}", value) for name, value in email.headers.items())
        fields.append(("h:X-Campaign-System", self._campaign_system))

        try:
            response_data = self._post(email.sending_domain, fields)
        except _MailgunSendError as exc:
            logger.warning("mailgun send to domain %s failed: %s", email.sending_domain, exc.message)
            return TransportResult(
                success=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        return TransportResult(
            success=True,
            attempted_at=attempted_at,
            provider_message_id=response_data.get("id"),
        )

    def _post(self, domain: str, fields: list[tuple[str, str]]) -> dict[str, str]:
        """Send a POST request to the Mailgun messages endpoint."""
        url = f"{self._base_url}/v3/{urllib.parse.quote(domain)}/messages"
        credentials = base64.b64encode(f"api:{self._api_key}".encode("utf-8")).decode("ascii")
        request = urllib.request.Request(
            url,
            data=urllib.parse.urlencode(fields).encode("utf-8"),
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _MailgunSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _MailgunSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _MailgunSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _MailgunSendError(
                error_code="invalid_json",
                message=f"Response was not valid JSON: {exc}",
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise _MailgunSendError(
                error_code="connection_error",
                message=f"Connection error: {type(exc).__name__}: {exc}",
            ) from exc
