from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from .conversation_store import MessageRecord

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that summarizes conversations for human agents. "
    "Provide a brief, clear summary highlighting key points and customer needs."
)


@dataclass(frozen=True)
class GenerationRequest:
    system_prompt: str
    context: str
    user_message: str


class GenerationError(Exception):
    """Raised when a response or summary could not be generated."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ResponseGenerator(Protocol):
    def generate(self, request: GenerationRequest) -> str: ...


class SummaryGenerator(Protocol):
    def summarize(self, messages: Sequence[MessageRecord]) -> str: ...


def format_transcript(messages: Sequence[MessageRecord]) -> str:
    return "\n".join(
        f"{'Agent' if message.sender_type == 'agent' else 'Customer'}: {message.content}" for message in messages
    )


class StubResponseGenerator:
    def __init__(
        self,
        *,
        reply: str = "Thanks for reaching out. I have noted your question and will share the details with you shortly.",
        error: GenerationError | None = None,
    ) -> None:
        self._reply = reply
        self._error = error
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        if self._error is not None:
            raise self._error
        return self._reply


class StubSummaryGenerator:
    def __init__(self, *, error: GenerationError | None = None) -> None:
        self._error = error

    def summarize(self, messages: Sequence[MessageRecord]) -> str:
        if self._error is not None:
            raise self._error
        lead_messages = [message for message in messages if message.sender_type == "lead"]
        if not lead_messages:
            return "Conversation requires human attention."
        return f"{len(messages)} messages exchanged. Customer most recently wrote: {lead_messages[-1].content[:200]}"


class HttpChatCompletionClient:
    """OpenAI-compatible chat completions client used for replies and summaries."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._model = model
        self._timeout_seconds = timeout_seconds

    def generate(self, request: GenerationRequest) -> str:
        user_content = (
            f"{request.context}\n\nCustomer: {request.user_message}\n\n"
            "Provide a helpful, concise response (2-3 sentences max). "
            "If a handover is needed based on the system instructions, end with [HANDOVER_NEEDED]."
        )
        return self._complete(
            [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": user_content},
            ],
            temperature=0.7,
            max_tokens=200,
        )

    def summarize(self, messages: Sequence[MessageRecord]) -> str:
        user_content = (
            "Summarize this conversation for a human agent who needs to take over:\n\n"
            f"{format_transcript(messages)}\n\n"
            "Provide a 2-3 sentence summary focusing on: 1) What the customer wants, "
            "2) Key information discussed, 3) Suggested next steps."
        )
        return self._complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            temperature=0.3,
            max_tokens=150,
        )

    def _complete(self, messages: list[dict[str, str]], *, temperature: float, max_tokens: int) -> str:
        response_data = self._post(
            {
                "model": self._model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        try:
            content = response_data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("malformed_response", "completion response has no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise GenerationError("empty_completion", "completion response was empty")
        return content

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """Send a POST request to the chat completions endpoint."""
        url = f"{self._base_url}/v1/chat/completions"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "X-Title": "MailMind Campaign System",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise GenerationError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise GenerationError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise GenerationError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise GenerationError(
                error_code="invalid_json",
                message=f"Response was not valid JSON: {exc}",
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise GenerationError(
                error_code="connection_error",
                message=f"Connection error: {type(exc).__name__}: {exc}",
            ) from exc
