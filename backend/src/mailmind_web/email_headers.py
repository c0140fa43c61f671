from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger(__name__)

MAX_REFERENCES = 10

_MESSAGE_ID_KEYS = ("message-id",)
_IN_REPLY_TO_KEYS = ("in-reply-to",)
_REFERENCES_KEYS = ("references",)
_THREAD_ID_KEYS = ("x-thread-id",)
_ANGLE_ADDRESS = re.compile(r"<([^<>]+)>")


@dataclass(frozen=True)
class EmailThreadingHeaders:
    message_id: str | None = None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    thread_id: str | None = None


def normalize_message_id(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.replace("<", "").replace(">", "").strip()
    return normalized or None


def split_references(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    items = (normalize_message_id(part) for part in value.split())
    return tuple(item for item in items if item)


def truncate_references(references: tuple[str, ...] | list[str], *, limit: int = MAX_REFERENCES) -> tuple[str, ...]:
    if limit <= 0:
        return ()
    return tuple(references[-limit:])


def extract_email_address(value: str) -> str:
    match = _ANGLE_ADDRESS.search(value)
    if match:
        return match.group(1).strip().lower()
    return value.strip().lower()


def _lookup(fields: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for field_key, field_value in fields.items():
        if field_key.lower() in keys and isinstance(field_value, str) and field_value.strip():
            return field_value
    return None


def _lookup_header_blob(fields: Mapping[str, Any]) -> str | list[Any] | None:
    for field_key, field_value in fields.items():
        if field_key.lower() != "message-headers":
            continue
        # JSON deliveries carry the pairs as a native array.
        if isinstance(field_value, list) and field_value:
            return field_value
        if isinstance(field_value, str) and field_value.strip():
            return field_value
    return None


def _parse_header_blob(blob: str | list[Any]) -> list[tuple[str, str]]:
    if isinstance(blob, str):
        try:
            parsed = json.loads(blob)
        except ValueError:
            logger.warning("message-headers blob is not valid JSON; ignoring it")
            return []
    else:
        parsed = blob
    if not isinstance(parsed, list):
        logger.warning("message-headers blob is not a list of pairs; ignoring it")
        return []
    pairs: list[tuple[str, str]] = []
    for item in parsed:
        if (
            isinstance(item, (list, tuple))
            and len(item) == 2
            and isinstance(item[0], str)
            and isinstance(item[1], str)
        ):
            pairs.append((item[0], item[1]))
    return pairs


def parse_email_headers(fields: Mapping[str, Any]) -> EmailThreadingHeaders:
    """Recover threading headers from a provider webhook payload.

    Top-level fields win; the bundled ``message-headers`` pairs only fill the
    gaps the top-level fields leave.
    """
    message_id = normalize_message_id(_lookup(fields, _MESSAGE_ID_KEYS))
    in_reply_to = normalize_message_id(_lookup(fields, _IN_REPLY_TO_KEYS))
    references = split_references(_lookup(fields, _REFERENCES_KEYS))
    raw_thread_id = _lookup(fields, _THREAD_ID_KEYS)
    thread_id = raw_thread_id.strip() if raw_thread_id else None

    blob = _lookup_header_blob(fields)
    if blob:
        for key, value in _parse_header_blob(blob):
            lowered = key.lower()
            if lowered in _MESSAGE_ID_KEYS and message_id is None:
                message_id = normalize_message_id(value)
            elif lowered in _IN_REPLY_TO_KEYS and in_reply_to is None:
                in_reply_to = normalize_message_id(value)
            elif lowered in _REFERENCES_KEYS and not references:
                references = split_references(value)
            elif lowered in _THREAD_ID_KEYS and thread_id is None:
                thread_id = value.strip() or None

    return EmailThreadingHeaders(
        message_id=message_id,
        in_reply_to=in_reply_to,
        references=references,
        thread_id=thread_id,
    )
