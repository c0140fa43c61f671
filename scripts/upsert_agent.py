#!/usr/bin/env python3
"""Create or update an email agent from a JSON definition file."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from mailmind_web.api import conversation_repo  # noqa: E402
from mailmind_web.conversation_store import AgentRecord  # noqa: E402

_REQUIRED_FIELDS = ("agent_id", "name", "sender_name", "sender_email", "subdomain", "system_prompt")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upsert an agent (sender identity, prompt and handover rules) into the conversation store."
    )
    parser.add_argument("definition", type=Path, help="Path to the agent JSON definition.")
    return parser.parse_args()


def build_agent(raw: dict[str, Any]) -> AgentRecord:
    missing = [name for name in _REQUIRED_FIELDS if not str(raw.get(name) or "").strip()]
    if missing:
        raise SystemExit(f"agent definition is missing: {', '.join(missing)}")
    threshold = raw.get("confidence_threshold", 0.7)
    return AgentRecord(
        agent_id=str(raw["agent_id"]).strip(),
        name=str(raw["name"]).strip(),
        sender_name=str(raw["sender_name"]).strip(),
        sender_email=str(raw["sender_email"]).strip(),
        subdomain=str(raw["subdomain"]).strip(),
        system_prompt=str(raw["system_prompt"]),
        prompt_variables={str(key): str(value) for key, value in (raw.get("prompt_variables") or {}).items()},
        handover_triggers=tuple(str(value) for value in raw.get("handover_triggers") or ()),
        max_messages=raw.get("max_messages", 8),
        confidence_threshold=float(threshold) if threshold is not None else None,
        handover_email=raw.get("handover_email"),
        is_active=bool(raw.get("is_active", True)),
    )


def main() -> int:
    args = parse_args()
    try:
        raw = json.loads(args.definition.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SystemExit(f"could not read agent definition: {exc}") from exc
    if not isinstance(raw, dict):
        raise SystemExit("agent definition must be a JSON object")

    agent = conversation_repo.upsert_agent(build_agent(raw))
    print(f"upserted agent {agent.agent_id} <{agent.sender_email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
