#!/usr/bin/env python3
"""Re-drive inbound webhook events that were claimed but never completed."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from mailmind_web.api import build_sweeper, conversation_repo, pipeline  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Find webhook events still marked unprocessed after a grace period and "
            "finish them. Events whose inbound message is already stored are only "
            "marked processed; nothing is re-sent."
        )
    )
    parser.add_argument(
        "--older-than-seconds",
        type=int,
        required=True,
        help="Only events created at least this many seconds ago are swept.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log each recovered event.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.older_than_seconds < 0:
        raise SystemExit("--older-than-seconds must be zero or positive")

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    sweeper = build_sweeper(pipeline=pipeline, repository=conversation_repo)
    report = sweeper.sweep(older_than_seconds=args.older_than_seconds)
    print(
        f"examined={report.examined} completed_without_replay={report.completed_without_replay} "
        f"replayed={report.replayed} failed={report.failed}"
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
