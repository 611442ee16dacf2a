#!/usr/bin/env python3
"""
Operator actions on the chat history index.

Usage:
    python scripts/history_ops.py status -100123456
    python scripts/history_ops.py failed [--chat -100123456]
    python scripts/history_ops.py retry <work_id>
    python scripts/history_ops.py backfill -100123456 2024-01-01T00:00:00Z 2024-02-01T00:00:00Z
    python scripts/history_ops.py reembed -100123456 intfloat/e5-base-v2
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from apps.telegram_bot.config import HistoryConfig  # noqa: E402
from apps.telegram_bot.service_factory import build_service  # noqa: E402
from knowledge.models import ensure_utc  # noqa: E402


def _timestamp(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Chat history operator actions")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("status", help="Show indexing progress for a chat")
    p.add_argument("chat_id", type=int)

    p = sub.add_parser("failed", help="List work items that exhausted their retries")
    p.add_argument("--chat", type=int, default=None)

    p = sub.add_parser("retry", help="Requeue a failed work item")
    p.add_argument("work_id")

    p = sub.add_parser("backfill", help="Re-chunk stored messages in a time range")
    p.add_argument("chat_id", type=int)
    p.add_argument("start", type=_timestamp)
    p.add_argument("end", type=_timestamp)

    p = sub.add_parser("reembed", help="Queue re-embedding of a chat with another model")
    p.add_argument("chat_id", type=int)
    p.add_argument("model_id")

    args = ap.parse_args(argv)

    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.WARNING)
    HistoryConfig.validate(require_token=False)

    service = build_service(with_llm=False)
    try:
        if args.command == "status":
            print(service.status(args.chat_id).model_dump_json(indent=2))
        elif args.command == "failed":
            items = service.failed_work(args.chat)
            if not items:
                print("No failed work")
            for item in items:
                print(f"{item.work_id}  chat={item.chat_id}  {item.kind.value}  attempts={item.attempt_count}  {item.last_error}")
        elif args.command == "retry":
            if not service.retry_failed(args.work_id):
                print(f"Work item {args.work_id} is not in the failed state")
                return 1
            print(f"Requeued {args.work_id}")
        elif args.command == "backfill":
            work_ids = service.backfill(args.chat_id, args.start, args.end)
            print(f"Enqueued {len(work_ids)} work items")
        elif args.command == "reembed":
            work_ids = service.reembed(args.chat_id, args.model_id)
            print(f"Enqueued {len(work_ids)} re-embeddings")
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
