#!/usr/bin/env python3
"""
Ask a question about one chat's history.

Usage:
    python scripts/ask.py -100123456 "When did we agree to move the release?"
    python scripts/ask.py -100123456 "..." --debug
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from apps.telegram_bot.config import HistoryConfig  # noqa: E402
from apps.telegram_bot.service_factory import build_service  # noqa: E402


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Ask a question about a chat's history")
    ap.add_argument("chat_id", type=int)
    ap.add_argument("question")
    ap.add_argument("--top-k", type=int, default=None)
    ap.add_argument("--min-similarity", type=float, default=None)
    ap.add_argument("--debug", action="store_true", help="Print the retrieval trace")
    args = ap.parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO if args.debug else logging.WARNING,
    )
    HistoryConfig.validate(require_token=False, require_llm=True)

    service = build_service()
    try:
        answer = service.ask(args.chat_id, args.question, k=args.top_k, min_similarity=args.min_similarity)
    finally:
        service.close()

    print(answer.format_with_citations())
    if answer.abstained:
        print(f"(abstained: {answer.refusal_reason})")

    if args.debug and answer.trace:
        print("\n" + "=" * 80)
        print(answer.trace.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
