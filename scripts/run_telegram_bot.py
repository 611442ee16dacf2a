#!/usr/bin/env python3
"""
Run the Telegram recorder with its indexing workers.

Usage:
    python scripts/run_telegram_bot.py

The bot must be a group member with privacy mode disabled to see every
message. Reads TELEGRAM_BOT_TOKEN, DATA_DIR, EMBEDDING_MODEL and
WORKER_COUNT from the environment (or .env).
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from apps.telegram_bot.bot import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
