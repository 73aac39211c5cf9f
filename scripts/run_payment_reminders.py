#!/usr/bin/env python3
"""Run one payment reminder pass, for cron-style scheduling.

Usage:
    python scripts/run_payment_reminders.py
"""
from __future__ import annotations

import sys

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from app.core.logging import setup_logging
from app.core.settings import get_settings
from app.tasks.scheduler import run_payment_reminders_blocking


def main() -> int:
    setup_logging()
    cursor = run_payment_reminders_blocking(get_settings())
    print(cursor.summary())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
