#!/usr/bin/env python3
"""Create the sync state tables.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --check

Production deployments should prefer ``alembic upgrade head``; this
script is for local setups and first-time bootstrapping.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.kaspi_amo
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def initialize(check_only: bool) -> None:
    from src.kaspi_amo.core.database import check_connection, close_db, init_db

    try:
        await check_connection()
        print("Database connection: ok")
        if not check_only:
            await init_db()
            print("Tables created: processed_orders, locks, meta, daily_stats, error_log, oauth_tokens")
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize the sync database")
    parser.add_argument("--check", action="store_true", help="Only verify connectivity")
    args = parser.parse_args()

    try:
        asyncio.run(initialize(args.check))
    except Exception as exc:
        print(f"Database initialization failed: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
