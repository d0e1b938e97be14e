#!/usr/bin/env python3
"""Run one reconciliation batch.

Usage:
    python scripts/reconcile.py
    python scripts/reconcile.py --dry-run

Intended for a scheduler every 10-15 minutes. Exits 0 when the batch
completed or another run holds the lock, 1 on failure.
"""

from __future__ import annotations

import argparse
import os
import sys

# Ensure project root is on sys.path so we can import src.kaspi_amo
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Repair drift between Kaspi orders and amoCRM deals")
    parser.add_argument(
        "--dry-run", action="store_true", help="Log intended CRM writes without performing them"
    )
    args = parser.parse_args()

    if args.dry_run:
        os.environ["DRY_RUN"] = "true"

    from src.kaspi_amo.runner import run

    sys.exit(run("reconcile"))


if __name__ == "__main__":
    main()
