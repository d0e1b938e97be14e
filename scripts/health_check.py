#!/usr/bin/env python3
"""Serve the health endpoint, or evaluate alert thresholds once.

Usage:
    python scripts/health_check.py --port 8080
    python scripts/health_check.py --check-thresholds

The server exposes ``GET /health`` (Basic auth) and ``GET /metrics``.
``--check-thresholds`` raises critical alerts for a stale heartbeat or a
failure streak and exits; schedule it next to the poll job.
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
    parser = argparse.ArgumentParser(description="Kaspi amoCRM sync health")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8080")))
    parser.add_argument(
        "--check-thresholds", action="store_true", help="Evaluate alert thresholds once and exit"
    )
    args = parser.parse_args()

    if args.check_thresholds:
        from src.kaspi_amo.runner import run

        sys.exit(run("thresholds"))

    import uvicorn

    from src.kaspi_amo.main import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
