"""Console script entry points installed by pyproject."""

from __future__ import annotations

import sys

from src.kaspi_amo.runner import run


def poll() -> None:
    sys.exit(run("poll"))


def reconcile() -> None:
    sys.exit(run("reconcile"))
