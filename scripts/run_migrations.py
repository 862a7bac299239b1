#!/usr/bin/env python
"""Helper script to run Alembic migrations via `python scripts/run_migrations.py`."""

from __future__ import annotations

import argparse

from alembic.config import main as alembic_main


def run(revision: str = "head"):
    """Run the Alembic upgrade command."""
    alembic_main(argv=["upgrade", revision])


def main() -> None:
    parser = argparse.ArgumentParser(description="Upgrade the notes database schema.")
    parser.add_argument("--revision", default="head", help="Target revision (default: head)")
    args = parser.parse_args()
    run(args.revision)


if __name__ == "__main__":
    main()
