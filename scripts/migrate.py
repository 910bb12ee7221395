#!/usr/bin/env python3
"""Install the agentdeploy Postgres schema.

Usage:
    DATABASE_URL=postgresql://localhost:5432/agentdeploy python scripts/migrate.py

    # Or with an explicit DSN and schema file:
    python scripts/migrate.py --dsn postgresql://... --schema scripts/schema.sql

Every statement in the schema is idempotent (``create ... if not exists``), so
the script can be re-run against an existing database.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def apply_schema(dsn: str, schema_path: Path, dry_run: bool = False) -> int:
    """Execute ``schema_path`` against ``dsn`` in one transaction.

    Returns the number of bytes of SQL applied.
    """
    sql = schema_path.read_text()
    if dry_run:
        print(f"[DRY RUN] Would apply {schema_path} ({len(sql)} bytes)")
        return len(sql)
    with psycopg.connect(dsn) as conn:
        with conn.transaction():
            conn.execute(sql)
    print(f"Applied {schema_path}")
    return len(sql)


def main():
    parser = argparse.ArgumentParser(
        description="Install the agentdeploy Postgres schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dsn",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--schema",
        type=Path,
        default=SCHEMA_PATH,
        help="Schema file to apply (defaults to scripts/schema.sql)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without touching the database",
    )

    args = parser.parse_args()

    if not args.dsn:
        print("Error: --dsn or DATABASE_URL environment variable required")
        sys.exit(1)

    if not args.schema.exists():
        print(f"Error: schema file not found: {args.schema}")
        sys.exit(1)

    try:
        apply_schema(args.dsn, args.schema, args.dry_run)
    except psycopg.Error as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
