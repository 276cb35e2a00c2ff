#!/usr/bin/env python3
"""Apply SQL migrations from db/migrations to the crawler's Postgres database.

Each file runs in its own transaction and is recorded in ``crawl_schema_migrations``
so reruns only apply files that have not been seen yet.
"""

import argparse
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import psycopg2


LEDGER_DDL = """
    CREATE TABLE IF NOT EXISTS crawl_schema_migrations (
      filename    TEXT PRIMARY KEY,
      applied_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply pending SQL migrations from db/migrations.")
    parser.add_argument("sql_file", nargs="?", help="Apply only this file (must live under db/migrations)")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    return parser.parse_args()


def resolve_repo_root() -> Path:
    return Path(__file__).resolve().parent.parent


def migrations_dir(repo_root: Path) -> Path:
    return (repo_root / "db" / "migrations").resolve()


def validate_sql_file(sql_file_arg: str, repo_root: Path) -> Path:
    base = migrations_dir(repo_root)
    candidate = Path(sql_file_arg).expanduser()
    if not candidate.is_absolute():
        candidate = (Path.cwd() / candidate).resolve()
    else:
        candidate = candidate.resolve()

    if candidate.suffix.lower() != ".sql":
        raise ValueError("Migration file must end with .sql")
    if not candidate.exists() or not candidate.is_file():
        raise ValueError(f"Migration file does not exist: {candidate}")
    try:
        candidate.relative_to(base)
    except ValueError as exc:
        raise ValueError(f"Migration file must be inside {base}, got: {candidate}") from exc
    return candidate


def list_sql_files(repo_root: Path) -> list[Path]:
    return sorted(p for p in migrations_dir(repo_root).glob("*.sql") if p.is_file())


def read_sql_file(sql_file: Path) -> str:
    sql_text = sql_file.read_text(encoding="utf-8")
    if not sql_text.strip():
        raise ValueError(f"Migration file is empty: {sql_file}")
    return sql_text


def parse_db_host(db_url: str) -> str:
    try:
        parsed = urlparse(db_url)
    except ValueError:
        return "unknown"
    return parsed.hostname or "unknown"


def resolve_db_url() -> str:
    db_url = os.getenv("DATABASE_URL", "").strip()
    if not db_url:
        db_url = input("Enter DATABASE_URL: ").strip()
    if not db_url:
        raise ValueError("DATABASE_URL cannot be empty")
    return db_url


def confirm_execution(files: list[Path], db_host: str) -> bool:
    print(f"Target DB host: {db_host}")
    for sql_file in files:
        print(f"  pending: {sql_file.name}")
    response = input('Type "yes" to apply these migrations: ').strip().lower()
    return response == "yes"


def applied_migrations(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(LEDGER_DDL)
        cur.execute("SELECT filename FROM crawl_schema_migrations")
        rows = cur.fetchall()
    conn.commit()
    return {row[0] for row in rows}


def apply_migration(conn, sql_file: Path) -> None:
    sql_text = read_sql_file(sql_file)
    try:
        with conn.cursor() as cur:
            cur.execute(sql_text)
            cur.execute("INSERT INTO crawl_schema_migrations (filename) VALUES (%s)", [sql_file.name])
        conn.commit()
    except psycopg2.Error:
        conn.rollback()
        raise


def main() -> int:
    started_at = datetime.now(timezone.utc)
    timer_start = time.perf_counter()
    print(f"[db_migrations] Start: {started_at.isoformat()}")

    conn = None
    try:
        args = parse_args()
        repo_root = resolve_repo_root()
        candidates = [validate_sql_file(args.sql_file, repo_root)] if args.sql_file else list_sql_files(repo_root)
        db_url = resolve_db_url()

        conn = psycopg2.connect(db_url)
        conn.autocommit = False
        done = applied_migrations(conn)
        pending = [f for f in candidates if f.name not in done]
        if not pending:
            print("[db_migrations] Nothing to apply.")
            return 0

        if not args.yes and not confirm_execution(pending, parse_db_host(db_url)):
            print("[db_migrations] Cancelled by user. No changes applied.")
            return 2

        for sql_file in pending:
            print(f"[db_migrations] Executing: {sql_file.name}")
            apply_migration(conn, sql_file)
        elapsed = time.perf_counter() - timer_start
        print(f"[db_migrations] Applied {len(pending)} file(s) in {elapsed:.2f}s")
        return 0
    except (ValueError, psycopg2.Error) as err:
        elapsed = time.perf_counter() - timer_start
        print(f"[db_migrations] Failed in {elapsed:.2f}s: {err}", file=sys.stderr)
        return 1
    finally:
        if conn is not None:
            conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
