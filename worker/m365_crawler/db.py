import os
import random
import re
import time
from typing import Callable, Optional, Tuple

import psycopg2
import psycopg2.extras

from m365_crawler.runtime_logger import emit


DB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "10"))
DB_WRITE_MAX_RETRIES = int(os.getenv("DB_WRITE_MAX_RETRIES", "4"))
DB_WRITE_RETRY_BASE_MS = int(os.getenv("DB_WRITE_RETRY_BASE_MS", "200"))
DB_WRITE_RETRY_MAX_MS = int(os.getenv("DB_WRITE_RETRY_MAX_MS", "3000"))
DB_WRITE_RETRY_JITTER_MS = int(os.getenv("DB_WRITE_RETRY_JITTER_MS", "150"))

RETRYABLE_DB_SQLSTATES = {"40P01", "55P03", "40001"}

_WRITE_PATTERNS = (
    ("insert", re.compile(r"(?is)^insert\s+into\s+([a-zA-Z0-9_.\"]+)")),
    ("update", re.compile(r"(?is)^update\s+([a-zA-Z0-9_.\"]+)")),
    ("delete", re.compile(r"(?is)^delete\s+from\s+([a-zA-Z0-9_.\"]+)")),
)


def _describe_write(query: str) -> Tuple[str, str]:
    normalized = " ".join((query or "").strip().split())
    for op, pattern in _WRITE_PATTERNS:
        match = pattern.match(normalized)
        if match:
            return op, match.group(1).strip().strip('"')
    return "unknown", "unknown"


def database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL")


def get_conn():
    url = database_url()
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg2.connect(url, connect_timeout=DB_CONNECT_TIMEOUT_SECONDS)


def ping() -> bool:
    if not database_url():
        return False
    try:
        conn = get_conn()
    except Exception as exc:
        emit("WARN", "DB_CONN", f"Database ping failed: error={exc}")
        return False
    try:
        cur = conn.cursor()
        cur.execute("SELECT 1")
        return True
    except Exception as exc:
        emit("WARN", "DB_CONN", f"Database ping failed: error={exc}")
        return False
    finally:
        conn.close()


def execute_values(cur, query: str, rows: list, page_size: int = 500):
    op, table = _describe_write(query)
    emit("INFO", "DB_CONN", f"Write requested: table={table} op={op} rows={len(rows or [])}")
    try:
        psycopg2.extras.execute_values(cur, query, rows, page_size=page_size)
    except Exception as exc:
        emit("ERROR", "DB_CONN", f"Write failed: table={table} op={op} rows={len(rows or [])} error={exc}")
        raise


def jsonb(value):
    return psycopg2.extras.Json(value)


def get_db_error_sqlstate(exc: BaseException) -> Optional[str]:
    pgcode = getattr(exc, "pgcode", None)
    if pgcode:
        return pgcode
    cause = getattr(exc, "__cause__", None)
    if cause is not None:
        return getattr(cause, "pgcode", None) or None
    return None


def is_retryable_db_error(exc: BaseException) -> bool:
    sqlstate = get_db_error_sqlstate(exc)
    return bool(sqlstate and sqlstate in RETRYABLE_DB_SQLSTATES)


def retry_sleep_seconds(attempt: int) -> float:
    # attempt is the 1-based retry number.
    base_ms = max(1, DB_WRITE_RETRY_BASE_MS)
    max_ms = max(base_ms, DB_WRITE_RETRY_MAX_MS)
    capped_ms = min(max_ms, base_ms * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, DB_WRITE_RETRY_JITTER_MS) if DB_WRITE_RETRY_JITTER_MS > 0 else 0.0
    return max(0.0, (capped_ms + jitter) / 1000.0)


def write_with_retry(conn, *, op_name: str, mutation_fn: Callable[[], None]) -> int:
    """Run ``mutation_fn`` and commit, retrying deadlocks and serialization failures.

    Returns the number of retries used. Non-retryable errors and exhausted
    retries are raised after rollback.
    """
    max_retries = max(0, DB_WRITE_MAX_RETRIES)
    retries = 0
    while True:
        try:
            mutation_fn()
            conn.commit()
            return retries
        except Exception as exc:
            conn.rollback()
            if not is_retryable_db_error(exc) or retries >= max_retries:
                raise
            retries += 1
            sleep_seconds = retry_sleep_seconds(retries)
            emit(
                "WARN",
                "DB_CONN",
                f"Write retry: operation={op_name} attempt={retries}/{max_retries} sqlstate={get_db_error_sqlstate(exc)} sleep_ms={int(sleep_seconds * 1000)}",
            )
            time.sleep(sleep_seconds)
