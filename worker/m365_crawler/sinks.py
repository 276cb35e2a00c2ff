import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, Optional, Protocol, Tuple

from m365_crawler import db
from m365_crawler.runtime_logger import emit
from m365_crawler.stats import StatsAction, StatsKey


class DocumentSink(Protocol):
    def store(self, params: Dict[str, Any], fields: Dict[str, Any]) -> None: ...

    def commit(self) -> None: ...


class FailureSink(Protocol):
    def store(self, session_context: Dict[str, Any], error_class_name: str, resource_url: str, error: BaseException) -> None: ...


class StatsSink(Protocol):
    def begin(self, key: StatsKey) -> None: ...

    def record(self, key: StatsKey, action: StatsAction) -> None: ...

    def discard(self, key: StatsKey) -> None: ...

    def done(self, key: StatsKey) -> None: ...


def _format_error(error: BaseException, limit: int = 4000) -> str:
    text = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def dedupe_rows_keep_last(rows: List[tuple], key_fn: Callable[[tuple], Hashable]) -> Tuple[List[tuple], int]:
    if len(rows) < 2:
        return rows, 0
    seen: set = set()
    out_rev: List[tuple] = []
    for row in reversed(rows):
        key = key_fn(row)
        if key in seen:
            continue
        seen.add(key)
        out_rev.append(row)
    if len(out_rev) == len(rows):
        return rows, 0
    out = list(reversed(out_rev))
    return out, len(rows) - len(out)


class MemoryDocumentSink:
    def __init__(self):
        self._lock = threading.Lock()
        self.documents: List[Dict[str, Any]] = []
        self.commits = 0

    def store(self, params: Dict[str, Any], fields: Dict[str, Any]) -> None:
        with self._lock:
            self.documents.append(dict(fields))

    def commit(self) -> None:
        with self._lock:
            self.commits += 1
        emit("INFO", "SINK", f"Documents committed: count={len(self.documents)}")


class LoggingFailureSink:
    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[Dict[str, Any]] = []

    def store(self, session_context: Dict[str, Any], error_class_name: str, resource_url: str, error: BaseException) -> None:
        record = {
            "session": session_context.get("session_id"),
            "error_name": error_class_name,
            "url": resource_url,
            "error": str(error),
        }
        with self._lock:
            self.records.append(record)
        emit("WARN", "SINK", f"Crawl failure recorded: url={resource_url} error_name={error_class_name} error={error}")


class PostgresDocumentSink:
    """Buffers documents and upserts them into ``crawl_documents`` keyed by url."""

    upsert_sql = """
        INSERT INTO crawl_documents
          (url, session_id, title, roles, fields, synced_at)
        VALUES %s
        ON CONFLICT (url) DO UPDATE SET
          session_id = EXCLUDED.session_id,
          title = EXCLUDED.title,
          roles = EXCLUDED.roles,
          fields = EXCLUDED.fields,
          synced_at = EXCLUDED.synced_at
    """

    def __init__(self, session_id: str, *, flush_every: int = 200, conn_factory=None):
        self.session_id = session_id
        self.flush_every = max(1, int(flush_every))
        self._conn_factory = conn_factory or db.get_conn
        self._lock = threading.Lock()
        self._batch: List[tuple] = []
        self._next_flush_at = self.flush_every
        self.upserted = 0
        self.dropped_duplicates = 0
        self.failed_flushes = 0
        self.commits = 0

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._batch)

    def store(self, params: Dict[str, Any], fields: Dict[str, Any]) -> None:
        """Buffer one document; a full buffer is flushed opportunistically.

        A failed intermediate flush keeps the rows buffered and is not charged
        to the document being stored. ``commit()`` writes whatever is left and
        raises if that final write fails.
        """
        url = fields.get("url")
        if not url:
            raise ValueError("document has no url")
        row = (
            url,
            self.session_id,
            fields.get("title"),
            sorted(fields.get("role") or []),
            db.jsonb({k: v for k, v in fields.items() if k != "content"}),
            datetime.now(timezone.utc),
        )
        with self._lock:
            self._batch.append(row)
            if len(self._batch) < self._next_flush_at:
                return
            try:
                self._flush_locked()
            except Exception as exc:
                self.failed_flushes += 1
                self._next_flush_at = len(self._batch) + self.flush_every
                emit(
                    "WARN",
                    "SINK",
                    f"Document flush failed, rows kept for retry: session_id={self.session_id} pending={len(self._batch)} error={exc}",
                )

    def commit(self) -> None:
        with self._lock:
            self._flush_locked()
            self.commits += 1
        emit(
            "INFO",
            "SINK",
            f"Documents committed: session_id={self.session_id} upserted={self.upserted} dropped_duplicates={self.dropped_duplicates}",
        )

    def _flush_locked(self):
        if not self._batch:
            return
        rows, dropped = dedupe_rows_keep_last(self._batch, key_fn=lambda r: r[0])
        conn = self._conn_factory()
        try:
            cur = conn.cursor()
            db.write_with_retry(
                conn,
                op_name="crawl_documents_upsert",
                mutation_fn=lambda: db.execute_values(cur, self.upsert_sql, rows),
            )
        finally:
            conn.close()
        self._batch = []
        self._next_flush_at = self.flush_every
        self.upserted += len(rows)
        self.dropped_duplicates += dropped


class PostgresFailureSink:
    insert_sql = """
        INSERT INTO crawl_failures
          (session_id, occurred_at, error_name, url, error_log, context)
        VALUES (%s, %s, %s, %s, %s, %s)
    """

    def __init__(self, *, conn_factory=None):
        self._conn_factory = conn_factory or db.get_conn

    def store(self, session_context: Dict[str, Any], error_class_name: str, resource_url: str, error: BaseException) -> None:
        session_id: Optional[str] = session_context.get("session_id")
        params = [
            session_id,
            datetime.now(timezone.utc),
            error_class_name,
            resource_url,
            _format_error(error),
            db.jsonb({k: v for k, v in session_context.items() if isinstance(v, (str, int, float, bool))}),
        ]
        conn = self._conn_factory()
        try:
            cur = conn.cursor()
            db.write_with_retry(conn, op_name="crawl_failures_insert", mutation_fn=lambda: cur.execute(self.insert_sql, params))
        finally:
            conn.close()
        emit("WARN", "SINK", f"Crawl failure stored: session_id={session_id} url={resource_url} error_name={error_class_name}")
