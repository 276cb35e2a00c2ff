import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from m365_crawler import db
from m365_crawler.config import CrawlConfig
from m365_crawler.crawlers.drive import DriveCrawler
from m365_crawler.runtime_logger import emit
from m365_crawler.session import CrawlSession
from m365_crawler.sinks import LoggingFailureSink, MemoryDocumentSink, PostgresDocumentSink, PostgresFailureSink


RECENT_RUNS_LIMIT = 20

_runs_lock = threading.Lock()
_active_targets: set = set()
_recent_runs: deque = deque(maxlen=RECENT_RUNS_LIMIT)


def get_recent_runs() -> list:
    with _runs_lock:
        return list(_recent_runs)


def get_active_targets() -> list:
    with _runs_lock:
        return sorted(_active_targets)


def target_key(request: Dict[str, Any]) -> str:
    if request.get("drive_id"):
        return f"drive:{request['drive_id']}"
    if request.get("site_id"):
        return f"site:{request['site_id']}"
    if request.get("user_drives"):
        return "user_drives"
    return ""


def build_crawler(request: Dict[str, Any]) -> DriveCrawler:
    params = request.get("params") or {}
    mimetypes = params.get("supported_mimetypes") or ".*"
    return DriveCrawler(
        drive_id=request.get("drive_id"),
        site_id=request.get("site_id"),
        user_drives=bool(request.get("user_drives")),
        ignore_folder=str(params.get("ignore_folder", "true")).strip().lower() != "false",
        supported_mimetypes=[m.strip() for m in str(mimetypes).split(",") if m.strip()],
        include_pattern=params.get("include_pattern") or None,
        exclude_pattern=params.get("exclude_pattern") or None,
        max_content_length=int(params.get("max_content_length", -1)),
    )


def build_session(config: CrawlConfig, session_id: str, name: str) -> CrawlSession:
    if db.database_url():
        document_sink = PostgresDocumentSink(session_id)
        failure_sink = PostgresFailureSink()
    else:
        emit("WARN", "SESSION", "DATABASE_URL is not set; documents are kept in memory only")
        document_sink = MemoryDocumentSink()
        failure_sink = LoggingFailureSink()
    return CrawlSession(
        config,
        document_sink=document_sink,
        failure_sink=failure_sink,
        session_id=session_id,
        name=name,
    )


def run_crawl_once(request: Dict[str, Any], session_id: Optional[str] = None) -> Dict[str, Any]:
    key = target_key(request)
    session_id = session_id or str(uuid.uuid4())
    with _runs_lock:
        if key in _active_targets:
            emit("WARN", "SESSION", f"Run-now crawl skipped: target already running target={key}")
            return {"session_id": session_id, "target": key, "status": "skipped", "error": "already_running"}
        _active_targets.add(key)

    started_at = datetime.now(timezone.utc).isoformat()
    try:
        config = CrawlConfig.from_params(request.get("params") or {})
        crawler = build_crawler(request)
        session = build_session(config, session_id, f"{crawler.name}:{key}")
        summary = session.run(crawler)
    except Exception as exc:
        emit("ERROR", "SESSION", f"Crawl failed: session_id={session_id} target={key} error={exc}")
        summary = {"session_id": session_id, "status": "failed", "error": str(exc)}
    finally:
        with _runs_lock:
            _active_targets.discard(key)

    summary = dict(summary, target=key, requested_at=started_at)
    with _runs_lock:
        _recent_runs.appendleft(summary)
    return summary
