import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Set

from m365_crawler.config import CrawlConfig
from m365_crawler.errors import SessionAbortedError
from m365_crawler.graph_client import GraphClient
from m365_crawler.identity import IdentityResolver
from m365_crawler.pagination import FetchFirst, FetchNext, walk
from m365_crawler.permissions import PermissionMapper, RoleEncoder
from m365_crawler.pool import BoundedWorkPool, DrainResult, WorkItem
from m365_crawler.retry import RetryPolicy
from m365_crawler.runtime_logger import emit
from m365_crawler.sinks import LoggingFailureSink, MemoryDocumentSink
from m365_crawler.stats import CrawlerStats, StatsKey


class CrawlSession:
    """One crawl invocation: owns the identity caches and the work pool.

    Use as a context manager or through ``run()``. Closing drains the pool
    exactly once, commits the document sink exactly once and clears the
    identity caches, even when the crawl raised.
    """

    def __init__(
        self,
        config: CrawlConfig,
        *,
        client=None,
        document_sink=None,
        failure_sink=None,
        stats=None,
        extractor=None,
        encoder: Optional[RoleEncoder] = None,
        session_id: Optional[str] = None,
        name: str = "crawl",
    ):
        self.config = config
        self.session_id = session_id or str(uuid.uuid4())
        self.name = name
        self.client = client or GraphClient(
            retry_policy=RetryPolicy(min_wait=config.retry_min_wait, max_wait=config.retry_max_wait)
        )
        self.document_sink = document_sink or MemoryDocumentSink()
        self.failure_sink = failure_sink or LoggingFailureSink()
        self.stats = stats or CrawlerStats()
        self.extractor = extractor
        self.encoder = encoder or RoleEncoder()
        self.default_roles = self.encoder.encode_permissions(config.default_permissions)

        self.resolver: Optional[IdentityResolver] = None
        self.mapper: Optional[PermissionMapper] = None
        self.pool: Optional[BoundedWorkPool] = None
        self.drain_result: Optional[DrainResult] = None
        self.started_at: Optional[datetime] = None
        self._started_monotonic = 0.0
        self._duration = 0.0
        self._opened = False
        self._closed = False

    @property
    def context(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "crawler": self.name}

    @property
    def cancelled(self) -> bool:
        return self.pool is not None and self.pool.cancelled

    def open(self) -> "CrawlSession":
        if self._opened:
            raise RuntimeError("Crawl session already opened")
        self.client.check_credentials()

        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()
        self.resolver = IdentityResolver(self.client, self.config.cache_size)
        self.mapper = PermissionMapper(self.resolver, self.encoder)
        self.pool = BoundedWorkPool(
            self.config.number_of_threads,
            ignore_error=self.config.ignore_error,
            document_sink=self.document_sink,
            failure_sink=self.failure_sink,
            stats=self.stats,
            params=self.config.params,
            session_context=self.context,
        )
        self._opened = True
        emit("INFO", "SESSION", f"Crawl session opened: session_id={self.session_id} crawler={self.name} config={self.config.describe()}")
        return self

    def __enter__(self) -> "CrawlSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close(raise_fatal=exc_type is None)
        return False

    def walk(self, fetch_first: FetchFirst, fetch_next: FetchNext) -> Iterator[Any]:
        return walk(fetch_first, fetch_next)

    def submit(self, url: str, process: Callable[[StatsKey], Optional[Dict[str, Any]]], payload: Any = None) -> bool:
        if not self._opened or self._closed:
            raise RuntimeError("Crawl session is not open")
        return self.pool.submit(WorkItem(url=url, process=process, payload=payload))

    def resource_roles(
        self,
        permissions: Iterable[Dict[str, Any]],
        *,
        inherited_roles: Iterable[str] = (),
        resource: str = "",
    ) -> Set[str]:
        return self.mapper.resource_roles(
            permissions,
            default_roles=self.default_roles,
            inherited_roles=inherited_roles,
            resource=resource,
        )

    def close(self, *, raise_fatal: bool = True):
        if self._closed or not self._opened:
            return
        self._closed = True
        try:
            self.drain_result = self.pool.drain(self.config.drain_timeout)
        finally:
            try:
                self.document_sink.commit()
            finally:
                self.resolver.clear()
                self.client.close()
                self._duration = time.monotonic() - self._started_monotonic

        fatal = self.pool.fatal_error
        level = "ERROR" if fatal is not None else "INFO"
        emit(level, "SESSION", f"Crawl session closed: session_id={self.session_id} summary={self.summary()}")
        if raise_fatal and fatal is not None:
            raise SessionAbortedError(fatal) from fatal

    def summary(self) -> Dict[str, Any]:
        fatal = self.pool.fatal_error if self.pool is not None else None
        return {
            "session_id": self.session_id,
            "crawler": self.name,
            "status": "aborted" if fatal is not None else ("completed" if self._closed else "running"),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_seconds": round(self._duration, 3),
            "items": self.pool.counters() if self.pool is not None else {},
            "stats": self.stats.snapshot() if hasattr(self.stats, "snapshot") else {},
            "drain": self.drain_result.as_dict() if self.drain_result else None,
            "error": str(fatal) if fatal is not None else None,
        }

    def run(self, crawler) -> Dict[str, Any]:
        with self:
            crawler.crawl(self)
        return self.summary()
