import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from m365_crawler.errors import FailureKind, SessionAbortedError, classify_failure, error_class_name
from m365_crawler.runtime_logger import emit
from m365_crawler.stats import StatsAction, StatsKey


MAX_POOL_THREADS = int(os.getenv("CRAWL_MAX_POOL_THREADS", "64"))


@dataclass
class WorkItem:
    url: str
    process: Callable[[StatsKey], Optional[Dict[str, Any]]]
    payload: Any = None


@dataclass(frozen=True)
class DrainResult:
    timed_out: bool
    cancelled: int
    still_running: int

    def as_dict(self) -> Dict[str, Any]:
        return {"timed_out": self.timed_out, "cancelled": self.cancelled, "still_running": self.still_running}


def normalize_pool_size(number_of_threads: Any) -> int:
    try:
        size = int(number_of_threads)
    except (TypeError, ValueError):
        emit("WARN", "POOL", f"Invalid number_of_threads={number_of_threads!r}, using 1")
        return 1
    if size <= 0:
        emit("WARN", "POOL", f"number_of_threads={size} is not positive, using 1")
        return 1
    if size > MAX_POOL_THREADS:
        emit("WARN", "POOL", f"number_of_threads={size} capped to {MAX_POOL_THREADS}")
        return MAX_POOL_THREADS
    return size


class BoundedWorkPool:
    """Fixed worker group with a bounded queue and caller-runs overflow.

    At most ``size`` items run and ``size`` more wait. When both are full the
    submitting thread processes the item itself, so nothing is dropped and
    memory stays bounded. Every item ends in exactly one outcome: stored,
    skipped, failed or cancelled.
    """

    def __init__(
        self,
        number_of_threads: Any,
        *,
        ignore_error: bool,
        document_sink,
        failure_sink,
        stats,
        params: Optional[Dict[str, Any]] = None,
        session_context: Optional[Dict[str, Any]] = None,
    ):
        self.size = normalize_pool_size(number_of_threads)
        self.ignore_error = bool(ignore_error)
        self._document_sink = document_sink
        self._failure_sink = failure_sink
        self._stats = stats
        self._params = params or {}
        self._session_context = session_context or {}

        self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="crawl-worker")
        self._slots = threading.BoundedSemaphore(self.size * 2)
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._futures: set = set()
        self._accepting = True
        self._fatal: Optional[BaseException] = None
        self._drain_result: Optional[DrainResult] = None
        self._counts = {
            "submitted": 0,
            "inline": 0,
            "succeeded": 0,
            "skipped": 0,
            "failed": 0,
            "cancelled": 0,
        }
        emit("DEBUG", "POOL", f"Work pool started: workers={self.size} queue_capacity={self.size}")

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def fatal_error(self) -> Optional[BaseException]:
        with self._lock:
            return self._fatal

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def _count(self, name: str, amount: int = 1):
        with self._lock:
            self._counts[name] += amount

    def _check_accepting(self):
        with self._lock:
            fatal = self._fatal
            accepting = self._accepting
        if fatal is not None:
            raise SessionAbortedError(fatal)
        if not accepting:
            raise RuntimeError("Work pool is draining and accepts no new items")

    def submit(self, item: WorkItem) -> bool:
        """Queue ``item``; returns False when it had to run on the calling thread."""
        self._check_accepting()
        self._count("submitted")
        if not self._slots.acquire(blocking=False):
            self._count("inline")
            emit("DEBUG", "POOL", f"Pool saturated, running inline: url={item.url}")
            self._run(item, inline=True)
            return False

        try:
            future = self._executor.submit(self._run_slot, item)
        except RuntimeError:
            self._slots.release()
            raise
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return True

    def _forget(self, future: Future):
        with self._lock:
            self._futures.discard(future)

    def _run_slot(self, item: WorkItem):
        try:
            self._run(item, inline=False)
        finally:
            self._slots.release()

    def _run(self, item: WorkItem, *, inline: bool):
        if self._cancel_event.is_set():
            self._count("cancelled")
            return

        key = StatsKey(item.url)
        self._stats.begin(key)
        try:
            document = item.process(key)
            if document is None:
                self._stats.discard(key)
                self._count("skipped")
                return
            url = document.get("url")
            if isinstance(url, str):
                key.set_url(url)
            self._document_sink.store(self._params, document)
            self._stats.record(key, StatsAction.FINISHED)
            self._count("succeeded")
        except Exception as exc:
            kind = classify_failure(exc)
            if kind is FailureKind.NOT_FOUND:
                emit("INFO", "POOL", f"Item disappeared before processing, skipped: url={key.url or item.url}")
                self._stats.discard(key)
                self._count("skipped")
                return
            self._handle_failure(item, key, exc, kind, inline=inline)
        finally:
            self._stats.done(key)

    def _handle_failure(self, item: WorkItem, key: StatsKey, exc: Exception, kind: FailureKind, *, inline: bool):
        url = key.url or item.url
        action = StatsAction.ACCESS_EXCEPTION if kind is FailureKind.PERMISSION_DENIED else StatsAction.EXCEPTION
        emit("WARN", "POOL", f"Item failed: url={url} kind={kind.value} error={type(exc).__name__}: {exc}")
        self._stats.record(key, action)
        self._count("failed")

        if self.ignore_error:
            try:
                self._failure_sink.store(self._session_context, error_class_name(exc), url, exc)
            except Exception as sink_exc:
                emit("ERROR", "POOL", f"Failure sink rejected record: url={url} error={sink_exc}")
            return

        with self._lock:
            first = self._fatal is None
            if first:
                self._fatal = exc
                self._accepting = False
        if first:
            emit("ERROR", "POOL", f"Item failure aborts session (ignore_error=false): url={url}")
        if inline:
            raise SessionAbortedError(exc) from exc

    def drain(self, timeout: Optional[float]) -> DrainResult:
        """Stop accepting work, wait up to ``timeout`` seconds, then cancel stragglers."""
        with self._lock:
            if self._drain_result is not None:
                emit("WARN", "POOL", "Work pool drained more than once")
                return self._drain_result
            self._accepting = False
            pending = list(self._futures)

        emit("DEBUG", "POOL", f"Draining work pool: in_flight={len(pending)} timeout={timeout}")
        _, not_done = wait(pending, timeout=timeout)
        cancelled = 0
        still_running = 0
        if not_done:
            self._cancel_event.set()
            for future in not_done:
                if future.cancel():
                    cancelled += 1
                else:
                    still_running += 1
            self._count("cancelled", cancelled)
            emit(
                "WARN",
                "POOL",
                f"Work pool drain timed out: cancelled={cancelled} still_running={still_running}",
            )
        self._executor.shutdown(wait=False, cancel_futures=True)

        result = DrainResult(timed_out=bool(not_done), cancelled=cancelled, still_running=still_running)
        with self._lock:
            self._drain_result = result
        return result
