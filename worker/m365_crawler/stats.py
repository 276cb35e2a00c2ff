import threading
import time
from enum import Enum
from typing import Any, Dict, Optional


class StatsAction(Enum):
    PREPARED = "prepared"
    EVALUATED = "evaluated"
    FINISHED = "finished"
    ACCESS_EXCEPTION = "access_exception"
    EXCEPTION = "exception"


class StatsKey:
    """Correlates the lifecycle events of one work item."""

    def __init__(self, url: Optional[str]):
        self._url = url or ""
        self.created_at = time.monotonic()

    @property
    def url(self) -> str:
        return self._url

    def set_url(self, url: str):
        if url:
            self._url = url

    def __repr__(self) -> str:
        return f"StatsKey(url={self._url!r})"


class CrawlerStats:
    """In-memory stats sink: per-action counters plus the phases of open items."""

    def __init__(self):
        self._lock = threading.Lock()
        self._open: Dict[int, list] = {}
        self.begun = 0
        self.done_count = 0
        self.discarded = 0
        self.actions: Dict[StatsAction, int] = {action: 0 for action in StatsAction}

    def begin(self, key: StatsKey):
        with self._lock:
            self._open[id(key)] = []
            self.begun += 1

    def record(self, key: StatsKey, action: StatsAction):
        with self._lock:
            self.actions[action] += 1
            phases = self._open.get(id(key))
            if phases is not None:
                phases.append(action)

    def discard(self, key: StatsKey):
        with self._lock:
            self.discarded += 1

    def done(self, key: StatsKey):
        with self._lock:
            self._open.pop(id(key), None)
            self.done_count += 1

    def phases(self, key: StatsKey) -> list:
        with self._lock:
            return list(self._open.get(id(key), []))

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._open)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = {action.value: count for action, count in self.actions.items()}
            out.update(
                {
                    "begun": self.begun,
                    "done": self.done_count,
                    "discarded": self.discarded,
                    "in_flight": len(self._open),
                }
            )
            return out
