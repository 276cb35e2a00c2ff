import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional, TypeVar

from m365_crawler.errors import FailureKind, classify_failure
from m365_crawler.runtime_logger import emit


R = TypeVar("R")

DEFAULT_MIN_WAIT_SECONDS = 2.0
DEFAULT_MAX_WAIT_SECONDS = 15.0


def parse_retry_after(
    value: Optional[str],
    *,
    min_wait: float,
    max_wait: float,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Seconds to wait for a Retry-After header, clamped to [min_wait, max_wait].

    Accepts delta-seconds or an HTTP date. Returns None when the header is
    missing or unparseable.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if value.isdigit():
        seconds = float(value)
    else:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        seconds = (when - current).total_seconds()
    return min(max(seconds, min_wait), max_wait)


class RetryPolicy:
    """Retries one remote call once after a transient failure.

    ``call`` returns the call's result, or ``None`` when the remote side
    answers not-found. Permanent failures and a second transient failure are
    raised to the caller.
    """

    def __init__(
        self,
        *,
        min_wait: float = DEFAULT_MIN_WAIT_SECONDS,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
        default_wait: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_wait < min_wait:
            max_wait = min_wait
        self.min_wait = float(min_wait)
        self.max_wait = float(max_wait)
        self.default_wait = float(default_wait) if default_wait is not None else self.min_wait
        self._sleep = sleep

    def wait_seconds(self, exc: BaseException) -> float:
        hint = parse_retry_after(
            getattr(exc, "retry_after", None),
            min_wait=self.min_wait,
            max_wait=self.max_wait,
        )
        if hint is None:
            return self.default_wait
        return hint

    def call(self, fn: Callable[[], R], *, description: str = "graph call") -> Optional[R]:
        attempts = 0
        while True:
            attempts += 1
            try:
                return fn()
            except Exception as exc:
                kind = classify_failure(exc)
                if kind is FailureKind.NOT_FOUND:
                    emit("DEBUG", "GRAPH", f"Not found: {description}")
                    return None
                if kind is FailureKind.TRANSIENT and attempts == 1:
                    wait = self.wait_seconds(exc)
                    emit("WARN", "GRAPH", f"Retrying after transient failure: {description} wait={wait:.1f}s error={exc}")
                    self._sleep(wait)
                    continue
                if kind is FailureKind.TRANSIENT:
                    emit("WARN", "GRAPH", f"Transient failure persisted after retry: {description} error={exc}")
                raise
