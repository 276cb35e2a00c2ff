import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from m365_crawler.errors import FatalCrawlError
from m365_crawler.identity import DEFAULT_CACHE_SIZE
from m365_crawler.retry import DEFAULT_MAX_WAIT_SECONDS, DEFAULT_MIN_WAIT_SECONDS


DEFAULT_NUMBER_OF_THREADS = int(os.getenv("CRAWL_NUMBER_OF_THREADS", "1"))
DEFAULT_DRAIN_TIMEOUT_SECONDS = float(os.getenv("CRAWL_DRAIN_TIMEOUT_SECONDS", "60"))

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}


def _is_enabled(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _as_int(params: Mapping[str, Any], name: str, default: int) -> int:
    value = params.get(name)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise FatalCrawlError(f"Parameter '{name}' must be an integer, got {value!r}") from exc


def _as_float(params: Mapping[str, Any], name: str, default: float) -> float:
    value = params.get(name)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError as exc:
        raise FatalCrawlError(f"Parameter '{name}' must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class CrawlConfig:
    number_of_threads: int = DEFAULT_NUMBER_OF_THREADS
    ignore_error: bool = False
    cache_size: int = DEFAULT_CACHE_SIZE
    default_permissions: str = ""
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS
    retry_min_wait: float = DEFAULT_MIN_WAIT_SECONDS
    retry_max_wait: float = DEFAULT_MAX_WAIT_SECONDS
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: Optional[Mapping[str, Any]] = None) -> "CrawlConfig":
        params = dict(params or {})
        cache_size = _as_int(params, "cache_size", DEFAULT_CACHE_SIZE)
        if cache_size <= 0:
            raise FatalCrawlError(f"Parameter 'cache_size' must be positive, got {cache_size}")
        return cls(
            number_of_threads=_as_int(params, "number_of_threads", DEFAULT_NUMBER_OF_THREADS),
            ignore_error=_is_enabled(params.get("ignore_error"), default=False),
            cache_size=cache_size,
            default_permissions=str(params.get("default_permissions") or ""),
            drain_timeout=max(0.0, _as_float(params, "drain_timeout", DEFAULT_DRAIN_TIMEOUT_SECONDS)),
            retry_min_wait=_as_float(params, "retry_min_wait", DEFAULT_MIN_WAIT_SECONDS),
            retry_max_wait=_as_float(params, "retry_max_wait", DEFAULT_MAX_WAIT_SECONDS),
            params=params,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "number_of_threads": self.number_of_threads,
            "ignore_error": self.ignore_error,
            "cache_size": self.cache_size,
            "default_permissions": self.default_permissions,
            "drain_timeout": self.drain_timeout,
        }
