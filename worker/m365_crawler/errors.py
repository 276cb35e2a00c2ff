from dataclasses import dataclass
from enum import Enum
from typing import Optional


TRANSIENT_STATUS_CODES = (429, 503)
PERMISSION_DENIED_STATUS_CODES = (401, 403)
NOT_FOUND_STATUS_CODE = 404


class FailureKind(Enum):
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    MALFORMED = "malformed"
    OTHER = "other"


@dataclass(eq=False)
class GraphError(Exception):
    status_code: int
    message: str
    url: str
    response_text: str = ""
    retry_after: Optional[str] = None

    def __str__(self) -> str:
        return f"Graph error {self.status_code}: {self.message}"

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES

    @property
    def is_not_found(self) -> bool:
        return self.status_code == NOT_FOUND_STATUS_CODE

    @property
    def is_permission_denied(self) -> bool:
        return self.status_code in PERMISSION_DENIED_STATUS_CODES


class CrawlError(Exception):
    pass


class CrawlingAccessError(CrawlError):
    """A resource could not be read with the configured credential."""


class MalformedEntityError(CrawlError):
    """A remote entity is missing a field the crawler needs."""

    def __init__(self, entity: str, field: str):
        super().__init__(f"{entity} is missing required field '{field}'")
        self.entity = entity
        self.field = field


class FatalCrawlError(CrawlError):
    """Credential or configuration is unusable; raised before any work is submitted."""


class SessionAbortedError(CrawlError):
    """An item failed while ignore_error is off; the session accepts no more work."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Crawl session aborted: {type(cause).__name__}: {cause}")
        self.cause = cause


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, GraphError):
        if exc.is_transient:
            return FailureKind.TRANSIENT
        if exc.is_not_found:
            return FailureKind.NOT_FOUND
        if exc.is_permission_denied:
            return FailureKind.PERMISSION_DENIED
        return FailureKind.OTHER
    if isinstance(exc, CrawlingAccessError):
        return FailureKind.PERMISSION_DENIED
    if isinstance(exc, (MalformedEntityError, KeyError, TypeError, ValueError)):
        return FailureKind.MALFORMED
    return FailureKind.OTHER


def error_class_name(exc: BaseException) -> str:
    target = exc.__cause__ if exc.__cause__ is not None else exc
    cls = type(target)
    if cls.__module__ in ("builtins", "__main__"):
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"
