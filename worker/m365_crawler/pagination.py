from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Generic, Iterator, List, Optional, TypeVar

from m365_crawler.runtime_logger import emit


T = TypeVar("T")

NEXT_LINK_KEY = "@odata.nextLink"


@dataclass(frozen=True)
class ContinuationCursor:
    token: Optional[str] = None

    END: ClassVar["ContinuationCursor"]

    @property
    def has_more(self) -> bool:
        return bool(self.token)


ContinuationCursor.END = ContinuationCursor()


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    next: ContinuationCursor = ContinuationCursor.END


FetchFirst = Callable[[], Optional[Page]]
FetchNext = Callable[[ContinuationCursor], Optional[Page]]


def graph_page(data: Optional[Dict[str, Any]]) -> Optional[Page]:
    if data is None:
        return None
    items = data.get("value", []) or []
    return Page(items=list(items), next=ContinuationCursor(data.get(NEXT_LINK_KEY) or None))


def walk(fetch_first: FetchFirst, fetch_next: FetchNext) -> Iterator[T]:
    """Yield every item of a paged collection in page order.

    Only the current page is held in memory. A page with no items but a
    continuation token is followed; a ``None`` page (the resource disappeared)
    ends the walk. Failures raised by the fetch callables propagate to the
    consumer, after the items of earlier pages have already been yielded.
    """
    page = fetch_first()
    pages = 0
    while page is not None:
        pages += 1
        yield from page.items
        cursor = page.next
        if not cursor.has_more:
            return
        page = fetch_next(cursor)
        if page is not None and page.next.has_more and page.next.token == cursor.token:
            yield from page.items
            emit("WARN", "GRAPH", f"Pagination stopped on repeated continuation token: pages={pages + 1}")
            return


def walk_with(fetch_first: FetchFirst, fetch_next: FetchNext, visit: Callable[[T], None]) -> int:
    visited = 0
    for item in walk(fetch_first, fetch_next):
        visit(item)
        visited += 1
    return visited
