import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Generic, Hashable, List, Optional, TypeVar

from m365_crawler.graph_client import GROUP_NAME_SELECT, USER_KIND_SELECT, USER_NAME_SELECT
from m365_crawler.runtime_logger import emit


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_CACHE_SIZE = 10000

_MISSING = object()


class PrincipalKind(Enum):
    USER = "user"
    GROUP = "group"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Principal:
    id: Optional[str]
    kind: PrincipalKind


class BoundedCache(Generic[K, V]):
    """Size-bounded load-on-miss map with least-recently-used eviction.

    There is no expiry: entries live until evicted or ``clear()``. The loader
    runs outside the lock, so concurrent misses on one key may load twice.
    A loader that raises caches nothing.
    """

    def __init__(self, name: str, capacity: int, loader: Callable[[K], V]):
        self.name = name
        self.capacity = max(1, int(capacity))
        self._loader = loader
        self._lock = threading.Lock()
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: K) -> V:
        with self._lock:
            value = self._entries.get(key, _MISSING)
            if value is not _MISSING:
                self._entries.move_to_end(key)
                self.hits += 1
                return value
            self.misses += 1

        value = self._loader(key)
        self.put(key, value)
        return value

    def put(self, key: K, value: V):
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._entries


def _first_non_blank(obj: Dict, *fields: str) -> Optional[str]:
    for name in fields:
        value = obj.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class IdentityResolver:
    """Session-owned identity lookups backed by four independent caches."""

    def __init__(self, client, cache_size: int = DEFAULT_CACHE_SIZE):
        self._client = client
        self.principal_kinds: BoundedCache[str, PrincipalKind] = BoundedCache(
            "principal_kind", cache_size, self._load_principal_kind
        )
        self.group_ids: BoundedCache[str, List[str]] = BoundedCache(
            "group_ids_by_email", cache_size, self._load_group_ids
        )
        self.user_names: BoundedCache[str, Optional[str]] = BoundedCache(
            "canonical_user_name", cache_size, self._load_user_name
        )
        self.group_names: BoundedCache[str, Optional[str]] = BoundedCache(
            "canonical_group_name", cache_size, self._load_group_name
        )

    @property
    def caches(self) -> List[BoundedCache]:
        return [self.principal_kinds, self.group_ids, self.user_names, self.group_names]

    def principal_kind(self, principal_id: Optional[str]) -> PrincipalKind:
        if _is_blank(principal_id):
            return PrincipalKind.UNKNOWN
        return self.principal_kinds.get(principal_id)

    def principal(self, principal_id: Optional[str]) -> Principal:
        return Principal(principal_id, self.principal_kind(principal_id))

    def group_ids_by_email(self, email: Optional[str]) -> List[str]:
        if _is_blank(email):
            return []
        try:
            return list(self.group_ids.get(email))
        except Exception as exc:
            emit("WARN", "IDENTITY", f"Failed to resolve group ids: email={email} error={exc}")
            return []

    def canonical_user_name(self, principal_id: Optional[str]) -> Optional[str]:
        if _is_blank(principal_id):
            return None
        if "@" in principal_id:
            return principal_id
        try:
            return self.user_names.get(principal_id)
        except Exception as exc:
            emit("WARN", "IDENTITY", f"Failed to resolve user principal name: id={principal_id} error={exc}")
            return None

    def canonical_group_name(self, principal_id: Optional[str]) -> Optional[str]:
        if _is_blank(principal_id):
            return None
        if "@" in principal_id:
            return principal_id
        try:
            return self.group_names.get(principal_id)
        except Exception as exc:
            emit("WARN", "IDENTITY", f"Failed to resolve group name: id={principal_id} error={exc}")
            return None

    def clear(self):
        for cache in self.caches:
            cache.clear()
        emit("DEBUG", "IDENTITY", "Identity caches cleared")

    def stats(self) -> Dict[str, Dict[str, int]]:
        return {cache.name: {"size": len(cache), "hits": cache.hits, "misses": cache.misses} for cache in self.caches}

    def _load_principal_kind(self, principal_id: str) -> PrincipalKind:
        try:
            user = self._client.get_user(principal_id, select=USER_KIND_SELECT)
        except Exception as exc:
            emit("WARN", "IDENTITY", f"Failed to detect principal kind: id={principal_id} error={exc}")
            return PrincipalKind.UNKNOWN
        if user is None:
            return PrincipalKind.GROUP
        return PrincipalKind.USER

    def _load_group_ids(self, email: str) -> List[str]:
        ids: List[str] = []
        for group in self._client.iter_groups():
            if group.get("mail") == email and group.get("id"):
                ids.append(group["id"])
        emit("DEBUG", "IDENTITY", f"Group ids resolved by email: email={email} count={len(ids)}")
        return ids

    def _load_user_name(self, principal_id: str) -> Optional[str]:
        user = self._client.get_user(principal_id, select=USER_NAME_SELECT)
        if user is None:
            return None
        return _first_non_blank(user, "userPrincipalName", "mail")

    def _load_group_name(self, principal_id: str) -> Optional[str]:
        group = self._client.get_group(principal_id, select=GROUP_NAME_SELECT)
        if group is None:
            return None
        return _first_non_blank(group, "mail", "mailNickname", "displayName")
