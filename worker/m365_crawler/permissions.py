from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from m365_crawler.identity import IdentityResolver, PrincipalKind
from m365_crawler.runtime_logger import emit


EVERYONE_IN_TENANT = "EVERYONE_IN_TENANT"
ORGANIZATION_SCOPE = "organization"


class GranteeKind(Enum):
    USER = "user"
    GROUP = "group"
    LINK = "link"


@dataclass(frozen=True)
class AccessEntry:
    grantee_id: str
    grantee_kind: GranteeKind
    link_scope: Optional[str] = None


class RoleEncoder:
    """Turns principals into the role tokens the search index filters on."""

    def __init__(self, user_prefix: str = "1", group_prefix: str = "2", role_prefix: str = "R"):
        self.user_prefix = user_prefix
        self.group_prefix = group_prefix
        self.role_prefix = role_prefix

    def user(self, name: str) -> str:
        return f"{self.user_prefix}{name}"

    def group(self, name: str) -> str:
        return f"{self.group_prefix}{name}"

    def role(self, name: str) -> str:
        return f"{self.role_prefix}{name}"

    def encode_permission(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        lowered = value.lower()
        for marker, encode in (("{user}", self.user), ("{group}", self.group), ("{role}", self.role)):
            if lowered.startswith(marker):
                name = value[len(marker):].strip()
                return encode(name) if name else None
        return value

    def encode_permissions(self, csv: Optional[str]) -> List[str]:
        roles: List[str] = []
        for part in (csv or "").split(","):
            encoded = self.encode_permission(part)
            if encoded:
                roles.append(encoded)
        return roles


def _iter_identity_sets(permission: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    g2 = permission.get("grantedToV2")
    g2_list = permission.get("grantedToIdentitiesV2")
    has_v2 = isinstance(g2, dict) or (isinstance(g2_list, list) and len(g2_list) > 0)

    if has_v2:
        if isinstance(g2, dict):
            yield g2
        if isinstance(g2_list, list):
            yield from (s for s in g2_list if isinstance(s, dict))
        return

    g = permission.get("grantedTo")
    if isinstance(g, dict):
        yield g
    g_list = permission.get("grantedToIdentities")
    if isinstance(g_list, list):
        yield from (s for s in g_list if isinstance(s, dict))


def access_entries(permission: Dict[str, Any]) -> List[AccessEntry]:
    """Raw Graph permission resource -> access entries, in grant order."""
    entries: List[AccessEntry] = []
    for identity_set in _iter_identity_sets(permission):
        user = identity_set.get("user")
        group = identity_set.get("group")
        if isinstance(user, dict):
            grantee = user.get("id") or user.get("email") or user.get("userPrincipalName")
            if grantee:
                entries.append(AccessEntry(grantee, GranteeKind.USER))
        elif isinstance(group, dict):
            grantee = group.get("id") or group.get("email")
            if grantee:
                entries.append(AccessEntry(grantee, GranteeKind.GROUP))

    link = permission.get("link")
    if isinstance(link, dict) and link:
        entries.append(AccessEntry("", GranteeKind.LINK, link.get("scope")))
    return entries


class PermissionMapper:
    def __init__(self, resolver: IdentityResolver, encoder: Optional[RoleEncoder] = None):
        self.resolver = resolver
        self.encoder = encoder or RoleEncoder()

    def map_entry(self, entry: AccessEntry) -> Set[str]:
        roles: Set[str] = set()
        if entry.grantee_kind is GranteeKind.USER:
            roles.add(self.encoder.user(entry.grantee_id))
            name = self.resolver.canonical_user_name(entry.grantee_id)
            if name and name != entry.grantee_id:
                roles.add(self.encoder.user(name))
        elif entry.grantee_kind is GranteeKind.GROUP:
            roles.add(self.encoder.group(entry.grantee_id))
            name = self.resolver.canonical_group_name(entry.grantee_id)
            if name and name != entry.grantee_id:
                roles.add(self.encoder.group(name))
        elif entry.grantee_kind is GranteeKind.LINK:
            if (entry.link_scope or "").lower() == ORGANIZATION_SCOPE:
                roles.add(self.encoder.group(EVERYONE_IN_TENANT))
            # anonymous and users-scoped links grant no role
        return roles

    def map_permission(self, permission: Dict[str, Any]) -> Set[str]:
        roles: Set[str] = set()
        for entry in access_entries(permission):
            roles |= self.map_entry(entry)
        return roles

    def map_principal_id(self, principal_id: Optional[str]) -> Set[str]:
        """Roles for a bare directory object id whose kind is not known up front.

        An id whose kind cannot be detected gets both the user and the group role.
        """
        if not principal_id or not principal_id.strip():
            return set()
        principal = self.resolver.principal(principal_id)
        if principal.kind is PrincipalKind.USER:
            return self.map_entry(AccessEntry(principal.id, GranteeKind.USER))
        if principal.kind is PrincipalKind.GROUP:
            return self.map_entry(AccessEntry(principal.id, GranteeKind.GROUP))
        emit("DEBUG", "PERMISSIONS", f"Unknown principal kind, granting user and group roles: id={principal_id}")
        return {self.encoder.user(principal_id), self.encoder.group(principal_id)}

    def map_email(self, email: Optional[str]) -> Set[str]:
        """Roles for an email that may name a group (all matching ids) or a user.

        An email matching no group may still be a mail-enabled group the
        listing missed, so it gets both the user and the group role.
        """
        if not email:
            return set()
        group_ids = self.resolver.group_ids_by_email(email)
        if not group_ids:
            return {self.encoder.user(email), self.encoder.group(email)}
        roles = {self.encoder.group(email)}
        for group_id in group_ids:
            roles.add(self.encoder.group(group_id))
        return roles

    def resource_roles(
        self,
        permissions: Iterable[Dict[str, Any]],
        *,
        default_roles: Iterable[str] = (),
        inherited_roles: Iterable[str] = (),
        resource: str = "",
    ) -> Set[str]:
        """Union of the roles of every permission, plus default and inherited roles.

        ``permissions`` is normally a lazy pagination walk; a failure while
        fetching a later page keeps the roles gathered so far.
        """
        roles: Set[str] = set()
        seen = 0
        try:
            for permission in permissions:
                seen += 1
                roles |= self.map_permission(permission)
        except Exception as exc:
            emit(
                "WARN",
                "PERMISSIONS",
                f"Permission listing truncated: resource={resource} permissions_seen={seen} error={exc}",
            )
        roles.update(r for r in default_roles if r)
        roles.update(r for r in inherited_roles if r)
        emit("DEBUG", "PERMISSIONS", f"Roles resolved: resource={resource} permissions={seen} roles={len(roles)}")
        return roles
