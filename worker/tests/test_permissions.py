import sys
import unittest
from pathlib import Path
from unittest.mock import Mock


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from m365_crawler.errors import GraphError
from m365_crawler.identity import IdentityResolver
from m365_crawler.permissions import (
    EVERYONE_IN_TENANT,
    AccessEntry,
    GranteeKind,
    PermissionMapper,
    RoleEncoder,
    access_entries,
)


class FakeDirectory:
    def __init__(self):
        self.users = {"u1": {"userPrincipalName": "alice@contoso.com"}}
        self.groups = {
            "g1": {"id": "g1", "mail": "team@contoso.com"},
            "g2": {"id": "g2", "mail": "team@contoso.com"},
        }

    def get_user(self, user_id, select=()):
        return self.users.get(user_id)

    def get_group(self, group_id, select=()):
        return self.groups.get(group_id)

    def iter_groups(self, select=()):
        return iter(self.groups.values())


def _user_grant(user_id, email=None):
    user = {"id": user_id}
    if email:
        user["email"] = email
    return {"grantedToV2": {"user": user}}


class AccessEntriesTests(unittest.TestCase):
    def test_v2_identity_sets_win_over_legacy(self):
        permission = {
            "grantedToV2": {"user": {"id": "u1"}},
            "grantedTo": {"user": {"id": "legacy"}},
        }
        self.assertEqual(access_entries(permission), [AccessEntry("u1", GranteeKind.USER)])

    def test_legacy_identity_sets_are_used_without_v2(self):
        permission = {"grantedToIdentities": [{"group": {"email": "team@contoso.com"}}]}
        self.assertEqual(access_entries(permission), [AccessEntry("team@contoso.com", GranteeKind.GROUP)])

    def test_link_becomes_link_entry(self):
        permission = {"link": {"scope": "organization", "type": "view"}}
        self.assertEqual(access_entries(permission), [AccessEntry("", GranteeKind.LINK, "organization")])


class PermissionMapperTests(unittest.TestCase):
    def setUp(self):
        self.resolver = IdentityResolver(FakeDirectory(), cache_size=10)
        self.mapper = PermissionMapper(self.resolver, RoleEncoder())

    def test_user_grant_yields_id_and_name_roles(self):
        self.assertEqual(self.mapper.map_permission(_user_grant("u1")), {"1u1", "1alice@contoso.com"})

    def test_unresolvable_user_keeps_id_role(self):
        self.assertEqual(self.mapper.map_permission(_user_grant("u9")), {"1u9"})

    def test_group_grant_yields_id_and_mail_roles(self):
        roles = self.mapper.map_permission({"grantedToV2": {"group": {"id": "g1"}}})
        self.assertEqual(roles, {"2g1", "2team@contoso.com"})

    def test_organization_link_maps_to_single_tenant_role(self):
        roles = self.mapper.map_permission({"link": {"scope": "organization"}})
        self.assertEqual(roles, {"2" + EVERYONE_IN_TENANT})

    def test_anonymous_link_maps_to_no_role(self):
        self.assertEqual(self.mapper.map_permission({"link": {"scope": "anonymous"}}), set())

    def test_duplicate_grants_collapse(self):
        permissions = [_user_grant("u1"), _user_grant("u1"), _user_grant("alice@contoso.com")]
        roles = self.mapper.resource_roles(permissions)
        self.assertEqual(roles, {"1u1", "1alice@contoso.com"})

    def test_default_and_inherited_roles_are_added(self):
        encoder = RoleEncoder()
        defaults = encoder.encode_permissions("{user}guest, {group}staff ,{role}reader,,raw")
        self.assertEqual(defaults, ["1guest", "2staff", "Rreader", "raw"])
        roles = self.mapper.resource_roles([], default_roles=defaults, inherited_roles={"2owners"})
        self.assertEqual(roles, {"1guest", "2staff", "Rreader", "raw", "2owners"})

    def test_failed_listing_keeps_roles_seen_so_far(self):
        def permissions():
            yield _user_grant("u1")
            raise GraphError(500, "page two failed", "next")

        roles = self.mapper.resource_roles(permissions(), default_roles=["Rdefault"], resource="doc")
        self.assertEqual(roles, {"1u1", "1alice@contoso.com", "Rdefault"})

    def test_map_email_prefers_groups(self):
        self.assertEqual(self.mapper.map_email("team@contoso.com"), {"2team@contoso.com", "2g1", "2g2"})
        self.assertEqual(self.mapper.map_email(""), set())

    def test_unmatched_email_gets_user_and_group_roles(self):
        self.assertEqual(self.mapper.map_email("bob@contoso.com"), {"1bob@contoso.com", "2bob@contoso.com"})

    def test_map_principal_id_uses_detected_kind(self):
        self.assertEqual(self.mapper.map_principal_id("u1"), {"1u1", "1alice@contoso.com"})
        self.assertEqual(self.mapper.map_principal_id("g1"), {"2g1", "2team@contoso.com"})
        self.assertEqual(self.mapper.map_principal_id(None), set())
        self.assertEqual(self.mapper.map_principal_id("  "), set())

    def test_undetectable_principal_kind_gets_user_and_group_roles(self):
        directory = FakeDirectory()
        directory.get_user = Mock(side_effect=GraphError(500, "directory unavailable", "/users/x1"))
        mapper = PermissionMapper(IdentityResolver(directory, cache_size=10), RoleEncoder())
        self.assertEqual(mapper.map_principal_id("x1"), {"1x1", "2x1"})


if __name__ == "__main__":
    unittest.main()
