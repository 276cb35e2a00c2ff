import sys
import threading
import unittest
from pathlib import Path
from unittest.mock import Mock


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from m365_crawler.errors import GraphError
from m365_crawler.identity import BoundedCache, IdentityResolver, PrincipalKind


class FakeDirectory:
    """Graph client double answering user/group lookups from dicts."""

    def __init__(self, users=None, groups=None):
        self.users = users or {}
        self.groups = groups or {}
        self.user_calls = []
        self.group_calls = []
        self.group_list_calls = 0
        self.fail_users = set()

    def get_user(self, user_id, select=()):
        self.user_calls.append(user_id)
        if user_id in self.fail_users:
            raise GraphError(500, "directory unavailable", f"/users/{user_id}")
        return self.users.get(user_id)

    def get_group(self, group_id, select=()):
        self.group_calls.append(group_id)
        return self.groups.get(group_id)

    def iter_groups(self, select=()):
        self.group_list_calls += 1
        return iter(self.groups.values())


class BoundedCacheTests(unittest.TestCase):
    def test_loader_runs_once_per_key(self):
        loader = Mock(side_effect=lambda key: key.upper())
        cache = BoundedCache("test", 10, loader)
        self.assertEqual(cache.get("a"), "A")
        self.assertEqual(cache.get("a"), "A")
        loader.assert_called_once_with("a")
        self.assertEqual((cache.hits, cache.misses), (1, 1))

    def test_least_recently_used_entry_is_evicted(self):
        cache = BoundedCache("test", 2, lambda key: key)
        cache.get("a")
        cache.get("b")
        cache.get("a")
        cache.get("c")
        self.assertIn("a", cache)
        self.assertNotIn("b", cache)
        self.assertIn("c", cache)
        self.assertEqual(len(cache), 2)

    def test_raising_loader_caches_nothing(self):
        loader = Mock(side_effect=[RuntimeError("down"), "value"])
        cache = BoundedCache("test", 10, loader)
        with self.assertRaises(RuntimeError):
            cache.get("k")
        self.assertNotIn("k", cache)
        self.assertEqual(cache.get("k"), "value")

    def test_concurrent_gets_are_safe(self):
        cache = BoundedCache("test", 50, lambda key: key * 2)
        errors = []

        def worker(offset):
            try:
                for i in range(200):
                    self.assertEqual(cache.get((i + offset) % 80), ((i + offset) % 80) * 2)
            except AssertionError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])
        self.assertLessEqual(len(cache), 50)


class IdentityResolverTests(unittest.TestCase):
    def setUp(self):
        self.directory = FakeDirectory(
            users={"u1": {"id": "u1", "userPrincipalName": "alice@contoso.com", "mail": "alice.mail@contoso.com"}},
            groups={
                "g1": {"id": "g1", "mail": "team@contoso.com", "displayName": "Team"},
                "g2": {"id": "g2", "mail": "team@contoso.com", "displayName": "Team (old)"},
                "g3": {"id": "g3", "mailNickname": "ops", "displayName": "Ops"},
            },
        )
        self.resolver = IdentityResolver(self.directory, cache_size=100)

    def test_canonical_user_name_is_fetched_once(self):
        self.assertEqual(self.resolver.canonical_user_name("u1"), "alice@contoso.com")
        self.assertEqual(self.resolver.canonical_user_name("u1"), "alice@contoso.com")
        self.assertEqual(self.directory.user_calls, ["u1"])

    def test_email_shaped_id_short_circuits(self):
        self.assertEqual(self.resolver.canonical_user_name("bob@contoso.com"), "bob@contoso.com")
        self.assertEqual(self.resolver.canonical_group_name("team@contoso.com"), "team@contoso.com")
        self.assertEqual(self.directory.user_calls, [])
        self.assertEqual(self.directory.group_calls, [])

    def test_canonical_group_name_falls_back_through_fields(self):
        self.assertEqual(self.resolver.canonical_group_name("g1"), "team@contoso.com")
        self.assertEqual(self.resolver.canonical_group_name("g3"), "ops")
        self.assertIsNone(self.resolver.canonical_group_name("missing"))

    def test_principal_kind_detection(self):
        self.assertIs(self.resolver.principal_kind("u1"), PrincipalKind.USER)
        self.assertIs(self.resolver.principal_kind("g1"), PrincipalKind.GROUP)
        self.assertIs(self.resolver.principal_kind(""), PrincipalKind.UNKNOWN)
        self.assertIs(self.resolver.principal_kind("u1"), PrincipalKind.USER)
        self.assertEqual(self.directory.user_calls, ["u1", "g1"])

    def test_principal_kind_lookup_failure_is_unknown(self):
        self.directory.fail_users.add("broken")
        self.assertIs(self.resolver.principal_kind("broken"), PrincipalKind.UNKNOWN)

    def test_group_ids_by_email_returns_every_match(self):
        self.assertEqual(sorted(self.resolver.group_ids_by_email("team@contoso.com")), ["g1", "g2"])
        self.assertEqual(self.resolver.group_ids_by_email("nobody@contoso.com"), [])
        self.resolver.group_ids_by_email("team@contoso.com")
        self.assertEqual(self.directory.group_list_calls, 2)

    def test_failed_name_lookup_is_not_cached(self):
        self.directory.fail_users.add("u1")
        self.assertIsNone(self.resolver.canonical_user_name("u1"))
        self.directory.fail_users.clear()
        self.assertEqual(self.resolver.canonical_user_name("u1"), "alice@contoso.com")
        self.assertEqual(self.directory.user_calls, ["u1", "u1"])

    def test_clear_empties_every_cache(self):
        self.resolver.canonical_user_name("u1")
        self.resolver.canonical_group_name("g1")
        self.resolver.principal_kind("u1")
        self.resolver.group_ids_by_email("team@contoso.com")
        self.resolver.clear()
        self.assertTrue(all(len(cache) == 0 for cache in self.resolver.caches))
        self.resolver.canonical_user_name("u1")
        self.assertEqual(self.directory.user_calls.count("u1"), 3)

    def test_each_cache_honours_capacity(self):
        resolver = IdentityResolver(self.directory, cache_size=1)
        resolver.canonical_user_name("u1")
        resolver.canonical_user_name("u2")
        self.assertEqual(len(resolver.user_names), 1)
        stats = resolver.stats()
        self.assertEqual(stats["canonical_user_name"]["misses"], 2)


if __name__ == "__main__":
    unittest.main()
