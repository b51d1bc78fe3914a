# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for DirectoryClient using python-ldap-faker to simulate an Active
Directory domain controller.
"""

import unittest
from unittest.mock import patch

import django
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings
from ldap_faker.unittest import LDAPFakerMixin

from ldapstream.cache import ResultCache
from ldapstream.cancellation import CancelToken
from ldapstream.client import DirectoryClient
from ldapstream.conf import DirectoryClientConfig
from ldapstream.exceptions import DirectoryError, OperationCancelled

LDAP_SERVERS = {
    "default": {
        "basedn": "dc=example,dc=com",
        "read": {
            "url": "ldap://localhost:389",
            "user": "cn=admin,dc=example,dc=com",
            "password": "admin",
            "use_starttls": False,
            "tls_verify": "never",
            "timeout": 15.0,
            "pool_size": 2,
        },
    },
}

if not settings.configured:
    settings.configure(LDAP_SERVERS=LDAP_SERVERS)
    django.setup()


ALICE = "cn=alice,ou=users,dc=example,dc=com"
BOB = "cn=bob,ou=users,dc=example,dc=com"
OPS = "cn=ops,ou=groups,dc=example,dc=com"
DEVS = "cn=devs,ou=groups,dc=example,dc=com"


def user(dn, login, mail, groups):
    return (
        dn,
        {
            "cn": [login.encode()],
            "sAMAccountName": [login.encode()],
            "userPrincipalName": [f"{login}@corp.example.com".encode()],
            "mail": [mail.encode()],
            "displayName": [login.title().encode()],
            "distinguishedName": [dn.encode()],
            "memberOf": [g.encode() for g in groups],
            "objectClass": [b"top", b"person", b"organizationalPerson", b"user"],
            "objectCategory": [b"person"],
        },
    )


def group(dn, name, description, members):
    return (
        dn,
        {
            "cn": [name.encode()],
            "name": [name.encode()],
            "description": [description.encode()],
            "distinguishedName": [dn.encode()],
            "member": [m.encode() for m in members],
            "objectClass": [b"top", b"group"],
            "objectCategory": [b"group"],
        },
    )


OBJECTS = [
    (
        "cn=admin,dc=example,dc=com",
        {
            "cn": [b"admin"],
            "userPassword": [b"admin"],
            "objectClass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
        },
    ),
    (
        "ou=users,dc=example,dc=com",
        {
            "ou": [b"users"],
            "distinguishedName": [b"ou=users,dc=example,dc=com"],
            "objectClass": [b"top", b"organizationalUnit"],
        },
    ),
    user(ALICE, "alice", "alice@example.com", [OPS, DEVS]),
    user(BOB, "bob", "bob@example.com", [OPS]),
    group(OPS, "ops", "Operations", [ALICE, BOB]),
    group(DEVS, "devs", "Developers", [ALICE]),
]


class DirectoryClientTestCase(LDAPFakerMixin, unittest.TestCase):

    ldap_modules = ["ldapstream"]

    def setUp(self):
        super().setUp()
        for dn, attrs in OBJECTS:
            self.server_factory.default.register_object((dn, attrs))
        self.config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            basedn="dc=example,dc=com",
            pool_size=2,
            max_concurrent_operations=2,
            batch_size=1,
            max_parallel_degree=2,
        )
        self.client = DirectoryClient.from_config(self.config)

    def tearDown(self):
        self.client.close()
        super().tearDown()

    @staticmethod
    def dns(records):
        return sorted(r.dn.lower() for r in records)


class TestDirectoryClient(DirectoryClientTestCase):

    def test_connection_ok(self):
        ok, message = self.client.test_connection()
        self.assertTrue(ok)
        self.assertIn("ldap://localhost:389", message)

    def test_connection_bad_credentials(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="wrong",
            basedn="dc=example,dc=com",
        )
        with DirectoryClient.from_config(config) as client:
            with self.assertLogs("django-ldapstream", level="WARNING"):
                ok, message = client.test_connection()
        self.assertFalse(ok)
        self.assertIn("credentials", message)

    def test_connection_takes_an_operation_slot(self):
        slots = []
        validate = self.client.connector.validate

        def counting_validate(handle):
            slots.append(self.client.limiter.in_flight)
            return validate(handle)

        with patch.object(self.client.connector, "validate", side_effect=counting_validate):
            ok, _ = self.client.test_connection()
        self.assertTrue(ok)
        self.assertTrue(slots)
        self.assertTrue(all(n == 1 for n in slots))
        self.assertEqual(self.client.limiter.in_flight, 0)

    def test_connection_no_free_slot(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            basedn="dc=example,dc=com",
            timeout=0.05,
            max_concurrent_operations=1,
        )
        with DirectoryClient.from_config(config) as client:
            client.limiter.enter()
            try:
                ok, message = client.test_connection()
            finally:
                client.limiter.exit()
            self.assertEqual(client.pool.size, 0)
        self.assertFalse(ok)
        self.assertIn("max_concurrent_operations", message)

    def test_connection_after_close(self):
        self.client.close()
        ok, message = self.client.test_connection()
        self.assertFalse(ok)
        self.assertIn("closed", message)

    def test_invalid_config(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            basedn="dc=example,dc=com",
            pool_size=0,
        )
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClient.from_config(config)

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_from_settings(self):
        with DirectoryClient.from_settings() as client:
            self.assertEqual(client.pool.capacity, 2)
            self.assertEqual(client.config.basedn, "dc=example,dc=com")
            self.assertTrue(client.test_connection()[0])
        self.assertTrue(client.pool.closed)

    def test_stream_users(self):
        self.assertEqual(self.dns(self.client.stream_users()), [ALICE, BOB])
        self.assertEqual(self.client.pool.in_use, 0)

    def test_stream_groups(self):
        self.assertEqual(self.dns(self.client.stream_groups()), [DEVS, OPS])

    def test_stream_organizational_units(self):
        records = list(self.client.stream_organizational_units())
        self.assertEqual(self.dns(records), ["ou=users,dc=example,dc=com"])

    def test_stream_cancelled(self):
        token = CancelToken()
        token.cancel()
        self.assertEqual(list(self.client.stream_users(token=token)), [])

    def test_search_users(self):
        records = self.client.search_users("ali")
        self.assertEqual(self.dns(records), [ALICE])
        self.assertEqual(records[0].get("mail"), "alice@example.com")

    def test_search_users_blank_term(self):
        self.assertEqual(self.dns(self.client.search_users("  ")), [ALICE, BOB])

    def test_search_term_is_escaped(self):
        self.assertEqual(self.client.search_users("*"), [])

    def test_search_groups(self):
        self.assertEqual(self.dns(self.client.search_groups("operations")), [OPS])

    def test_search_results_cached(self):
        with patch.object(
            self.client.search, "collect", wraps=self.client.search.collect
        ) as collect:
            first = self.client.search_users("ali")
            second = self.client.search_users("ali")
            self.client.search_users("bob")
        self.assertEqual(first, second)
        self.assertEqual(collect.call_count, 2)
        self.assertEqual(len(self.client.cache), 2)

    def test_cache_disabled(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            basedn="dc=example,dc=com",
            search_cache_seconds=0,
        )
        with DirectoryClient.from_config(config) as client:
            client.search_users("ali")
            self.assertEqual(len(client.cache), 0)

    def test_shared_cache(self):
        cache = ResultCache()
        with DirectoryClient.from_config(self.config, cache=cache) as client:
            client.search_groups("ops")
        self.assertEqual(len(cache), 1)

    def test_size_limited_search_cached_apart(self):
        capped = self.client.spec("(objectCategory=person)", ["cn"], size_limit=1)
        full = self.client.spec("(objectCategory=person)", ["cn"])
        self.assertEqual(len(self.client.cached_search(capped)), 1)
        self.assertEqual(self.dns(self.client.cached_search(full)), [ALICE, BOB])
        self.assertEqual(len(self.client.cached_search(capped)), 1)
        self.assertEqual(len(self.client.cache), 2)

    def test_cancelled_search_not_cached(self):
        token = CancelToken()
        token.cancel()
        spec = self.client.spec("(objectCategory=group)", ["cn"])
        with self.assertRaises(OperationCancelled):
            self.client.cached_search(spec, token=token)
        self.assertEqual(len(self.client.cache), 0)

    def test_find_user_by_login(self):
        found = self.client.find_user("alice")
        self.assertEqual(found.dn.lower(), ALICE)
        self.assertEqual(found.get("sAMAccountName"), "alice")

    def test_find_user_by_mail(self):
        self.assertEqual(self.client.find_user("bob@example.com").dn.lower(), BOB)

    def test_find_user_by_upn(self):
        found = self.client.find_user("alice@corp.example.com")
        self.assertEqual(found.dn.lower(), ALICE)

    def test_find_user_missing(self):
        self.assertIsNone(self.client.find_user("nobody"))
        self.assertIsNone(self.client.find_user("nobody@example.com"))
        self.assertIsNone(self.client.find_user("   "))

    def test_find_group(self):
        self.assertEqual(self.client.find_group("devs").dn.lower(), DEVS)
        self.assertIsNone(self.client.find_group("nope"))


class TestDirectoryClientBatches(DirectoryClientTestCase):

    def test_group_members(self):
        result = self.client.get_group_members("ops")
        self.assertEqual(self.dns(result), [ALICE, BOB])
        self.assertEqual(result.batch_count, 2)
        self.assertEqual(result.failed_batch_count, 0)

    def test_group_members_missing_group(self):
        with self.assertRaises(DirectoryError):
            self.client.get_group_members("nope")

    def test_user_groups(self):
        result = self.client.get_user_groups("alice")
        self.assertEqual(self.dns(result), [DEVS, OPS])
        self.assertIn(result.records[0].get("description"), ("Developers", "Operations"))

    def test_user_groups_missing_user(self):
        with self.assertRaises(DirectoryError):
            self.client.get_user_groups("nobody")

    def test_resolve_batch(self):
        result = self.client.resolve_batch(
            ["alice", "bob", "nobody"], identifier_attribute="sAMAccountName"
        )
        self.assertEqual(self.dns(result), [ALICE, BOB])
        self.assertEqual(result.batch_count, 3)
        self.assertEqual(self.client.pool.in_use, 0)
        self.assertEqual(self.client.limiter.in_flight, 0)
