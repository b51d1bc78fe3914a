"""
Tests for DirectoryClientConfig.
"""

import unittest

import django
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings

from ldapstream.conf import DirectoryClientConfig

if not settings.configured:
    settings.configure()
    django.setup()


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
            "pool_size": 4,
            "sizelimit": 1000,
        },
    },
    "other": {
        "read": {
            "url": "ldaps://dc1.example.com:636",
            "user": "svc@example.com",
            "password": "secret",
            "basedn": "ou=people,dc=example,dc=com",
        },
    },
}


class TestDirectoryClientConfig(unittest.TestCase):

    def test_defaults(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            basedn="dc=example,dc=com",
        )
        self.assertEqual(config.pool_size, 10)
        self.assertEqual(config.max_concurrent_operations, 10)
        self.assertEqual(config.batch_size, 100)
        self.assertEqual(config.max_parallel_degree, 4)
        self.assertEqual(config.page_size, 1000)
        self.assertEqual(config.timeout, 30.0)
        self.assertEqual(config.search_cache_seconds, 300)
        config.validate()

    def test_password_not_in_repr(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="hunter2",
            basedn="dc=example,dc=com",
        )
        self.assertNotIn("hunter2", repr(config))

    def test_from_dict_ignores_unknown_keys(self):
        config = DirectoryClientConfig.from_dict(
            {
                "url": "ldap://localhost:389",
                "user": "cn=admin,dc=example,dc=com",
                "password": "admin",
                "basedn": "dc=example,dc=com",
                "sizelimit": 1000,
            }
        )
        self.assertEqual(config.url, "ldap://localhost:389")

    def test_from_dict_missing_keys(self):
        with self.assertRaises(ImproperlyConfigured) as cm:
            DirectoryClientConfig.from_dict({"url": "ldap://localhost:389"})
        self.assertIn("user", str(cm.exception))
        self.assertIn("basedn", str(cm.exception))

    def test_validate_reports_every_problem(self):
        config = DirectoryClientConfig(
            url="ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            basedn="dc=example,dc=com",
            pool_size=0,
            batch_size=-1,
            tls_verify="sometimes",
        )
        with self.assertRaises(ImproperlyConfigured) as cm:
            config.validate()
        message = str(cm.exception)
        self.assertIn("pool_size", message)
        self.assertIn("batch_size", message)
        self.assertIn("tls_verify", message)

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_from_settings_server_level_basedn(self):
        config = DirectoryClientConfig.from_settings()
        self.assertEqual(config.basedn, "dc=example,dc=com")
        self.assertEqual(config.timeout, 15.0)
        self.assertEqual(config.pool_size, 4)

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_from_settings_read_level_basedn(self):
        config = DirectoryClientConfig.from_settings("other")
        self.assertEqual(config.basedn, "ou=people,dc=example,dc=com")
        self.assertEqual(config.url, "ldaps://dc1.example.com:636")

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_from_settings_unknown_server(self):
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClientConfig.from_settings("nope")

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_from_settings_unknown_key(self):
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClientConfig.from_settings("default", "write")

    @override_settings(LDAP_SERVERS={})
    def test_from_settings_not_configured(self):
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClientConfig.from_settings()
