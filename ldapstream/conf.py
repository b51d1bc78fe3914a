"""
Client configuration.

The directory client only consumes plain values; where they come from is the
application's business.  :meth:`DirectoryClientConfig.from_settings` reads them
from Django's ``settings.LDAP_SERVERS``, laid out like this::

    LDAP_SERVERS = {
        "default": {
            "basedn": "dc=example,dc=com",
            "read": {
                "url": "ldaps://dc1.example.com:636",
                "user": "cn=svc-portal,ou=service,dc=example,dc=com",
                "password": "secret",
                "use_starttls": False,
                "tls_verify": "always",
                "timeout": 30.0,
                "pool_size": 10,
                "max_concurrent_operations": 10,
                "batch_size": 100,
                "max_parallel_degree": 4,
                "page_size": 1000,
                "search_cache_seconds": 300,
            },
        },
    }

``basedn`` may be given either at the server level or inside the ``read``
block.
"""

from dataclasses import dataclass, field, fields
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


@dataclass(frozen=True)
class DirectoryClientConfig:
    """
    Everything the directory client needs to know, as plain values.
    """

    #: LDAP URL of the server, e.g. ``ldaps://dc1.example.com:636``
    url: str
    #: Bind DN or UPN
    user: str
    password: str = field(repr=False)
    #: Default search base
    basedn: str
    use_starttls: bool = False
    #: ``"never"`` or ``"always"``
    tls_verify: str = "never"
    tls_ca_certfile: str | None = None
    tls_certfile: str | None = None
    tls_keyfile: str | None = None
    follow_referrals: bool = False
    #: Per call timeout in seconds: pool wait, limiter wait, page wait
    timeout: float = 30.0
    #: Maximum open connections
    pool_size: int = 10
    #: Maximum simultaneous directory operations
    max_concurrent_operations: int = 10
    #: Identifiers per bulk resolution batch
    batch_size: int = 100
    #: Batches of one bulk resolution running at once
    max_parallel_degree: int = 4
    #: Default page size for paged searches
    page_size: int = 1000
    #: Time-to-live of cached searches; 0 disables caching
    search_cache_seconds: float = 300

    def validate(self) -> None:
        """
        Check the configuration for nonsense values.

        Raises:
            ImproperlyConfigured: listing every problem found

        """
        errors = []
        if not self.url:
            errors.append("url is required")
        if not self.basedn:
            errors.append("basedn is required")
        if self.tls_verify not in ("never", "always"):
            errors.append(f'tls_verify must be "never" or "always", not "{self.tls_verify}"')
        if self.timeout <= 0:
            errors.append("timeout must be greater than 0")
        for name in (
            "pool_size",
            "max_concurrent_operations",
            "batch_size",
            "max_parallel_degree",
            "page_size",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be greater than 0")
        if self.search_cache_seconds < 0:
            errors.append("search_cache_seconds must not be negative")
        if errors:
            msg = f"LDAP client configuration is invalid: {', '.join(errors)}"
            raise ImproperlyConfigured(msg)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "DirectoryClientConfig":
        """
        Build a configuration from a dict, ignoring keys we don't know about.

        Raises:
            ImproperlyConfigured: a required key is missing or a value is invalid

        """
        known = {f.name for f in fields(cls)}
        missing = [name for name in ("url", "user", "password", "basedn") if name not in config]
        if missing:
            msg = f"LDAP client configuration is missing: {', '.join(missing)}"
            raise ImproperlyConfigured(msg)
        instance = cls(**{k: v for k, v in config.items() if k in known})
        instance.validate()
        return instance

    @classmethod
    def from_settings(
        cls, server_key: str = "default", key: str = "read"
    ) -> "DirectoryClientConfig":
        """
        Build a configuration from ``settings.LDAP_SERVERS[server_key][key]``.

        Raises:
            ImproperlyConfigured: ``LDAP_SERVERS`` is not set, or has no such
                server or key, or the configuration is invalid

        """
        servers = getattr(settings, "LDAP_SERVERS", None)
        if not servers:
            msg = "settings.LDAP_SERVERS is not defined"
            raise ImproperlyConfigured(msg)
        try:
            server = servers[server_key]
        except KeyError as e:
            msg = f'settings.LDAP_SERVERS has no server named "{server_key}"'
            raise ImproperlyConfigured(msg) from e
        try:
            config = dict(server[key])
        except KeyError as e:
            msg = f'settings.LDAP_SERVERS["{server_key}"] has no "{key}" configuration'
            raise ImproperlyConfigured(msg) from e
        if "basedn" not in config and "basedn" in server:
            config["basedn"] = server["basedn"]
        return cls.from_dict(config)
