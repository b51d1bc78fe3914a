"""
The directory client facade.

:class:`DirectoryClient` wires a connection pool, a concurrency limiter, a
streaming search, a batch resolver and a result cache together for one
directory server, and offers the queries a directory management application
needs on top of them.
"""

import logging
import time
from collections.abc import Iterable, Iterator
from typing import Any

from .batch import BatchResolver, BatchResult, FilterTemplate
from .cache import ResultCache
from .cancellation import CancelToken
from .conf import DirectoryClientConfig
from .connection import Credentials, DirectoryConnection, LdapDirectoryConnection
from .exceptions import (
    ConnectError,
    DirectoryError,
    DirectoryTimeoutError,
    PoolClosed,
    PoolExhausted,
)
from .filters import (
    GROUP_SEARCH_ATTRIBUTES,
    USER_SEARCH_ATTRIBUTES,
    build_equality_filter,
    build_substring_filter,
    object_class_filter,
)
from .limiter import ConcurrencyLimiter
from .models import DirectoryRecord, Scope, SearchSpec
from .pool import ConnectionPool
from .search import StreamingSearch
from .typing import Clock

logger = logging.getLogger("django-ldapstream")

#: Attributes fetched for user records
USER_ATTRIBUTES: tuple[str, ...] = (
    "sAMAccountName",
    "userPrincipalName",
    "displayName",
    "mail",
    "givenName",
    "sn",
    "middleName",
    "initials",
    "cn",
    "name",
    "description",
    "department",
    "title",
    "company",
    "manager",
    "physicalDeliveryOfficeName",
    "telephoneNumber",
    "homePhone",
    "mobile",
    "facsimileTelephoneNumber",
    "distinguishedName",
    "userAccountControl",
    "lockoutTime",
    "whenCreated",
    "whenChanged",
    "lastLogonTimestamp",
    "lastLogon",
    "pwdLastSet",
    "accountExpires",
    "memberOf",
)

#: Attributes fetched for group records
GROUP_ATTRIBUTES: tuple[str, ...] = (
    "cn",
    "name",
    "description",
    "displayName",
    "distinguishedName",
    "groupType",
    "mail",
    "managedBy",
    "whenCreated",
    "whenChanged",
)

#: Attributes fetched for organizational unit records
OU_ATTRIBUTES: tuple[str, ...] = (
    "ou",
    "name",
    "description",
    "distinguishedName",
    "whenCreated",
    "whenChanged",
)


class DirectoryClient:
    """
    Pooled, concurrent, cached access to one directory server.

    Args:
        connector: the protocol implementation
        config: connection and tuning values

    Keyword Args:
        cache: the result cache to use; a private one is created by default
        clock: monotonic clock shared by the pool, limiter and cache

    Example:

        .. code-block:: python

            with DirectoryClient.from_settings() as client:
                for user in client.stream_users():
                    print(user.get("sAMAccountName"))
                members = client.get_group_members("Domain Admins")
                if members.failed_batch_count:
                    print(f"{members.failed_batch_count} batches failed")

    """

    def __init__(
        self,
        connector: DirectoryConnection,
        config: DirectoryClientConfig,
        cache: ResultCache | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        config.validate()
        self.config = config
        self.connector = connector
        self.pool = ConnectionPool(
            connector,
            config.url,
            Credentials(config.user, config.password),
            capacity=config.pool_size,
            timeout=config.timeout,
            clock=clock,
        )
        self.limiter = ConcurrencyLimiter(config.max_concurrent_operations, clock=clock)
        self.search = StreamingSearch(self.pool, self.limiter, timeout=config.timeout)
        self.resolver = BatchResolver(
            self.search,
            config.basedn,
            batch_size=config.batch_size,
            max_parallel=config.max_parallel_degree,
        )
        self.cache = cache if cache is not None else ResultCache(clock=clock)
        logger.info(
            "ldapstream.client.init url=%s pool_size=%d max_concurrent=%d",
            config.url,
            config.pool_size,
            config.max_concurrent_operations,
        )

    @classmethod
    def from_config(cls, config: DirectoryClientConfig, **kwargs: Any) -> "DirectoryClient":
        """
        Build a client that talks to the server with python-ldap.
        """
        connector = LdapDirectoryConnection(
            timeout=config.timeout,
            use_starttls=config.use_starttls,
            tls_verify=config.tls_verify,
            tls_ca_certfile=config.tls_ca_certfile,
            tls_certfile=config.tls_certfile,
            tls_keyfile=config.tls_keyfile,
            follow_referrals=config.follow_referrals,
        )
        return cls(connector, config, **kwargs)

    @classmethod
    def from_settings(
        cls, server_key: str = "default", key: str = "read", **kwargs: Any
    ) -> "DirectoryClient":
        """
        Build a python-ldap backed client from ``settings.LDAP_SERVERS``.
        See :mod:`ldapstream.conf` for the settings layout.
        """
        return cls.from_config(
            DirectoryClientConfig.from_settings(server_key, key), **kwargs
        )

    # ------------------------
    # Lifecycle
    # ------------------------

    def close(self) -> None:
        """
        Shut the connection pool down.
        """
        self.pool.shutdown()

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def test_connection(self) -> tuple[bool, str]:
        """
        Check that we can open, bind and probe a connection.

        Returns:
            ``(success, message)``; on failure ``message`` suggests what to
            check.

        """
        try:
            with self.limiter.slot(timeout=self.config.timeout):
                with self.pool.borrow() as handle:
                    ok = self.connector.validate(handle)
        except ConnectError as e:
            logger.warning("ldapstream.client.test_connection.failed url=%s error=%s", self.config.url, e)
            return False, (
                f"Could not connect to {self.config.url}: {e.message}. "
                "Check DNS, the network path and firewall rules to the server, "
                "and the bind credentials."
            )
        except PoolExhausted:
            return False, (
                f"All {self.config.pool_size} connections are busy. "
                "Try again later or raise pool_size."
            )
        except DirectoryTimeoutError:
            return False, (
                f"All {self.config.max_concurrent_operations} operation slots are busy. "
                "Try again later or raise max_concurrent_operations."
            )
        except PoolClosed:
            return False, "The directory client has been closed."
        if not ok:
            return False, (
                f"Connected to {self.config.url} but the session did not respond. "
                "Check the server's health and idle timeout settings."
            )
        return True, f"Connected to {self.config.url}"

    # ------------------------
    # Core operations
    # ------------------------

    def spec(
        self,
        searchfilter: str,
        attributes: Iterable[str] = (),
        base: str | None = None,
        scope: Scope = Scope.SUBTREE,
        page_size: int | None = None,
        size_limit: int = 0,
    ) -> SearchSpec:
        """
        Build a :class:`~ldapstream.models.SearchSpec` using this client's
        defaults for base and page size.
        """
        return SearchSpec(
            base=base or self.config.basedn,
            filter=searchfilter,
            scope=scope,
            attributes=tuple(attributes),
            page_size=page_size or self.config.page_size,
            size_limit=size_limit,
        )

    def stream_search(
        self, spec: SearchSpec, token: CancelToken | None = None
    ) -> Iterator[DirectoryRecord]:
        """
        Stream the records matching ``spec``.  See
        :meth:`ldapstream.search.StreamingSearch.execute`.
        """
        return self.search.execute(spec, token=token)

    def resolve_batch(
        self,
        identifiers: Iterable[str],
        token: CancelToken | None = None,
        *,
        object_class: str = "user",
        attributes: Iterable[str] | None = None,
        identifier_attribute: str = "distinguishedName",
        batch_size: int | None = None,
        max_parallel: int | None = None,
        filter_template: FilterTemplate | None = None,
    ) -> BatchResult:
        """
        Resolve many identifiers at once.  See
        :meth:`ldapstream.batch.BatchResolver.resolve`.

        ``attributes`` defaults to :data:`USER_ATTRIBUTES` or
        :data:`GROUP_ATTRIBUTES` depending on ``object_class``.
        """
        if attributes is None:
            attributes = GROUP_ATTRIBUTES if object_class == "group" else USER_ATTRIBUTES
        return self.resolver.resolve(
            identifiers,
            token,
            object_class=object_class,
            attributes=attributes,
            identifier_attribute=identifier_attribute,
            batch_size=batch_size,
            max_parallel=max_parallel,
            filter_template=filter_template,
        )

    def cached_search(
        self,
        spec: SearchSpec,
        ttl: float | None = None,
        token: CancelToken | None = None,
    ) -> list[DirectoryRecord]:
        """
        Return the records matching ``spec``, from the cache if an unexpired
        entry exists, otherwise from the server (then cached for ``ttl``
        seconds).

        Keyword Args:
            ttl: seconds to keep the result; defaults to the configured
                ``search_cache_seconds``
            token: cancels the search

        Raises:
            OperationCancelled: ``token`` was cancelled; nothing is cached

        """
        cached = self.cache.get(spec)
        if cached is not None:
            logger.debug("ldapstream.client.cache.hit filter=%s", spec.filter)
            return list(cached)
        records = self.search.collect(spec, token=token)
        self.cache.put(
            spec, records, self.config.search_cache_seconds if ttl is None else ttl
        )
        return records

    # ------------------------
    # Users, groups, OUs
    # ------------------------

    def stream_users(
        self, base: str | None = None, token: CancelToken | None = None
    ) -> Iterator[DirectoryRecord]:
        """
        Stream every user under ``base``, or under the configured base DN.
        """
        spec = self.spec(object_class_filter("user"), USER_ATTRIBUTES, base=base)
        return self.stream_search(spec, token=token)

    def stream_groups(
        self, base: str | None = None, token: CancelToken | None = None
    ) -> Iterator[DirectoryRecord]:
        spec = self.spec(object_class_filter("group"), GROUP_ATTRIBUTES, base=base)
        return self.stream_search(spec, token=token)

    def stream_organizational_units(
        self, base: str | None = None, token: CancelToken | None = None
    ) -> Iterator[DirectoryRecord]:
        spec = self.spec(
            object_class_filter("organizationalUnit"), OU_ATTRIBUTES, base=base
        )
        return self.stream_search(spec, token=token)

    def search_users(
        self, term: str, token: CancelToken | None = None
    ) -> list[DirectoryRecord]:
        """
        Free text user search over cn, sAMAccountName, displayName and mail.
        Results are cached.
        """
        searchfilter = build_substring_filter("user", USER_SEARCH_ATTRIBUTES, term)
        return self.cached_search(self.spec(searchfilter, USER_ATTRIBUTES), token=token)

    def search_groups(
        self, term: str, token: CancelToken | None = None
    ) -> list[DirectoryRecord]:
        """
        Free text group search over cn, name, description and displayName.
        Results are cached.
        """
        searchfilter = build_substring_filter("group", GROUP_SEARCH_ATTRIBUTES, term)
        return self.cached_search(self.spec(searchfilter, GROUP_ATTRIBUTES), token=token)

    def _find_one(
        self, spec: SearchSpec, token: CancelToken | None
    ) -> DirectoryRecord | None:
        records = self.search.collect(spec, token=token)
        return records[0] if records else None

    def find_user(
        self,
        login: str,
        token: CancelToken | None = None,
        attributes: Iterable[str] = USER_ATTRIBUTES,
    ) -> DirectoryRecord | None:
        """
        Look a user up by ``sAMAccountName``, or by ``mail`` or
        ``userPrincipalName`` when ``login`` contains ``@``.

        Returns:
            The user, or ``None`` if there is no such user.

        """
        login = login.strip()
        if not login:
            return None
        if "@" in login:
            for attribute in ("mail", "userPrincipalName"):
                spec = self.spec(
                    build_equality_filter("user", attribute, login),
                    attributes,
                )
                user = self._find_one(spec, token)
                if user is not None:
                    return user
            return None
        spec = self.spec(
            build_equality_filter("user", "sAMAccountName", login),
            attributes,
        )
        return self._find_one(spec, token)

    def find_group(
        self,
        name: str,
        token: CancelToken | None = None,
        attributes: Iterable[str] = GROUP_ATTRIBUTES,
    ) -> DirectoryRecord | None:
        """
        Look a group up by ``cn``.
        """
        spec = self.spec(
            build_equality_filter("group", "cn", name.strip()), attributes
        )
        return self._find_one(spec, token)

    def get_group_members(
        self, name: str, token: CancelToken | None = None
    ) -> BatchResult:
        """
        Return the user members of group ``name``: one query for the group's
        ``member`` values, then a batched resolution of those DNs.

        Raises:
            DirectoryError: there is no group named ``name``

        """
        group = self.find_group(name, token=token, attributes=("member",))
        if group is None:
            msg = f'Group "{name}" not found'
            raise DirectoryError(msg, phase="get_group_members")
        member_dns = group.get_all("member")
        logger.debug(
            "ldapstream.client.group_members group=%s members=%d", name, len(member_dns)
        )
        return self.resolve_batch(member_dns, token, object_class="user")

    def get_user_groups(
        self, login: str, token: CancelToken | None = None
    ) -> BatchResult:
        """
        Return the groups user ``login`` is a direct member of: one query for
        the user's ``memberOf`` values, then a batched resolution of those DNs.

        Raises:
            DirectoryError: there is no user with that login

        """
        user = self.find_user(login, token=token, attributes=("memberOf",))
        if user is None:
            msg = f'User "{login}" not found'
            raise DirectoryError(msg, phase="get_user_groups")
        return self.resolve_batch(user.get_all("memberOf"), token, object_class="group")
