"""
The directory connection capability.

:class:`DirectoryConnection` is the only thing the rest of this package knows
about the wire protocol: it opens sessions, probes them for liveness, runs
paged searches and closes sessions.  :class:`LdapDirectoryConnection` is the
python-ldap implementation of it.
"""

import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ldap.controls import SimplePagedResultsControl

from ldapstream import ldap

from .cancellation import CancelToken
from .exceptions import ConnectError, DirectoryTimeoutError, OperationCancelled, SearchError
from .typing import Clock, LDAPData

logger = logging.getLogger("django-ldapstream")

_handle_ids = itertools.count(1)


@dataclass(frozen=True)
class Credentials:
    """
    Bind credentials for a directory server.
    """

    #: The DN (or UPN, for Active Directory) to bind as
    user: str
    password: str = field(repr=False)


@dataclass(eq=False)
class ConnectionHandle:
    """
    An opaque reference to a live session with the directory server.

    A handle is owned by exactly one party at a time: either the
    :class:`~ldapstream.pool.ConnectionPool` or the caller that borrowed it.
    """

    #: The protocol session object, e.g. a python-ldap ``LDAPObject``
    connection: Any
    created_at: float
    last_validated_at: float
    valid: bool = True
    id: int = field(default_factory=lambda: next(_handle_ids))

    def __repr__(self) -> str:
        return f"<ConnectionHandle id={self.id} valid={self.valid}>"


@dataclass
class Page:
    """
    One page of a paged search.
    """

    #: Raw ``(dn, attrs)`` entries, in server order
    entries: list[LDAPData]
    #: The paging cookie for the next page; empty when this is the last page
    cookie: bytes = b""


class DirectoryConnection(ABC):
    """
    The capability this package needs from a directory protocol
    implementation.
    """

    @abstractmethod
    def open(self, endpoint: str, credentials: Credentials) -> ConnectionHandle:
        """
        Open and bind a new session.

        Raises:
            ConnectError: the session could not be established

        """

    @abstractmethod
    def validate(self, handle: ConnectionHandle) -> bool:
        """
        Cheap liveness probe.  Must return ``False`` rather than raise for a
        dead session.
        """

    @abstractmethod
    def search(
        self,
        handle: ConnectionHandle,
        base: str,
        filter: str,  # noqa: A002
        scope: int,
        attributes: Sequence[str] | None,
        page_size: int,
        token: CancelToken | None = None,
        size_limit: int = 0,
    ) -> Iterator[Page]:
        """
        Run a paged search and return a lazy sequence of pages.

        Raises:
            SearchError: the server rejected the search
            DirectoryTimeoutError: a page did not arrive in time
            OperationCancelled: ``token`` was cancelled while waiting for a page

        """

    @abstractmethod
    def close(self, handle: ConnectionHandle) -> None:
        """
        Close the session.  Must not raise.
        """


class LdapDirectoryConnection(DirectoryConnection):
    """
    :class:`DirectoryConnection` backed by python-ldap.

    Keyword Args:
        timeout: network and per-page timeout in seconds
        use_starttls: negotiate StartTLS after connecting
        tls_verify: ``"never"`` or ``"always"``
        tls_ca_certfile: path to a CA certificate bundle
        tls_certfile: path to a client certificate
        tls_keyfile: path to the client certificate's key
        follow_referrals: chase referrals returned by the server
        poll_interval: how often, in seconds, a page wait checks for
            cancellation
        clock: monotonic clock used for handle timestamps and deadlines

    Raises:
        ValueError: ``tls_verify`` is not one of the supported values

    """

    def __init__(
        self,
        timeout: float = 30.0,
        use_starttls: bool = False,
        tls_verify: str = "never",
        tls_ca_certfile: str | None = None,
        tls_certfile: str | None = None,
        tls_keyfile: str | None = None,
        follow_referrals: bool = False,
        poll_interval: float = 0.25,
        clock: Clock = time.monotonic,
    ) -> None:
        if tls_verify not in ("never", "always"):
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        self.timeout = float(timeout)
        self.use_starttls = use_starttls
        self.tls_verify = tls_verify
        self.tls_ca_certfile = tls_ca_certfile
        self.tls_certfile = tls_certfile
        self.tls_keyfile = tls_keyfile
        self.follow_referrals = follow_referrals
        self.poll_interval = poll_interval
        self.clock = clock

    @staticmethod
    def _check_file(path: str, label: str) -> None:
        p = Path(path)
        if not p.exists():
            msg = f"{label} file does not exist: {path}"
            raise OSError(msg)
        if not p.is_file():
            msg = f"{label} file is not a file: {path}"
            raise OSError(msg)

    def _configure(self, ldap_object: Any) -> None:
        ldap_object.set_option(ldap.OPT_REFERRALS, 1 if self.follow_referrals else 0)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, self.timeout)  # type: ignore[attr-defined]
        if self.tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        if self.tls_ca_certfile:
            self._check_file(self.tls_ca_certfile, "CA Certificate")
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, self.tls_ca_certfile)  # type: ignore[attr-defined]
        if self.tls_certfile:
            self._check_file(self.tls_certfile, "TLS Certificate")
            ldap_object.set_option(ldap.OPT_X_TLS_CERTFILE, self.tls_certfile)  # type: ignore[attr-defined]
        if self.tls_keyfile:
            self._check_file(self.tls_keyfile, "TLS Key")
            ldap_object.set_option(ldap.OPT_X_TLS_KEYFILE, self.tls_keyfile)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]

    def open(self, endpoint: str, credentials: Credentials) -> ConnectionHandle:
        """
        Initialize, configure and bind a new python-ldap connection.

        Raises:
            ConnectError: the server is unreachable or refused the bind
            OSError: a configured certificate file is missing

        """
        ldap_object = None
        try:
            ldap_object = ldap.initialize(endpoint)  # type: ignore[attr-defined]
            self._configure(ldap_object)
            if self.use_starttls:
                ldap_object.start_tls_s()
            ldap_object.simple_bind_s(credentials.user, credentials.password)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            if ldap_object is not None:
                with suppress(ldap.LDAPError):  # type: ignore[attr-defined]
                    ldap_object.unbind_s()
            msg = f"Could not connect to {endpoint}: {_describe(e)}"
            raise ConnectError(msg, phase="open") from e
        now = self.clock()
        handle = ConnectionHandle(ldap_object, created_at=now, last_validated_at=now)
        logger.debug("ldapstream.connection.open url=%s handle=%s", endpoint, handle.id)
        return handle

    def validate(self, handle: ConnectionHandle) -> bool:
        try:
            handle.connection.whoami_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            logger.debug(
                "ldapstream.connection.validate.failed handle=%s error=%s",
                handle.id,
                _describe(e),
            )
            handle.valid = False
            return False
        handle.last_validated_at = self.clock()
        return True

    def close(self, handle: ConnectionHandle) -> None:
        handle.valid = False
        try:
            handle.connection.unbind_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            logger.debug(
                "ldapstream.connection.close.failed handle=%s error=%s",
                handle.id,
                _describe(e),
            )

    def _get_pctrls(self, serverctrls):
        """
        Lookup the paged results controls in the controls returned by the server.
        """
        return [
            c
            for c in serverctrls or []
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    def _wait_for_page(
        self,
        ldap_object: Any,
        msgid: int,
        token: CancelToken | None,
        searchfilter: str,
    ) -> tuple[list, list]:
        """
        Wait for the result of the search with message id ``msgid``, checking
        ``token`` every :attr:`poll_interval` seconds.
        """
        deadline = self.clock() + self.timeout
        while True:
            if token is not None and token.cancelled:
                _abandon(ldap_object, msgid)
                msg = "Search cancelled while waiting for a page"
                raise OperationCancelled(msg, phase="page", filter=searchfilter)
            remaining = deadline - self.clock()
            if remaining <= 0:
                _abandon(ldap_object, msgid)
                msg = f"No page received within {self.timeout}s"
                raise DirectoryTimeoutError(msg, phase="page", filter=searchfilter)
            try:
                rtype, rdata, _, serverctrls = ldap_object.result3(
                    msgid, all=1, timeout=min(self.poll_interval, remaining)
                )
            except ldap.TIMEOUT:  # type: ignore[attr-defined]
                continue
            if rtype is None:
                continue
            return rdata or [], serverctrls or []

    def _end_paged_search(
        self,
        ldap_object: Any,
        base: str,
        scope: int,
        searchfilter: str,
        attrlist: list[str] | None,
        cookie: bytes,
    ) -> None:
        """
        Tell the server to discard the rest of a paged result set we stopped
        reading.  Repeating the search with the last cookie and a page size
        of 0 ends it (RFC 2696).
        """
        paging = SimplePagedResultsControl(True, size=0, cookie=cookie)  # noqa: FBT003
        try:
            msgid = ldap_object.search_ext(
                base, scope, searchfilter, attrlist, serverctrls=[paging]
            )
            ldap_object.result3(msgid, all=1, timeout=self.timeout)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            logger.debug(
                "ldapstream.connection.paging.end_failed filter=%s error=%s",
                searchfilter,
                _describe(e),
            )
            return
        logger.debug("ldapstream.connection.paging.ended filter=%s", searchfilter)

    def search(
        self,
        handle: ConnectionHandle,
        base: str,
        filter: str,  # noqa: A002
        scope: int,
        attributes: Sequence[str] | None,
        page_size: int,
        token: CancelToken | None = None,
        size_limit: int = 0,
    ) -> Iterator[Page]:
        """
        Run a paged search.  If the caller stops before the last page
        (closing the iterator, cancellation or a page timeout), the server's
        paged result set is ended before returning.
        """
        ldap_object = handle.connection
        attrlist = list(attributes) if attributes else None
        cookie: bytes = b""
        try:
            while True:
                if token is not None:
                    token.raise_if_cancelled(phase="page")
                paging = SimplePagedResultsControl(True, size=page_size, cookie=cookie)  # noqa: FBT003
                try:
                    msgid = ldap_object.search_ext(
                        base,
                        scope,
                        filter,
                        attrlist,
                        serverctrls=[paging],
                        sizelimit=size_limit,
                    )
                    rdata, serverctrls = self._wait_for_page(ldap_object, msgid, token, filter)
                except ldap.LDAPError as e:  # type: ignore[attr-defined]
                    # An error result ends the paged search on the server too.
                    cookie = b""
                    if isinstance(e, ldap.SIZELIMIT_EXCEEDED):  # type: ignore[attr-defined]
                        # The server stopped at size_limit; nothing further to page through.
                        return
                    if isinstance(e, (ldap.TIMEOUT, ldap.TIMELIMIT_EXCEEDED)):  # type: ignore[attr-defined]
                        raise DirectoryTimeoutError(_describe(e), phase="page", filter=filter) from e
                    if isinstance(e, ldap.SERVER_DOWN):  # type: ignore[attr-defined]
                        handle.valid = False
                        raise ConnectError(_describe(e), phase="page", filter=filter) from e
                    raise SearchError(_describe(e), phase="page", filter=filter) from e
                paged_controls = self._get_pctrls(serverctrls)
                cookie = (paged_controls[0].cookie if paged_controls else b"") or b""
                yield Page(list(rdata), cookie)
                # No paged control means a SCOPE_BASE search or a server without
                # paging; no cookie means that was the last page.
                if not cookie:
                    return
        finally:
            if cookie and handle.valid:
                self._end_paged_search(ldap_object, base, scope, filter, attrlist, cookie)


def _abandon(ldap_object: Any, msgid: int) -> None:
    try:
        ldap_object.abandon(msgid)
    except ldap.LDAPError as e:  # type: ignore[attr-defined]
        logger.debug("ldapstream.connection.abandon.failed msgid=%s error=%s", msgid, _describe(e))


def _describe(error: Exception) -> str:
    """
    Turn a python-ldap exception into a one line message.
    """
    if error.args and isinstance(error.args[0], dict):
        info = error.args[0]
        desc = info.get("desc", "")
        extra = info.get("info", "")
        return f"{desc}: {extra}" if extra else str(desc)
    return str(error)
