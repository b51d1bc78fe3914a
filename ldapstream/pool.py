"""
A bounded pool of reusable directory connections.

The pool never holds more than ``capacity`` open handles, counting both the
idle ones and the ones currently borrowed.  Handles are probed for liveness
both when they are handed out and when they come back, so a session killed
by a server-side idle timeout or a server restart is discarded before a
caller tries to do real work with it.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager

from .cancellation import CancelToken
from .connection import ConnectionHandle, Credentials, DirectoryConnection
from .exceptions import ConnectError, PoolClosed, PoolExhausted
from .typing import Clock

logger = logging.getLogger("django-ldapstream")


class ConnectionPool:
    """
    Thread-safe pool of :class:`~ldapstream.connection.ConnectionHandle`
    objects for one directory endpoint.

    Args:
        connector: the protocol implementation used to open, probe and close
            sessions
        endpoint: the server URL, e.g. ``ldaps://dc1.example.com:636``
        credentials: the bind credentials for new sessions

    Keyword Args:
        capacity: maximum number of open handles
        timeout: default number of seconds :meth:`acquire` waits for a free
            handle
        clock: monotonic clock, injectable for tests

    Raises:
        ValueError: ``capacity`` is less than 1

    """

    def __init__(
        self,
        connector: DirectoryConnection,
        endpoint: str,
        credentials: Credentials,
        capacity: int = 10,
        timeout: float = 30.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if capacity < 1:
            msg = f"Pool capacity must be at least 1, got {capacity}"
            raise ValueError(msg)
        self.connector = connector
        self.endpoint = endpoint
        self.credentials = credentials
        self.capacity = capacity
        self.timeout = timeout
        self.clock = clock
        self._cond = threading.Condition()
        self._idle: deque[ConnectionHandle] = deque()
        self._borrowed: dict[int, ConnectionHandle] = {}
        # idle + borrowed + handles being created or probed
        self._open = 0
        self._closed = False

    # ------------------------
    # Introspection
    # ------------------------

    @property
    def size(self) -> int:
        """The number of open handles, idle or borrowed."""
        with self._cond:
            return self._open

    @property
    def idle(self) -> int:
        with self._cond:
            return len(self._idle)

    @property
    def in_use(self) -> int:
        with self._cond:
            return len(self._borrowed)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    # ------------------------
    # Borrowing
    # ------------------------

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _reserve(
        self, token: CancelToken | None, deadline: float
    ) -> ConnectionHandle | None:
        """
        Wait until an idle handle is available or there is room to create a
        new one.

        Returns:
            An idle handle, or ``None`` if the caller must create a new handle.
            In both cases the handle is already counted in ``self._open``.

        """
        unregister = token.register(self._wake) if token is not None else None
        try:
            with self._cond:
                while True:
                    if self._closed:
                        msg = "Connection pool is closed"
                        raise PoolClosed(msg, phase="acquire")
                    if token is not None:
                        token.raise_if_cancelled(phase="acquire")
                    if self._idle:
                        return self._idle.pop()
                    if self._open < self.capacity:
                        self._open += 1
                        return None
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        msg = (
                            f"No connection became free within the timeout "
                            f"(capacity={self.capacity})"
                        )
                        raise PoolExhausted(msg, phase="acquire")
                    self._cond.wait(remaining)
        finally:
            if unregister is not None:
                unregister()

    def _create(self) -> ConnectionHandle:
        try:
            try:
                handle = self.connector.open(self.endpoint, self.credentials)
            except ConnectError as e:
                logger.warning(
                    "ldapstream.pool.connect.retry url=%s error=%s", self.endpoint, e
                )
                handle = self.connector.open(self.endpoint, self.credentials)
        except BaseException:
            with self._cond:
                self._open -= 1
                self._cond.notify()
            raise
        with self._cond:
            if not self._closed:
                self._borrowed[handle.id] = handle
                logger.debug(
                    "ldapstream.pool.create handle=%s size=%d", handle.id, self._open
                )
                return handle
        self._destroy(handle)
        msg = "Connection pool was closed while connecting"
        raise PoolClosed(msg, phase="acquire")

    def _destroy(self, handle: ConnectionHandle) -> None:
        try:
            self.connector.close(handle)
        finally:
            with self._cond:
                self._open -= 1
                self._cond.notify()

    def _probe(self, handle: ConnectionHandle) -> bool:
        try:
            return handle.valid and self.connector.validate(handle)
        except BaseException:
            self._destroy(handle)
            raise

    def acquire(
        self, token: CancelToken | None = None, timeout: float | None = None
    ) -> ConnectionHandle:
        """
        Borrow a connection handle.  The caller owns it exclusively until it
        hands it back with :meth:`release` or :meth:`discard`.

        Keyword Args:
            token: cancels the wait for a free handle
            timeout: seconds to wait for a free handle; defaults to
                :attr:`timeout`

        Raises:
            ConnectError: a new session could not be opened, twice in a row
            PoolExhausted: the pool stayed at capacity for ``timeout`` seconds
            PoolClosed: the pool has been shut down
            OperationCancelled: ``token`` was cancelled while waiting

        Returns:
            A validated connection handle.

        """
        deadline = self.clock() + (self.timeout if timeout is None else timeout)
        while True:
            handle = self._reserve(token, deadline)
            if handle is None:
                return self._create()
            if self._probe(handle):
                with self._cond:
                    self._borrowed[handle.id] = handle
                logger.debug("ldapstream.pool.reuse handle=%s", handle.id)
                return handle
            logger.debug(
                "ldapstream.pool.discard reason=validation-failed phase=acquire handle=%s",
                handle.id,
            )
            self._destroy(handle)

    def release(self, handle: ConnectionHandle) -> None:
        """
        Hand a borrowed handle back.  It is probed first: a dead handle is
        closed, a live one goes back into the pool.

        Raises:
            ValueError: ``handle`` is not currently borrowed from this pool

        """
        with self._cond:
            if self._borrowed.pop(handle.id, None) is None:
                msg = f"{handle!r} is not borrowed from this pool"
                raise ValueError(msg)
        if not self._probe(handle):
            logger.debug(
                "ldapstream.pool.discard reason=validation-failed phase=release handle=%s",
                handle.id,
            )
            self._destroy(handle)
            return
        with self._cond:
            if not self._closed and len(self._idle) < self.capacity:
                self._idle.append(handle)
                self._cond.notify()
                return
        self._destroy(handle)

    def discard(self, handle: ConnectionHandle) -> None:
        """
        Close a borrowed handle without probing it or returning it to the pool.

        Raises:
            ValueError: ``handle`` is not currently borrowed from this pool

        """
        with self._cond:
            if self._borrowed.pop(handle.id, None) is None:
                msg = f"{handle!r} is not borrowed from this pool"
                raise ValueError(msg)
        logger.debug("ldapstream.pool.discard reason=caller handle=%s", handle.id)
        self._destroy(handle)

    @contextmanager
    def borrow(
        self, token: CancelToken | None = None, timeout: float | None = None
    ) -> Iterator[ConnectionHandle]:
        """
        Context manager around :meth:`acquire` and :meth:`release`.
        """
        handle = self.acquire(token=token, timeout=timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def shutdown(self) -> None:
        """
        Close every idle handle and refuse further :meth:`acquire` calls.
        Handles still borrowed are closed when they are released.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            handles = list(self._idle)
            self._idle.clear()
            self._cond.notify_all()
        for handle in handles:
            self._destroy(handle)
        logger.info(
            "ldapstream.pool.shutdown url=%s closed=%d", self.endpoint, len(handles)
        )

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return (
            f"<ConnectionPool url={self.endpoint} size={self.size} "
            f"idle={self.idle} capacity={self.capacity}>"
        )
