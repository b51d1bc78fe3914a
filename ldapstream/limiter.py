"""
A ceiling on simultaneous directory operations.
"""

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from .cancellation import CancelToken
from .exceptions import DirectoryTimeoutError
from .typing import Clock


class ConcurrencyLimiter:
    """
    A counting semaphore bounding how many operations talk to the directory
    server at once.

    This is independent of the connection pool: the pool bounds open sessions,
    the limiter bounds concurrent work.  A caller may hold a limiter slot and
    still have to wait for a pooled connection.

    Unlike :class:`threading.Semaphore`, a waiter is woken immediately when its
    :class:`~ldapstream.cancellation.CancelToken` is cancelled.

    Args:
        capacity: the maximum number of concurrent operations

    Keyword Args:
        clock: monotonic clock, injectable for tests

    Raises:
        ValueError: ``capacity`` is less than 1

    """

    def __init__(self, capacity: int, clock: Clock = time.monotonic) -> None:
        if capacity < 1:
            msg = f"Limiter capacity must be at least 1, got {capacity}"
            raise ValueError(msg)
        self.capacity = capacity
        self.clock = clock
        self._cond = threading.Condition()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def enter(
        self, token: CancelToken | None = None, timeout: float | None = None
    ) -> None:
        """
        Take a slot, waiting for one if the limiter is at capacity.

        Keyword Args:
            token: cancels the wait
            timeout: seconds to wait for a slot; ``None`` waits forever

        Raises:
            OperationCancelled: ``token`` was cancelled while waiting
            DirectoryTimeoutError: no slot became free within ``timeout``

        """
        deadline = None if timeout is None else self.clock() + timeout
        unregister = token.register(self._wake) if token is not None else None
        try:
            with self._cond:
                while True:
                    if token is not None:
                        token.raise_if_cancelled(phase="limiter")
                    if self._in_flight < self.capacity:
                        self._in_flight += 1
                        return
                    if deadline is None:
                        self._cond.wait()
                        continue
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        msg = (
                            f"No operation slot became free within {timeout}s "
                            f"(capacity={self.capacity})"
                        )
                        raise DirectoryTimeoutError(msg, phase="limiter")
                    self._cond.wait(remaining)
        finally:
            if unregister is not None:
                unregister()

    def exit(self) -> None:
        """
        Give back a slot taken with :meth:`enter`.

        Raises:
            ValueError: there is no slot to give back

        """
        with self._cond:
            if self._in_flight == 0:
                msg = "ConcurrencyLimiter.exit() called without a matching enter()"
                raise ValueError(msg)
            self._in_flight -= 1
            self._cond.notify()

    @contextmanager
    def slot(
        self, token: CancelToken | None = None, timeout: float | None = None
    ) -> Iterator[None]:
        self.enter(token=token, timeout=timeout)
        try:
            yield
        finally:
            self.exit()

    def __repr__(self) -> str:
        return f"<ConcurrencyLimiter in_flight={self.in_flight} capacity={self.capacity}>"
