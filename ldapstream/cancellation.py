"""
Cooperative cancellation for directory operations.

A :class:`CancelToken` is handed to every operation that may block: borrowing
a pooled connection, entering the concurrency limiter, and waiting for a
search page.  Waiters register a wake-up callback so that cancelling the
token releases them immediately instead of at their next timeout.
"""

import logging
import threading
from collections.abc import Callable

from .exceptions import OperationCancelled

logger = logging.getLogger("django-ldapstream")


class CancelToken:
    """
    A thread-safe, one-shot cancellation signal.

    Tokens can be chained: a child token created with ``parent=`` is
    cancelled whenever its parent is.

    Keyword Args:
        parent: a token whose cancellation also cancels this one

    """

    def __init__(self, parent: "CancelToken | None" = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._unlink: Callable[[], None] | None = None
        if parent is not None:
            self._unlink = parent.register(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """
        Cancel the token and run every registered callback once.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("ldapstream.cancel.callback-failed")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register ``callback`` to be run when the token is cancelled.  If the
        token is already cancelled, ``callback`` runs immediately.

        Args:
            callback: a no-argument callable

        Returns:
            A callable that unregisters ``callback``.

        """
        with self._lock:
            if not self._event.is_set():
                callback_id = self._next_id
                self._next_id += 1
                self._callbacks[callback_id] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(callback_id, None)

                return unregister
        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the token is cancelled or ``timeout`` elapses.

        Returns:
            ``True`` if the token was cancelled.

        """
        return self._event.wait(timeout)

    def raise_if_cancelled(self, phase: str | None = None) -> None:
        """
        Raise :class:`OperationCancelled` if the token has been cancelled.
        """
        if self._event.is_set():
            msg = "Operation cancelled"
            raise OperationCancelled(msg, phase=phase)

    def detach(self) -> None:
        """
        Stop following the parent token, if any.
        """
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    def __repr__(self) -> str:
        return f"<CancelToken cancelled={self.cancelled}>"
