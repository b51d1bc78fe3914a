"""
Streaming paged searches.
"""

import logging
from collections import deque
from collections.abc import Iterator

from .cancellation import CancelToken
from .connection import DirectoryConnection
from .exceptions import (
    ConnectError,
    DirectoryTimeoutError,
    OperationCancelled,
    SearchError,
    SearchFailed,
)
from .limiter import ConcurrencyLimiter
from .models import DirectoryRecord, SearchSpec
from .pool import ConnectionPool

logger = logging.getLogger("django-ldapstream")


class StreamingSearch:
    """
    Runs one paged search at a time per call and hands records to the
    consumer as soon as their page arrives, without ever holding the whole
    result set.

    Each call to :meth:`execute` takes a
    :class:`~ldapstream.limiter.ConcurrencyLimiter` slot and borrows its own
    connection from the :class:`~ldapstream.pool.ConnectionPool`; both are
    given back on every exit path: exhaustion, error, cancellation, or the
    consumer dropping the iterator.

    Args:
        pool: where connections are borrowed from
        limiter: the shared ceiling on concurrent directory operations

    Keyword Args:
        timeout: seconds to wait for a limiter slot and for a pooled
            connection; ``None`` uses the pool's own timeout for the
            connection and waits forever for the slot

    """

    def __init__(
        self,
        pool: ConnectionPool,
        limiter: ConcurrencyLimiter,
        timeout: float | None = None,
    ) -> None:
        self.pool = pool
        self.limiter = limiter
        self.timeout = timeout

    @property
    def connector(self) -> DirectoryConnection:
        return self.pool.connector

    def execute(
        self, spec: SearchSpec, token: CancelToken | None = None
    ) -> Iterator[DirectoryRecord]:
        """
        Run ``spec`` and return a lazy, forward-only iterator of records in
        server page order.  Nothing is sent to the server until the first
        record is requested; calling :meth:`execute` again re-runs the search.

        If ``token`` is cancelled, or the consumer stops iterating, the
        in-progress page fetch is abandoned and the iterator ends quietly.

        Args:
            spec: the search to run

        Keyword Args:
            token: cancels the search

        Raises:
            SearchFailed: a page fetch failed; records already yielded remain
                valid
            PoolExhausted: no connection became free in time
            PoolClosed: the pool has been shut down
            ConnectError: no connection could be opened
            DirectoryTimeoutError: no limiter slot became free in time

        """
        try:
            self.limiter.enter(token=token, timeout=self.timeout)
        except OperationCancelled:
            return
        try:
            try:
                handle = self.pool.acquire(token=token, timeout=self.timeout)
            except OperationCancelled:
                return
            try:
                yield from self._stream(handle, spec, token)
            finally:
                self.pool.release(handle)
        finally:
            self.limiter.exit()

    def _stream(self, handle, spec: SearchSpec, token: CancelToken | None):
        pages = self.connector.search(
            handle,
            spec.base,
            spec.filter,
            int(spec.scope),
            spec.attributes,
            spec.page_size,
            token=token,
            size_limit=spec.size_limit,
        )
        delivered = 0
        page_number = 0
        try:
            while True:
                try:
                    page = next(pages, None)
                except OperationCancelled:
                    logger.debug(
                        "ldapstream.search.cancelled filter=%s delivered=%d",
                        spec.filter,
                        delivered,
                    )
                    return
                except (SearchError, DirectoryTimeoutError, ConnectError) as e:
                    logger.warning(
                        "ldapstream.search.failed filter=%s page=%d error=%s",
                        spec.filter,
                        page_number,
                        e,
                    )
                    raise SearchFailed(e, phase="page", filter=spec.filter) from e
                if page is None:
                    break
                page_number += 1
                entries = deque(page.entries)
                page.entries = []
                while entries:
                    if token is not None and token.cancelled:
                        logger.debug(
                            "ldapstream.search.cancelled filter=%s delivered=%d",
                            spec.filter,
                            delivered,
                        )
                        return
                    dn, attrs = entries.popleft()
                    # AD returns search references at the end of a page;
                    # those are not entries.
                    if not isinstance(attrs, dict):
                        continue
                    yield DirectoryRecord(dn=dn, attributes=attrs)
                    delivered += 1
                    if spec.size_limit and delivered >= spec.size_limit:
                        return
        finally:
            close = getattr(pages, "close", None)
            if close is not None:
                close()
        logger.debug(
            "ldapstream.search.done filter=%s pages=%d records=%d",
            spec.filter,
            page_number,
            delivered,
        )

    def collect(
        self, spec: SearchSpec, token: CancelToken | None = None
    ) -> list[DirectoryRecord]:
        """
        Run ``spec`` and return every record as a list.

        Raises:
            OperationCancelled: ``token`` was cancelled before the search
                finished

        """
        records = list(self.execute(spec, token=token))
        if token is not None:
            token.raise_if_cancelled(phase="search")
        return records
