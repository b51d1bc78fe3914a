"""
Exceptions raised by the directory client layer.

Every exception derives from :class:`DirectoryError`, which carries enough
context (the phase that failed, the filter in use, the identifiers being
resolved) for the calling layer to log meaningfully.  This package only
raises; what to show the user is up to the caller.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .batch import BatchFailure


class DirectoryError(Exception):
    """
    Base class for all directory client errors.

    Args:
        message: human readable description of the problem

    Keyword Args:
        phase: the operation phase that failed, e.g. ``"open"``, ``"acquire"``,
            ``"page"``
        filter: the LDAP filter in use when the error happened
        identifiers: the identifiers being resolved when the error happened

    """

    def __init__(
        self,
        message: str = "",
        *,
        phase: str | None = None,
        filter: str | None = None,  # noqa: A002
        identifiers: Sequence[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.filter = filter
        self.identifiers: tuple[str, ...] = tuple(identifiers or ())

    @property
    def context(self) -> dict[str, Any]:
        """
        Return the error context as a dict, skipping empty values.
        """
        context: dict[str, Any] = {}
        if self.phase:
            context["phase"] = self.phase
        if self.filter:
            context["filter"] = self.filter
        if self.identifiers:
            context["identifiers"] = len(self.identifiers)
        return context

    def __str__(self) -> str:
        context = " ".join(f"{k}={v}" for k, v in self.context.items())
        if context:
            return f"{self.message} ({context})"
        return self.message


class ConnectError(DirectoryError):
    """Raised when a session with the directory server cannot be established."""


class DirectoryTimeoutError(DirectoryError, TimeoutError):
    """Raised when a directory operation exceeds its deadline."""


class SearchError(DirectoryError):
    """Raised when the server rejects a search, e.g. for a malformed filter."""


class SearchFailed(SearchError):  # noqa: N818
    """
    Raised by a streaming search when a page fetch fails mid-stream.

    Records already handed to the consumer remain valid.

    Args:
        cause: the underlying error

    """

    def __init__(self, cause: BaseException, **kwargs: Any) -> None:
        super().__init__(f"Search failed: {cause}", **kwargs)
        self.cause = cause


class PoolExhausted(DirectoryError):  # noqa: N818
    """Raised when the pool is at capacity and the wait for a free handle timed out."""


class PoolClosed(DirectoryError):  # noqa: N818
    """Raised when a pool is used after :meth:`ConnectionPool.shutdown`."""


class OperationCancelled(DirectoryError):  # noqa: N818
    """Raised when the caller cancelled the operation via its :class:`CancelToken`."""


class BatchPartialFailure(DirectoryError):  # noqa: N818
    """
    Informational error describing the batches that failed during a bulk
    resolution.  It is attached to a successful
    :class:`~ldapstream.batch.BatchResult`, and only raised by
    :meth:`~ldapstream.batch.BatchResult.raise_for_failures`.

    Args:
        failures: the failed batches
        batch_count: total number of batches in the resolution

    """

    def __init__(self, failures: Sequence["BatchFailure"], batch_count: int) -> None:
        identifiers = [i for failure in failures for i in failure.job.identifiers]
        super().__init__(
            f"{len(failures)} of {batch_count} batches failed",
            phase="resolve",
            identifiers=identifiers,
        )
        self.failures = list(failures)
        self.batch_count = batch_count

    @property
    def failed_batch_count(self) -> int:
        return len(self.failures)
