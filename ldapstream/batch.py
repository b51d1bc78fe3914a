"""
Bulk identifier resolution.

Resolving thousands of DNs one query at a time is far too slow, and one
query for all of them produces an enormous filter.  :class:`BatchResolver`
splits the identifiers into fixed size batches, runs one OR filter per batch
in parallel, and merges whatever comes back.  A batch that fails is logged
and counted, never fatal.
"""

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from .cancellation import CancelToken
from .exceptions import BatchPartialFailure, DirectoryError, OperationCancelled
from .filters import build_exact_match_filter
from .models import BatchJob, DirectoryRecord, SearchSpec
from .search import StreamingSearch

logger = logging.getLogger("django-ldapstream")

#: Builds the filter string for one batch
FilterTemplate = Callable[[BatchJob], str]


def partition(identifiers: Sequence[str], batch_size: int) -> list[tuple[str, ...]]:
    """
    Split ``identifiers`` into consecutive batches of ``batch_size``; the last
    batch may be shorter.  Every identifier lands in exactly one batch.

    Example:
        >>> partition(["a", "b", "c"], 2)
        [('a', 'b'), ('c',)]

    Raises:
        ValueError: ``batch_size`` is less than 1

    """
    if batch_size < 1:
        msg = f"batch_size must be at least 1, got {batch_size}"
        raise ValueError(msg)
    return [
        tuple(identifiers[i : i + batch_size])
        for i in range(0, len(identifiers), batch_size)
    ]


@dataclass(frozen=True)
class BatchFailure:
    """
    A batch whose query failed, and why.
    """

    job: BatchJob
    error: DirectoryError


@dataclass
class BatchResult:
    """
    The outcome of :meth:`BatchResolver.resolve`: the merged records plus an
    account of the batches that failed.  Iterating over a result iterates
    over its records.
    """

    records: list[DirectoryRecord] = field(default_factory=list)
    batch_count: int = 0
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def failed_batch_count(self) -> int:
        return len(self.failures)

    @property
    def partial_failure(self) -> BatchPartialFailure | None:
        """
        A :class:`~ldapstream.exceptions.BatchPartialFailure` describing the
        failed batches, or ``None`` if every batch succeeded.
        """
        if not self.failures:
            return None
        return BatchPartialFailure(self.failures, self.batch_count)

    def raise_for_failures(self) -> None:
        """
        Raise :class:`~ldapstream.exceptions.BatchPartialFailure` if any
        batch failed.
        """
        failure = self.partial_failure
        if failure is not None:
            raise failure

    def __iter__(self) -> Iterator[DirectoryRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


class BatchResolver:
    """
    Resolves large lists of identifiers with bounded parallel fan-out.

    Every batch runs through the shared
    :class:`~ldapstream.search.StreamingSearch`, so it takes a slot from the
    concurrency limiter and borrows its own pooled connection.
    ``max_parallel`` additionally caps how many batches of one
    :meth:`resolve` call run at once.

    Args:
        search: the streaming search used to run each batch
        base: the DN batches search under

    Keyword Args:
        batch_size: identifiers per batch
        max_parallel: batches of one call running at once
        page_size: page size for batch searches; defaults to ``batch_size``

    """

    def __init__(
        self,
        search: StreamingSearch,
        base: str,
        batch_size: int = 100,
        max_parallel: int = 4,
        page_size: int | None = None,
    ) -> None:
        if max_parallel < 1:
            msg = f"max_parallel must be at least 1, got {max_parallel}"
            raise ValueError(msg)
        self.search = search
        self.base = base
        self.batch_size = batch_size
        self.max_parallel = max_parallel
        self.page_size = page_size

    def jobs(
        self,
        identifiers: Iterable[str],
        batch_size: int | None = None,
        object_class: str = "user",
        attributes: Iterable[str] = (),
        identifier_attribute: str = "distinguishedName",
    ) -> list[BatchJob]:
        """
        Partition ``identifiers`` into :class:`~ldapstream.models.BatchJob`
        objects.  Blank and repeated identifiers are dropped first.
        """
        unique = list(dict.fromkeys(i for i in identifiers if i))
        return [
            BatchJob(
                index=index,
                identifiers=batch,
                attributes=tuple(attributes),
                object_class=object_class,
                identifier_attribute=identifier_attribute,
            )
            for index, batch in enumerate(
                partition(unique, batch_size or self.batch_size)
            )
        ]

    def _run(
        self,
        job: BatchJob,
        filter_template: FilterTemplate | None,
        base: str,
        token: CancelToken | None,
    ) -> list[DirectoryRecord]:
        if token is not None:
            token.raise_if_cancelled(phase="batch")
        if filter_template is not None:
            searchfilter = filter_template(job)
        else:
            searchfilter = build_exact_match_filter(
                job.object_class, job.identifier_attribute, job.identifiers
            )
        spec = SearchSpec(
            base=base,
            filter=searchfilter,
            attributes=job.attributes,
            page_size=self.page_size or max(len(job.identifiers), 1),
        )
        return self.search.collect(spec, token=token)

    def resolve(
        self,
        identifiers: Iterable[str],
        token: CancelToken | None = None,
        *,
        object_class: str = "user",
        attributes: Iterable[str] = (),
        identifier_attribute: str = "distinguishedName",
        batch_size: int | None = None,
        max_parallel: int | None = None,
        filter_template: FilterTemplate | None = None,
        base: str | None = None,
    ) -> BatchResult:
        """
        Look up every object of ``object_class`` whose ``identifier_attribute``
        is in ``identifiers``.

        Records from all batches are merged as a set (by DN); their order is
        unspecified.  Identifiers with no matching entry simply produce no
        record.  A batch whose query fails is logged, contributes no records,
        and is reported in :attr:`BatchResult.failures`.

        Args:
            identifiers: the values to resolve, usually DNs

        Keyword Args:
            token: cancels the whole resolution
            object_class: the object-class constraint, see
                :func:`~ldapstream.filters.object_class_filter`
            attributes: attributes to fetch for each record
            identifier_attribute: the attribute ``identifiers`` are matched
                against
            batch_size: override the resolver's batch size for this call
            max_parallel: override the resolver's parallelism for this call
            filter_template: build each batch's filter yourself instead of
                using :func:`~ldapstream.filters.build_exact_match_filter`
            base: override the search base for this call

        Raises:
            OperationCancelled: ``token`` was cancelled.  No partial result is
                returned.

        Returns:
            The merged records and the failed batches.

        """
        jobs = self.jobs(
            identifiers,
            batch_size=batch_size,
            object_class=object_class,
            attributes=attributes,
            identifier_attribute=identifier_attribute,
        )
        if not jobs:
            return BatchResult()
        base = base or self.base
        workers = min(max_parallel or self.max_parallel, len(jobs))
        logger.debug(
            "ldapstream.batch.start batches=%d workers=%d object_class=%s",
            len(jobs),
            workers,
            object_class,
        )
        records: dict[str, DirectoryRecord] = {}
        failures: list[BatchFailure] = []
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="ldapstream-batch"
        ) as executor:
            futures: dict[Future, BatchJob] = {
                executor.submit(self._run, job, filter_template, base, token): job
                for job in jobs
            }
            unregister = None
            if token is not None:
                unregister = token.register(
                    lambda: [future.cancel() for future in futures]
                )
            try:
                for future in as_completed(futures):
                    job = futures[future]
                    if future.cancelled():
                        continue
                    try:
                        batch_records = future.result()
                    except OperationCancelled:
                        continue
                    except DirectoryError as e:
                        logger.warning(
                            "ldapstream.batch.failed batch=%d identifiers=%d error=%s",
                            job.index,
                            len(job.identifiers),
                            e,
                        )
                        failures.append(BatchFailure(job, e))
                        continue
                    for record in batch_records:
                        records.setdefault(record.dn.lower(), record)
            finally:
                if unregister is not None:
                    unregister()
        if token is not None:
            token.raise_if_cancelled(phase="resolve")
        logger.debug(
            "ldapstream.batch.done batches=%d failed=%d records=%d",
            len(jobs),
            len(failures),
            len(records),
        )
        return BatchResult(
            records=list(records.values()),
            batch_count=len(jobs),
            failures=failures,
        )
