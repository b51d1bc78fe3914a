"""
Pooled, concurrency-limited, streaming access to LDAP and Active Directory
servers.
"""

from .batch import BatchResolver, BatchResult
from .cache import ResultCache
from .cancellation import CancelToken
from .client import DirectoryClient
from .conf import DirectoryClientConfig
from .connection import DirectoryConnection, LdapDirectoryConnection
from .exceptions import (
    BatchPartialFailure,
    ConnectError,
    DirectoryError,
    DirectoryTimeoutError,
    OperationCancelled,
    PoolClosed,
    PoolExhausted,
    SearchError,
    SearchFailed,
)
from .limiter import ConcurrencyLimiter
from .models import DirectoryRecord, Scope, SearchSpec
from .pool import ConnectionPool
from .search import StreamingSearch

__version__ = "1.0.0"

__all__ = [
    "BatchPartialFailure",
    "BatchResolver",
    "BatchResult",
    "CancelToken",
    "ConcurrencyLimiter",
    "ConnectError",
    "ConnectionPool",
    "DirectoryClient",
    "DirectoryClientConfig",
    "DirectoryConnection",
    "DirectoryError",
    "DirectoryRecord",
    "DirectoryTimeoutError",
    "LdapDirectoryConnection",
    "OperationCancelled",
    "PoolClosed",
    "PoolExhausted",
    "ResultCache",
    "Scope",
    "SearchError",
    "SearchFailed",
    "SearchSpec",
    "StreamingSearch",
]
