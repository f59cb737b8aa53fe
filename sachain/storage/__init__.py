from sachain.storage.backends import (
    DynamoDBTableBackend,
    InMemoryTableBackend,
    Page,
    TableBackend,
    create_backend,
)
from sachain.storage.errors import (
    ErrorCategory,
    ErrorClassifier,
    ErrorDetails,
    StorageError,
    StoreOperationError,
)
from sachain.storage.repository import (
    BaseRepository,
    Pagination,
    QueryResult,
    RepositoryConfig,
    build_update,
    utc_now,
    utc_timestamp,
)
from sachain.storage.retry import BackoffExecutor, JitterType, RetryConfig, RetryOutcome, with_backoff

__all__ = [
    "BackoffExecutor",
    "BaseRepository",
    "DynamoDBTableBackend",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorDetails",
    "InMemoryTableBackend",
    "JitterType",
    "Page",
    "Pagination",
    "QueryResult",
    "RepositoryConfig",
    "RetryConfig",
    "RetryOutcome",
    "StorageError",
    "StoreOperationError",
    "TableBackend",
    "build_update",
    "create_backend",
    "utc_now",
    "utc_timestamp",
    "with_backoff",
]
