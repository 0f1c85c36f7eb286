"""Import execution, rollback and datastore persistence."""

from .datastore import (
    DatabaseClient,
    ImportRecord,
    ImportRecordState,
    ImportSummary,
    Snapshot,
)
from .executor import ImportExecutor, ImportMetadata, ImportPayload, ImportResult
from .retry import RetryError, is_transient_error, retry_with_backoff
from .rollback import RollbackResult, RollbackService
from .supabase_client import SupabaseClient, classify_database_error

__all__ = [
    "DatabaseClient",
    "ImportRecord",
    "ImportRecordState",
    "ImportSummary",
    "Snapshot",
    "ImportExecutor",
    "ImportMetadata",
    "ImportPayload",
    "ImportResult",
    "RetryError",
    "is_transient_error",
    "retry_with_backoff",
    "RollbackResult",
    "RollbackService",
    "SupabaseClient",
    "classify_database_error",
]
