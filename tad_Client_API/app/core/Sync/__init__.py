# Sync/__init__.py
from .cache import QueryCache, LocalCache, transcript_keys
from .conflict import ConflictManager, resolved_value
from .consistency import DataConsistencyService
from .engine import SyncEngine
from .exceptions import (
    SyncError,
    TransportError,
    ConflictError,
    ConsistencyError,
    SyncValidationError,
    MutationError,
    SyncInProgressError,
    StateError,
    ErrorCategory,
    categorize_error,
    recovery_suggestion,
)
from .metrics import SyncPerformanceMonitor
from .models import (
    TranscriptRecord,
    SyncOptions,
    SyncResult,
    SyncStatus,
    Conflict,
    ConflictResolution,
    ConsistencyIssue,
    ConsistencyReport,
    RepairResult,
    RepairStrategy,
    PerformanceMetrics,
    MutationKind,
    MutationResult,
)
from .optimistic import OptimisticMutationCoordinator
from .scheduler import SyncScheduler
from .sync_service import SyncService
from .transport import SyncTransport, HttpApiTransport

__all__ = [
    "QueryCache",
    "LocalCache",
    "transcript_keys",
    "ConflictManager",
    "resolved_value",
    "DataConsistencyService",
    "SyncEngine",
    "SyncError",
    "TransportError",
    "ConflictError",
    "ConsistencyError",
    "SyncValidationError",
    "MutationError",
    "SyncInProgressError",
    "StateError",
    "ErrorCategory",
    "categorize_error",
    "recovery_suggestion",
    "SyncPerformanceMonitor",
    "TranscriptRecord",
    "SyncOptions",
    "SyncResult",
    "SyncStatus",
    "Conflict",
    "ConflictResolution",
    "ConsistencyIssue",
    "ConsistencyReport",
    "RepairResult",
    "RepairStrategy",
    "PerformanceMetrics",
    "MutationKind",
    "MutationResult",
    "OptimisticMutationCoordinator",
    "SyncScheduler",
    "SyncService",
    "SyncTransport",
    "HttpApiTransport",
]
