# Sync/models.py
# Description: Immutable data model shared by the sync scheduler, mutation coordinator, conflict manager,
#              consistency checker and performance monitor.
#
# Imports
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
#######################################################################################################################
#
# Functions:

TEMP_ID_PREFIX = "temp_"

# Fields compared for conflicts and mismatches
SYNCED_FIELDS: Tuple[str, ...] = ("client_name", "month", "transcript_count", "notes")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parses an ISO-8601 string (or passes through a datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Could not parse timestamp string: {value}")
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def year_from_month(month: Any) -> Optional[int]:
    try:
        return int(str(month).split('-')[0])
    except (TypeError, ValueError):
        return None


def is_temp_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and str(record_id).startswith(TEMP_ID_PREFIX)


class SyncDirection(str, Enum):
    BIDIRECTIONAL = "bidirectional"
    PULL = "pull"
    PUSH = "push"


class ConflictResolution(str, Enum):
    SERVER = "server"
    CLIENT = "client"
    MERGE = "merge"


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class IssueType(str, Enum):
    DUPLICATE = "duplicate"
    MISMATCH = "mismatch"
    MISSING = "missing"
    INVALID = "invalid"
    ORPHANED = "orphaned"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RepairStrategy(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


@dataclass(frozen=True)
class TranscriptRecord:
    """A transcript count row for one client and one month."""
    id: str
    client_name: str
    month: str  # YYYY-MM
    transcript_count: int
    notes: Optional[str] = None
    year: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def logical_key(self) -> Tuple[str, str]:
        return (str(self.client_name).strip().lower(), str(self.month))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = format_timestamp(self.created_at)
        data["updated_at"] = format_timestamp(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptRecord":
        """Creates a record from a dictionary received via transport."""
        if "id" not in data or data["id"] in (None, ""):
            raise ValueError(f"Record is missing an id: {data}")
        month = data.get("month", "")
        year = data.get("year")
        return cls(
            id=str(data["id"]),
            client_name=data.get("client_name", ""),
            month=month,
            transcript_count=data.get("transcript_count", 0),
            notes=data.get("notes"),
            year=year if year is not None else year_from_month(month),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass(frozen=True)
class SyncOptions:
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    validate_data: bool = True
    conflict_resolution: ConflictResolution = ConflictResolution.SERVER
    force_sync: bool = False

    def __post_init__(self):
        # Accept plain strings from callers and config
        object.__setattr__(self, "direction", SyncDirection(self.direction))
        object.__setattr__(self, "conflict_resolution", ConflictResolution(self.conflict_resolution))

    def merged(self, **overrides) -> "SyncOptions":
        """Returns a new SyncOptions with the given (non-None) overrides applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values)


@dataclass(frozen=True)
class ConflictRecord:
    """A conflict detected (and resolved by policy) inside one sync attempt."""
    record_id: str
    field: str
    server_value: Any
    client_value: Any
    resolution: ConflictResolution = ConflictResolution.SERVER
    resolved_value: Any = None


@dataclass(frozen=True)
class SyncResult:
    success: bool = False
    records_processed: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    conflicts: Tuple[ConflictRecord, ...] = ()
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    synced_at: datetime = field(default_factory=utcnow)

    @property
    def changed_records(self) -> bool:
        return self.records_added > 0 or self.records_updated > 0


@dataclass(frozen=True)
class SyncStatus:
    is_active: bool = False
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None
    is_syncing: bool = False
    error: Optional[str] = None
    retry_count: int = 0
    queue_length: int = 0


@dataclass(frozen=True)
class Conflict:
    """A field-level disagreement tracked by the ConflictManager. Identity is (record_id, field)."""
    record_id: str
    field: str
    server_value: Any
    client_value: Any
    timestamp: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolution: Optional[ConflictResolution] = None
    merged_value: Any = None

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.record_id, self.field)


@dataclass(frozen=True)
class ConsistencyIssue:
    type: IssueType
    severity: Severity
    record_id: str
    description: str
    field: Optional[str] = None
    server_value: Any = None
    client_value: Any = None
    suggested_fix: Optional[str] = None
    source: str = "server"  # which dataset the issue was found in: "server" or "client"


@dataclass(frozen=True)
class ConsistencySummary:
    duplicates: int = 0
    mismatches: int = 0
    missing: int = 0
    invalid: int = 0
    orphaned: int = 0


@dataclass(frozen=True)
class ConsistencyReport:
    is_consistent: bool
    total_records: int
    checked_at: datetime
    issues: Tuple[ConsistencyIssue, ...] = ()
    summary: ConsistencySummary = field(default_factory=ConsistencySummary)


@dataclass(frozen=True)
class RepairResult:
    success: bool = True
    repaired_issues: int = 0
    failed_repairs: int = 0
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PerformanceMetrics:
    total_syncs: int = 0
    failed_syncs: int = 0
    success_rate: float = 100.0
    average_sync_time: float = 0.0
    last_sync_duration: float = 0.0


@dataclass(frozen=True)
class MutationResult:
    kind: MutationKind
    record_id: str
    record: Optional[TranscriptRecord] = None
    temp_id: Optional[str] = None

#
# End of models.py
#######################################################################################################################
