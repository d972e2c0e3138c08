# sync_models.py
# Description: Request/response models for the sync control API.
#
# Imports
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
#
# 3rd-party Libraries
from pydantic import BaseModel, Field, ConfigDict
#
# Local Imports
from tad_Client_API.app.core.Sync.exceptions import ErrorCategory
from tad_Client_API.app.core.Sync.models import (
    ConflictResolution,
    IssueType,
    MutationKind,
    RepairStrategy,
    Severity,
    SyncDirection,
)
#
########################################################################################################################
#
# Schemas:


class EnvironmentEvent(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    FOCUS = "focus"


# --- Scheduler ---

class SyncStatusResponse(BaseModel):
    is_active: bool
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None
    is_syncing: bool
    error: Optional[str] = None
    retry_count: int = 0
    queue_length: int = 0
    error_category: Optional[ErrorCategory] = Field(None, description="Category derived from the current error, if any.")
    recovery_suggestion: Optional[str] = Field(None, description="User-facing hint for the current error.")

    model_config = ConfigDict(from_attributes=True)


class ForceSyncRequest(BaseModel):
    direction: Optional[SyncDirection] = Field(None, description="Defaults to bidirectional.")
    conflict_resolution: Optional[ConflictResolution] = Field(None, description="Defaults to the configured policy.")
    validate_data: Optional[bool] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "direction": "pull",
                "validate_data": True
            }
        }
    )


class ConflictRecordSchema(BaseModel):
    record_id: str
    field: str
    server_value: Any = None
    client_value: Any = None
    resolution: ConflictResolution
    resolved_value: Any = None

    model_config = ConfigDict(from_attributes=True)


class SyncResultResponse(BaseModel):
    success: bool
    records_processed: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    conflicts: List[ConflictRecordSchema] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    synced_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SyncTriggerResponse(BaseModel):
    triggered: bool = Field(..., description="False when the request was ignored (already syncing, disabled or inactive).")
    result: Optional[SyncResultResponse] = None
    status: SyncStatusResponse


# --- Conflicts ---

class ConflictSchema(BaseModel):
    record_id: str
    field: str
    server_value: Any = None
    client_value: Any = None
    timestamp: datetime
    resolved: bool
    resolution: Optional[ConflictResolution] = None
    merged_value: Any = None

    model_config = ConfigDict(from_attributes=True)


class ConflictListResponse(BaseModel):
    conflicts: List[ConflictSchema]
    unresolved_count: int
    has_unresolved_conflicts: bool


class ResolveConflictRequest(BaseModel):
    record_id: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    resolution: ConflictResolution
    merged_value: Optional[Any] = Field(None, description="Required for the 'merge' resolution.")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "record_id": "1",
                "field": "transcript_count",
                "resolution": "merge",
                "merged_value": 150
            }
        }
    )


class ClearConflictsResponse(BaseModel):
    cleared: int


# --- Consistency ---

class ConsistencyIssueSchema(BaseModel):
    type: IssueType
    severity: Severity
    record_id: str
    description: str
    field: Optional[str] = None
    server_value: Any = None
    client_value: Any = None
    suggested_fix: Optional[str] = None
    source: str = "server"

    model_config = ConfigDict(from_attributes=True)


class ConsistencySummarySchema(BaseModel):
    duplicates: int = 0
    mismatches: int = 0
    missing: int = 0
    invalid: int = 0
    orphaned: int = 0

    model_config = ConfigDict(from_attributes=True)


class ConsistencyReportResponse(BaseModel):
    is_consistent: bool
    total_records: int
    checked_at: datetime
    issues: List[ConsistencyIssueSchema]
    summary: ConsistencySummarySchema

    model_config = ConfigDict(from_attributes=True)


class RepairRequest(BaseModel):
    strategy: RepairStrategy = RepairStrategy.AUTO
    issues: Optional[List[ConsistencyIssueSchema]] = Field(None, description="Issues to repair. If omitted, a fresh check is run first.")


class RepairResultResponse(BaseModel):
    success: bool
    repaired_issues: int
    failed_repairs: int
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


# --- Metrics ---

class PerformanceMetricsResponse(BaseModel):
    total_syncs: int
    failed_syncs: int
    success_rate: float
    average_sync_time: float = Field(..., description="Mean of the last 10 sync durations, in milliseconds.")
    last_sync_duration: float

    model_config = ConfigDict(from_attributes=True)


# --- Transcripts ---

class TranscriptCreate(BaseModel):
    client_name: str = Field(..., description="Client the transcripts belong to")
    month: str = Field(..., description="Month in YYYY-MM format")
    transcript_count: int = Field(..., description="Number of transcripts for the month")
    notes: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "client_name": "Acme Health",
                "month": "2024-03",
                "transcript_count": 120,
                "notes": "Includes the backlog from February"
            }
        }
    )


class TranscriptUpdate(BaseModel):
    client_name: Optional[str] = None
    month: Optional[str] = None
    transcript_count: Optional[int] = None
    notes: Optional[str] = None


class TranscriptResponse(BaseModel):
    id: str
    client_name: str
    month: str
    transcript_count: int
    notes: Optional[str] = None
    year: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MutationResponse(BaseModel):
    kind: MutationKind
    record_id: str
    temp_id: Optional[str] = None
    record: Optional[TranscriptResponse] = None

    model_config = ConfigDict(from_attributes=True)

#
# End of sync_models.py
########################################################################################################################
