# tad_Client_API/app/api/v1/endpoints/sync.py
# Description: Control surface for the sync engine. Lets the UI layer drive the scheduler, inspect and
#              resolve conflicts, run consistency checks, read metrics and issue optimistic mutations.
#
# Imports
from dataclasses import asdict
from typing import Optional
#
# 3rd-party imports
from fastapi import (
    APIRouter,
    Body,
    Depends,
    HTTPException,
    Query,
    status,
)
from loguru import logger
#
# Local Imports
from tad_Client_API.app.api.v1.API_Deps.Sync_Deps import get_sync_engine
from tad_Client_API.app.api.v1.schemas.sync_models import (
    ClearConflictsResponse,
    ConflictListResponse,
    ConflictSchema,
    ConsistencyReportResponse,
    EnvironmentEvent,
    ForceSyncRequest,
    MutationResponse,
    PerformanceMetricsResponse,
    RepairRequest,
    RepairResultResponse,
    ResolveConflictRequest,
    SyncResultResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
    TranscriptCreate,
    TranscriptUpdate,
)
from tad_Client_API.app.core.Sync.engine import SyncEngine
from tad_Client_API.app.core.Sync.exceptions import (
    MutationError,
    StateError,
    SyncValidationError,
    categorize_error,
    recovery_suggestion,
)
from tad_Client_API.app.core.Sync.models import ConsistencyIssue, MutationKind, SyncResult, SyncStatus
#
#######################################################################################################################
#
# Functions:

router = APIRouter()


def _status_response(sync_status: SyncStatus) -> SyncStatusResponse:
    category = categorize_error(sync_status.error)
    return SyncStatusResponse(
        **asdict(sync_status),
        error_category=category,
        recovery_suggestion=recovery_suggestion(category),
    )


def _trigger_response(engine: SyncEngine, triggered: bool, result: Optional[SyncResult]) -> SyncTriggerResponse:
    return SyncTriggerResponse(
        triggered=triggered,
        result=SyncResultResponse.model_validate(result) if result is not None else None,
        status=_status_response(engine.scheduler.status),
    )


async def _run_mutation(engine: SyncEngine, kind: MutationKind, payload: dict) -> MutationResponse:
    try:
        result = await engine.mutations.perform_mutation(kind, payload)
    except SyncValidationError as e:
        logger.info(f"Rejected {kind.value} mutation: {e.errors}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            detail={"message": e.message, "errors": e.errors})
    except MutationError as e:
        category = categorize_error(e.original_error or e)
        logger.warning(f"{kind.value} mutation failed and was rolled back: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY,
                            detail={"message": e.message, "record_id": e.record_id,
                                    "category": category.value if category else None,
                                    "recovery_suggestion": recovery_suggestion(category)})
    except StateError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    return MutationResponse.model_validate(result)


# --- Scheduler ---

@router.get("/status", response_model=SyncStatusResponse, summary="Current sync status")
async def get_status(engine: SyncEngine = Depends(get_sync_engine)):
    engine.scheduler.refresh_queue_length()
    return _status_response(engine.scheduler.status)


@router.post("/start", response_model=SyncTriggerResponse, summary="Start periodic sync")
async def start_sync(engine: SyncEngine = Depends(get_sync_engine)):
    was_active = engine.scheduler.status.is_active
    result = await engine.scheduler.start_sync()
    return _trigger_response(engine, engine.scheduler.status.is_active and not was_active, result)


@router.post("/stop", response_model=SyncStatusResponse, summary="Stop periodic sync")
async def stop_sync(engine: SyncEngine = Depends(get_sync_engine)):
    engine.scheduler.stop_sync()
    return _status_response(engine.scheduler.status)


@router.post("/force", response_model=SyncTriggerResponse, summary="Run a sync immediately")
async def force_sync(request: Optional[ForceSyncRequest] = Body(None),
                     engine: SyncEngine = Depends(get_sync_engine)):
    """Ignored (triggered=false) while another sync is in flight."""
    if engine.scheduler.status.is_syncing:
        return _trigger_response(engine, False, None)
    options = request.model_dump(exclude_none=True) if request else {}
    result = await engine.scheduler.force_sync(**options)
    return _trigger_response(engine, True, result)


@router.post("/reset", response_model=SyncStatusResponse, summary="Clear the sync error and retry count")
async def reset_sync(engine: SyncEngine = Depends(get_sync_engine)):
    engine.scheduler.reset_sync()
    return _status_response(engine.scheduler.status)


@router.post("/events/{event}", response_model=SyncTriggerResponse, summary="Report an environment signal")
async def environment_event(event: EnvironmentEvent, engine: SyncEngine = Depends(get_sync_engine)):
    scheduler = engine.scheduler
    if event == EnvironmentEvent.OFFLINE:
        scheduler.handle_offline()
        return _trigger_response(engine, False, None)

    before = scheduler.monitor.metrics.total_syncs
    if event == EnvironmentEvent.ONLINE:
        result = await scheduler.handle_online()
    else:
        result = await scheduler.handle_focus()
    return _trigger_response(engine, scheduler.monitor.metrics.total_syncs > before, result)


# --- Conflicts ---

@router.get("/conflicts", response_model=ConflictListResponse, summary="List tracked conflicts")
async def list_conflicts(unresolved_only: bool = Query(False),
                         engine: SyncEngine = Depends(get_sync_engine)):
    manager = engine.conflict_manager
    conflicts = manager.unresolved_conflicts if unresolved_only else manager.conflicts
    return ConflictListResponse(
        conflicts=[ConflictSchema.model_validate(c) for c in conflicts],
        unresolved_count=len(manager.unresolved_conflicts),
        has_unresolved_conflicts=manager.has_unresolved_conflicts,
    )


@router.post("/conflicts/resolve", response_model=ConflictSchema, summary="Record a conflict decision")
async def resolve_conflict(payload: ResolveConflictRequest, engine: SyncEngine = Depends(get_sync_engine)):
    """Records the decision only; applying the chosen value is a separate mutation."""
    updated = engine.conflict_manager.resolve_conflict(
        payload.record_id, payload.field, payload.resolution, merged_value=payload.merged_value,
    )
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"No conflict for record '{payload.record_id}' field '{payload.field}'")
    return ConflictSchema.model_validate(updated)


@router.delete("/conflicts", response_model=ClearConflictsResponse, summary="Clear conflicts")
async def clear_conflicts(resolved_only: bool = Query(True),
                          engine: SyncEngine = Depends(get_sync_engine)):
    manager = engine.conflict_manager
    if resolved_only:
        return ClearConflictsResponse(cleared=manager.clear_resolved_conflicts())
    cleared = len(manager.conflicts)
    manager.clear_all_conflicts()
    return ClearConflictsResponse(cleared=cleared)


# --- Consistency ---

@router.get("/consistency", response_model=ConsistencyReportResponse, summary="Run a consistency check")
async def check_consistency(engine: SyncEngine = Depends(get_sync_engine)):
    report = await engine.check_consistency()
    return ConsistencyReportResponse.model_validate(report)


@router.post("/consistency/repair", response_model=RepairResultResponse, summary="Repair consistency issues")
async def repair_consistency(payload: Optional[RepairRequest] = Body(None),
                             engine: SyncEngine = Depends(get_sync_engine)):
    payload = payload or RepairRequest()
    issues = None
    if payload.issues is not None:
        issues = [ConsistencyIssue(**issue.model_dump()) for issue in payload.issues]
    result = await engine.repair(issues, payload.strategy)
    return RepairResultResponse.model_validate(result)


# --- Metrics ---

@router.get("/metrics", response_model=PerformanceMetricsResponse, summary="Sync performance metrics")
async def get_metrics(engine: SyncEngine = Depends(get_sync_engine)):
    return PerformanceMetricsResponse.model_validate(engine.monitor.metrics)


@router.post("/metrics/reset", response_model=PerformanceMetricsResponse, summary="Reset sync performance metrics")
async def reset_metrics(engine: SyncEngine = Depends(get_sync_engine)):
    engine.monitor.reset_metrics()
    return PerformanceMetricsResponse.model_validate(engine.monitor.metrics)


# --- Optimistic mutations ---

@router.post("/transcripts", response_model=MutationResponse, status_code=status.HTTP_201_CREATED,
             summary="Create a transcript record")
async def create_transcript(payload: TranscriptCreate, engine: SyncEngine = Depends(get_sync_engine)):
    return await _run_mutation(engine, MutationKind.CREATE, payload.model_dump(exclude_none=True))


@router.put("/transcripts/{record_id}", response_model=MutationResponse, summary="Update a transcript record")
async def update_transcript(record_id: str, payload: TranscriptUpdate,
                            engine: SyncEngine = Depends(get_sync_engine)):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            detail={"message": "No fields to update", "errors": []})
    return await _run_mutation(engine, MutationKind.UPDATE, {"id": record_id, **changes})


@router.delete("/transcripts/{record_id}", response_model=MutationResponse, summary="Delete a transcript record")
async def delete_transcript(record_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    return await _run_mutation(engine, MutationKind.DELETE, {"id": record_id})

#
# End of sync.py
#######################################################################################################################
