# Sync/sync_service.py
# Description: Bidirectional synchronization between the local cache and the remote transcript store.
#              This is the `bidirectional_sync(options)` backend driven by the SyncScheduler.
#
# Imports
import asyncio
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from .cache import LocalCache, cached_records, store_record
from .exceptions import SyncInProgressError
from .models import (
    SYNCED_FIELDS,
    ConflictRecord,
    ConflictResolution,
    SyncDirection,
    SyncOptions,
    SyncResult,
    TranscriptRecord,
    is_temp_id,
    utcnow,
)
from .transport import SyncTransport
from .validation import validate_record
#
#######################################################################################################################
#
# Functions:

QueuedSync = Callable[[], Awaitable[Any]]


def merge_values(field: str, server_value: Any, client_value: Any) -> Any:
    """Field-specific merge used by the 'merge' conflict policy."""
    if field == "transcript_count":
        if server_value is None:
            return client_value
        if client_value is None:
            return server_value
        return max(server_value, client_value)
    if field == "notes":
        if server_value and client_value:
            return f"{server_value} | {client_value}"
        return server_value or client_value
    return client_value


def detect_conflicts(server_record: TranscriptRecord, client_record: TranscriptRecord) -> List[ConflictRecord]:
    conflicts = []
    for field in SYNCED_FIELDS:
        server_value = getattr(server_record, field)
        client_value = getattr(client_record, field)
        if server_value != client_value:
            conflicts.append(ConflictRecord(
                record_id=server_record.id,
                field=field,
                server_value=server_value,
                client_value=client_value,
                resolution=ConflictResolution.SERVER,
                resolved_value=server_value,
            ))
    return conflicts


def resolve_conflicts(
    server_record: TranscriptRecord,
    conflicts: List[ConflictRecord],
    strategy: ConflictResolution,
) -> tuple:
    """
    Applies a resolution policy to a set of field conflicts.

    Returns:
        (resolved_record, resolved_conflicts)
    """
    changes: Dict[str, Any] = {}
    resolved = []
    for conflict in conflicts:
        if strategy == ConflictResolution.CLIENT:
            value = conflict.client_value
        elif strategy == ConflictResolution.MERGE:
            value = merge_values(conflict.field, conflict.server_value, conflict.client_value)
        else:
            value = conflict.server_value
        if strategy != ConflictResolution.SERVER:
            changes[conflict.field] = value
        resolved.append(replace(conflict, resolution=strategy, resolved_value=value))
    resolved_record = replace(server_record, **changes, updated_at=utcnow())
    return resolved_record, resolved


class _ResultBuilder:
    """Mutable accumulator used while a sync runs; frozen into a SyncResult at the end."""

    def __init__(self):
        self.records_processed = 0
        self.records_added = 0
        self.records_updated = 0
        self.records_skipped = 0
        self.conflicts: List[ConflictRecord] = []
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.synced_at = utcnow()

    def build(self) -> SyncResult:
        return SyncResult(
            success=len(self.errors) == 0,
            records_processed=self.records_processed,
            records_added=self.records_added,
            records_updated=self.records_updated,
            records_skipped=self.records_skipped,
            conflicts=tuple(self.conflicts),
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            synced_at=self.synced_at,
        )


class SyncService:
    """Moves records between the remote store and the local cache."""

    def __init__(self, transport: SyncTransport, cache: LocalCache):
        self.transport = transport
        self.cache = cache
        self._sync_in_progress = False
        self.last_sync_time: Optional[datetime] = None
        self._queue: Deque[QueuedSync] = deque()
        self._queue_task: Optional[asyncio.Task] = None
        logger.info("SyncService initialized")

    @property
    def in_progress(self) -> bool:
        return self._sync_in_progress

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    async def bidirectional_sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Performs one sync attempt in the direction given by ``options``.

        Raises:
            SyncInProgressError: If a sync is already running on this service.
        """
        if self._sync_in_progress:
            raise SyncInProgressError("Sync already in progress", operation="bidirectional_sync")

        options = options or SyncOptions()
        self._sync_in_progress = True
        started = utcnow()
        try:
            result = await self._perform_sync(options)
            self.last_sync_time = started
            return result
        finally:
            self._sync_in_progress = False
            self._kick_queue()

    async def _perform_sync(self, options: SyncOptions) -> SyncResult:
        builder = _ResultBuilder()
        logger.info(f"Starting {options.direction.value} sync (resolution={options.conflict_resolution.value}, force={options.force_sync})")
        try:
            if not await self.transport.test_connection():
                builder.errors.append("Failed to connect to the transcript store")
                return builder.build()

            server_data = await self.transport.read()
            builder.records_processed = len(server_data)
            client_data = list(cached_records(self.cache))

            if options.direction == SyncDirection.PULL:
                await self._pull_from_server(server_data, builder, options.validate_data)
            elif options.direction == SyncDirection.PUSH:
                await self._push_to_server(server_data, client_data, builder, options.validate_data)
            else:
                await self._bidirectional(server_data, client_data, builder, options)

        except Exception as e:
            logger.error(f"Sync attempt failed: {type(e).__name__} - {e}")
            builder.errors.append(str(e) or type(e).__name__)

        result = builder.build()
        logger.info(
            f"Sync finished. success={result.success} processed={result.records_processed} added={result.records_added} "
            f"updated={result.records_updated} skipped={result.records_skipped} conflicts={len(result.conflicts)}"
        )
        return result

    async def _pull_from_server(self, server_data: List[TranscriptRecord], builder: _ResultBuilder, validate_data: bool) -> None:
        for record in server_data:
            if validate_data:
                is_valid, errors = validate_record(record)
                if not is_valid:
                    builder.warnings.append(f"Validation failed for record {record.id}: {', '.join(errors)}")
                    builder.records_skipped += 1
                    continue
            store_record(self.cache, record)
            builder.records_updated += 1

    async def _push_to_server(self, server_data: List[TranscriptRecord], client_data: List[TranscriptRecord],
                              builder: _ResultBuilder, validate_data: bool) -> None:
        server_ids = {record.id for record in server_data}
        for record in client_data:
            if is_temp_id(record.id):
                logger.debug(f"Skipping push of pending optimistic record {record.id}")
                continue
            try:
                if validate_data:
                    is_valid, errors = validate_record(record)
                    if not is_valid:
                        builder.warnings.append(f"Validation failed for record {record.id}: {', '.join(errors)}")
                        builder.records_skipped += 1
                        continue
                if record.id in server_ids:
                    await self.transport.write(record.id, record.to_dict())
                    builder.records_updated += 1
                else:
                    stored = await self.transport.write(None, record.to_dict())
                    store_record(self.cache, stored, replace_id=record.id)
                    builder.records_added += 1
            except Exception as e:
                builder.errors.append(f"Failed to sync record {record.id}: {e}")
                builder.records_skipped += 1

    async def _bidirectional(self, server_data: List[TranscriptRecord], client_data: List[TranscriptRecord],
                             builder: _ResultBuilder, options: SyncOptions) -> None:
        server_map = {record.id: record for record in server_data}
        client_map = {record.id: record for record in client_data}
        all_ids = list(dict.fromkeys(list(server_map) + list(client_map)))

        for record_id in all_ids:
            server_record = server_map.get(record_id)
            client_record = client_map.get(record_id)
            try:
                if server_record and client_record:
                    conflicts = detect_conflicts(server_record, client_record)
                    if not conflicts:
                        continue
                    resolved_record, resolved = resolve_conflicts(server_record, conflicts, options.conflict_resolution)
                    builder.conflicts.extend(resolved)
                    if options.conflict_resolution == ConflictResolution.SERVER:
                        resolved_record = server_record
                    else:
                        resolved_record = await self.transport.write(record_id, resolved_record.to_dict())
                    store_record(self.cache, resolved_record)
                    builder.records_updated += 1
                elif server_record:
                    if options.validate_data and not validate_record(server_record)[0]:
                        builder.records_skipped += 1
                        continue
                    store_record(self.cache, server_record)
                    builder.records_added += 1
                elif client_record:
                    if is_temp_id(record_id):
                        continue
                    if options.validate_data and not validate_record(client_record)[0]:
                        builder.records_skipped += 1
                        continue
                    stored = await self.transport.write(None, client_record.to_dict())
                    store_record(self.cache, stored, replace_id=record_id)
                    builder.records_added += 1
            except Exception as e:
                logger.error(f"Failed to sync record {record_id}: {e}")
                builder.errors.append(f"Failed to sync record {record_id}: {e}")
                builder.records_skipped += 1

    # --- Queue ---

    def queue_sync(self, sync_fn: QueuedSync) -> None:
        """Queues a sync coroutine factory; queued work runs one at a time once no sync is in progress."""
        self._queue.append(sync_fn)
        self._kick_queue()

    def _kick_queue(self) -> None:
        if self._queue_task and not self._queue_task.done():
            return
        if not self._queue:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("queue_sync called without a running event loop; work stays queued")
            return
        self._queue_task = loop.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        while self._queue and not self._sync_in_progress:
            operation = self._queue.popleft()
            try:
                await operation()
            except Exception as e:
                logger.error(f"Queued sync operation failed: {e}")
            await asyncio.sleep(0)

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "in_progress": self._sync_in_progress,
            "last_sync_time": self.last_sync_time,
            "queue_length": len(self._queue),
        }

#
# End of sync_service.py
#######################################################################################################################
