# Sync/optimistic.py
# Description: Optimistic mutation coordinator. Applies a tentative change to the local cache before the
#              transport call resolves, then reconciles with the server response or rolls back.
#
# Imports
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Union
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from .cache import (
    LocalCache,
    evict_record,
    find_index,
    insert_record_at,
    remove_record,
    replace_record,
    store_record,
    transcript_keys,
)
from .exceptions import MutationError, StateError, SyncValidationError
from .models import (
    TEMP_ID_PREFIX,
    MutationKind,
    MutationResult,
    TranscriptRecord,
    utcnow,
    year_from_month,
)
from .transport import SyncTransport
from .validation import validate_payload
#
#######################################################################################################################
#
# Functions:

# Fields a caller may patch; id and created_at are owned by the server
PATCHABLE_FIELDS = frozenset(f.name for f in fields(TranscriptRecord)) - {"id", "created_at", "updated_at"}


@dataclass(frozen=True)
class PendingOperation:
    key: str
    kind: MutationKind
    started_at: float


def _apply_patch(record: TranscriptRecord, patch: Mapping[str, Any], now) -> TranscriptRecord:
    changes = {k: v for k, v in patch.items() if k in PATCHABLE_FIELDS}
    if "month" in changes and "year" not in changes:
        changes["year"] = year_from_month(changes["month"])
    return replace(record, **changes, updated_at=now)


class OptimisticMutationCoordinator:
    """
    Runs create/update/delete mutations with an optimistic cache write and automatic rollback.

    Mutations that target the same record id run one after another in the
    order they were issued. Mutations on different records run independently,
    and a rollback only restores the record it owns.
    """

    def __init__(self, transport: SyncTransport, cache: LocalCache, clock: Callable = utcnow):
        self.transport = transport
        self.cache = cache
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_waiters: Dict[str, int] = {}
        self._operations: Dict[str, PendingOperation] = {}
        self._alive = True

    # --- Lifecycle ---

    def close(self) -> None:
        """In-flight mutations stop writing to the cache once closed."""
        self._alive = False

    @property
    def is_closed(self) -> bool:
        return not self._alive

    # --- Public API ---

    async def perform_mutation(self, kind: Union[MutationKind, str], payload: Mapping[str, Any]) -> MutationResult:
        """
        Dispatch a mutation.

        Payload shapes:
            create: the record fields
            update: {"id": <record id>, **fields_to_change}
            delete: {"id": <record id>}

        Raises:
            SyncValidationError: payload is malformed (cache untouched)
            MutationError: transport call failed (cache already rolled back)
            StateError: coordinator was closed
        """
        kind = MutationKind(kind)
        if kind == MutationKind.CREATE:
            return await self.create(payload)
        record_id = payload.get("id")
        if not record_id:
            raise SyncValidationError(f"{kind.value} requires a record id", errors=["id is required"], operation=kind.value)
        if kind == MutationKind.UPDATE:
            patch = {k: v for k, v in payload.items() if k != "id"}
            return await self.update(str(record_id), patch)
        return await self.delete(str(record_id))

    async def create(self, payload: Mapping[str, Any]) -> MutationResult:
        self._ensure_open()
        errors = validate_payload(payload)
        if errors:
            raise SyncValidationError("Invalid transcript data", errors=errors, operation="create")

        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"
        now = self._clock()
        optimistic = TranscriptRecord(
            id=temp_id,
            client_name=payload["client_name"],
            month=payload["month"],
            transcript_count=payload["transcript_count"],
            notes=payload.get("notes"),
            year=year_from_month(payload["month"]),
            created_at=now,
            updated_at=now,
        )

        async with self._record_lock(temp_id):
            list_existed = self.cache.get(transcript_keys.lists()) is not None
            self.cache.set_patch(transcript_keys.lists(), lambda old: tuple(old or ()) + (optimistic,))
            self._track(temp_id, MutationKind.CREATE)
            logger.debug(f"Optimistic create applied as {temp_id}")

            try:
                server_record = await self.transport.write(None, dict(payload))
            except (Exception, asyncio.CancelledError) as e:
                if self._alive:
                    def rollback(old):
                        if old is None:
                            return None
                        remaining = remove_record(old, temp_id)
                        return remaining if (remaining or list_existed) else None
                    self.cache.set_patch(transcript_keys.lists(), rollback)
                    logger.warning(f"Rolled back optimistic create {temp_id}: {e}")
                self._untrack(temp_id)
                if isinstance(e, asyncio.CancelledError):
                    raise
                raise MutationError(f"Failed to create transcript: {e}", kind="create", record_id=temp_id, original_error=e) from e

            self._untrack(temp_id)
            if not self._alive:
                logger.info(f"Coordinator closed before create {temp_id} reconciled; cache left untouched")
                return MutationResult(MutationKind.CREATE, server_record.id, server_record, temp_id)

            store_record(self.cache, server_record, replace_id=temp_id)
            self._invalidate_derived()
            logger.info(f"Create reconciled: {temp_id} -> {server_record.id}")
            return MutationResult(MutationKind.CREATE, server_record.id, server_record, temp_id)

    async def update(self, record_id: str, patch: Mapping[str, Any]) -> MutationResult:
        self._ensure_open()
        errors = validate_payload(patch, partial=True)
        if errors:
            raise SyncValidationError("Invalid transcript data", errors=errors, operation="update", context={"record_id": record_id})

        async with self._record_lock(record_id):
            detail_key = transcript_keys.detail(record_id)
            previous_detail = self.cache.get(detail_key)
            previous_list = self.cache.get(transcript_keys.lists())
            index = find_index(previous_list, record_id)
            previous_item = previous_list[index] if index >= 0 else None
            now = self._clock()

            self.cache.set_patch(detail_key, lambda old: _apply_patch(old, patch, now) if old is not None else None)
            if previous_item is not None:
                self.cache.set_patch(
                    transcript_keys.lists(),
                    lambda old: replace_record(old, record_id, _apply_patch(previous_item, patch, now)),
                )
            self._track(record_id, MutationKind.UPDATE)

            try:
                server_record = await self.transport.write(record_id, dict(patch))
            except (Exception, asyncio.CancelledError) as e:
                if self._alive:
                    self.cache.set_patch(detail_key, lambda _old: previous_detail)
                    if previous_item is not None:
                        self.cache.set_patch(
                            transcript_keys.lists(),
                            lambda old: replace_record(old, record_id, previous_item) if old is not None else None,
                        )
                    logger.warning(f"Rolled back optimistic update of {record_id}: {e}")
                self._untrack(record_id)
                if isinstance(e, asyncio.CancelledError):
                    raise
                raise MutationError(f"Failed to update transcript: {e}", kind="update", record_id=record_id, original_error=e) from e

            self._untrack(record_id)
            if not self._alive:
                return MutationResult(MutationKind.UPDATE, record_id, server_record)

            store_record(self.cache, server_record)
            self._invalidate_derived(record_id)
            logger.info(f"Update of {record_id} confirmed by server")
            return MutationResult(MutationKind.UPDATE, record_id, server_record)

    async def delete(self, record_id: str) -> MutationResult:
        self._ensure_open()
        async with self._record_lock(record_id):
            detail_key = transcript_keys.detail(record_id)
            previous_detail = self.cache.get(detail_key)
            previous_list = self.cache.get(transcript_keys.lists())
            index = find_index(previous_list, record_id)
            previous_item = previous_list[index] if index >= 0 else None

            evict_record(self.cache, record_id)
            self._track(record_id, MutationKind.DELETE)

            try:
                await self.transport.delete(record_id)
            except (Exception, asyncio.CancelledError) as e:
                if self._alive:
                    if previous_item is not None:
                        self.cache.set_patch(transcript_keys.lists(), lambda old: insert_record_at(old, index, previous_item))
                    if previous_detail is not None:
                        self.cache.set_patch(detail_key, lambda _old: previous_detail)
                    logger.warning(f"Rolled back optimistic delete of {record_id}: {e}")
                self._untrack(record_id)
                if isinstance(e, asyncio.CancelledError):
                    raise
                raise MutationError(f"Failed to delete transcript: {e}", kind="delete", record_id=record_id, original_error=e) from e

            self._untrack(record_id)
            if self._alive:
                self._invalidate_derived()
                logger.info(f"Delete of {record_id} confirmed by server")
            return MutationResult(MutationKind.DELETE, record_id, previous_item)

    # --- Pending operation bookkeeping ---

    def pending_operations(self) -> List[Dict[str, Any]]:
        now = time.monotonic()
        return [
            {"id": op.key, "kind": op.kind.value, "age": now - op.started_at}
            for op in self._operations.values()
        ]

    @property
    def has_pending_operations(self) -> bool:
        return bool(self._operations)

    def cleanup_stale_operations(self, max_age: float = 30.0) -> int:
        """Forget bookkeeping for operations older than ``max_age`` seconds. Returns how many were dropped."""
        now = time.monotonic()
        stale = [key for key, op in self._operations.items() if now - op.started_at >= max_age]
        for key in stale:
            del self._operations[key]
        return len(stale)

    # --- Internals ---

    def _ensure_open(self) -> None:
        if not self._alive:
            raise StateError("Mutation coordinator is closed", operation="perform_mutation")

    def _track(self, key: str, kind: MutationKind) -> None:
        self._operations[key] = PendingOperation(key=key, kind=kind, started_at=time.monotonic())

    def _untrack(self, key: str) -> None:
        self._operations.pop(key, None)

    def _invalidate_derived(self, record_id: Optional[str] = None) -> None:
        keys = [transcript_keys.lists(), transcript_keys.summary()]
        if record_id:
            keys.append(transcript_keys.detail(record_id))
        self.cache.invalidate(keys)

    @asynccontextmanager
    async def _record_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[key] -= 1
            if self._lock_waiters[key] == 0:
                del self._lock_waiters[key]
                self._locks.pop(key, None)

#
# End of optimistic.py
#######################################################################################################################
