"""
Pytest fixtures for the sync engine tests.

Provides an in-memory transport with call counting, failure injection and
an optional gate that holds writes open, plus a set of valid sample records.
"""

import asyncio
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from tad_Client_API.app.core.config import RealTimeSyncConfig
from tad_Client_API.app.core.Sync.cache import QueryCache, transcript_keys
from tad_Client_API.app.core.Sync.exceptions import TransportError
from tad_Client_API.app.core.Sync.models import TranscriptRecord, year_from_month
from tad_Client_API.app.core.Sync.sync_service import SyncService
from tad_Client_API.app.core.Sync.transport import SyncTransport


CREATED = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)
UPDATED = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)
SERVER_NOW = datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)
FIXED_NOW = datetime(2024, 6, 15, 10, 0, tzinfo=timezone.utc)


def make_record(record_id: str, client_name: str = "Acme Health", month: str = "2024-01",
                transcript_count: int = 100, notes: Optional[str] = None, **kwargs) -> TranscriptRecord:
    return TranscriptRecord(
        id=record_id,
        client_name=client_name,
        month=month,
        transcript_count=transcript_count,
        notes=notes,
        year=kwargs.pop("year", year_from_month(month)),
        created_at=kwargs.pop("created_at", CREATED),
        updated_at=kwargs.pop("updated_at", UPDATED),
    )


class FakeTransport(SyncTransport):
    """In-memory remote store."""

    def __init__(self, records: Optional[List[TranscriptRecord]] = None):
        self.records: "OrderedDict[str, TranscriptRecord]" = OrderedDict((r.id, r) for r in (records or []))
        self.calls: Dict[str, int] = {"read": 0, "write": 0, "delete": 0}
        self.write_log: List[tuple] = []
        self.delete_log: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.fail_ids: Dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self.connected = True
        self.closed = False
        self._next_id = 1000

    def fail(self, operation: str, error: Optional[Exception] = None) -> None:
        self.failures[operation] = error or TransportError("Server returned 500", status_code=500)

    async def _maybe_fail(self, operation: str, record_id: Optional[str] = None) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if record_id is not None and record_id in self.fail_ids:
            raise self.fail_ids[record_id]
        if operation in self.failures:
            raise self.failures[operation]

    async def read(self) -> List[TranscriptRecord]:
        self.calls["read"] += 1
        if "read" in self.failures:
            raise self.failures["read"]
        return list(self.records.values())

    async def write(self, record_id: Optional[str], data: Dict[str, Any]) -> TranscriptRecord:
        self.calls["write"] += 1
        self.write_log.append((record_id, dict(data)))
        await self._maybe_fail("write", record_id)

        fields = {k: v for k, v in data.items() if k in ("client_name", "month", "transcript_count", "notes")}
        if record_id is None:
            self._next_id += 1
            new_id = str(self._next_id)
            record = make_record(new_id, created_at=SERVER_NOW, updated_at=SERVER_NOW, **fields)
        else:
            existing = self.records.get(record_id)
            if existing is None:
                raise TransportError(f"Server returned 404 for {record_id}", status_code=404)
            record = replace(existing, **fields, updated_at=SERVER_NOW)
            record = replace(record, year=year_from_month(record.month))
        self.records[record.id] = record
        return record

    async def delete(self, record_id: str) -> None:
        self.calls["delete"] += 1
        self.delete_log.append(record_id)
        await self._maybe_fail("delete", record_id)
        self.records.pop(record_id, None)

    async def test_connection(self) -> bool:
        return self.connected

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def sample_records():
    return [
        make_record("1", "Acme Health", "2024-01", 100, notes="January"),
        make_record("2", "Birch Clinic", "2024-01", 40),
        make_record("3", "Acme Health", "2024-02", 120),
    ]


@pytest.fixture
def transport(sample_records):
    return FakeTransport(sample_records)


@pytest.fixture
def cache(sample_records):
    """Cache primed with the same records the server holds, plus a cached detail view for record 1."""
    query_cache = QueryCache()
    query_cache.set(transcript_keys.lists(), tuple(sample_records))
    query_cache.set(transcript_keys.detail("1"), sample_records[0])
    return query_cache


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def fast_config():
    """Scheduler config whose interval never fires during a test and whose retries are quick."""
    return RealTimeSyncConfig(sync_interval=3600, retry_interval=0.05, max_retries=3)


def make_backend(*outcomes) -> Mock:
    """
    A sync backend whose bidirectional_sync returns (or raises) the given outcomes in order.
    A single outcome is repeated forever.
    """
    backend = Mock(spec=SyncService)
    backend.queue_length = 0
    if len(outcomes) == 1:
        outcome = outcomes[0]
        if isinstance(outcome, Exception):
            backend.bidirectional_sync = AsyncMock(side_effect=outcome)
        else:
            backend.bidirectional_sync = AsyncMock(return_value=outcome)
    else:
        backend.bidirectional_sync = AsyncMock(side_effect=list(outcomes))
    return backend


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def backend_factory():
    return make_backend


@pytest.fixture
def transport_factory():
    return FakeTransport
