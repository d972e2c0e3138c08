# test_scheduler.py
#
# Imports
import asyncio
from dataclasses import replace
#
# Third-Party Imports
import pytest
#
# Local Imports
from tad_Client_API.app.core.config import RealTimeSyncConfig
from tad_Client_API.app.core.Sync.cache import QueryCache, transcript_keys
from tad_Client_API.app.core.Sync.exceptions import TransportError
from tad_Client_API.app.core.Sync.models import (
    ConflictRecord,
    ConflictResolution,
    SyncDirection,
    SyncResult,
)
from tad_Client_API.app.core.Sync.scheduler import SyncScheduler
#
########################################################################################################################
#
# Functions:

OK = SyncResult(success=True)
RATE_LIMITED = SyncResult(success=False, errors=("Rate limit exceeded",))


def calls(backend) -> int:
    return backend.bidirectional_sync.await_count


@pytest.fixture
def make_scheduler(fast_config, fixed_clock):
    def factory(backend, config=None, cache=None):
        return SyncScheduler(backend, cache or QueryCache(), config or fast_config, clock=fixed_clock)
    return factory


# --- Lifecycle ---

@pytest.mark.asyncio
async def test_start_runs_an_immediate_sync(make_scheduler, backend_factory, fixed_clock):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend)

    result = await scheduler.start_sync()

    assert result is OK
    assert calls(backend) == 1
    status = scheduler.status
    assert status.is_active is True
    assert status.is_syncing is False
    assert status.last_sync == fixed_clock()
    assert status.next_sync is not None
    assert status.error is None
    await scheduler.close()


@pytest.mark.asyncio
async def test_start_uses_configured_policy(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, conflict_resolution="merge"))

    await scheduler.start_sync()

    options = backend.bidirectional_sync.await_args.args[0]
    assert options.direction == SyncDirection.BIDIRECTIONAL
    assert options.validate_data is True
    assert options.conflict_resolution == ConflictResolution.MERGE
    assert options.force_sync is False
    await scheduler.close()


@pytest.mark.asyncio
async def test_start_is_a_noop_when_disabled_or_active(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    disabled = make_scheduler(backend, config=replace(fast_config, enabled=False))
    assert await disabled.start_sync() is None
    assert disabled.status.is_active is False

    scheduler = make_scheduler(backend)
    await scheduler.start_sync()
    assert await scheduler.start_sync() is None
    assert calls(backend) == 1
    await scheduler.close()


@pytest.mark.asyncio
async def test_interval_triggers_periodic_syncs(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, sync_interval=0.05))

    await scheduler.start_sync()
    await asyncio.sleep(0.13)

    assert calls(backend) >= 2
    await scheduler.close()


@pytest.mark.asyncio
async def test_stop_cancels_the_interval(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, sync_interval=0.03))

    await scheduler.start_sync()
    scheduler.stop_sync()
    await asyncio.sleep(0.1)

    assert calls(backend) == 1
    assert scheduler.status.is_active is False
    assert scheduler.status.next_sync is None


@pytest.mark.asyncio
async def test_force_sync_merges_force_flag(make_scheduler, backend_factory):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend)

    await scheduler.force_sync(direction="pull")

    options = backend.bidirectional_sync.await_args.args[0]
    assert options.force_sync is True
    assert options.direction == SyncDirection.PULL
    await scheduler.close()


# --- Single-flight ---

@pytest.mark.asyncio
async def test_trigger_during_sync_is_ignored(make_scheduler, backend_factory):
    release = asyncio.Event()
    backend = backend_factory(OK)

    async def slow_sync(options):
        await release.wait()
        return OK
    backend.bidirectional_sync.side_effect = slow_sync
    scheduler = make_scheduler(backend)

    in_flight = asyncio.create_task(scheduler.force_sync())
    await asyncio.sleep(0.01)
    assert scheduler.status.is_syncing is True

    assert await scheduler.force_sync() is None
    assert await scheduler.perform_sync() is None
    assert calls(backend) == 1

    release.set()
    assert await in_flight is OK
    assert scheduler.status.is_syncing is False
    await scheduler.close()


# --- Failures & retries ---

@pytest.mark.asyncio
async def test_rate_limited_sync_is_retried_once_per_interval(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(RATE_LIMITED)
    scheduler = make_scheduler(backend, config=replace(fast_config, retry_interval=0.1))

    await scheduler.start_sync()
    assert calls(backend) == 1
    assert scheduler.status.retry_count == 1

    await asyncio.sleep(0.15)

    assert calls(backend) == 2
    assert "Rate limit exceeded" in scheduler.status.error
    await scheduler.close()


@pytest.mark.asyncio
async def test_retry_count_stops_at_max_retries(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(TransportError("Network error: connection refused"))
    scheduler = make_scheduler(backend, config=replace(fast_config, retry_interval=0.01, max_retries=2))

    await scheduler.start_sync()
    await asyncio.sleep(0.15)

    # initial attempt plus two automatic retries
    assert calls(backend) == 3
    assert scheduler.status.retry_count == 3

    await asyncio.sleep(0.1)
    assert calls(backend) == 3
    assert scheduler.status.retry_count == 3
    assert "Network error" in scheduler.status.error

    scheduler.reset_sync()
    assert scheduler.status.retry_count == 0
    assert scheduler.status.error is None
    await scheduler.close()


@pytest.mark.asyncio
async def test_successful_retry_clears_error(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(TransportError("Server returned 503"), OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, retry_interval=0.01))

    await scheduler.start_sync()
    assert scheduler.status.retry_count == 1
    assert "503" in scheduler.status.error

    await asyncio.sleep(0.08)

    assert calls(backend) == 2
    assert scheduler.status.retry_count == 0
    assert scheduler.status.error is None
    await scheduler.close()


@pytest.mark.asyncio
async def test_reset_disarms_pending_retry(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(RATE_LIMITED)
    scheduler = make_scheduler(backend, config=replace(fast_config, retry_interval=0.05))

    await scheduler.start_sync()
    scheduler.reset_sync()
    await asyncio.sleep(0.1)

    assert calls(backend) == 1
    await scheduler.close()


@pytest.mark.asyncio
async def test_failures_are_reported_to_the_monitor(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK, RATE_LIMITED)
    scheduler = make_scheduler(backend, config=replace(fast_config, max_retries=0))

    await scheduler.force_sync()
    await scheduler.force_sync()

    metrics = scheduler.monitor.metrics
    assert metrics.total_syncs == 2
    assert metrics.failed_syncs == 1
    assert metrics.success_rate == pytest.approx(50.0)
    assert metrics.last_sync_duration >= 0
    await scheduler.close()


@pytest.fixture
def gated_failure(backend_factory):
    """A backend whose first sync waits on the returned event, then reports a rate limit."""
    release = asyncio.Event()
    backend = backend_factory(RATE_LIMITED)

    async def slow_sync(options):
        await release.wait()
        return RATE_LIMITED
    backend.bidirectional_sync.side_effect = slow_sync
    return backend, release


@pytest.mark.asyncio
async def test_stop_during_failing_sync_arms_no_retry(make_scheduler, gated_failure):
    backend, release = gated_failure
    scheduler = make_scheduler(backend)

    in_flight = asyncio.create_task(scheduler.start_sync())
    await asyncio.sleep(0.01)
    scheduler.stop_sync()
    release.set()
    await in_flight
    await asyncio.sleep(0.2)

    assert calls(backend) == 1
    assert scheduler.status.is_active is False
    assert scheduler.status.retry_count == 1
    assert "Rate limit exceeded" in scheduler.status.error
    await scheduler.close()


@pytest.mark.asyncio
async def test_offline_during_failing_sync_waits_for_online(make_scheduler, gated_failure):
    backend, release = gated_failure
    scheduler = make_scheduler(backend)

    in_flight = asyncio.create_task(scheduler.start_sync())
    await asyncio.sleep(0.01)
    scheduler.handle_offline()
    release.set()
    await in_flight
    await asyncio.sleep(0.2)
    assert calls(backend) == 1

    backend.bidirectional_sync.side_effect = None
    backend.bidirectional_sync.return_value = OK
    await scheduler.handle_online()

    assert calls(backend) == 2
    assert scheduler.status.is_active is True
    assert scheduler.status.error is None
    await scheduler.close()


@pytest.mark.asyncio
async def test_force_sync_on_inactive_scheduler(make_scheduler, backend_factory):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend)

    result = await scheduler.force_sync()

    assert result is OK
    assert calls(backend) == 1
    assert scheduler.status.is_active is False
    assert scheduler.status.next_sync is None
    assert scheduler.status.last_sync is not None
    await scheduler.close()


@pytest.mark.asyncio
async def test_force_sync_after_stop_retries_its_own_failure(make_scheduler, backend_factory):
    backend = backend_factory(OK, RATE_LIMITED, OK)
    scheduler = make_scheduler(backend)
    await scheduler.start_sync()
    scheduler.stop_sync()

    await scheduler.force_sync()
    assert scheduler.status.retry_count == 1
    await asyncio.sleep(0.15)

    assert calls(backend) == 3
    assert scheduler.status.error is None
    assert scheduler.status.is_active is False
    await scheduler.close()


# --- Environment signals ---

@pytest.mark.asyncio
async def test_offline_stops_automatic_syncs_until_online(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, sync_interval=0.03))

    await scheduler.start_sync()
    scheduler.handle_offline()
    assert scheduler.status.is_active is False

    await asyncio.sleep(0.1)
    assert calls(backend) == 1

    await scheduler.handle_online()
    assert scheduler.status.is_active is True
    assert scheduler.status.retry_count == 0
    assert calls(backend) == 2
    await scheduler.close()


@pytest.mark.asyncio
async def test_online_resets_retry_count_when_active(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(RATE_LIMITED, OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, retry_interval=60))

    await scheduler.start_sync()
    assert scheduler.status.retry_count == 1

    await scheduler.handle_online()
    assert scheduler.status.retry_count == 0
    assert calls(backend) == 2
    await scheduler.close()


@pytest.mark.asyncio
async def test_online_does_not_restart_an_explicit_stop(make_scheduler, backend_factory):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend)

    await scheduler.start_sync()
    scheduler.stop_sync()

    assert await scheduler.handle_online() is None
    assert scheduler.status.is_active is False
    assert calls(backend) == 1


@pytest.mark.asyncio
async def test_online_ignored_when_disabled_in_config(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend, config=replace(fast_config, sync_on_online=False))

    await scheduler.start_sync()
    scheduler.handle_offline()
    assert await scheduler.handle_online() is None
    assert scheduler.status.is_active is False


@pytest.mark.asyncio
async def test_focus_syncs_only_when_active(make_scheduler, backend_factory, fast_config):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend)

    assert await scheduler.handle_focus() is None
    assert calls(backend) == 0

    await scheduler.start_sync()
    await scheduler.handle_focus()
    assert calls(backend) == 2

    no_focus = make_scheduler(backend, config=replace(fast_config, sync_on_focus=False))
    await no_focus.start_sync()
    assert await no_focus.handle_focus() is None
    assert calls(backend) == 3

    await scheduler.close()
    await no_focus.close()


# --- Side effects ---

@pytest.mark.asyncio
async def test_changed_records_invalidate_derived_views(make_scheduler, backend_factory):
    cache = QueryCache()
    cache.set(transcript_keys.lists(), ())
    cache.set(transcript_keys.summary(), {"total": 0})
    scheduler = make_scheduler(backend_factory(SyncResult(success=True, records_added=2)), cache=cache)

    await scheduler.force_sync()

    assert cache.is_stale(transcript_keys.lists())
    assert cache.is_stale(transcript_keys.summary())
    await scheduler.close()


@pytest.mark.asyncio
async def test_unchanged_sync_does_not_invalidate(make_scheduler, backend_factory):
    cache = QueryCache()
    cache.set(transcript_keys.lists(), ())
    scheduler = make_scheduler(backend_factory(OK), cache=cache)

    await scheduler.force_sync()

    assert not cache.is_stale(transcript_keys.lists())
    await scheduler.close()


@pytest.mark.asyncio
async def test_sync_conflicts_are_recorded_with_their_policy(make_scheduler, backend_factory):
    conflict = ConflictRecord(
        record_id="1", field="transcript_count", server_value=100, client_value=150,
        resolution=ConflictResolution.MERGE, resolved_value=150,
    )
    result = SyncResult(success=True, records_updated=1, conflicts=(conflict,))
    scheduler = make_scheduler(backend_factory(result))

    await scheduler.force_sync()

    tracked = scheduler.conflict_manager.get_conflict("1", "transcript_count")
    assert tracked.resolved is True
    assert tracked.resolution == ConflictResolution.MERGE
    assert tracked.merged_value == 150
    assert scheduler.conflict_manager.has_unresolved_conflicts is False
    await scheduler.close()


@pytest.mark.asyncio
async def test_status_subscribers(make_scheduler, backend_factory):
    seen = []
    scheduler = make_scheduler(backend_factory(OK))
    unsubscribe = scheduler.subscribe(seen.append)

    await scheduler.force_sync()
    assert [s.is_syncing for s in seen] == [True, False]

    unsubscribe()
    await scheduler.force_sync()
    assert len(seen) == 2
    await scheduler.close()


@pytest.mark.asyncio
async def test_refresh_queue_length(make_scheduler, backend_factory):
    backend = backend_factory(OK)
    scheduler = make_scheduler(backend)

    backend.queue_length = 4
    assert scheduler.refresh_queue_length() == 4
    assert scheduler.status.queue_length == 4
    await scheduler.close()


# --- Teardown ---

@pytest.mark.asyncio
async def test_close_discards_in_flight_result(make_scheduler, backend_factory):
    release = asyncio.Event()
    backend = backend_factory(OK)

    async def slow_sync(options):
        await release.wait()
        return SyncResult(success=False, errors=("late failure",))
    backend.bidirectional_sync.side_effect = slow_sync
    scheduler = make_scheduler(backend)

    in_flight = asyncio.create_task(scheduler.force_sync())
    await asyncio.sleep(0.01)
    await scheduler.close()
    release.set()
    await in_flight

    assert scheduler.status.last_sync is None
    assert scheduler.status.retry_count == 0
    assert scheduler.monitor.metrics.total_syncs == 0
    assert await scheduler.force_sync() is None
    assert await scheduler.start_sync() is None


def test_backend_must_expose_bidirectional_sync():
    with pytest.raises(TypeError):
        SyncScheduler(object(), QueryCache(), RealTimeSyncConfig())
