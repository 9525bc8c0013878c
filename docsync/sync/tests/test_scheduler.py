"""
Tests for the periodic sync scheduler.
"""

import asyncio

import pytest

from ..config import SchedulerConfig
from ..engine import BatchResult, SyncEngine
from ..metadata_store import MetadataStore
from ..scheduler import SchedulerCallbacks, SyncScheduler
from ..state import ChangeType, UpdateRecord, utc_now
from ..storage import MemoryBlobStorage
from .fakes import FakeFetcher, make_config


class StubEngine:
    """Engine double that replays a script of results and exceptions."""

    def __init__(self, script=None, delay: float = 0.0):
        self.script = list(script or [])
        self.delay = delay
        self.calls = []
        self.completed = 0

    async def sync_all(self, force=False, categories=None):
        self.calls.append(force)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.script.pop(0) if self.script else BatchResult()
        if isinstance(item, Exception):
            raise item
        self.completed += 1
        return item


async def wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_store():
    config = make_config("x")
    return MetadataStore(MemoryBlobStorage(), config.sources)


class TestSchedulerLifecycle:
    """Test start/stop/destroy semantics."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        engine = StubEngine()
        scheduler = SyncScheduler(engine, make_store(), SchedulerConfig(check_interval_seconds=3600))

        assert scheduler.start() is True
        assert scheduler.start() is False
        await wait_until(lambda: scheduler.state.total_checks == 1)
        await asyncio.sleep(0.05)

        assert len(engine.calls) == 1
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self):
        scheduler = SyncScheduler(StubEngine(), make_store())
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_destroy_waits_for_in_flight_check(self):
        engine = StubEngine(delay=0.2)
        scheduler = SyncScheduler(engine, make_store(), SchedulerConfig(check_interval_seconds=3600))

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.destroy()

        assert engine.completed == 1
        assert scheduler.state.total_checks == 1
        with pytest.raises(RuntimeError):
            scheduler.start()

    @pytest.mark.asyncio
    async def test_time_until_next_check(self):
        scheduler = SyncScheduler(StubEngine(), make_store(), SchedulerConfig(check_interval_seconds=3600))
        assert scheduler.time_until_next_check() is None

        scheduler.start()
        await wait_until(lambda: scheduler.state.next_check_time is not None)

        remaining = scheduler.time_until_next_check()
        assert 0 < remaining <= 3600
        await scheduler.stop()
        assert scheduler.time_until_next_check() is None

    @pytest.mark.asyncio
    async def test_update_config_reschedules(self):
        engine = StubEngine()
        scheduler = SyncScheduler(engine, make_store(), SchedulerConfig(check_interval_seconds=3600))
        scheduler.start()
        await wait_until(lambda: scheduler.state.total_checks == 1)

        scheduler.update_config(SchedulerConfig(check_interval_seconds=0.05))
        await wait_until(lambda: scheduler.state.total_checks >= 2)

        assert scheduler.get_state().check_interval_seconds == 0.05
        await scheduler.stop()


class TestSchedulerTicks:
    """Test tick scheduling, forcing and failure handling."""

    @pytest.mark.asyncio
    async def test_slow_check_skips_one_tick(self):
        # 1s interval, 1.5s sync: the tick due at 1s is skipped, not queued
        fetcher = FakeFetcher({"x": "content"}, delay=1.5)
        config = make_config("x")
        store = MetadataStore(MemoryBlobStorage(), config.sources)
        engine = SyncEngine(config, store, fetcher)
        scheduler = SyncScheduler(engine, store, SchedulerConfig(check_interval_seconds=1.0))

        scheduler.start()
        await asyncio.sleep(2.0)
        await scheduler.stop()

        state = scheduler.get_state()
        assert state.skipped_ticks == 1
        assert state.total_checks == 1
        assert fetcher.calls == ["x"]

    @pytest.mark.asyncio
    async def test_first_tick_forced_without_prior_check(self):
        engine = StubEngine()
        scheduler = SyncScheduler(engine, make_store(), SchedulerConfig(check_interval_seconds=3600))

        scheduler.start()
        await wait_until(lambda: scheduler.state.total_checks == 1)
        await scheduler.stop()

        assert engine.calls == [True]
        assert scheduler.state.last_forced_time is not None

    @pytest.mark.asyncio
    async def test_recent_persisted_check_not_forced(self):
        engine = StubEngine()
        store = make_store()
        store.mark_checked()
        scheduler = SyncScheduler(engine, store, SchedulerConfig(check_interval_seconds=3600))

        scheduler.start()
        await wait_until(lambda: scheduler.state.total_checks == 1)
        await scheduler.stop()

        assert engine.calls == [False]

    @pytest.mark.asyncio
    async def test_error_reported_and_ticking_continues(self):
        engine = StubEngine(script=[RuntimeError("upstream down"), BatchResult()])
        errors = []
        scheduler = SyncScheduler(
            engine, make_store(),
            SchedulerConfig(check_interval_seconds=0.05),
            SchedulerCallbacks(on_error=errors.append),
        )

        scheduler.start()
        await wait_until(lambda: scheduler.state.total_checks >= 1)
        await scheduler.stop()

        assert len(errors) == 1
        assert str(errors[0]) == "upstream down"
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.state.last_error is None

    @pytest.mark.asyncio
    async def test_stops_after_max_consecutive_failures(self):
        engine = StubEngine(script=[RuntimeError("down")] * 10)
        scheduler = SyncScheduler(
            engine, make_store(),
            SchedulerConfig(check_interval_seconds=0.01, max_consecutive_failures=2),
        )

        scheduler.start()
        await wait_until(lambda: not scheduler.running)

        assert len(engine.calls) == 2
        assert scheduler.state.consecutive_failures == 2
        assert scheduler.state.last_error == "down"
        await scheduler.stop()

    def test_failure_backoff_is_capped(self):
        scheduler = SyncScheduler(StubEngine(), make_store(), SchedulerConfig(
            check_interval_seconds=10, failure_backoff_multiplier=2, max_backoff_seconds=30,
        ))

        assert scheduler._next_delay() == 10
        scheduler.state.consecutive_failures = 1
        assert scheduler._next_delay() == 20
        scheduler.state.consecutive_failures = 2
        assert scheduler._next_delay() == 30

    @pytest.mark.asyncio
    async def test_callbacks_receive_updates(self):
        record = UpdateRecord(timestamp=utc_now(), source_id="x", new_fingerprint="fp", type=ChangeType.CREATED)
        result = BatchResult(updated=["x"], records=[record])
        engine = StubEngine(script=[result])
        seen = {"start": 0, "updates": [], "complete": [], "states": []}

        async def on_update(records):
            seen["updates"].append(records)

        callbacks = SchedulerCallbacks(
            on_check_start=lambda: seen.__setitem__("start", seen["start"] + 1),
            on_check_complete=seen["complete"].append,
            on_update_detected=on_update,
            on_state_change=seen["states"].append,
        )
        scheduler = SyncScheduler(engine, make_store(), SchedulerConfig(check_interval_seconds=3600))

        result_now = await scheduler.check_now()
        scheduler.update_callbacks(callbacks)
        await scheduler.check_now()

        assert result_now is result
        assert seen["start"] == 1
        assert seen["updates"] == []
        assert len(seen["complete"]) == 1
        assert scheduler.state.total_updates == 1
        assert seen["states"][-1].total_checks == 2

    @pytest.mark.asyncio
    async def test_update_detected_only_on_changes(self):
        record = UpdateRecord(timestamp=utc_now(), source_id="x", new_fingerprint="fp", type=ChangeType.CREATED)
        engine = StubEngine(script=[BatchResult(updated=["x"], records=[record]), BatchResult(unchanged=["x"])])
        updates = []
        scheduler = SyncScheduler(engine, make_store(), callbacks=SchedulerCallbacks(on_update_detected=updates.append))

        await scheduler.check_now()
        await scheduler.check_now()

        assert updates == [[record]]
        assert scheduler.state.total_checks == 2

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self):
        def broken():
            raise RuntimeError("callback bug")

        scheduler = SyncScheduler(StubEngine(), make_store(),
                                  callbacks=SchedulerCallbacks(on_check_start=broken))

        result = await scheduler.check_now()

        assert result is not None
        assert scheduler.state.total_checks == 1
