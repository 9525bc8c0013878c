"""
Tests for the listener bus.
"""

import asyncio

import pytest

from ..listeners import ListenerBus, SyncEvent, SyncListener


class Recorder(SyncListener):
    def __init__(self, name, log):
        self.name = name
        self.log = log

    def on_sync_start(self):
        self.log.append((self.name, "start"))

    def on_update(self, records):
        self.log.append((self.name, "update", records))


class Exploding(SyncListener):
    def on_sync_start(self):
        raise RuntimeError("listener bug")

    def on_update(self, records):
        raise RuntimeError("listener bug")


class TestListenerBus:
    """Test registration, ordering and failure isolation."""

    def test_registration_order(self):
        log = []
        bus = ListenerBus()
        bus.register(Recorder("first", log))
        bus.register(Recorder("second", log))

        bus.emit(SyncEvent.SYNC_START)

        assert log == [("first", "start"), ("second", "start")]

    def test_failing_listener_does_not_block_others(self):
        log = []
        bus = ListenerBus()
        bus.register(Recorder("before", log))
        bus.register(Exploding())
        bus.register(Recorder("after", log))

        bus.emit(SyncEvent.UPDATE, ["r1"])

        assert log == [("before", "update", ["r1"]), ("after", "update", ["r1"])]

    def test_unregister(self):
        log = []
        bus = ListenerBus()
        unregister = bus.register(Recorder("only", log))

        unregister()
        unregister()
        bus.emit(SyncEvent.SYNC_START)

        assert log == []
        assert len(bus) == 0

    def test_unregister_all(self):
        bus = ListenerBus()
        bus.register(SyncListener())
        bus.register(SyncListener())

        bus.unregister_all()

        assert len(bus) == 0

    def test_partial_listener_objects(self):
        class OnlyErrors:
            def __init__(self):
                self.errors = []

            def on_error(self, error):
                self.errors.append(error)

        listener = OnlyErrors()
        bus = ListenerBus()
        bus.register(listener)
        error = ValueError("boom")

        bus.emit(SyncEvent.SYNC_START)
        bus.emit(SyncEvent.ERROR, error)

        assert listener.errors == [error]

    @pytest.mark.asyncio
    async def test_async_hooks_do_not_block_emit(self):
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        class Slow(SyncListener):
            async def on_sync_complete(self, result):
                started.set()
                await release.wait()
                finished.append(result)

        bus = ListenerBus()
        bus.register(Slow())

        bus.emit(SyncEvent.SYNC_COMPLETE, "result")
        assert finished == []
        assert bus.pending == 1

        await started.wait()
        release.set()
        await bus.drain()

        assert finished == ["result"]
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_async_hook_failure_is_contained(self):
        class Broken(SyncListener):
            async def on_update(self, records):
                raise RuntimeError("async listener bug")

        bus = ListenerBus()
        bus.register(Broken())

        bus.emit(SyncEvent.UPDATE, [])
        await bus.drain()

        assert bus.pending == 0
