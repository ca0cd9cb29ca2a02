"""Tests for background-task helpers: Watchdog and supervised_task."""

from __future__ import annotations

import asyncio

import pytest

from lanrelay.relay.resilience import Watchdog, supervised_task


# ---------------------------------------------------------------------------
# Watchdog
# ---------------------------------------------------------------------------

class TestWatchdog:
    @pytest.mark.asyncio
    async def test_sync_callback(self):
        counter = {"n": 0}

        def tick():
            counter["n"] += 1

        w = Watchdog("test", tick, interval=0.05)
        w.start()
        assert w.running
        await asyncio.sleep(0.18)
        w.stop()
        assert not w.running
        assert counter["n"] >= 2

    @pytest.mark.asyncio
    async def test_async_callback(self):
        counter = {"n": 0}

        async def tick():
            counter["n"] += 1

        w = Watchdog("test-async", tick, interval=0.05)
        w.start()
        await asyncio.sleep(0.18)
        w.stop()
        assert counter["n"] >= 2

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_stop(self):
        counter = {"n": 0}

        def tick():
            counter["n"] += 1
            if counter["n"] == 1:
                raise ValueError("boom")

        w = Watchdog("test-err", tick, interval=0.05)
        w.start()
        await asyncio.sleep(0.2)
        w.stop()
        assert counter["n"] >= 2

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_loop(self):
        counter = {"n": 0}
        w = Watchdog("test-once", lambda: counter.__setitem__("n", counter["n"] + 1), interval=0.05)
        w.start()
        w.start()
        await asyncio.sleep(0.12)
        w.stop()
        assert counter["n"] <= 3

    @pytest.mark.asyncio
    async def test_stop_idempotent(self):
        w = Watchdog("test-idle", lambda: None, interval=1.0)
        w.stop()
        w.start()
        w.stop()
        w.stop()


# ---------------------------------------------------------------------------
# supervised_task
# ---------------------------------------------------------------------------

class TestSupervisedTask:
    @pytest.mark.asyncio
    async def test_normal_completion(self):
        async def good():
            return 42

        task = supervised_task(good(), name="test-good")
        assert await task == 42
        assert task.get_name() == "test-good"

    @pytest.mark.asyncio
    async def test_exception_still_raised_to_awaiter(self):
        async def bad():
            raise RuntimeError("oops")

        task = supervised_task(bad(), name="test-bad")
        with pytest.raises(RuntimeError):
            await task

    @pytest.mark.asyncio
    async def test_cancelled(self):
        async def slow():
            await asyncio.sleep(100)

        task = supervised_task(slow(), name="test-cancel")
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
