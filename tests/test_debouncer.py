"""
Unit Tests for pms_sync.offline.debouncer module.
"""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock

from pms_sync.offline.debouncer import Debouncer


class TestDebouncer:
    """Tests for Debouncer scheduling semantics."""

    @pytest.mark.asyncio
    async def test_action_runs_after_delay(self):
        """Test a scheduled action runs once the delay elapses."""
        debouncer = Debouncer()
        action = AsyncMock(return_value="done")

        task = debouncer.schedule("draft", action, delay_ms=10)

        assert debouncer.is_pending("draft") is True
        assert await task == "done"
        action.assert_awaited_once()
        assert debouncer.is_pending("draft") is False

    @pytest.mark.asyncio
    async def test_last_schedule_wins(self):
        """Test a burst of schedules produces exactly one call, the last one."""
        debouncer = Debouncer()
        calls = []

        def make_action(n):
            async def action():
                calls.append(n)
            return action

        for n in range(5):
            debouncer.schedule("draft", make_action(n), delay_ms=20)
            await asyncio.sleep(0.001)

        await debouncer.wait("draft")

        assert calls == [4]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        """Test schedules under different keys do not cancel each other."""
        debouncer = Debouncer()
        first, second = AsyncMock(), AsyncMock()

        task_a = debouncer.schedule("a", first, delay_ms=5)
        task_b = debouncer.schedule("b", second, delay_ms=5)
        await asyncio.gather(task_a, task_b)

        first.assert_awaited_once()
        second.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_running_action_is_not_cancelled(self):
        """Test a new schedule does not cancel an action already running."""
        debouncer = Debouncer()
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await release.wait()
            finished.append("slow")

        async def quick():
            finished.append("quick")

        slow_task = debouncer.schedule("draft", slow, delay_ms=0)
        await started.wait()
        quick_task = debouncer.schedule("draft", quick, delay_ms=0)
        release.set()
        await asyncio.gather(slow_task, quick_task)

        assert sorted(finished) == ["quick", "slow"]

    @pytest.mark.asyncio
    async def test_flush_runs_pending_action_now(self):
        """Test flush() fires a waiting action without the delay."""
        debouncer = Debouncer()
        action = AsyncMock(return_value=42)
        debouncer.schedule("draft", action, delay_ms=10_000)

        assert await debouncer.flush("draft") == 42
        action.assert_awaited_once()
        assert debouncer.is_pending("draft") is False

    @pytest.mark.asyncio
    async def test_flush_without_pending_returns_none(self):
        """Test flush() is a no-op for an idle key."""
        assert await Debouncer().flush("draft") is None

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_action(self):
        """Test cancel() prevents a waiting action from running."""
        debouncer = Debouncer()
        action = AsyncMock()
        debouncer.schedule("draft", action, delay_ms=10)

        assert debouncer.cancel("draft") is True
        await asyncio.sleep(0.03)

        action.assert_not_awaited()
        assert debouncer.cancel("draft") is False

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        """Test cancel_all() drops every waiting action."""
        debouncer = Debouncer()
        action = AsyncMock()
        debouncer.schedule("a", action, delay_ms=10)
        debouncer.schedule("b", action, delay_ms=10)

        debouncer.cancel_all()
        await asyncio.sleep(0.03)

        action.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_action_is_logged(self, caplog):
        """Test an action nobody awaits still has its exception reported."""
        debouncer = Debouncer()
        action = AsyncMock(side_effect=RuntimeError("save exploded"))

        with caplog.at_level(logging.ERROR, logger="pms_sync.offline.debouncer"):
            task = debouncer.schedule("draft", action, delay_ms=5)
            await asyncio.sleep(0.05)

        assert task.done() is True
        assert "save exploded" in caplog.text
        assert debouncer.is_pending("draft") is False

    @pytest.mark.asyncio
    async def test_superseded_action_is_not_logged(self, caplog):
        """Test cancelling a pending action reports nothing."""
        debouncer = Debouncer()

        with caplog.at_level(logging.ERROR, logger="pms_sync.offline.debouncer"):
            debouncer.schedule("draft", AsyncMock(), delay_ms=50)
            debouncer.cancel("draft")
            await asyncio.sleep(0.01)

        assert caplog.records == []
