"""
Debouncer.

Collapses bursts of change events into one delayed action per key. Used to
coalesce rapid appraisal edits into a single draft save.

Only "last scheduled call for a key wins" is guaranteed. A scheduled action
that is still waiting is cancelled by a newer schedule; an action that has
already started running is left alone.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


@dataclass
class _Scheduled:
    action: Action
    task: asyncio.Task
    started: bool = False


class Debouncer:
    """Per-key trailing-edge debouncer running on the current event loop."""

    def __init__(self) -> None:
        self._scheduled: Dict[Hashable, _Scheduled] = {}

    def schedule(self, key: Hashable, action: Action, delay_ms: int) -> asyncio.Task:
        """
        Run ``action`` after ``delay_ms`` of quiescence on ``key``.

        Cancels any previously scheduled, not-yet-started action for the key.

        Returns:
            The task wrapping the delayed action.
        """
        previous = self._scheduled.get(key)
        if previous is not None and not previous.started and not previous.task.done():
            previous.task.cancel()
            logger.debug(f"Debounce superseded pending action for {key!r}")

        task = asyncio.get_running_loop().create_task(self._run_later(key, delay_ms))
        task.add_done_callback(partial(self._handle_task_exception, key))
        self._scheduled[key] = _Scheduled(action=action, task=task)
        return task

    @staticmethod
    def _handle_task_exception(key: Hashable, task: asyncio.Task) -> None:
        """Log a failed debounced action so nobody has to await it."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Debounced action for {key!r} failed: {exc}", exc_info=exc)

    async def _run_later(self, key: Hashable, delay_ms: int) -> Any:
        await asyncio.sleep(delay_ms / 1000)
        return await self._fire(key)

    async def _fire(self, key: Hashable) -> Any:
        scheduled = self._scheduled.get(key)
        if scheduled is None:
            return None

        scheduled.started = True
        try:
            return await scheduled.action()
        finally:
            if self._scheduled.get(key) is scheduled:
                del self._scheduled[key]

    def is_pending(self, key: Hashable) -> bool:
        """True while an action for ``key`` is waiting for its delay to elapse."""
        scheduled = self._scheduled.get(key)
        return scheduled is not None and not scheduled.started

    def cancel(self, key: Hashable) -> bool:
        """Drop the pending action for ``key``; returns False if nothing was waiting."""
        scheduled = self._scheduled.get(key)
        if scheduled is None or scheduled.started:
            return False
        scheduled.task.cancel()
        del self._scheduled[key]
        return True

    async def flush(self, key: Hashable) -> Optional[Any]:
        """
        Run the pending action for ``key`` immediately.

        If the action is already running, wait for it instead.

        Returns:
            The action's result, or None if nothing was scheduled.
        """
        scheduled = self._scheduled.get(key)
        if scheduled is None:
            return None

        if scheduled.started:
            return await scheduled.task

        scheduled.task.cancel()
        return await self._fire(key)

    async def wait(self, key: Hashable) -> Optional[Any]:
        """Wait for the current action for ``key`` (pending or running) to finish."""
        scheduled = self._scheduled.get(key)
        if scheduled is None:
            return None
        try:
            return await scheduled.task
        except asyncio.CancelledError:
            # Superseded while waiting; follow the replacement
            if self._scheduled.get(key) is not scheduled:
                return await self.wait(key)
            raise

    def cancel_all(self) -> None:
        for key in list(self._scheduled):
            self.cancel(key)
