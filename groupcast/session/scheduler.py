"""Cancellable delayed callbacks keyed by tenant."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger


class ReconnectScheduler:
    """
    At most one pending timer per key.

    Scheduling a key replaces its pending timer; ``cancel`` invalidates it.
    A timer that is already running its callback is never cancelled from
    inside that callback, so a callback may safely reschedule its own key.
    """

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.Task[None]] = {}

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        label: str = "reconnect",
    ) -> asyncio.Task[None]:
        """Run ``callback`` after ``delay`` seconds, replacing any pending timer for ``key``."""
        self.cancel(key)
        task = asyncio.create_task(self._run(key, max(0.0, delay), callback, label))
        self._timers[key] = task
        logger.debug(f"Scheduled {label} for {key} in {delay:.2f}s")
        return task

    def cancel(self, key: str) -> bool:
        """Invalidate the pending timer for ``key``. Returns True if one was pending."""
        task = self._timers.pop(key, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def pending(self, key: str) -> bool:
        task = self._timers.get(key)
        return task is not None and not task.done()

    def pending_keys(self) -> list[str]:
        return [key for key, task in self._timers.items() if not task.done()]

    async def cancel_all(self) -> None:
        """Cancel and await every pending timer."""
        tasks = [t for t in self._timers.values() if t is not asyncio.current_task()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        label: str,
    ) -> None:
        try:
            await asyncio.sleep(delay)
            # Past this point the timer counts as fired, not pending.
            if self._timers.get(key) is asyncio.current_task():
                self._timers.pop(key, None)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled {label} for {key} failed: {e}")
        finally:
            if self._timers.get(key) is asyncio.current_task():
                self._timers.pop(key, None)
