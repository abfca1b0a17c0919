from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

DeleteCallback = Callable[[int], Awaitable[None]]


class DeletionScheduler:
    """Delayed channel deletions keyed by channel id."""

    def __init__(self, delete: DeleteCallback, delay_seconds: float) -> None:
        self._delete = delete
        self.delay_seconds = delay_seconds
        self._pending: dict[int, asyncio.Task[None]] = {}

    def schedule(self, channel_id: int, delay_seconds: float | None = None) -> asyncio.Task[None]:
        self.cancel(channel_id)
        delay = self.delay_seconds if delay_seconds is None else delay_seconds
        task = asyncio.create_task(self._delete_after(channel_id, delay), name=f"delete-channel-{channel_id}")
        self._pending[channel_id] = task
        return task

    def cancel(self, channel_id: int) -> bool:
        task = self._pending.pop(channel_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_pending(self, channel_id: int) -> bool:
        task = self._pending.get(channel_id)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._pending.values() if not task.done())

    async def shutdown(self, flush: bool = True) -> None:
        """Stop all timers; with ``flush`` the pending deletions run immediately."""
        waiting = [channel_id for channel_id, task in self._pending.items() if not task.done()]
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if not flush:
            return
        for channel_id in waiting:
            try:
                await self._delete(channel_id)
            except Exception:
                LOGGER.exception("Failed to delete channel %s during shutdown", channel_id)

    async def _delete_after(self, channel_id: int, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self._delete(channel_id)
            LOGGER.info("Deleted closed ticket channel %s", channel_id, extra={"channel_id": channel_id})
        except asyncio.CancelledError:
            LOGGER.debug("Deletion of channel %s cancelled", channel_id)
            raise
        except Exception:
            LOGGER.exception("Failed to delete closed ticket channel %s", channel_id, extra={"channel_id": channel_id})
        finally:
            if self._pending.get(channel_id) is asyncio.current_task():
                self._pending.pop(channel_id, None)
