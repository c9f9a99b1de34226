"""
Certificate renewal scheduling.

A single-shot, cancelable timer that re-enters the orchestrator when the
certificate is due for renewal.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


def renewal_delay(expiry: datetime, now: Optional[datetime] = None) -> timedelta:
    """Time until renewal: two thirds of the remaining validity (naive UTC)."""
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    return (expiry - now) * 2 / 3


class RenewalScheduler:
    """
    Holds at most one pending renewal.

    Arming cancels whatever was armed before.
    """

    def __init__(self, callback: Callable[[], Awaitable[object]]):
        """
        Args:
            callback: Async function to run when the timer fires
        """
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._fire_time: Optional[datetime] = None
        self._callback_task: Optional[asyncio.Task] = None

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def callback_task(self) -> Optional[asyncio.Task]:
        """The fired timer task while its callback is still running."""
        return self._callback_task

    @property
    def fire_time(self) -> Optional[datetime]:
        """Wall-clock instant the pending renewal fires, if armed."""
        return self._fire_time if self.is_armed else None

    def arm(self, delay: timedelta) -> datetime:
        """
        Schedule the callback to run after delay.

        Must be called from within a running event loop.

        Returns:
            The local wall-clock time the timer will fire
        """
        self.cancel()

        seconds = max(0.0, delay.total_seconds())
        self._fire_time = datetime.now() + timedelta(seconds=seconds)
        self._task = asyncio.create_task(self._fire(seconds))
        logger.info("[ACME-RENEWAL] Renewal scheduled for %s", self._fire_time.isoformat())
        return self._fire_time

    def cancel(self) -> None:
        """Cancel the pending renewal, if any."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.debug("[ACME-RENEWAL] Cancelled renewal scheduled for %s", self._fire_time)
        self._task = None
        self._fire_time = None

    async def _fire(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

        # Disarm before re-entering so the callback can arm the next renewal
        # without cancelling itself
        self._callback_task, self._task = self._task, None
        self._fire_time = None

        logger.info("[ACME-RENEWAL] Renewal timer fired")
        try:
            await self._callback()
        except Exception as e:
            logger.exception("[ACME-RENEWAL] Error in renewal callback: %s", e)
        finally:
            self._callback_task = None
