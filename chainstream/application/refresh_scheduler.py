"""Periodic, demand-driven refresh of the active subscription.

The scheduler owns the single refresh timer of a registry. Starting it
issues one refresh immediately and then one per interval; each tick asks the
registry for the key that is active *at fire time*, so a tick that races a
key change never refreshes the old key.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from ..domain.models import SendOutcome
from ..domain.value_objects import Duration, SubscriptionKey
from ..ports.logger import LoggerPort

KeyProvider = Callable[[], SubscriptionKey | None]
RefreshSender = Callable[[SubscriptionKey], Awaitable[SendOutcome]]


class RefreshScheduler:
    """Issues an immediate refresh on start and a recurring one on an interval."""

    def __init__(
        self,
        current_key: KeyProvider,
        send_refresh: RefreshSender,
        interval: Duration | None = None,
        logger: LoggerPort | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            current_key: Returns the key active right now, or None
            send_refresh: Sends one refresh for a key
            interval: Time between periodic refreshes (default 30s)
            logger: Logger for swallowed refresh failures
        """
        self._current_key = current_key
        self._send_refresh = send_refresh
        self._interval = interval or Duration(seconds=30)
        self._logger = logger or self._create_default_logger()
        self._task: asyncio.Task | None = None

    def _create_default_logger(self) -> LoggerPort:
        from ..infrastructure.simple_logger import SimpleLogger

        return SimpleLogger("chainstream.refresh")

    @property
    def interval(self) -> Duration:
        return self._interval

    @property
    def is_running(self) -> bool:
        """Check if the interval timer is live."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Refresh now and (re)start the interval timer.

        Any timer already running is cancelled first, so at most one is ever
        live.
        """
        self.stop()
        self._task = asyncio.create_task(self._run())
        await self.fire()

    def stop(self) -> None:
        """Cancel the interval timer.

        Synchronous: once this returns, no further tick of the cancelled
        timer sends anything.
        """
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def wait_stopped(self) -> None:
        """Cancel the timer and wait until its task has finished."""
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def fire(self) -> SendOutcome | None:
        """Send one refresh for the current key.

        Failures are logged and swallowed; the next tick or the
        reconnection flow retries.
        """
        key = self._current_key()
        if key is None:
            return None

        try:
            outcome = await self._send_refresh(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning(
                f"Refresh raised: {e}",
                instrument=key.instrument,
                expiry=key.expiry,
            )
            return SendOutcome.failed(str(e))

        if not outcome.ok:
            self._logger.debug(
                "Refresh failed, will retry on next tick",
                instrument=key.instrument,
                expiry=key.expiry,
                reason=outcome.reason,
            )
        return outcome

    async def _run(self) -> None:
        """Interval loop; runs until cancelled."""
        while True:
            await asyncio.sleep(self._interval.seconds)
            await self.fire()
