from __future__ import annotations

import asyncio


class AsyncTask:
    """Generic task w/ async `run_forever` loop

    `stop()` only flips the lifecycle handler; `run_forever` loops are expected to
    check `_shutdown` at safe boundaries and return on their own.
    """

    def __init__(self: AsyncTask) -> None:
        """Initialize new AsyncTask"""

        # Lifecycle handler
        self._shutdown: bool = False
        self._stopped = asyncio.Event()

    async def setup(self: AsyncTask) -> None:
        """Async setup process

        Raises:
            NotImplementedError: Not implemented
        """
        raise NotImplementedError

    async def run_forever(self: AsyncTask) -> None:
        """Default lifecycle loop

        Raises:
            NotImplementedError: Not implemented
        """
        raise NotImplementedError

    async def cleanup(self: AsyncTask) -> None:
        """Async process cleanup

        Raises:
            NotImplementedError: Not implemented
        """
        raise NotImplementedError

    async def stop(self: AsyncTask) -> None:
        """Toggles lifecycle handler to shutdown"""
        self._shutdown = True
        self._stopped.set()

    async def _sleep(self: AsyncTask, seconds: float) -> None:
        """Sleeps for `seconds`, returning early if the task is stopped

        Args:
            seconds (float): time to sleep
        """
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
