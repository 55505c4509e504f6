"""
Injectable time source for the control loops.

Every suspension point in the keeper and feeder (inter-cycle sleep, pause
back-off, inter-submission delay) goes through Clock.sleep so that tests can
replace it with a clock that advances instantly, and so that a stop request
wakes a sleeping loop without cancelling in-flight work.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional


class Clock:
    """Wall clock backed by time.time and asyncio."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
        """
        Sleep for `seconds`, returning early if `stop_event` is set.

        Returns True if the sleep was interrupted by the stop event.
        """
        if seconds <= 0:
            return bool(stop_event and stop_event.is_set())
        if stop_event is None:
            await asyncio.sleep(seconds)
            return False
        if stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

