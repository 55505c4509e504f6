"""
StatusGate: emergency-pause check shared by the keeper and the feeder.

Each loop owns its own gate instance and checks it before any write. While
the ledger reports the emergency stop, wait_until_unpaused() polls with a
bounded back-off until the flag clears or the loop is asked to stop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from keeperbot.infra.clock import Clock
from keeperbot.ledger.errors import LedgerError

log = logging.getLogger("keeperbot")


@dataclass
class StatusGateConfig:
    poll_interval_sec: float = 3.0
    max_poll_interval_sec: float = 30.0
    backoff_multiplier: float = 1.5
    # Treat an unreadable pause flag as paused (no writes while blind)
    fail_closed: bool = True


class StatusGate:
    def __init__(
        self,
        ledger: Any,
        config: Optional[StatusGateConfig] = None,
        clock: Optional[Clock] = None,
        name: str = "keeper",
        on_change: Optional[Callable[[bool], Any]] = None,
    ) -> None:
        self.ledger = ledger
        self.config = config or StatusGateConfig()
        self.clock = clock or Clock()
        self.name = name
        self._on_change = on_change
        self._last_paused: Optional[bool] = None

    @property
    def last_known_paused(self) -> Optional[bool]:
        return self._last_paused

    async def is_paused(self) -> bool:
        try:
            paused = bool(await self.ledger.get_pause_flag())
        except LedgerError as exc:
            self._log_event("status_check_error", kind=exc.kind.value, err=exc.message[:200],
                            assumed_paused=self.config.fail_closed)
            paused = self.config.fail_closed
        await self._record(paused)
        return paused

    async def wait_until_unpaused(self, stop_event: Optional[asyncio.Event] = None) -> bool:
        """
        Block while paused. Returns True once operational, False if stopped first.
        """
        interval = self.config.poll_interval_sec
        while await self.is_paused():
            self._log_event("pause_wait", retry_in_sec=round(interval, 2))
            if await self.clock.sleep(interval, stop_event):
                return False
            interval = min(interval * self.config.backoff_multiplier, self.config.max_poll_interval_sec)
        return True

    async def _record(self, paused: bool) -> None:
        if paused == self._last_paused:
            return
        previous = self._last_paused
        self._last_paused = paused
        if previous is None and not paused:
            return
        self._log_event("system_paused" if paused else "system_resumed")
        if self._on_change:
            try:
                result = self._on_change(paused)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._log_event("status_callback_error", err=str(exc))

    def _log_event(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("system_paused", "status_check_error") else logging.INFO
        log.log(level, json.dumps({"event": event, "loop": self.name, **kwargs}))
