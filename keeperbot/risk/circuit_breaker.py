"""
CircuitBreaker: trips a loop into cooldown after a streak of cycle failures.

The keeper and feeder each own one. A cycle whose ledger reads keep failing
with connectivity errors records an error here; once the streak reaches the
threshold the loop sleeps out the cooldown instead of hammering the RPC.
Repeated trips back off exponentially.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from keeperbot.infra.clock import Clock

log = logging.getLogger("keeperbot")


@dataclass
class CircuitBreakerConfig:
    error_threshold: int = 5  # consecutive failed cycles before tripping
    cooldown_sec: float = 10.0
    backoff_multiplier: float = 2.0  # applied per repeated trip
    max_backoff: float = 32.0


class CircuitBreaker:
    """
    Single-task usage; no internal locking.

    `is_tripped` auto-resets once the cooldown has elapsed.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Clock] = None,
        name: str = "keeper",
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.clock = clock or Clock()
        self.name = name
        self.error_streak = 0
        self._tripped = False
        self._cooldown_until = 0.0
        self._trip_count = 0
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, "loop": self.name, **kwargs}))

    @property
    def trip_count(self) -> int:
        return self._trip_count

    @property
    def is_tripped(self) -> bool:
        if self._tripped and self.clock.monotonic() >= self._cooldown_until:
            self._reset()
        return self._tripped

    @property
    def cooldown_remaining(self) -> float:
        if not self._tripped:
            return 0.0
        return max(0.0, self._cooldown_until - self.clock.monotonic())

    def record_error(self, where: str, error: Exception) -> bool:
        """Count one failure. Returns True if this failure tripped the breaker."""
        self.error_streak += 1
        self._log_event("cycle_error", where=where, err=str(error)[:200], streak=self.error_streak)
        if self.error_streak >= self.config.error_threshold and not self._tripped:
            self._trip(where)
            return True
        return False

    def record_success(self) -> None:
        if self.error_streak > 0:
            self._log_event("cycle_error_reset", streak=self.error_streak)
            self.error_streak = 0

    def _trip(self, where: str) -> None:
        self._tripped = True
        self._trip_count += 1
        backoff = min(self.config.backoff_multiplier ** min(self._trip_count - 1, 5), self.config.max_backoff)
        cooldown = self.config.cooldown_sec * backoff
        self._cooldown_until = self.clock.monotonic() + cooldown
        self._log_event("circuit_break", where=where, streak=self.error_streak,
                        trip_count=self._trip_count, cooldown_sec=cooldown)

    def _reset(self) -> None:
        self._tripped = False
        self.error_streak = 0
        self._log_event("circuit_reset", trip_count=self._trip_count)

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "error_streak": self.error_streak,
            "trip_count": self._trip_count,
            "cooldown_remaining": self.cooldown_remaining,
        }
