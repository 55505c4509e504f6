"""
Structured logging for the keeper and feeder loops.

Every loop logs one JSON object per event (`event`, `loop`, then event
fields). The console gets those lines through rich; the log file gets them
flattened into a single JSON record with timestamp and level, written by a
background thread so a slow disk never stalls a submission.
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from rich.logging import RichHandler


CRITICAL_SAFETY = logging.CRITICAL  # Fatal startup errors, shared signing account
ERROR = logging.ERROR               # Unclassified submission failures, loop crashes
WARNING = logging.WARNING           # Insufficient funds, lost connectivity, emergency pause
INFO = logging.INFO                 # Executions, liquidations, price updates, cycle summaries
DEBUG = logging.DEBUG               # Per-item evaluation detail

NOISY_EVENTS = frozenset({"pause_wait", "ledger_read_retry", "status_check_error"})


def _event_fields(record: logging.LogRecord) -> Optional[Dict[str, Any]]:
    """Decode a record emitted by log_event; None for plain text."""
    try:
        data = json.loads(record.getMessage())
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """One JSON line per record; event fields are lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = _event_fields(record)
        if fields is None:
            out["msg"] = record.getMessage()
        else:
            out.update(fields)
        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(out, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Hand records to a writer thread instead of writing inline.

    When the queue is full the record is dropped; the drop count is
    reported on close.
    """

    def __init__(self, target: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._target = target
        self._records: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._closing = threading.Event()
        self.dropped = 0
        self._writer = threading.Thread(target=self._drain, name="keeperbot-log-writer", daemon=True)
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._closing.is_set():
            return
        try:
            self._records.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def _drain(self) -> None:
        while not (self._closing.is_set() and self._records.empty()):
            try:
                record = self._records.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.handle(record)
            except Exception:
                self._target.handleError(record)

    def close(self) -> None:
        if self._closing.is_set():
            return
        self._closing.set()
        self._writer.join(timeout=2.0)
        if self.dropped:
            sys.stderr.write(f"[keeperbot] {self.dropped} log records dropped, writer queue full\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Let one record per (event, loop, symbol) through every `cooldown_sec`.

    Only events in `events` are throttled. A paused ledger makes both loops
    log pause_wait on every poll; the console shows the first and the file
    handler, which has no filter, keeps the rest.
    """

    def __init__(self, cooldown_sec: float = 30.0, events: Optional[Iterable[str]] = None):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events) if events is not None else NOISY_EVENTS
        self._last: Dict[tuple, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _event_fields(record)
        if fields is None or fields.get("event") not in self.events:
            return True
        key = (fields["event"], fields.get("loop"), fields.get("symbol"))
        now = time.monotonic()
        last = self._last.get(key)
        if last is not None and now - last < self.cooldown_sec:
            return False
        self._last[key] = now
        return True


def build_logger(
    name: str = "keeperbot",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "keeperbot.log",
    async_file: bool = True,
    throttle_sec: float = 30.0,
) -> logging.Logger:
    """
    Configure the process logger once; later calls only adjust the level.

    Args:
        name: Logger name
        level: Minimum level for the logger and its handlers
        file_path: JSON log file, None for console only
        async_file: Write the file from a background thread
        throttle_sec: Console cooldown for noisy events, 0 disables it
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_time=True, show_level=True, show_path=False, markup=False)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle_sec > 0:
        console.addFilter(ThrottledFilter(cooldown_sec=throttle_sec))
    logger.addHandler(console)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(JsonFormatter())
        if async_file:
            queued = AsyncQueueHandler(file_handler)
            queued.setLevel(level)
            logger.addHandler(queued)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    """Emit `{"event": event, **fields}` as one JSON message."""
    logger.log(level, json.dumps({"event": event, **fields}, default=str))
