"""Clock and timer seams for the poller.

Production code runs on `ThreadingScheduler`; tests inject a fake clock and
scheduler so that timer behaviour is deterministic.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="scheduling")


class TimerHandle(Protocol):
    """Cancellable handle returned by a scheduler."""

    def cancel(self) -> None:
        """Prevent any further firing; safe to call more than once."""


class Scheduler(Protocol):
    """Anything that can run callbacks later."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` once after `delay` seconds."""
        ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` every `interval` seconds until cancelled."""
        ...


def monotonic_clock() -> float:
    """Default clock for interval gating and cache expiry."""
    return time.monotonic()


class _OneShotHandle:
    """Wrap a `threading.Timer` as a TimerHandle."""

    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class _RepeatingHandle:
    """Re-arms a daemon `threading.Timer` after each firing until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str) -> None:
        self._interval = interval
        self._callback = callback
        self._name = name
        self._lock = threading.Lock()
        self._cancelled = False
        self._timer: threading.Timer | None = None
        self._arm()

    def _arm(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._timer = threading.Timer(self._interval, self._fire)
            self._timer.name = self._name
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        try:
            self._callback()
        except Exception:
            logger.exception("Recurring timer callback failed", extra={"timer": self._name})
        finally:
            self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()


class ThreadingScheduler:
    """Scheduler backed by daemon `threading.Timer` threads."""

    def __init__(self, name: str = "aerosync") -> None:
        self.name = name

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.name = f"{self.name}-retry"
        timer.daemon = True
        timer.start()
        return _OneShotHandle(timer)

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be greater than zero")
        return _RepeatingHandle(interval, callback, name=f"{self.name}-poll")
