# cardinality/ticker.py
# Tick sources for the control loop: wall-clock interval in production, manual ticks in tests

from __future__ import annotations

import queue
import threading
from typing import Optional


class Ticker:
    """
    wait(stop) blocks until the next pass should run. Returns False when `stop`
    was set instead. completed() is called by the loop after every pass.
    """

    def wait(self, stop: threading.Event) -> bool:
        raise NotImplementedError

    def wake(self) -> None:
        """Cut the current wait short (used on stop and reload)."""

    def completed(self) -> None:
        """Called after each pass."""


class IntervalTicker(Ticker):
    """Fires once every `interval` seconds; the first tick fires immediately."""

    def __init__(self, interval: float, *, fire_immediately: bool = True) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = float(interval)
        self._first = fire_immediately
        self._wake = threading.Event()

    def wait(self, stop: threading.Event) -> bool:
        if stop.is_set():
            return False
        if self._first:
            self._first = False
            return True
        self._wake.wait(timeout=self.interval)
        self._wake.clear()
        return not stop.is_set()

    def wake(self) -> None:
        self._wake.set()


class ManualTicker(Ticker):
    """
    Test tick source: each tick() releases exactly one pass.

        ticker = ManualTicker()
        daemon.start()
        assert ticker.tick()          # blocks until that pass has finished
    """

    def __init__(self, *, poll_seconds: float = 0.05) -> None:
        self.poll_seconds = float(poll_seconds)
        self._pending: "queue.Queue[bool]" = queue.Queue()
        self._done = threading.Semaphore(0)
        self._passes = 0
        self._mu = threading.Lock()

    @property
    def passes(self) -> int:
        with self._mu:
            return self._passes

    def tick(self, *, wait: bool = True, timeout: Optional[float] = 5.0) -> bool:
        """Release one pass. With wait=True, return whether it finished within timeout."""
        self._pending.put(True)
        if not wait:
            return True
        return self._done.acquire(timeout=timeout)

    def wait(self, stop: threading.Event) -> bool:
        while not stop.is_set():
            try:
                self._pending.get(timeout=self.poll_seconds)
                return True
            except queue.Empty:
                continue
        return False

    def completed(self) -> None:
        with self._mu:
            self._passes += 1
        self._done.release()


__all__ = ["Ticker", "IntervalTicker", "ManualTicker"]
