"""
Adaptive poll clock.

Polls every ``poll.active_minutes`` inside the owner's active hours and every
``poll.inactive_minutes`` outside them. The next tick is only scheduled once
the previous callback has returned, so cycles never overlap.
"""
import threading
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from inbox_digest.config import ActiveWindowConfig, PollConfig
from inbox_digest.utils.tz import utc_now

logger = structlog.get_logger()


def is_active_window(now: datetime, window: ActiveWindowConfig) -> bool:
    """True when the local hour falls in ``[start, end)``."""
    hour = now.astimezone(ZoneInfo(window.timezone)).hour
    return window.start <= hour < window.end


def next_interval_ms(now: datetime, intervals: PollConfig, window: ActiveWindowConfig) -> int:
    minutes = intervals.active_minutes if is_active_window(now, window) else intervals.inactive_minutes
    return int(minutes * 60_000)


class AdaptiveClock:
    """Timer-driven loop that calls ``on_tick`` at the current cadence."""

    def __init__(
        self,
        intervals: PollConfig,
        window: ActiveWindowConfig,
        on_tick: Callable[[], None],
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.intervals = intervals
        self.window = window
        self.on_tick = on_tick
        self.now_fn = now_fn or utc_now
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            # A tick still in flight from before a stop() must not reschedule
            self._generation += 1
            generation = self._generation
        logger.info("Adaptive clock started",
                    active_minutes=self.intervals.active_minutes,
                    inactive_minutes=self.intervals.inactive_minutes,
                    window_start=self.window.start,
                    window_end=self.window.end,
                    timezone=self.window.timezone)
        self._schedule(generation)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Adaptive clock stopped")

    def _current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _schedule(self, generation: int) -> None:
        delay_ms = next_interval_ms(self.now_fn(), self.intervals, self.window)
        with self._lock:
            if not self._current(generation):
                return
            self._timer = threading.Timer(delay_ms / 1000, self._tick, args=(generation,))
            self._timer.daemon = True
            self._timer.start()
        logger.debug("Next tick scheduled", delay_ms=delay_ms)

    def _tick(self, generation: int) -> None:
        if not self._current(generation):
            return
        try:
            self.on_tick()
        except Exception as e:
            logger.error("Poll cycle failed", error=str(e)[:200],
                         error_type=type(e).__name__, exc_info=True)
        self._schedule(generation)
