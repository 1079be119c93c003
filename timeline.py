from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

PLAYBACK_TICK_SECONDS = float(os.getenv("PLAYBACK_TICK_SECONDS", "0.2"))
WINDOW_DAYS_EACH_SIDE = 15
TICK_STEP = timedelta(hours=1)
SUPPORTED_MODES = ("single", "range")
LOGGER = logging.getLogger("region_weather.timeline")


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class TimeContext:
    """Selected instant or interval plus playback state.

    While playing, a daemon thread calls :meth:`tick` every ``tick_seconds``
    regardless of how long the listener takes to act on it. Ticks step the
    selected instant one hour at a time through a 30-day window around the
    anchor (fixed at construction) and wrap back to its start.
    """

    def __init__(
        self,
        anchor: datetime | None = None,
        tick_seconds: float = PLAYBACK_TICK_SECONDS,
        listener: Callable[["TimeContext"], None] | None = None,
    ) -> None:
        anchor = _as_utc(anchor) if anchor is not None else datetime.now(timezone.utc)
        self.window_start = anchor.replace(minute=0, second=0, microsecond=0) - timedelta(days=WINDOW_DAYS_EACH_SIDE)
        self.window_slots = 2 * WINDOW_DAYS_EACH_SIDE * 24
        self.tick_seconds = tick_seconds
        self.listener = listener
        self.mode = "single"
        self.selected_time = anchor
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self._playing = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._guard = threading.Lock()

    @property
    def window_end(self) -> datetime:
        return self.window_start + TICK_STEP * (self.window_slots - 1)

    @property
    def is_playing(self) -> bool:
        return self._playing.is_set()

    @property
    def state(self) -> str:
        return "playing" if self.is_playing else "idle"

    def snapshot(self) -> Dict[str, object]:
        with self._guard:
            return {
                "mode": self.mode,
                "selected_time": self.selected_time,
                "start_time": self.start_time,
                "end_time": self.end_time,
                "is_playing": self.is_playing,
                "window_start": self.window_start,
                "window_end": self.window_end,
            }

    def set_mode(self, mode: str) -> None:
        if mode not in SUPPORTED_MODES:
            raise ValueError(f"Unknown timeline mode: {mode}")
        with self._guard:
            self.mode = mode

    def scrub(self, instant: datetime) -> None:
        with self._guard:
            self.selected_time = _as_utc(instant)
        self._notify()

    def set_interval(self, start: datetime, end: datetime) -> None:
        # start <= end is left to the caller.
        with self._guard:
            if self.mode != "range":
                raise ValueError("set_interval is only valid in range mode")
            self.start_time = _as_utc(start)
            self.end_time = _as_utc(end)
        self._notify()

    def reset_to_now(self, now: datetime | None = None) -> None:
        self.scrub(now if now is not None else datetime.now(timezone.utc))

    def play(self) -> None:
        if self.is_playing:
            return
        self._playing.set()
        self._ensure_ticker()
        LOGGER.info("Playback started at %s", self.selected_time.isoformat())

    def pause(self) -> None:
        if not self.is_playing:
            return
        self._playing.clear()
        LOGGER.info("Playback paused at %s", self.selected_time.isoformat())

    stop = pause

    def toggle_playback(self) -> bool:
        if self.is_playing:
            self.pause()
        else:
            self.play()
        return self.is_playing

    def slot_of(self, instant: datetime) -> int:
        return int((_as_utc(instant) - self.window_start) // TICK_STEP)

    def tick(self) -> datetime | None:
        """Advance one hour inside the window; a no-op in range mode."""
        with self._guard:
            if self.mode != "single":
                return None
            slot = self.slot_of(self.selected_time)
            next_slot = (slot + 1) % self.window_slots
            self.selected_time = self.window_start + TICK_STEP * next_slot
            selected = self.selected_time
        self._notify()
        return selected

    def shutdown(self) -> None:
        self._playing.clear()
        with self._guard:
            self._stop.set()
            thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=max(1.0, self.tick_seconds * 2))
        if thread.is_alive():
            LOGGER.warning("Timeline ticker did not stop within the join timeout")
            return
        with self._guard:
            if self._thread is thread:
                self._thread = None

    def _ensure_ticker(self) -> None:
        with self._guard:
            if self._thread is not None and self._thread.is_alive() and not self._stop.is_set():
                return
            # Each ticker owns its stop event; a stopped one that is still
            # finishing a tick never sees a later start.
            stop = threading.Event()
            self._stop = stop
            self._thread = threading.Thread(target=self._tick_loop, args=(stop,), name="timeline-ticker", daemon=True)
            self._thread.start()

    def _tick_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.tick_seconds):
            if not self._playing.is_set():
                continue
            try:
                self.tick()
            except Exception:
                LOGGER.exception("Timeline tick failed")

    def _notify(self) -> None:
        if self.listener is None:
            return
        self.listener(self)
