# Directory: utils/
# Filename: scheduler.py

import heapq
import itertools
import logging
import queue
import threading
import time
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 0.01


class VirtualClock:
    """A manually advanced clock, for driving timers in tests."""

    def __init__(self, start: float = 0.0):
        self.current = float(start)

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class TimerHandle:
    """Returned by call_later(); lets the owner cancel a pending callback."""

    def __init__(self, when: float, callback: Callable, args: Tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __repr__(self):
        state = "cancelled" if self.cancelled else "pending"
        return f"<TimerHandle {getattr(self.callback, '__name__', self.callback)} at {self.when:.3f} ({state})>"


class CallbackScheduler:
    """
    A single-threaded callback loop.

    All engine work (keystroke timers, scan ticks, decoder hits, verification
    completions) runs as callbacks on the thread that calls run_pending() or
    run_forever(). Other threads (the pynput listener, the zbar worker, the
    verification executor) hand work over with call_soon_threadsafe().

    The clock is injectable so timers can be driven by a VirtualClock.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, logger_instance: Optional[logging.Logger] = None):
        self.logger = logger_instance if logger_instance else logger
        self._clock = clock if clock is not None else time.monotonic
        self._timers: List[Tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()
        self._posted: "queue.SimpleQueue[Tuple[Callable, Tuple[Any, ...]]]" = queue.SimpleQueue()
        self._stop_event = threading.Event()

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable, *args: Any) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), callback, args)
        heapq.heappush(self._timers, (handle.when, next(self._sequence), handle))
        return handle

    def call_soon(self, callback: Callable, *args: Any) -> TimerHandle:
        return self.call_later(0.0, callback, *args)

    def call_soon_threadsafe(self, callback: Callable, *args: Any) -> None:
        self._posted.put((callback, args))

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, handle in self._timers if not handle.cancelled)

    def _run_callback(self, callback: Callable, args: Tuple[Any, ...]) -> None:
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Unhandled error in scheduled callback {callback!r}: {e}", exc_info=True)

    def run_pending(self) -> int:
        """
        Runs every posted callback, then every timer that is due.

        Returns:
            The number of callbacks executed.
        """
        executed = 0
        while True:
            try:
                callback, args = self._posted.get_nowait()
            except queue.Empty:
                break
            self._run_callback(callback, args)
            executed += 1

        while self._timers and self._timers[0][0] <= self.now():
            _, _, handle = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._run_callback(handle.callback, handle.args)
            executed += 1
        return executed

    def _next_deadline(self) -> Optional[float]:
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)
        return self._timers[0][0] if self._timers else None

    def run_forever(self, poll_interval: float = DEFAULT_POLL_INTERVAL_SEC) -> None:
        """Runs callbacks until stop() is called. Blocks the calling thread."""
        self._stop_event.clear()
        self.logger.info("Callback loop started.")
        while not self._stop_event.is_set():
            self.run_pending()
            deadline = self._next_deadline()
            wait = poll_interval
            if deadline is not None:
                wait = min(poll_interval, max(0.0, deadline - self.now()))
            self._stop_event.wait(wait)
        self.logger.info("Callback loop stopped.")

    def stop(self) -> None:
        self._stop_event.set()
