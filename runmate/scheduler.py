"""Timer scheduling with explicit cancellation tokens.

All lifecycle timers (completion polling, grace periods) run on a single
dispatcher thread so callbacks never overlap each other.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellation token returned by ``call_later``."""

    __slots__ = ("when", "callback", "_cancelled")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class TimerScheduler:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), callback)
        with self._cond:
            if self._stopped:
                handle.cancel()
                return handle
            heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
            self._ensure_thread()
            self._cond.notify()
        return handle

    def shutdown(self) -> None:
        with self._cond:
            self._stopped = True
            for _, _, handle in self._heap:
                handle.cancel()
            self._heap.clear()
            self._cond.notify_all()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _ensure_thread(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="runmate-timers", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped:
                    if not self._heap:
                        self._cond.wait()
                        continue
                    when = self._heap[0][0]
                    remaining = when - self.now()
                    if remaining <= 0:
                        break
                    self._cond.wait(timeout=remaining)
                if self._stopped:
                    return
                _, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            try:
                handle.callback()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Timer callback failed")
