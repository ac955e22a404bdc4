"""Completion inference for runs without a reliable exit signal.

A run typed into an interactive terminal gives no process-exit event. Each
watch polls its surface and settles on the first of:

1. the exit marker the command suffix printed for this run;
2. the surface closing (real exit status when the shell exited on its own,
   otherwise success is assumed);
3. ``settle_delay`` elapsing: immediately on a surface that cannot report
   exit status, otherwise once the shell has been back at its prompt for two
   polls without printing the marker (a commented-out or interrupted suffix);
4. ``max_watch_time`` elapsing, which ends inference unconditionally.

Inference never reports a failure it did not observe: without an exit
status a run is assumed to have succeeded. A script that fails fast in an
opaque terminal therefore shows as a success.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .scheduler import TimerHandle, TimerScheduler
from .status import Outcome
from .surfaces import ExecutionSurface

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunToken:
    """Identifies one run of one script; stale callbacks carry old generations."""

    identity: str
    generation: int
    marker: str


SettledCallback = Callable[[RunToken, Outcome, str], None]


class Watch:
    def __init__(
        self,
        inferencer: "CompletionInferencer",
        token: RunToken,
        surface: ExecutionSurface,
        on_settled: SettledCallback,
    ) -> None:
        self.token = token
        self.surface = surface
        self._inferencer = inferencer
        self._on_settled = on_settled
        self._started = inferencer.scheduler.now()
        self._timer: Optional[TimerHandle] = None
        self._lock = threading.Lock()
        self._done = False
        self._idle_seen = False

    @property
    def done(self) -> bool:
        return self._done

    def cancel(self) -> None:
        with self._lock:
            self._done = True
            timer, self._timer = self._timer, None
        if timer:
            timer.cancel()

    def _arm(self) -> None:
        with self._lock:
            if self._done:
                return
            self._timer = self._inferencer.scheduler.call_later(self._inferencer.poll_interval, self._poll)

    def _poll(self) -> None:
        if self._done:
            return
        try:
            verdict = self._check()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Completion check failed for %s; assuming success", self.token.identity)
            verdict = (Outcome.SUCCESS, "inference error")
        if verdict is None:
            self._arm()
            return
        self._settle(*verdict)

    def _check(self) -> Optional[tuple[Outcome, str]]:
        surface = self.surface
        hint = surface.exit_hint(self.token.marker)
        if hint is not None:
            return Outcome.from_exit_code(hint), f"exit code {hint}"
        if surface.closed:
            code = surface.exit_code() if surface.captures_exit_status else None
            # a negative code means the shell itself was killed by a signal
            if code is not None and code >= 0:
                return Outcome.from_exit_code(code), f"terminal closed with exit code {code}"
            return Outcome.SUCCESS, "terminal closed"
        elapsed = self._inferencer.scheduler.now() - self._started
        if elapsed >= self._inferencer.settle_delay:
            idle = surface.shell_idle() if surface.captures_exit_status else None
            if idle is None:
                return Outcome.SUCCESS, "settle delay elapsed"
            # two idle polls in a row give a late marker time to arrive
            if idle and self._idle_seen:
                return Outcome.SUCCESS, "shell idle without exit marker"
            self._idle_seen = idle
        if elapsed >= self._inferencer.max_watch_time:
            return Outcome.SUCCESS, "watch time limit reached"
        return None

    def _settle(self, outcome: Outcome, reason: str) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            self._timer = None
        logger.debug("Run %s#%d settled: %s (%s)", self.token.identity, self.token.generation, outcome.value, reason)
        try:
            self._on_settled(self.token, outcome, reason)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Settle callback failed for %s", self.token.identity)


class CompletionInferencer:
    def __init__(
        self,
        scheduler: TimerScheduler,
        *,
        poll_interval: float = 0.5,
        settle_delay: float = 2.0,
        max_watch_time: float = 30 * 60.0,
    ) -> None:
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.max_watch_time = max_watch_time

    def watch(self, token: RunToken, surface: ExecutionSurface, on_settled: SettledCallback) -> Watch:
        watch = Watch(self, token, surface, on_settled)
        watch._arm()
        return watch
