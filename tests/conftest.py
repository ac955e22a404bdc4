import heapq
import itertools
import os
from typing import Dict, List, Optional

import pytest

from runmate.config import RunMateConfig
from runmate.lifecycle import ExecutionLifecycle
from runmate.scheduler import TimerHandle
from runmate.surfaces import ExecutionSurface


class ManualScheduler:
    """Virtual-clock scheduler; timers fire only when the test advances time."""

    def __init__(self) -> None:
        self._now = 0.0
        self._heap = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay, callback) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            self._now = when
            if not handle.cancelled:
                handle.callback()
        self._now = target

    def pending(self) -> int:
        return sum(1 for _, _, handle in self._heap if not handle.cancelled)

    def shutdown(self) -> None:
        for _, _, handle in self._heap:
            handle.cancel()
        self._heap.clear()


class FakeSurface(ExecutionSurface):
    def __init__(self, cwd: str, env: Dict[str, str], name: str, *, captures_exit_status: bool = False) -> None:
        self.cwd = cwd
        self.env = env
        self.name = name
        self.pid = None
        self.captures_exit_status = captures_exit_status
        self.commands: List[tuple] = []
        self.exit_codes: Dict[str, int] = {}
        self.returncode: Optional[int] = None
        self.interrupted = 0
        self.close_calls: List[bool] = []
        self.raise_on_check = False
        self.idle: Optional[bool] = False
        self._closed = False

    def start(self, command, token, *, exit_after=False):
        if self._closed:
            raise OSError("terminal is closed")
        self.commands.append((command, token, exit_after))

    @property
    def closed(self) -> bool:
        if self.raise_on_check:
            raise RuntimeError("surface check failed")
        return self._closed

    def exit_hint(self, token):
        return self.exit_codes.get(token)

    def exit_code(self):
        return self.returncode if self._closed else None

    def shell_idle(self):
        return self.idle

    def interrupt(self):
        self.interrupted += 1

    def close(self, *, force=False):
        self.close_calls.append(force)
        self._closed = True

    # test helpers

    @property
    def last_command(self) -> str:
        return self.commands[-1][0]

    def finish(self, code: int) -> None:
        self.exit_codes[self.commands[-1][1]] = code

    def user_closes(self, returncode: Optional[int] = None) -> None:
        self._closed = True
        self.returncode = returncode


class FakeSurfaceFactory:
    def __init__(self, *, captures_exit_status: bool = False) -> None:
        self.captures_exit_status = captures_exit_status
        self.created: List[FakeSurface] = []
        self.fail = False

    def __call__(self, cwd, env, name):
        if self.fail:
            raise OSError("pty allocation failed")
        surface = FakeSurface(cwd, env, name, captures_exit_status=self.captures_exit_status)
        self.created.append(surface)
        return surface


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def surfaces():
    return FakeSurfaceFactory()


@pytest.fixture
def config(tmp_path):
    return RunMateConfig(
        workspace_root=str(tmp_path),
        dangerous_commands_blacklist=[],
        confirm_before_execute=False,
        settle_delay=2.0,
        poll_interval=0.5,
        settled_grace_period=3.0,
        max_watch_time=60.0,
    )


@pytest.fixture
def lifecycle(config, scheduler, surfaces):
    lc = ExecutionLifecycle(config, scheduler=scheduler, surface_factory=surfaces)
    yield lc
    lc.dispose()


@pytest.fixture
def make_script(tmp_path):
    def _make(name: str, body: str = "echo hello\n", *, mode: int = 0o755) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        os.chmod(path, mode)
        return str(path)

    return _make
