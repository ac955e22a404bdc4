"""Script run lifecycle.

``ExecutionLifecycle`` maps each script (keyed by absolute path) to at most
one live run. A run is screened, given a terminal session from the pool,
started, and then watched until completion is inferred; it shows its
settled status for a short grace period and then reverts to idle.

All state transitions happen under one lock and status events are delivered
while it is held, so observers see events for a script in transition order.
Every record carries a generation number; timer and inference callbacks for
an older generation are discarded.
"""

from __future__ import annotations

import itertools
import logging
import os
import shlex
import stat
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from queue import Full, Queue
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import RunMateConfig
from .errors import (
    AlreadyRunning,
    ErrorCode,
    NotRunning,
    PermissionGrantFailed,
    PoolExhausted,
    RunMateError,
    ScriptUnreadable,
    SecurityDeclined,
    SecurityDenied,
    SessionAcquisitionFailed,
    Severity,
    StartCancelled,
)
from .inference import CompletionInferencer, RunToken, Watch
from .pool import CapacityCallback, Session, TerminalPool
from .scheduler import TimerHandle, TimerScheduler
from .security import Decision, SecurityGate, SecurityVerdict, flag_parameters
from .status import ExecutionStatus, Outcome
from .surfaces import SurfaceFactory, pty_surface_factory

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StopMode(str, Enum):
    GRACEFUL = "graceful"
    FORCE = "force"


_VISIBLE_STATUS = {
    RunState.RUNNING: ExecutionStatus.RUNNING,
    RunState.SUCCESS: ExecutionStatus.SUCCESS,
    RunState.FAILED: ExecutionStatus.FAILED,
}


@dataclass
class RunRecord:
    identity: str
    generation: int
    parameters: str = ""
    state: RunState = RunState.STARTING
    session_handle: Optional[str] = None
    marker: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    last_exit_hint: Optional[str] = None
    cancelled: bool = False
    watch: Optional[Watch] = field(default=None, repr=False)
    grace_timer: Optional[TimerHandle] = field(default=None, repr=False)

    @property
    def status(self) -> ExecutionStatus:
        return _VISIBLE_STATUS.get(self.state, ExecutionStatus.IDLE)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "script": self.identity,
            "name": os.path.basename(self.identity),
            "generation": self.generation,
            "status": self.status.value,
            "session": self.session_handle,
            "parameters": self.parameters,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "last_exit_hint": self.last_exit_hint,
        }


@dataclass(frozen=True)
class StatusEvent:
    identity: str
    status: ExecutionStatus
    generation: int
    at: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "script": self.identity,
            "status": self.status.value,
            "generation": self.generation,
            "at": self.at,
        }


@dataclass
class RunResult:
    ok: bool
    identity: str
    code: Optional[ErrorCode] = None
    severity: Severity = Severity.INFO
    message: Optional[str] = None
    detail: Optional[str] = None
    verdict: Optional[SecurityVerdict] = None
    generation: Optional[int] = None
    session_handle: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def failure(
        cls,
        identity: str,
        error: RunMateError,
        *,
        verdict: Optional[SecurityVerdict] = None,
    ) -> "RunResult":
        return cls(
            ok=False,
            identity=identity,
            code=error.code,
            severity=error.severity,
            message=error.message,
            detail=error.detail,
            verdict=verdict,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "script": self.identity,
            "code": self.code.value if self.code else None,
            "severity": self.severity.value,
            "message": self.message,
            "detail": self.detail,
            "verdict": self.verdict.to_payload() if self.verdict else None,
            "generation": self.generation,
            "session": self.session_handle,
            "warnings": list(self.warnings),
        }


ConfirmCallback = Callable[[SecurityVerdict], Optional[bool]]
StatusCallback = Callable[[StatusEvent], None]
Listener = Tuple["Queue[Dict[str, Any]]", Optional[Set[str]]]


def normalize_identity(script_path: str) -> str:
    return os.path.abspath(os.path.expanduser(str(script_path)))


class ExecutionLifecycle:
    def __init__(
        self,
        config: RunMateConfig,
        *,
        scheduler: Optional[TimerScheduler] = None,
        gate: Optional[SecurityGate] = None,
        pool: Optional[TerminalPool] = None,
        inferencer: Optional[CompletionInferencer] = None,
        surface_factory: Optional[SurfaceFactory] = None,
        on_capacity_exceeded: Optional[CapacityCallback] = None,
    ) -> None:
        self.config = config
        self.scheduler = scheduler or TimerScheduler()
        self.gate = gate or SecurityGate(
            lambda: self.config.dangerous_commands_whitelist,
            lambda: self.config.dangerous_commands_blacklist,
        )
        self.pool = pool or TerminalPool(
            surface_factory or pty_surface_factory(stop_timeout=config.stop_timeout),
            ceiling=config.max_terminal_history,
            max_sessions=config.max_sessions,
            on_capacity_exceeded=on_capacity_exceeded,
        )
        self.inferencer = inferencer or CompletionInferencer(
            self.scheduler,
            poll_interval=config.poll_interval,
            settle_delay=config.settle_delay,
            max_watch_time=config.max_watch_time,
        )
        self._runs: Dict[str, RunRecord] = {}
        self._starting: Dict[str, RunRecord] = {}
        self._generations = itertools.count(1)
        self._lock = threading.RLock()
        self._subscribers: List[Tuple[StatusCallback, Optional[str]]] = []
        self._listeners: List[Listener] = []
        self.pool.on_sessions_closed = self._on_sessions_closed

    # ------------------------------------------------------------------
    # Public API

    def request(
        self,
        script_path: str,
        parameters: str = "",
        *,
        confirm: Optional[ConfirmCallback] = None,
    ) -> RunResult:
        """Start ``script_path`` unless it is already running.

        ``confirm`` is asked (outside the lifecycle lock) whenever a run
        needs the user's approval; anything but ``True`` declines.
        """
        identity = normalize_identity(script_path)
        parameters = parameters or ""
        try:
            record = self._reserve(identity, parameters)
        except AlreadyRunning as exc:
            logger.info(exc.message)
            return RunResult.failure(identity, exc)

        verdict: Optional[SecurityVerdict] = None
        try:
            self._ensure_executable(identity)
            body = self._read_script(identity)
            verdict = self.gate.evaluate(body, parameters)
            self._authorize(identity, parameters, verdict, confirm)
            with self._lock:
                session = self._start(record)
        except RunMateError as exc:
            self._abandon(record)
            logger.log(_LOG_LEVELS[exc.severity], "Run of %s rejected: %s", identity, exc.detail or exc.message)
            return RunResult.failure(identity, exc, verdict=verdict)

        logger.info("Executing %s (run %d) in session %s", identity, record.generation, session.handle)
        return RunResult(
            ok=True,
            identity=identity,
            message=f"Executing: {os.path.basename(identity)}",
            verdict=verdict,
            generation=record.generation,
            session_handle=session.handle,
            warnings=flag_parameters(parameters),
        )

    def stop(self, script_path: str, mode: StopMode = StopMode.GRACEFUL) -> RunResult:
        """Cancel a run; returns immediately, the terminal is torn down behind it."""
        identity = normalize_identity(script_path)
        mode = StopMode(mode)
        session: Optional[Session] = None
        with self._lock:
            pending = self._starting.pop(identity, None)
            if pending:
                pending.cancelled = True
                logger.info("Stop requested for %s before it started", identity)
                return RunResult(ok=True, identity=identity, message=f"Stopped: {os.path.basename(identity)}")
            record = self._runs.get(identity)
            if not record or record.state is not RunState.RUNNING:
                exc = NotRunning(identity)
                logger.info(exc.message)
                return RunResult.failure(identity, exc)
            if record.watch:
                record.watch.cancel()
                record.watch = None
            del self._runs[identity]
            record.ended_at = time.time()
            if record.session_handle:
                session = self.pool.detach(record.session_handle)
            self._emit(identity, ExecutionStatus.IDLE, record.generation)
        if session:
            self.pool.close_session(session, force=mode is StopMode.FORCE)
        logger.info("Stopped %s (run %d, %s)", identity, record.generation, mode.value)
        return RunResult(
            ok=True,
            identity=identity,
            message=f"Stopped: {os.path.basename(identity)}",
            generation=record.generation,
            session_handle=record.session_handle,
        )

    def get_status(self, script_path: str) -> ExecutionStatus:
        identity = normalize_identity(script_path)
        with self._lock:
            record = self._runs.get(identity)
            return record.status if record else ExecutionStatus.IDLE

    def is_running(self, script_path: str) -> bool:
        identity = normalize_identity(script_path)
        with self._lock:
            record = self._runs.get(identity)
            return identity in self._starting or bool(record and record.state is RunState.RUNNING)

    def get_pool_counts(self) -> Dict[str, int]:
        return self.pool.counts()

    def list_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [record.to_payload() for record in self._runs.values()]

    def running_scripts(self) -> List[str]:
        with self._lock:
            return [identity for identity, record in self._runs.items() if record.state is RunState.RUNNING]

    def subscribe(self, callback: StatusCallback, identity: Optional[str] = None) -> Callable[[], None]:
        """Register ``callback`` for status changes; returns an unsubscribe function."""
        entry = (callback, normalize_identity(identity) if identity else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def add_listener(self, queue: "Queue[Dict[str, Any]]", identities: Optional[Iterable[str]] = None) -> Listener:
        script_filter = {normalize_identity(item) for item in identities} if identities else None
        listener: Listener = (queue, script_filter)
        with self._lock:
            self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def apply_config(self, config: RunMateConfig) -> None:
        """Copy new settings into the live config and the pool and inferencer limits."""
        with self._lock:
            if config is not self.config:
                self.config.update_from(config)
            self.pool.ceiling = self.config.max_terminal_history
            self.pool.max_sessions = self.config.max_sessions
            self.inferencer.poll_interval = self.config.poll_interval
            self.inferencer.settle_delay = self.config.settle_delay
            self.inferencer.max_watch_time = self.config.max_watch_time

    def dispose(self) -> None:
        with self._lock:
            for record in list(self._runs.values()) + list(self._starting.values()):
                record.cancelled = True
                if record.watch:
                    record.watch.cancel()
                if record.grace_timer:
                    record.grace_timer.cancel()
            self._runs.clear()
            self._starting.clear()
        self.pool.close_all()
        self.scheduler.shutdown()

    # ------------------------------------------------------------------
    # Request steps

    def _reserve(self, identity: str, parameters: str) -> RunRecord:
        with self._lock:
            current = self._runs.get(identity)
            if identity in self._starting or (current and current.state is RunState.RUNNING):
                raise AlreadyRunning(identity)
            record = RunRecord(identity=identity, generation=next(self._generations), parameters=parameters)
            self._starting[identity] = record
            return record

    def _abandon(self, record: RunRecord) -> None:
        with self._lock:
            if self._starting.get(record.identity) is record:
                del self._starting[record.identity]

    def _ensure_executable(self, identity: str) -> None:
        if os.access(identity, os.X_OK):
            return
        try:
            mode = os.stat(identity).st_mode
            os.chmod(identity, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as exc:
            raise PermissionGrantFailed(identity, exc.strerror or str(exc)) from exc
        logger.info("Made script executable: %s", identity)

    def _read_script(self, identity: str) -> str:
        try:
            return Path(identity).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ScriptUnreadable(identity, exc.strerror or str(exc)) from exc

    def _authorize(
        self,
        identity: str,
        parameters: str,
        verdict: SecurityVerdict,
        confirm: Optional[ConfirmCallback],
    ) -> None:
        if verdict.decision is Decision.DENY:
            raise SecurityDenied(verdict.matched_rule or "")
        prompt: Optional[SecurityVerdict] = None
        if verdict.decision is Decision.CONFIRM:
            prompt = verdict
        elif self.config.confirm_before_execute:
            description = f"Execute script: {identity}"
            if parameters:
                description += f" with parameters: {parameters}"
            prompt = SecurityVerdict(Decision.CONFIRM, description=description)
        if prompt is None:
            return
        answer: Optional[bool] = None
        if confirm is not None:
            try:
                answer = confirm(prompt)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Confirmation prompt failed for %s", identity)
        if answer is not True:
            reason = prompt.description or prompt.matched_rule or "not confirmed"
            if prompt.matched_rule:
                reason = f'{reason} ("{prompt.matched_rule}")'
            raise SecurityDeclined(reason)

    def _start(self, record: RunRecord) -> Session:
        """Acquire a session and start the command. Caller holds the lock."""
        identity = record.identity
        if record.cancelled or self._starting.get(identity) is not record:
            raise StartCancelled(identity)

        cwd = self.config.resolve_working_directory(identity)
        try:
            session = self.pool.acquire(
                self.config.reuse_policy,
                cwd=cwd,
                env={"RUNMATE_WORKSPACE": self.config.workspace_root},
                name=os.path.basename(identity),
            )
        except (PoolExhausted, OSError, ValueError, subprocess.SubprocessError) as exc:
            raise SessionAcquisitionFailed(str(exc)) from exc

        previous = session.bound_identity
        if previous and previous != identity:
            self._release_binding(previous, session.handle)
        command = shlex.quote(identity)
        if record.parameters:
            command = f"{command} {record.parameters}"
        if session.cwd != cwd:
            command = f"cd -- {shlex.quote(cwd)} && {command}"
        try:
            self.pool.bind(session.handle, identity, cwd=cwd)
            session.surface.start(
                command,
                record.marker,
                exit_after=not self.config.keep_session_open_after_run,
            )
        except (OSError, KeyError, ValueError) as exc:
            self.pool.destroy(session.handle, force=True)
            raise SessionAcquisitionFailed(f"Failed to start command in session {session.handle}: {exc}") from exc

        old = self._runs.get(identity)
        if old:
            self._retire(old, keep_handle=session.handle)
        del self._starting[identity]
        record.state = RunState.RUNNING
        record.session_handle = session.handle
        record.started_at = time.time()
        self._runs[identity] = record
        record.watch = self.inferencer.watch(
            RunToken(identity, record.generation, record.marker),
            session.surface,
            self._on_inferred_settled,
        )
        self._emit(identity, ExecutionStatus.RUNNING, record.generation)
        return session

    def _release_binding(self, previous: str, handle: str) -> None:
        """Take ``handle`` away from ``previous`` so it can be rebound."""
        old = self._runs.get(previous)
        if old and old.session_handle == handle:
            old.session_handle = None
            if old.state is RunState.RUNNING:
                # the run lost its terminal to another script
                logger.info("Session %s reassigned; dropping run of %s", handle, previous)
                if old.watch:
                    old.watch.cancel()
                    old.watch = None
                del self._runs[previous]
                self._emit(previous, ExecutionStatus.IDLE, old.generation)
        self.pool.release(handle)

    def _on_sessions_closed(self, handles: List[str]) -> None:
        closed = set(handles)
        with self._lock:
            for identity, record in list(self._runs.items()):
                if record.session_handle not in closed:
                    continue
                record.session_handle = None
                if record.state is not RunState.RUNNING:
                    continue
                logger.info("Session for %s was closed; dropping run %d", identity, record.generation)
                if record.watch:
                    record.watch.cancel()
                    record.watch = None
                del self._runs[identity]
                record.ended_at = time.time()
                self._emit(identity, ExecutionStatus.IDLE, record.generation)

    def _retire(self, record: RunRecord, *, keep_handle: Optional[str] = None) -> None:
        if record.watch:
            record.watch.cancel()
            record.watch = None
        if record.grace_timer:
            record.grace_timer.cancel()
            record.grace_timer = None
        handle = record.session_handle
        if handle and handle != keep_handle:
            session = self.pool.get(handle)
            if session and session.bound_identity == record.identity:
                self.pool.release(handle)

    # ------------------------------------------------------------------
    # Settlement

    def _on_inferred_settled(self, token: RunToken, outcome: Outcome, reason: str) -> None:
        with self._lock:
            record = self._runs.get(token.identity)
            if not record or record.generation != token.generation or record.state is not RunState.RUNNING:
                logger.debug("Discarding stale settle for %s#%d", token.identity, token.generation)
                return
            record.state = RunState.SUCCESS if outcome is Outcome.SUCCESS else RunState.FAILED
            record.ended_at = time.time()
            record.last_exit_hint = reason
            record.watch = None
            if record.session_handle:
                self.pool.mark_settled(record.session_handle, outcome)
            logger.info("Script %s finished: %s (%s)", token.identity, outcome.value, reason)
            self._emit(token.identity, record.status, record.generation)
            record.grace_timer = self.scheduler.call_later(
                self.config.settled_grace_period,
                lambda: self._expire(token.identity, token.generation),
            )

    def _expire(self, identity: str, generation: int) -> None:
        with self._lock:
            record = self._runs.get(identity)
            if not record or record.generation != generation or record.state is RunState.RUNNING:
                return
            del self._runs[identity]
            record.grace_timer = None
            self._retire(record)
            self._emit(identity, ExecutionStatus.IDLE, generation)

    # ------------------------------------------------------------------
    # Notification

    def _emit(self, identity: str, status: ExecutionStatus, generation: int) -> None:
        event = StatusEvent(identity=identity, status=status, generation=generation, at=time.time())
        for callback, script_filter in list(self._subscribers):
            if script_filter and script_filter != identity:
                continue
            try:
                callback(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Status subscriber failed for %s", identity)
        payload = event.to_payload()
        for queue, script_filter in list(self._listeners):
            if script_filter is not None and identity not in script_filter:
                continue
            try:
                queue.put_nowait(payload)
            except Full:
                logger.warning("Dropping status event for a slow listener")


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}
