"""Pool of reusable terminal sessions.

The pool owns every live session and decides, under a reuse policy, whether
a new run gets a fresh terminal or an existing one. Sessions whose terminal
has gone away are only dropped on the next scan of the pool.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import ReusePolicy
from .errors import PoolExhausted
from .status import Outcome
from .surfaces import ExecutionSurface, SurfaceFactory

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


SETTLED_STATUSES = {SessionStatus.COMPLETED, SessionStatus.FAILED}


class CapacityAction(str, Enum):
    IGNORE = "ignore"
    CLOSE_SETTLED = "close_settled"
    CLOSE_ALL = "close_all"


CapacityCallback = Callable[[int, int], Optional[CapacityAction]]
ClosedCallback = Callable[[List[str]], None]


@dataclass
class Session:
    handle: str
    surface: ExecutionSurface
    cwd: str
    created_at: float = field(default_factory=time.time)
    status: SessionStatus = SessionStatus.IDLE
    bound_identity: Optional[str] = None
    run_count: int = 0
    started_at: Optional[float] = None
    ended_at: Optional[float] = None

    @property
    def alive(self) -> bool:
        return not self.surface.closed

    def to_payload(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "cwd": self.cwd,
            "status": self.status.value,
            "script": self.bound_identity,
            "alive": self.alive,
            "run_count": self.run_count,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


class TerminalPool:
    def __init__(
        self,
        surface_factory: SurfaceFactory,
        *,
        ceiling: int = 10,
        max_sessions: Optional[int] = None,
        on_capacity_exceeded: Optional[CapacityCallback] = None,
        on_sessions_closed: Optional[ClosedCallback] = None,
    ) -> None:
        self._factory = surface_factory
        self.ceiling = ceiling
        self.max_sessions = max_sessions
        self.on_capacity_exceeded = on_capacity_exceeded
        self.on_sessions_closed = on_sessions_closed
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Scanning

    def _prune(self) -> None:
        for handle, session in list(self._sessions.items()):
            if session.surface.closed:
                logger.debug("Pruning closed session %s", handle)
                del self._sessions[handle]

    def _find_reusable(self, policy: ReusePolicy) -> Optional[Session]:
        candidates = list(self._sessions.values())
        for session in candidates:
            if session.status is not SessionStatus.RUNNING:
                return session
        if policy is ReusePolicy.ALWAYS and candidates:
            return candidates[0]
        return None

    # ------------------------------------------------------------------
    # Allocation

    def acquire(
        self,
        policy: ReusePolicy,
        *,
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        name: str = "",
    ) -> Session:
        """Return a session for a new run; the caller binds it.

        ``cwd`` and ``env`` only apply when a new session is created.
        """
        policy = ReusePolicy(policy)
        with self._lock:
            self._prune()
            if policy is not ReusePolicy.NEVER:
                session = self._find_reusable(policy)
                if session:
                    logger.info("Reusing session %s (%s, %s policy)", session.handle, session.status.value, policy.value)
                    return session
            total = len(self._sessions)
        if self.ceiling and total + 1 > self.ceiling:
            self._handle_capacity(total + 1)
        with self._lock:
            if self.max_sessions and len(self._sessions) >= self.max_sessions:
                raise PoolExhausted(f"Maximum session count reached ({self.max_sessions})")
            handle = f"term_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
            surface = self._factory(cwd, dict(env or {}), handle)
            session = Session(handle=handle, surface=surface, cwd=cwd)
            self._sessions[handle] = session
            logger.info("Created session %s in %s", handle, cwd)
            return session

    def _handle_capacity(self, total: int) -> None:
        logger.warning("Session count %d exceeds limit %d", total, self.ceiling)
        if not self.on_capacity_exceeded:
            return
        try:
            action = self.on_capacity_exceeded(total, self.ceiling)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Capacity callback failed")
            return
        if action is None:
            return
        action = CapacityAction(action)
        if action is CapacityAction.CLOSE_SETTLED:
            self.close_settled()
        elif action is CapacityAction.CLOSE_ALL:
            self.close_all()

    def bind(self, handle: str, identity: str, *, cwd: Optional[str] = None) -> Session:
        with self._lock:
            session = self._sessions.get(handle)
            if not session:
                raise KeyError(handle)
            if session.bound_identity and session.bound_identity != identity:
                raise ValueError(f"Session {handle} is still bound to {session.bound_identity}")
            session.bound_identity = identity
            if cwd:
                session.cwd = cwd
            session.status = SessionStatus.RUNNING
            session.run_count += 1
            session.started_at = time.time()
            session.ended_at = None
            return session

    def release(self, handle: str) -> None:
        with self._lock:
            session = self._sessions.get(handle)
            if not session:
                return
            session.bound_identity = None
            if session.status is SessionStatus.RUNNING:
                session.status = SessionStatus.IDLE

    def mark_settled(self, handle: str, outcome: Outcome) -> None:
        with self._lock:
            session = self._sessions.get(handle)
            if not session:
                return
            session.status = SessionStatus.COMPLETED if outcome is Outcome.SUCCESS else SessionStatus.FAILED
            session.ended_at = time.time()

    # ------------------------------------------------------------------
    # Teardown

    def detach(self, handle: str) -> Optional[Session]:
        """Remove a session from the pool without closing its terminal."""
        with self._lock:
            return self._sessions.pop(handle, None)

    def destroy(self, handle: str, *, force: bool = False) -> bool:
        session = self.detach(handle)
        if not session:
            return False
        self.close_session(session, force=force)
        return True

    def close_session(self, session: Session, *, force: bool = False) -> None:
        if not force:
            session.surface.interrupt()
        session.surface.close(force=force)
        logger.info("Closed session %s%s", session.handle, " (forced)" if force else "")

    def close_all(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._close_quietly(session)
        if sessions:
            logger.info("Closed %d session(s)", len(sessions))
            self._notify_closed(sessions)
        return len(sessions)

    def close_settled(self) -> int:
        with self._lock:
            settled = [s for s in self._sessions.values() if s.status in SETTLED_STATUSES]
            for session in settled:
                del self._sessions[session.handle]
        for session in settled:
            self._close_quietly(session)
        if settled:
            logger.info("Closed %d settled session(s)", len(settled))
            self._notify_closed(settled)
        return len(settled)

    def _close_quietly(self, session: Session) -> None:
        try:
            session.surface.close()
        except OSError as exc:
            logger.warning("Failed to close session %s: %s", session.handle, exc)

    def _notify_closed(self, sessions: List[Session]) -> None:
        if not self.on_sessions_closed:
            return
        try:
            self.on_sessions_closed([session.handle for session in sessions])
        except Exception:  # pylint: disable=broad-except
            logger.exception("Session-closed callback failed")

    # ------------------------------------------------------------------
    # Inspection

    def get(self, handle: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(handle)

    def list_sessions(self) -> List[Session]:
        with self._lock:
            self._prune()
            return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            self._prune()
            statuses = [s.status for s in self._sessions.values()]
        return {
            "total": len(statuses),
            "running": statuses.count(SessionStatus.RUNNING),
            "completed": statuses.count(SessionStatus.COMPLETED),
            "failed": statuses.count(SessionStatus.FAILED),
        }

    def describe(self, session: Session) -> Dict[str, Any]:
        payload = session.to_payload()
        payload["stats"] = session.surface.process_stats()
        return payload
