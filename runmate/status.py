from __future__ import annotations

from enum import Enum


class ExecutionStatus(str, Enum):
    """Status of a script as seen by callers."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class Outcome(str, Enum):
    """How a run settled."""

    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def from_exit_code(cls, code: int | None) -> "Outcome":
        return cls.SUCCESS if not code else cls.FAILED
