"""Error taxonomy for script runs.

Every failure the lifecycle can report is a ``RunMateError`` subclass. The
lifecycle catches these at its boundary and hands them back to callers as
``RunResult`` values, so none of them escape ``request()`` or ``stop()``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    ALREADY_RUNNING = "already_running"
    PERMISSION_GRANT_FAILED = "permission_grant_failed"
    SCRIPT_UNREADABLE = "script_unreadable"
    SECURITY_DENIED = "security_denied"
    SECURITY_DECLINED = "security_declined"
    SESSION_ACQUISITION_FAILED = "session_acquisition_failed"
    START_CANCELLED = "start_cancelled"
    NOT_RUNNING = "not_running"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


RETRYABLE_MESSAGE = "Could not start the script. Please try again."


class RunMateError(Exception):
    """Base class for errors reported back to callers as results."""

    code: ErrorCode
    severity: Severity = Severity.ERROR

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class AlreadyRunning(RunMateError):
    code = ErrorCode.ALREADY_RUNNING
    severity = Severity.INFO

    def __init__(self, identity: str) -> None:
        super().__init__(f"Script {identity} is already running")
        self.identity = identity


class NotRunning(RunMateError):
    code = ErrorCode.NOT_RUNNING
    severity = Severity.INFO

    def __init__(self, identity: str) -> None:
        super().__init__(f"Script {identity} is not running")
        self.identity = identity


class StartCancelled(RunMateError):
    """A stop arrived while the request was still being prepared."""

    code = ErrorCode.START_CANCELLED
    severity = Severity.INFO

    def __init__(self, identity: str) -> None:
        super().__init__(f"Run of {identity} was stopped before it started")
        self.identity = identity


class PermissionGrantFailed(RunMateError):
    code = ErrorCode.PERMISSION_GRANT_FAILED

    def __init__(self, identity: str, reason: str) -> None:
        super().__init__(RETRYABLE_MESSAGE, detail=f"Failed to make {identity} executable: {reason}")
        self.identity = identity


class ScriptUnreadable(RunMateError):
    code = ErrorCode.SCRIPT_UNREADABLE

    def __init__(self, identity: str, reason: str) -> None:
        super().__init__(RETRYABLE_MESSAGE, detail=f"Failed to read {identity}: {reason}")
        self.identity = identity


class SecurityDenied(RunMateError):
    code = ErrorCode.SECURITY_DENIED
    severity = Severity.WARNING

    def __init__(self, matched_rule: str) -> None:
        super().__init__(f'Blocked dangerous command: "{matched_rule}"')
        self.matched_rule = matched_rule


class SecurityDeclined(RunMateError):
    code = ErrorCode.SECURITY_DECLINED
    severity = Severity.WARNING

    def __init__(self, reason: str) -> None:
        super().__init__(f"Run cancelled: {reason}")
        self.reason = reason


class SessionAcquisitionFailed(RunMateError):
    code = ErrorCode.SESSION_ACQUISITION_FAILED

    def __init__(self, reason: str) -> None:
        super().__init__(RETRYABLE_MESSAGE, detail=reason)


class PoolExhausted(RuntimeError):
    """Raised by the terminal pool when its hard session cap is reached."""
