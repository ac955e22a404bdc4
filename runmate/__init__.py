"""Launch, track and stop workspace shell scripts in managed terminals."""

from runmate.config import ReusePolicy, RunMateConfig, load_config
from runmate.errors import ErrorCode
from runmate.lifecycle import ExecutionLifecycle, RunResult, StatusEvent, StopMode
from runmate.pool import CapacityAction, TerminalPool
from runmate.security import Decision, SecurityGate, SecurityVerdict
from runmate.status import ExecutionStatus, Outcome

__all__ = [
    "CapacityAction",
    "Decision",
    "ErrorCode",
    "ExecutionLifecycle",
    "ExecutionStatus",
    "Outcome",
    "ReusePolicy",
    "RunMateConfig",
    "RunResult",
    "SecurityGate",
    "SecurityVerdict",
    "StatusEvent",
    "StopMode",
    "TerminalPool",
    "load_config",
]

__version__ = "0.1.0"
