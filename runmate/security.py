"""Dangerous-command screening for script runs.

Rules are evaluated in a fixed order: configured whitelist, configured
blacklist, built-in irreversible patterns, then heuristic patterns that
need the user's confirmation. The first match in a tier decides.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Tuple


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class SecurityVerdict:
    decision: Decision
    matched_rule: Optional[str] = None
    description: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW

    def to_payload(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "matched_rule": self.matched_rule,
            "description": self.description,
        }


ALLOW = SecurityVerdict(Decision.ALLOW)

IRREVERSIBLE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"rm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"rm\s+-rf\s+/\*"),
    re.compile(r"mkfs(?:\s|$)"),
    re.compile(r":\(\)\{:\|:&\};:"),
    re.compile(r"dd\s+if=/dev/(?:zero|random)"),
    re.compile(r"chmod\s+-R\s+777\s+/"),
    re.compile(r">\s*/dev/sda"),
)

SUSPICIOUS_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"curl\s+.*\|\s*(?:bash|sh)\b", re.IGNORECASE), "Downloading and executing remote script"),
    (re.compile(r"wget\s+.*\|\s*(?:bash|sh)\b", re.IGNORECASE), "Downloading and executing remote script"),
    (re.compile(r"eval\s+.*curl", re.IGNORECASE), "Evaluating downloaded content"),
    (re.compile(r"base64\s+-d.*\|\s*(?:bash|sh)\b", re.IGNORECASE), "Executing base64 decoded content"),
    (re.compile(r"python3?\s+-c\s+.*exec", re.IGNORECASE), "Executing dynamic Python code"),
    (re.compile(r"perl\s+-e\s+.*system", re.IGNORECASE), "Executing system commands via Perl"),
    (re.compile(r"sudo\s+rm\s+-rf"), "sudo rm -rf"),
    (re.compile(r">\s*/dev/null\s+2>&1\s+&\s*$", re.MULTILINE), "Background process with no output"),
    (re.compile(r"\bkillall\b"), "killall command"),
    (re.compile(r"\bpkill\s+-9"), "Force kill processes"),
    (re.compile(r"iptables\s+-F"), "Flush firewall rules"),
    (re.compile(r"\bshutdown\b"), "System shutdown"),
    (re.compile(r"\breboot\b"), "System reboot"),
)

SHELL_METACHARACTERS: Tuple[str, ...] = (";", "&&", "||", "|", "`", "$(")


class SecurityGate:
    """Pure evaluator over command text and caller-supplied rule lists.

    ``whitelist`` and ``blacklist`` may be plain iterables or zero-argument
    callables; callables are re-read on every evaluation so configuration
    reloads take effect without rebuilding the gate.
    """

    def __init__(
        self,
        whitelist: Iterable[str] | Callable[[], Iterable[str]] = (),
        blacklist: Iterable[str] | Callable[[], Iterable[str]] = (),
    ) -> None:
        self._whitelist = whitelist
        self._blacklist = blacklist

    @staticmethod
    def _entries(source: Iterable[str] | Callable[[], Iterable[str]]) -> List[str]:
        items = source() if callable(source) else source
        return [str(item) for item in items or () if item]

    def evaluate(self, command_text: str, parameters: str = "") -> SecurityVerdict:
        full_command = f"{command_text} {parameters}"

        for entry in self._entries(self._whitelist):
            if entry in full_command:
                return ALLOW

        for entry in self._entries(self._blacklist):
            if entry in full_command:
                return SecurityVerdict(Decision.DENY, matched_rule=entry, description="Blacklisted command")

        for pattern in IRREVERSIBLE_PATTERNS:
            match = pattern.search(full_command)
            if match:
                return SecurityVerdict(
                    Decision.DENY,
                    matched_rule=match.group(0).strip(),
                    description="Irreversible system damage",
                )

        for pattern, description in SUSPICIOUS_PATTERNS:
            match = pattern.search(full_command)
            if match:
                return SecurityVerdict(
                    Decision.CONFIRM,
                    matched_rule=match.group(0).strip(),
                    description=description,
                )

        return ALLOW


def flag_parameters(parameters: str) -> List[str]:
    """Return the shell metacharacters present in ``parameters``.

    Advisory only: the caller shows these to the user, the run is not
    blocked on them.
    """
    if not parameters:
        return []
    return [token for token in SHELL_METACHARACTERS if token in parameters]
