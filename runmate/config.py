"""Workspace configuration.

Settings live in ``run-mate.json`` at the workspace root (camelCase keys);
``RUNMATE_CONFIG`` points at a different file. A few ``RUNMATE_*``
environment variables override file values.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "run-mate.json"

DEFAULT_IGNORE_DIRECTORIES = ["node_modules", ".git", "dist", "out", "build"]
DEFAULT_BLACKLIST = [
    "rm -rf /",
    "rm -rf /*",
    "mkfs",
    ":(){:|:&};:",
    "dd if=/dev/zero",
    "chmod -R 777 /",
    "sudo rm -rf",
]


class ReusePolicy(str, Enum):
    NEVER = "never"
    ALWAYS = "always"
    SMART = "smart"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class RunMateConfig:
    workspace_root: str = field(default_factory=os.getcwd)
    ignore_directories: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_DIRECTORIES))
    default_working_directory: str = "./"
    custom_sort: List[str] = field(default_factory=list)
    dangerous_commands_whitelist: List[str] = field(default_factory=list)
    dangerous_commands_blacklist: List[str] = field(default_factory=lambda: list(DEFAULT_BLACKLIST))
    confirm_before_execute: bool = True
    remember_last_parameters: bool = True
    max_terminal_history: int = 10
    keep_session_open_after_run: bool = True
    reuse_policy: ReusePolicy = ReusePolicy.SMART
    settle_delay: float = 2.0
    max_watch_time: float = 30 * 60.0
    poll_interval: float = 0.5
    settled_grace_period: float = 3.0
    max_sessions: Optional[int] = None
    stop_timeout: float = 5.0

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], *, workspace_root: Optional[str] = None) -> "RunMateConfig":
        """Build a config from a mapping with camelCase or snake_case keys."""
        config = cls()
        if workspace_root:
            config.workspace_root = str(workspace_root)
        for item in fields(cls):
            if item.name == "workspace_root":
                continue
            for key in (_camel(item.name), item.name):
                if key in data and data[key] is not None:
                    setattr(config, item.name, data[key])
                    break
        config._coerce()
        return config

    def _coerce(self) -> None:
        self.reuse_policy = ReusePolicy(str(getattr(self.reuse_policy, "value", self.reuse_policy)).lower())
        for name in ("ignore_directories", "custom_sort", "dangerous_commands_whitelist", "dangerous_commands_blacklist"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = [value]
            setattr(self, name, [str(item) for item in value])
        for name in ("settle_delay", "max_watch_time", "poll_interval", "settled_grace_period", "stop_timeout"):
            setattr(self, name, max(0.0, float(getattr(self, name))))
        self.max_terminal_history = int(self.max_terminal_history)
        if self.max_sessions is not None:
            self.max_sessions = int(self.max_sessions) or None
        for name in ("confirm_before_execute", "remember_last_parameters", "keep_session_open_after_run"):
            setattr(self, name, bool(getattr(self, name)))

    def update_from(self, other: "RunMateConfig") -> None:
        """Copy every setting from ``other`` so holders of this object see it."""
        for item in fields(self):
            setattr(self, item.name, getattr(other, item.name))

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reuse_policy"] = self.reuse_policy.value
        return {_camel(key): value for key, value in data.items()}

    def resolve_working_directory(self, script_path: str) -> str:
        """Configured directory (relative to the workspace) or the script's own."""
        configured = (self.default_working_directory or "").strip()
        if configured and configured not in {".", "./"}:
            return str((Path(self.workspace_root) / os.path.expanduser(configured)).resolve())
        return str(Path(script_path).resolve().parent)


def config_path(workspace_root: Optional[str] = None) -> Path:
    override = os.getenv("RUNMATE_CONFIG")
    if override:
        return Path(os.path.expanduser(override))
    return Path(workspace_root or os.getenv("RUNMATE_WORKSPACE") or os.getcwd()) / CONFIG_FILENAME


def config_stamp(workspace_root: Optional[str] = None) -> Optional[Tuple[int, int]]:
    """Modification stamp of the config file, or None when there is none."""
    try:
        info = config_path(workspace_root).stat()
    except OSError:
        return None
    return info.st_mtime_ns, info.st_size


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        if path.is_file():
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring %s: top-level value is not an object", path)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load configuration from %s: %s", path, exc)
    return {}


def load_config(workspace_root: Optional[str] = None) -> RunMateConfig:
    root = str(Path(workspace_root or os.getenv("RUNMATE_WORKSPACE") or os.getcwd()).resolve())
    data = _read_file(config_path(root))
    env_policy = os.getenv("RUNMATE_REUSE_POLICY")
    if env_policy:
        data["reusePolicy"] = env_policy
    env_max = os.getenv("RUNMATE_MAX_SESSIONS")
    if env_max:
        data["maxSessions"] = env_max
    try:
        return RunMateConfig.from_mapping(data, workspace_root=root)
    except (TypeError, ValueError) as exc:
        logger.error("Invalid configuration, using defaults: %s", exc)
        return RunMateConfig(workspace_root=root)


def save_config(updates: Dict[str, Any], workspace_root: Optional[str] = None) -> RunMateConfig:
    """Merge ``updates`` into the config file and return the resulting config."""
    root = str(Path(workspace_root or os.getenv("RUNMATE_WORKSPACE") or os.getcwd()).resolve())
    path = config_path(root)
    current = _read_file(path)
    current.update(updates)
    merged = RunMateConfig.from_mapping(current, workspace_root=root)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(current, fh, indent=2, ensure_ascii=False)
    tmp_path.replace(path)
    return merged
