"""Workspace script discovery.

Finds ``*.sh`` files under the workspace root and groups them by directory
relative to it (``root`` for the top level).
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ROOT_GROUP = "root"
SCRIPT_SUFFIX = ".sh"
PARAMETER_PATTERNS = (
    re.compile(r"\$[1-9][0-9]*"),
    re.compile(r"\$[@*#]"),
    re.compile(r"\$\{[1-9][0-9]*\}"),
    re.compile(r"\$\{[@*#]\}"),
)


@dataclass
class ScriptFile:
    name: str
    path: str
    directory: str
    relative_path: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "directory": self.directory,
            "relative_path": self.relative_path,
        }


def has_parameters(script_path: str) -> bool:
    """True when the script reads positional parameters ($1, ${2}, $@, ...)."""
    try:
        content = Path(script_path).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Failed to check parameters for %s: %s", script_path, exc)
        return False
    return any(pattern.search(content) for pattern in PARAMETER_PATTERNS)


class ScriptScanner:
    def __init__(
        self,
        root: str,
        *,
        ignore_directories: Iterable[str] = (),
        custom_sort: Iterable[str] = (),
    ) -> None:
        self.root = Path(root).resolve()
        self.ignore_directories = set(ignore_directories)
        self.custom_sort = list(custom_sort)

    def scan(self) -> Dict[str, List[ScriptFile]]:
        groups: Dict[str, List[ScriptFile]] = {}
        if not self.root.is_dir():
            return groups
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in self.ignore_directories)
            for filename in filenames:
                if not filename.endswith(SCRIPT_SUFFIX):
                    continue
                full_path = Path(dirpath) / filename
                relative = full_path.relative_to(self.root)
                group = ROOT_GROUP if relative.parent == Path(".") else relative.parent.as_posix()
                groups.setdefault(group, []).append(
                    ScriptFile(
                        name=filename,
                        path=str(full_path),
                        directory=str(full_path.parent),
                        relative_path=relative.as_posix(),
                    )
                )
        for scripts in groups.values():
            scripts.sort(key=self._sort_key)
        return groups

    def all_scripts(self) -> List[ScriptFile]:
        return [script for scripts in self.scan().values() for script in scripts]

    def _sort_key(self, script: ScriptFile) -> tuple:
        try:
            return (0, self.custom_sort.index(script.name), "")
        except ValueError:
            return (1, 0, script.name.lower())

    def find(self, script_path: str) -> Optional[ScriptFile]:
        target = str(Path(script_path).resolve())
        for script in self.all_scripts():
            if script.path == target:
                return script
        return None
