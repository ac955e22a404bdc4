"""Execution surfaces: the terminals scripts actually run in.

A surface is an interactive shell the pool hands out to runs. The manager
never supervises the script process itself; it only types a command line
into the shell and then watches the surface from the outside.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import pty
import queue
import re
import select
import shutil
import signal
import struct
import subprocess
import termios
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
MARKER_TAIL_CHARS = 512
EXIT_MARKER_RE = re.compile(r"Exit code: (-?\d+) __runmate_exit_([0-9a-f]+)__")


def default_shell_command() -> List[str]:
    # Prefer bash with login+interactive; fallback to sh -i
    if os.path.basename(os.environ.get("SHELL") or "").endswith("bash") or shutil.which("bash"):
        return ["bash", "-l", "-i"]
    return ["sh", "-i"]


def _take_controlling_terminal() -> None:
    # runs in the child after setsid; job control and ^C need the pty as its terminal
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def build_command_line(command: str, token: str, *, exit_after: bool) -> str:
    """Wrap ``command`` so the surface can tell when it finished.

    Kept-open sessions print a marker carrying the exit status; otherwise the
    shell exits with the script's status and the surface closes.
    """
    if exit_after:
        return f"{command}; exit $?"
    return (
        f"{command}; __runmate_rc=$?; "
        f"printf '\\nExit code: %d __runmate_exit_%s__\\n' \"$__runmate_rc\" {token}"
    )


class ExecutionSurface:
    """Interface the terminal pool and completion inference rely on."""

    #: True when the surface can report a real exit status for a run.
    captures_exit_status = False

    cwd: str
    env: Dict[str, str]
    name: str
    pid: Optional[int] = None

    def start(self, command: str, token: str, *, exit_after: bool = False) -> None:
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    def exit_hint(self, token: str) -> Optional[int]:
        return None

    def exit_code(self) -> Optional[int]:
        return None

    def shell_idle(self) -> Optional[bool]:
        """True when the shell is back at its prompt, None when unknown."""
        return None

    def interrupt(self) -> None:
        raise NotImplementedError

    def close(self, *, force: bool = False) -> None:
        raise NotImplementedError

    def process_stats(self) -> Dict[str, Any]:
        return {"alive": not self.closed}


SurfaceFactory = Callable[[str, Dict[str, str], str], ExecutionSurface]


class PtyShellSurface(ExecutionSurface):
    """Interactive shell attached to a pseudo-terminal."""

    captures_exit_status = True

    def __init__(
        self,
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        name: str = "",
        *,
        shell: Optional[List[str]] = None,
        stop_timeout: float = 5.0,
    ) -> None:
        self.cwd = cwd
        self.name = name
        self.shell = list(shell or default_shell_command())
        self.stop_timeout = stop_timeout
        self.env = os.environ.copy()
        self.env.update(env or {})
        self.env.setdefault("TERM", "xterm-256color")
        self.env["RUNMATE_SESSION"] = name
        self.created_at = time.time()
        self._lock = threading.Lock()
        # guards the master fd against reuse after close
        self._fd_lock = threading.Lock()
        self._subscribers: List["queue.Queue[str]"] = []
        self._exit_codes: Dict[str, int] = {}
        self._tail = ""
        self._stop = threading.Event()
        self._fd_closed = False
        self._master_fd, slave_fd = pty.openpty()
        try:
            self._proc = subprocess.Popen(
                self.shell,
                cwd=self.cwd,
                env=self.env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_take_controlling_terminal,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError):
            os.close(self._master_fd)
            raise
        finally:
            os.close(slave_fd)
        self.pid = self._proc.pid
        self._reader = threading.Thread(target=self._read_loop, name=f"pty-{name or self.pid}", daemon=True)
        self._reader.start()
        logger.debug("Spawned %s (pid %s) in %s", " ".join(self.shell), self.pid, self.cwd)

    # ------------------------------------------------------------------
    # Reader

    def _read_loop(self) -> None:
        fd = self._master_fd
        while not self._stop.is_set():
            try:
                rlist, _, _ = select.select([fd], [], [], 0.5)
                if not rlist:
                    continue
                data = os.read(fd, READ_CHUNK)
                if not data:
                    break
            except OSError:
                # EIO once the shell side of the pty is gone
                break
            text = data.decode("utf-8", errors="replace")
            self._scan_markers(text)
            with self._lock:
                subscribers = list(self._subscribers)
            for q in subscribers:
                try:
                    q.put_nowait(text)
                except queue.Full:
                    pass
        self._close_fd()

    def _scan_markers(self, text: str) -> None:
        window = self._tail + text
        for match in EXIT_MARKER_RE.finditer(window):
            code, token = int(match.group(1)), match.group(2)
            with self._lock:
                self._exit_codes.setdefault(token, code)
        self._tail = window[-MARKER_TAIL_CHARS:]

    def _close_fd(self) -> None:
        with self._fd_lock:
            if self._fd_closed:
                return
            self._fd_closed = True
            try:
                os.close(self._master_fd)
            except OSError:
                pass

    # ------------------------------------------------------------------
    # Surface interface

    def start(self, command: str, token: str, *, exit_after: bool = False) -> None:
        self.write(build_command_line(command, token, exit_after=exit_after) + "\n")

    @property
    def closed(self) -> bool:
        return self._proc.poll() is not None

    def exit_hint(self, token: str) -> Optional[int]:
        with self._lock:
            return self._exit_codes.get(token)

    def exit_code(self) -> Optional[int]:
        return self._proc.poll()

    def shell_idle(self) -> Optional[bool]:
        # the shell leads its own process group; a running job takes over the foreground
        with self._fd_lock:
            if self._fd_closed:
                return None
            try:
                return os.tcgetpgrp(self._master_fd) == self.pid
            except OSError:
                return None

    def interrupt(self) -> None:
        try:
            self.write(b"\x03")
        except OSError as exc:
            logger.debug("Interrupt of %s failed: %s", self.name, exc)

    def close(self, *, force: bool = False) -> None:
        if self.closed:
            self._shutdown_reader()
            return
        if force:
            self._kill_tree()
            self._shutdown_reader()
            return
        # interactive shells ignore SIGTERM; SIGHUP also reaches their jobs
        self._signal_group(signal.SIGHUP)
        threading.Thread(target=self._reap_or_kill, daemon=True).start()

    def _reap_or_kill(self) -> None:
        try:
            self._proc.wait(timeout=max(0.0, self.stop_timeout))
        except subprocess.TimeoutExpired:
            logger.info("Session %s ignored hangup; killing", self.name)
            self._kill_tree()
        self._shutdown_reader()

    def _kill_tree(self) -> None:
        try:
            parent = psutil.Process(self.pid)
            victims = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            victims = []
        for proc in victims:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        self._signal_group(signal.SIGKILL)
        try:
            self._proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            logger.warning("Session %s (pid %s) did not exit after SIGKILL", self.name, self.pid)

    def _signal_group(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            return
        except OSError as exc:
            if exc.errno != errno.ESRCH:
                logger.warning("Failed to signal group %s: %s", self.pid, exc)

    def _shutdown_reader(self) -> None:
        self._stop.set()
        if self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)
        self._close_fd()

    # ------------------------------------------------------------------
    # Terminal display helpers

    def write(self, data: bytes | str) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        with self._fd_lock:
            if self._fd_closed:
                raise OSError(errno.EBADF, "session terminal is closed")
            os.write(self._master_fd, payload)

    def resize(self, cols: int, rows: int) -> None:
        winsz = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
        with self._fd_lock:
            if self._fd_closed:
                return
            try:
                fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, winsz)
            except OSError as exc:
                logger.debug("Resize of %s failed: %s", self.name, exc)

    def subscribe_output(self) -> "queue.Queue[str]":
        q: "queue.Queue[str]" = queue.Queue(maxsize=1024)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe_output(self, q: "queue.Queue[str]") -> None:
        with self._lock:
            try:
                self._subscribers.remove(q)
            except ValueError:
                pass

    def process_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"alive": not self.closed, "pid": self.pid, "uptime": None}
        if not stats["alive"]:
            stats["exit_code"] = self.exit_code()
            return stats
        stats["uptime"] = max(0.0, time.time() - self.created_at)
        try:
            proc = psutil.Process(self.pid)
            with proc.oneshot():
                stats["cpu_percent"] = proc.cpu_percent(interval=0.0)
                stats["memory_rss"] = proc.memory_info().rss
                stats["num_threads"] = proc.num_threads()
            stats["children"] = len(proc.children(recursive=True))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        return stats


def pty_surface_factory(*, shell: Optional[List[str]] = None, stop_timeout: float = 5.0) -> SurfaceFactory:
    def factory(cwd: str, env: Dict[str, str], name: str) -> ExecutionSurface:
        return PtyShellSurface(cwd, env, name, shell=shell, stop_timeout=stop_timeout)

    return factory
