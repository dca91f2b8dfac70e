"""A PID file that keeps a second instance from starting."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

PID_FILE_NAME = "rmqmonitor.pid"
_FALLBACK_PREFIX = "/var/run/"
_PID_PATTERN = re.compile(r"[+-]?[0-9]+")


class PidFileError(OSError):
    """Raised when the PID file cannot be read, written or removed."""


class AlreadyRunningError(PidFileError):
    """Raised when the PID file names a process that is still alive."""

    def __init__(self, pid: int):
        super().__init__(f"another instance is already running (PID: {pid})")
        self.pid = pid


def is_process_running(pid: int) -> bool:
    """Return True if a signal can be delivered to the process."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def is_writable(path: str | os.PathLike[str]) -> bool:
    """Return True if a file can be created in the directory."""
    probe = os.path.join(path, ".rmqmonitor-test")
    try:
        fd = os.open(probe, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except OSError:
        return False
    os.close(fd)
    try:
        os.remove(probe)
    except OSError:
        pass
    return True


def default_path(config_path: str | os.PathLike[str]) -> str:
    """Choose the PID file location for a given configuration file."""
    config_path = os.fspath(config_path)
    if os.path.isabs(config_path):
        return os.path.join(os.path.dirname(config_path), PID_FILE_NAME)
    if is_writable("/var/run"):
        return "/var/run/" + PID_FILE_NAME
    return "/tmp/" + PID_FILE_NAME


class PidFile:
    """Holds the path of a PID file; create() claims it, remove() releases it."""

    def __init__(self, path: str | os.PathLike[str]):
        self.path = os.fspath(path)

    def _fall_back(self) -> bool:
        if self.path.startswith(_FALLBACK_PREFIX):
            self.path = "/tmp/" + os.path.basename(self.path)
            return True
        return False

    def _discard_stale(self) -> None:
        try:
            data = Path(self.path).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise PidFileError(f"failed to read existing PID file: {exc}") from exc
        text = data.strip()
        if _PID_PATTERN.fullmatch(text):
            pid = int(text)
            if is_process_running(pid):
                raise AlreadyRunningError(pid)
        try:
            os.remove(self.path)
        except OSError:
            pass

    def create(self) -> None:
        """Write the current PID, refusing if another live process holds the file."""
        if os.path.exists(self.path):
            self._discard_stale()
        try:
            os.makedirs(os.path.dirname(self.path) or ".", mode=0o755, exist_ok=True)
        except OSError as exc:
            if self._fall_back():
                return self.create()
            raise PidFileError(f"failed to create PID file directory: {exc}") from exc
        try:
            Path(self.path).write_text(f"{os.getpid()}\n", encoding="utf-8")
        except OSError as exc:
            if self._fall_back():
                return self.create()
            raise PidFileError(f"failed to write PID file: {exc}") from exc
        return None

    def remove(self) -> None:
        """Delete the PID file; a missing file is not an error."""
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise PidFileError(f"failed to remove PID file: {exc}") from exc

    def __enter__(self) -> "PidFile":
        self.create()
        return self

    def __exit__(self, *args: Any) -> None:
        self.remove()