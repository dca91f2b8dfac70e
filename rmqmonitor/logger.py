"""Structured logging to a file, mirrored to standard output."""

from __future__ import annotations

import json
import math
import sys
import threading
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

from rmqmonitor.config import LoggingConfig


class Level(IntEnum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3

    @property
    def label(self) -> str:
        return self.name.lower()


_LEVELS = {"debug": Level.DEBUG, "info": Level.INFO, "warn": Level.WARN, "error": Level.ERROR}


def parse_level(name: str) -> Level:
    """Map a level name to a Level; unknown names mean INFO."""
    return _LEVELS.get(name, Level.INFO)


def _normalise(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalise(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    if isinstance(value, float) and math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _dumps(value: Any) -> str:
    text = json.dumps(
        value, separators=(",", ":"), ensure_ascii=False, allow_nan=False, default=str
    )
    return (
        text.replace("&", "\\u0026")
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


class Logger:
    """Writes log entries as JSON lines or text to a file and to a stream."""

    def __init__(self, config: LoggingConfig, stream: Optional[TextIO] = None):
        path = Path(config.file_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OSError(f"failed to create log directory: {exc}") from exc
        try:
            self._file: Optional[TextIO] = open(path, "a", encoding="utf-8")
        except OSError as exc:
            raise OSError(f"failed to open log file: {exc}") from exc
        self.level = parse_level(config.level)
        self.format = config.format
        self._stream = stream
        self._lock = threading.Lock()

    def _render(self, entry: dict[str, Any]) -> str:
        if self.format == "json":
            try:
                return _dumps(entry) + "\n"
            except ValueError:
                return "\n"
        output = f"[{entry['timestamp']}] {entry['level']}: {entry['message']}"
        if "fields" in entry:
            try:
                output += " " + _dumps(entry["fields"])
            except ValueError:
                output += " "
        if "error" in entry:
            output += f" error={entry['error']}"
        return output + "\n"

    def _log(
        self,
        level: Level,
        message: str,
        error: Optional[BaseException],
        fields: Optional[Mapping[str, Any]],
    ) -> None:
        if level < self.level:
            return
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": level.label,
            "message": message,
        }
        if fields:
            entry["fields"] = _normalise(fields)
        if error is not None and str(error):
            entry["error"] = str(error)
        output = self._render(entry)
        with self._lock:
            if self._file is not None:
                self._file.write(output)
                self._file.flush()
            stream = self._stream if self._stream is not None else sys.stdout
            stream.write(output)

    def debug(self, message: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._log(Level.DEBUG, message, None, fields)

    def info(self, message: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._log(Level.INFO, message, None, fields)

    def warn(self, message: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._log(Level.WARN, message, None, fields)

    def error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._log(Level.ERROR, message, error, fields)

    def close(self) -> None:
        """Flush and close the log file; later entries go to the stream only."""
        with self._lock:
            if self._file is not None:
                self._file.flush()
                self._file.close()
                self._file = None

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()