"""Configuration loading, defaults and validation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar

import yaml

T = TypeVar("T")

DEFAULT_PASSWORD = "password"

_NS_PER_SECOND = 1_000_000_000
_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": _NS_PER_SECOND,
    "m": 60 * _NS_PER_SECOND,
    "h": 3600 * _NS_PER_SECOND,
}
_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?([a-zµμ]+)")
_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False", ""}


class ConfigError(ValueError):
    """Raised when the configuration cannot be read or is invalid."""


def _parse_duration_ns(text: str) -> int:
    rest = text
    sign = 1
    if rest and rest[0] in "+-":
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return 0
    if not rest:
        raise ConfigError(f"invalid duration {text!r}")
    total = 0
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None:
            raise ConfigError(f"invalid duration {text!r}")
        whole, frac, unit = match.groups()
        if not whole and not frac:
            raise ConfigError(f"invalid duration {text!r}")
        if unit not in _UNITS:
            raise ConfigError(f"unknown unit {unit!r} in duration {text!r}")
        scale = _UNITS[unit]
        total += int(whole or "0") * scale
        if frac:
            total += int(frac) * scale // 10 ** len(frac)
        pos = match.end()
    return sign * total


def parse_duration(value: Any) -> float:
    """Parse a duration such as ``"1m30s"`` into seconds.

    Bare numbers are taken as nanoseconds.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return value / _NS_PER_SECOND
    if isinstance(value, str):
        return _parse_duration_ns(value) / _NS_PER_SECOND
    raise ConfigError(f"invalid duration {value!r}")


def _with_fraction(value: int, divisor: int) -> str:
    whole, frac = divmod(value, divisor)
    if not frac:
        return str(whole)
    width = len(str(divisor)) - 1
    digits = str(frac).rjust(width, "0").rstrip("0")
    return f"{whole}.{digits}"


def format_duration(seconds: float) -> str:
    """Render seconds in the compact form used in log output, e.g. ``1m0s``."""
    ns = round(seconds * _NS_PER_SECOND)
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < _NS_PER_SECOND:
        if ns < 1_000:
            return f"{sign}{ns}ns"
        if ns < 1_000_000:
            return f"{sign}{_with_fraction(ns, 1_000)}µs"
        return f"{sign}{_with_fraction(ns, 1_000_000)}ms"
    hours, rem = divmod(ns, 3600 * _NS_PER_SECOND)
    minutes, rem = divmod(rem, 60 * _NS_PER_SECOND)
    secs = _with_fraction(rem, _NS_PER_SECOND)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


@dataclass
class RabbitMQConfig:
    """Connection details for the management API."""

    host: str = "localhost"
    port: int = 15672
    username: str = "guest"
    password: str = DEFAULT_PASSWORD
    vhost: str = "/"
    use_tls: bool = False

    def management_url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass
class DetectionConfig:
    """Parameters of stuck-queue detection."""

    threshold_checks: int = 3
    min_message_count: int = 10
    min_consume_rate: float = 0.1


@dataclass
class QueueConfig:
    """A queue to monitor, with optional overrides of the global settings."""

    name: str = ""
    check_interval: Optional[float] = None
    threshold_checks: Optional[int] = None
    min_message_count: Optional[int] = None
    min_consume_rate: Optional[float] = None

    def effective_detection(self, defaults: DetectionConfig) -> DetectionConfig:
        overrides = {
            key: value
            for key, value in (
                ("threshold_checks", self.threshold_checks),
                ("min_message_count", self.min_message_count),
                ("min_consume_rate", self.min_consume_rate),
            )
            if value is not None
        }
        return replace(defaults, **overrides)

    def effective_interval(self, default: float) -> float:
        return default if self.check_interval is None else self.check_interval


@dataclass
class MonitorConfig:
    """Monitoring behaviour."""

    interval: float = 60.0
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    queues: list[QueueConfig] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Where and how alerts are logged."""

    file_path: str = "/var/log/rabbitmq-monitor/stuck-queues.log"
    level: str = "info"
    format: str = "json"


@dataclass
class Config:
    """The whole application configuration."""

    rabbitmq: RabbitMQConfig = field(default_factory=RabbitMQConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _lower_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def _to_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ValueError(f"'{key}' expected an integer, got {value!r}")


def _to_float(value: Any, key: str) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise ValueError(f"'{key}' expected a number, got {value!r}")


def _to_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
    raise ValueError(f"'{key}' expected a boolean, got {value!r}")


def _to_str(value: Any, key: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(f"'{key}' expected a string, got {value!r}")


def _to_duration(value: Any, key: str) -> float:
    try:
        return parse_duration(value)
    except ConfigError as exc:
        raise ValueError(f"'{key}': {exc}") from exc


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"'{name}' expected a map, got {value!r}")
    return value


def _get(
    section: Mapping[str, Any],
    key: str,
    default: T,
    convert: Callable[[Any, str], T],
) -> T:
    value = section.get(key)
    return default if value is None else convert(value, key)


def _optional(
    section: Mapping[str, Any], key: str, convert: Callable[[Any, str], T]
) -> Optional[T]:
    value = section.get(key)
    return None if value is None else convert(value, key)


def _build(raw: Mapping[str, Any]) -> Config:
    defaults = Config()
    rmq = _section(raw, "rabbitmq")
    rabbitmq = RabbitMQConfig(
        host=_get(rmq, "host", defaults.rabbitmq.host, _to_str),
        port=_get(rmq, "port", defaults.rabbitmq.port, _to_int),
        username=_get(rmq, "username", defaults.rabbitmq.username, _to_str),
        password=_get(rmq, "password", defaults.rabbitmq.password, _to_str),
        vhost=_get(rmq, "vhost", defaults.rabbitmq.vhost, _to_str),
        use_tls=_get(rmq, "use_tls", defaults.rabbitmq.use_tls, _to_bool),
    )

    mon = _section(raw, "monitor")
    det = _section(mon, "detection")
    detection = DetectionConfig(
        threshold_checks=_get(det, "threshold_checks", defaults.monitor.detection.threshold_checks, _to_int),
        min_message_count=_get(det, "min_message_count", defaults.monitor.detection.min_message_count, _to_int),
        min_consume_rate=_get(det, "min_consume_rate", defaults.monitor.detection.min_consume_rate, _to_float),
    )
    raw_queues = mon.get("queues") or []
    if not isinstance(raw_queues, list):
        raise ValueError(f"'queues' expected a list, got {raw_queues!r}")
    queues = []
    for entry in raw_queues:
        if not isinstance(entry, Mapping):
            raise ValueError(f"queue entry expected a map, got {entry!r}")
        queues.append(
            QueueConfig(
                name=_get(entry, "name", "", _to_str),
                check_interval=_optional(entry, "check_interval", _to_duration),
                threshold_checks=_optional(entry, "threshold_checks", _to_int),
                min_message_count=_optional(entry, "min_message_count", _to_int),
                min_consume_rate=_optional(entry, "min_consume_rate", _to_float),
            )
        )
    monitor = MonitorConfig(
        interval=_get(mon, "interval", defaults.monitor.interval, _to_duration),
        detection=detection,
        queues=queues,
    )

    log = _section(raw, "logging")
    logging_cfg = LoggingConfig(
        file_path=_get(log, "file_path", defaults.logging.file_path, _to_str),
        level=_get(log, "level", defaults.logging.level, _to_str),
        format=_get(log, "format", defaults.logging.format, _to_str),
    )
    return Config(rabbitmq=rabbitmq, monitor=monitor, logging=logging_cfg)


def _validate(cfg: Config) -> None:
    if not cfg.rabbitmq.host:
        raise ConfigError("invalid configuration: rabbitmq.host is required")
    if not 1 <= cfg.rabbitmq.port <= 65535:
        raise ConfigError("invalid configuration: rabbitmq.port must be between 1 and 65535")
    if cfg.monitor.interval <= 0:
        raise ConfigError("invalid configuration: monitor.interval must be positive")
    if cfg.monitor.detection.threshold_checks < 1:
        raise ConfigError(
            "invalid configuration: monitor.detection.threshold_checks must be at least 1"
        )
    if not cfg.logging.file_path:
        raise ConfigError("invalid configuration: logging.file_path is required")


def load(path: str | Path) -> Config:
    """Read a YAML configuration file, apply defaults and validate it."""
    try:
        text = Path(path).read_text(encoding="utf-8")
        raw = yaml.safe_load(text)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigError("failed to read config file: top level must be a mapping")
    try:
        cfg = _build(_lower_keys(raw))
    except ValueError as exc:
        raise ConfigError(f"failed to unmarshal config: {exc}") from exc
    _validate(cfg)
    return cfg