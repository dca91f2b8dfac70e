"""Detection of queues whose messages are not being processed."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from rmqmonitor.config import DetectionConfig
from rmqmonitor.rabbitmq import QueueInfo

ALERT_COOLDOWN = timedelta(minutes=5)


@dataclass(frozen=True)
class QueueSnapshot:
    """Queue metrics at one point in time."""

    timestamp: datetime
    messages_ready: int
    consume_rate: float
    ack_rate: float
    consumers: int


@dataclass
class QueueState:
    """What is known about a queue across checks."""

    queue_name: str
    history: list[QueueSnapshot] = field(default_factory=list)
    consecutive_stuck: int = 0
    last_alert_time: Optional[datetime] = None


@dataclass(frozen=True)
class StuckQueueAlert:
    """A report that a queue appears stuck, with the parameters that decided it."""

    queue_name: str
    timestamp: datetime
    messages_ready: int
    consumers: int
    consume_rate: float
    ack_rate: float
    consecutive_stuck: int
    reason: str
    threshold_checks: int
    min_message_count: int
    min_consume_rate: float


def _is_stagnant(history: list[QueueSnapshot], cfg: DetectionConfig) -> bool:
    if len(history) < 2:
        return False
    recent = history
    if len(recent) > cfg.threshold_checks:
        recent = recent[len(recent) - cfg.threshold_checks:]
    if not recent:
        return False
    first = recent[0].messages_ready
    last = recent[-1].messages_ready
    if first <= 0 and last <= 0:
        return False
    if last >= first:
        return True
    # Progress must average at least one message per check.
    return first - last < len(recent) - 1


def _stuck_reason(history: list[QueueSnapshot], cfg: DetectionConfig) -> Optional[str]:
    if not history or len(history) < cfg.threshold_checks:
        return None
    latest = history[-1]
    if latest.messages_ready <= cfg.min_message_count:
        return None
    has_activity = (
        cfg.min_consume_rate < 0
        or latest.consume_rate >= cfg.min_consume_rate
        or latest.ack_rate >= cfg.min_consume_rate
    )
    if not has_activity:
        if not _is_stagnant(history, cfg):
            return None
        if latest.consumers == 0:
            return "no active consumers and messages not being processed"
        return "consume rate below threshold and messages not decreasing"
    if _is_stagnant(history, cfg):
        return "messages not decreasing despite consumer activity"
    return None


class Analyzer:
    """Keeps per-queue history and raises alerts for queues that look stuck."""

    def __init__(self, default_config: DetectionConfig):
        self.default_config = default_config
        self._queue_configs: dict[str, DetectionConfig] = {}
        self._states: dict[str, QueueState] = {}
        self._lock = threading.Lock()

    def set_queue_config(self, queue_name: str, config: DetectionConfig) -> None:
        """Use a specific detection config for one queue."""
        with self._lock:
            self._queue_configs[queue_name] = replace(config)

    def _config_for(self, queue_name: str) -> DetectionConfig:
        return self._queue_configs.get(queue_name, self.default_config)

    def analyze(
        self, queues: Iterable[QueueInfo], now: Optional[datetime] = None
    ) -> list[StuckQueueAlert]:
        """Record a snapshot of each queue and return alerts for stuck ones."""
        if now is None:
            now = datetime.now(timezone.utc)
        alerts: list[StuckQueueAlert] = []
        with self._lock:
            for queue in queues:
                cfg = self._config_for(queue.name)
                state = self._states.setdefault(queue.name, QueueState(queue.name))
                state.history.append(
                    QueueSnapshot(
                        timestamp=now,
                        messages_ready=queue.messages_ready,
                        consume_rate=queue.consume_rate,
                        ack_rate=queue.ack_rate,
                        consumers=queue.consumers,
                    )
                )
                max_history = max(cfg.threshold_checks + 1, 1)
                if len(state.history) > max_history:
                    del state.history[: len(state.history) - max_history]

                reason = _stuck_reason(state.history, cfg)
                if reason is None:
                    state.consecutive_stuck = 0
                    continue
                state.consecutive_stuck += 1
                if state.consecutive_stuck < cfg.threshold_checks:
                    continue
                if (
                    state.last_alert_time is not None
                    and now - state.last_alert_time < ALERT_COOLDOWN
                ):
                    continue
                alerts.append(
                    StuckQueueAlert(
                        queue_name=queue.name,
                        timestamp=now,
                        messages_ready=queue.messages_ready,
                        consumers=queue.consumers,
                        consume_rate=queue.consume_rate,
                        ack_rate=queue.ack_rate,
                        consecutive_stuck=state.consecutive_stuck,
                        reason=reason,
                        threshold_checks=cfg.threshold_checks,
                        min_message_count=cfg.min_message_count,
                        min_consume_rate=cfg.min_consume_rate,
                    )
                )
                state.last_alert_time = now
        return alerts

    def reset(self) -> None:
        """Forget all tracked queue state."""
        with self._lock:
            self._states.clear()

    def get_state(self, queue_name: str) -> Optional[QueueState]:
        """Return the tracked state of a queue, or None if it was never seen."""
        with self._lock:
            return self._states.get(queue_name)