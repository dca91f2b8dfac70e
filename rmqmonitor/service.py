"""The monitoring loop: fetch queues on schedule, analyse them, log alerts."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from rmqmonitor.analyzer import Analyzer, StuckQueueAlert
from rmqmonitor.config import Config, format_duration
from rmqmonitor.logger import Logger
from rmqmonitor.rabbitmq import Client, QueueInfo, RabbitMQError, filter_queues


class _QueueSource(Protocol):
    def get_queues(self) -> list[QueueInfo]: ...


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class MonitorService:
    """Checks the configured queues periodically and logs the stuck ones."""

    def __init__(
        self,
        config: Config,
        logger: Logger,
        verbosity: int = 0,
        client: Optional[_QueueSource] = None,
    ):
        if client is None:
            try:
                client = Client(config.rabbitmq)
            except RabbitMQError as exc:
                raise RabbitMQError(f"failed to create RabbitMQ client: {exc}") from exc
        self.config = config
        self.logger = logger
        self.client = client
        self.verbosity = verbosity
        self.analyzer = Analyzer(config.monitor.detection)
        self.queue_intervals: dict[str, float] = {}
        self.last_check_times: dict[str, datetime] = {}

        if verbosity >= 2:
            logger.info(
                "Configured queue monitoring",
                {"total_queues": len(config.monitor.queues)},
            )

        for queue_cfg in config.monitor.queues:
            detection = queue_cfg.effective_detection(config.monitor.detection)
            self.analyzer.set_queue_config(queue_cfg.name, detection)
            interval = queue_cfg.effective_interval(config.monitor.interval)
            self.queue_intervals[queue_cfg.name] = interval
            fields = {
                "queue": queue_cfg.name,
                "check_interval": format_duration(interval),
                "threshold_checks": detection.threshold_checks,
                "min_message_count": detection.min_message_count,
                "min_consume_rate": detection.min_consume_rate,
            }
            if verbosity >= 2:
                logger.info("Queue configuration", fields)
            else:
                logger.debug("Configured queue monitoring", fields)

        self.start_time = datetime.now(timezone.utc)
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self.running = False

    def _ticker_interval(self) -> float:
        return min([self.config.monitor.interval, *self.queue_intervals.values()])

    def start(self) -> None:
        """Run checks until stop() is called; the first check runs at once."""
        with self._lock:
            if self.running:
                raise RuntimeError("monitor is already running")
            self.running = True

        self.logger.info("Monitor service started")
        interval = self._ticker_interval()
        self.logger.info(
            "Monitoring ticker interval", {"interval": format_duration(interval)}
        )

        next_tick = time.monotonic() + interval
        try:
            self.perform_check()
        except Exception as exc:  # noqa: BLE001 - a failed check must not end the loop
            self.logger.error("Initial check failed", exc)

        while True:
            timeout = max(next_tick - time.monotonic(), 0.0)
            if self._stop_event.wait(timeout):
                self.logger.info("Stopping monitor service")
                return
            now_mono = time.monotonic()
            while next_tick <= now_mono:
                next_tick += interval
            try:
                self.perform_check()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("Check failed", exc)

    def stop(self) -> None:
        """Ask a running start() loop to return."""
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()

    def _is_due(self, name: str, interval: float, now: datetime) -> tuple[bool, Optional[datetime]]:
        last_check = self.last_check_times.get(name)
        if last_check is None:
            return True, None
        step = timedelta(seconds=interval)
        intervals_since_start = int((now - self.start_time) / step)
        next_check = self.start_time + intervals_since_start * step
        return (now >= next_check and last_check < next_check), last_check

    def perform_check(self, now: Optional[datetime] = None) -> list[StuckQueueAlert]:
        """Check the queues that are due and return the alerts raised."""
        if now is None:
            now = datetime.now(timezone.utc)
        try:
            all_queues = self.client.get_queues()
        except RabbitMQError as exc:
            raise RabbitMQError(f"failed to fetch queues: {exc}") from exc

        self.logger.debug("Fetched queues", {"count": len(all_queues)})
        monitored = filter_queues(all_queues, self.config.monitor.queues)

        due: list[QueueInfo] = []
        for queue in monitored:
            interval = self.queue_intervals.get(queue.name, self.config.monitor.interval)
            should_check, last_check = self._is_due(queue.name, interval, now)
            if not should_check:
                continue
            due.append(queue)
            self.last_check_times[queue.name] = now
            if self.verbosity >= 3:
                since_last = (
                    "first check"
                    if last_check is None
                    else format_duration((now - last_check).total_seconds())
                )
                self.logger.info(
                    "Checking queue",
                    {
                        "queue": queue.name,
                        "messages_ready": queue.messages_ready,
                        "consumers": queue.consumers,
                        "consume_rate": queue.consume_rate,
                        "check_interval": format_duration(interval),
                        "since_last": since_last,
                    },
                )
            else:
                self.logger.debug(
                    "Checking queue",
                    {"queue": queue.name, "check_interval": format_duration(interval)},
                )

        if not due:
            self.logger.debug("No queues due for checking")
            return []

        self.logger.debug("Monitoring queues", {"count": len(due)})
        alerts = self.analyzer.analyze(due, now)
        for alert in alerts:
            self._log_stuck_queue(alert)

        if alerts:
            self.logger.info("Stuck queues detected", {"count": len(alerts)})
        elif self.verbosity >= 2:
            self.logger.info(
                "All checked queues healthy",
                {"queues": [q.name for q in due], "count": len(due)},
            )
        else:
            self.logger.debug("All queues healthy")
        return alerts

    def _log_stuck_queue(self, alert: StuckQueueAlert) -> None:
        fields: dict[str, Any] = {
            "queue": alert.queue_name,
            "messages_ready": alert.messages_ready,
            "consumers": alert.consumers,
            "consume_rate": alert.consume_rate,
            "ack_rate": alert.ack_rate,
            "consecutive_stuck": alert.consecutive_stuck,
            "reason": alert.reason,
            "timestamp": _rfc3339(alert.timestamp),
            "threshold_checks": alert.threshold_checks,
            "min_message_count": alert.min_message_count,
            "min_consume_rate": alert.min_consume_rate,
        }
        self.logger.warn("STUCK QUEUE DETECTED", fields)