import io
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
import responses

from rmqmonitor.config import (
    Config,
    DetectionConfig,
    LoggingConfig,
    MonitorConfig,
    QueueConfig,
)
from rmqmonitor.logger import Logger
from rmqmonitor.rabbitmq import QueueInfo, RabbitMQError
from rmqmonitor.service import MonitorService

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClient:
    def __init__(self, queues=None, error=None):
        self.queues = list(queues or [])
        self.error = error
        self.calls = 0
        self.called = threading.Event()

    def get_queues(self):
        self.calls += 1
        self.called.set()
        if self.error is not None:
            raise self.error
        return list(self.queues)


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def logger(tmp_path, stream):
    log = Logger(
        LoggingConfig(file_path=str(tmp_path / "monitor.log"), level="debug", format="json"),
        stream,
    )
    yield log
    log.close()


def entries(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


def messages(stream):
    return [entry["message"] for entry in entries(stream)]


def make_service(config, logger, client, verbosity=0):
    service = MonitorService(config, logger, verbosity, client)
    service.start_time = T0
    return service


def test_first_check_covers_all_queues_when_none_configured(logger):
    client = FakeClient([QueueInfo("a", messages_ready=1), QueueInfo("b", messages_ready=2)])
    service = make_service(Config(), logger, client)
    assert service.perform_check(T0) == []
    assert len(service.analyzer.get_state("a").history) == 1
    assert len(service.analyzer.get_state("b").history) == 1
    assert service.last_check_times == {"a": T0, "b": T0}


def test_configured_queues_filter_the_rest(logger):
    config = Config(monitor=MonitorConfig(queues=[QueueConfig(name="a")]))
    client = FakeClient([QueueInfo("a"), QueueInfo("b")])
    service = make_service(config, logger, client)
    service.perform_check(T0)
    assert service.analyzer.get_state("a") is not None
    assert service.analyzer.get_state("b") is None


def test_per_queue_intervals_are_synchronised_to_start(logger):
    config = Config(
        monitor=MonitorConfig(
            interval=60.0,
            queues=[QueueConfig(name="a"), QueueConfig(name="b", check_interval=120.0)],
        )
    )
    client = FakeClient([QueueInfo("a"), QueueInfo("b")])
    service = make_service(config, logger, client)
    assert service.queue_intervals == {"a": 60.0, "b": 120.0}

    service.perform_check(T0)
    service.perform_check(T0 + timedelta(seconds=60))
    assert len(service.analyzer.get_state("a").history) == 2
    assert len(service.analyzer.get_state("b").history) == 1

    service.perform_check(T0 + timedelta(seconds=120))
    assert len(service.analyzer.get_state("a").history) == 3
    assert len(service.analyzer.get_state("b").history) == 2


def test_queue_not_rechecked_within_same_interval(logger):
    client = FakeClient([QueueInfo("a")])
    service = make_service(Config(), logger, client)
    service.perform_check(T0)
    service.perform_check(T0 + timedelta(seconds=30))
    assert len(service.analyzer.get_state("a").history) == 1
    assert "No queues due for checking" in messages(logger._stream)


def test_stuck_queue_is_alerted_and_logged(logger, stream):
    config = Config(
        monitor=MonitorConfig(
            detection=DetectionConfig(threshold_checks=1, min_message_count=10, min_consume_rate=0.1)
        )
    )
    client = FakeClient([QueueInfo("jobs", messages_ready=100, consumers=0)])
    service = make_service(config, logger, client)
    assert service.perform_check(T0) == []
    alerts = service.perform_check(T0 + timedelta(seconds=60))
    assert [a.queue_name for a in alerts] == ["jobs"]
    assert alerts[0].reason == "no active consumers and messages not being processed"

    warnings = [e for e in entries(stream) if e["message"] == "STUCK QUEUE DETECTED"]
    assert len(warnings) == 1
    assert warnings[0]["level"] == "warn"
    assert warnings[0]["fields"]["queue"] == "jobs"
    assert warnings[0]["fields"]["messages_ready"] == 100
    assert warnings[0]["fields"]["timestamp"] == "2024-01-01T12:01:00Z"
    detected = [e for e in entries(stream) if e["message"] == "Stuck queues detected"]
    assert detected[0]["fields"]["count"] == 1


def test_alerts_also_written_to_log_file(tmp_path, stream):
    path = tmp_path / "alerts.log"
    log = Logger(LoggingConfig(file_path=str(path), level="warn", format="json"), stream)
    config = Config(monitor=MonitorConfig(detection=DetectionConfig(threshold_checks=1)))
    service = make_service(config, log, FakeClient([QueueInfo("q", messages_ready=50)]))
    service.perform_check(T0)
    service.perform_check(T0 + timedelta(seconds=60))
    log.close()
    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["message"] for line in lines] == ["STUCK QUEUE DETECTED"]


def test_healthy_queues_listed_at_verbosity_two(logger, stream):
    client = FakeClient([QueueInfo("a"), QueueInfo("b")])
    service = make_service(Config(), logger, client, verbosity=2)
    assert service.perform_check(T0) == []
    assert service.last_check_times == {"a": T0, "b": T0}
    healthy = [e for e in entries(stream) if e["message"] == "All checked queues healthy"]
    assert healthy[0]["fields"] == {"count": 2, "queues": ["a", "b"]}


def test_verbosity_three_logs_each_check(logger, stream):
    client = FakeClient([QueueInfo("a", messages_ready=7, consumers=2)])
    service = make_service(Config(), logger, client, verbosity=3)
    assert service.perform_check(T0) == []
    assert service.last_check_times == {"a": T0}
    checks = [e for e in entries(stream) if e["message"] == "Checking queue"]
    assert checks[0]["level"] == "info"
    assert checks[0]["fields"]["since_last"] == "first check"
    assert checks[0]["fields"]["messages_ready"] == 7
    assert checks[0]["fields"]["check_interval"] == "1m0s"


def test_fetch_failure_raises(logger):
    client = FakeClient(error=RabbitMQError("boom"))
    service = make_service(Config(), logger, client)
    with pytest.raises(RabbitMQError, match="failed to fetch queues: boom"):
        service.perform_check(T0)


def test_start_runs_initial_check_and_stops(logger, stream):
    config = Config(monitor=MonitorConfig(queues=[QueueConfig(name="a", check_interval=0.5)]))
    client = FakeClient([QueueInfo("a")])
    service = MonitorService(config, logger, 0, client)
    thread = threading.Thread(target=service.start)
    thread.start()
    assert client.called.wait(5)
    with pytest.raises(RuntimeError, match="already running"):
        service.start()
    service.stop()
    thread.join(5)
    assert not thread.is_alive()
    logged = entries(stream)
    ticker = [e for e in logged if e["message"] == "Monitoring ticker interval"]
    assert ticker[0]["fields"]["interval"] == "500ms"
    assert logged[-1]["message"] == "Stopping monitor service"


def test_failed_initial_check_is_logged_not_raised(logger, stream):
    client = FakeClient(error=RabbitMQError("down"))
    service = MonitorService(Config(), logger, 0, client)
    thread = threading.Thread(target=service.start)
    thread.start()
    assert client.called.wait(5)
    service.stop()
    thread.join(5)
    assert not thread.is_alive()
    errors = [e for e in entries(stream) if e["message"] == "Initial check failed"]
    assert errors[0]["error"] == "failed to fetch queues: down"


def test_stop_without_start_does_nothing(logger):
    service = make_service(Config(), logger, FakeClient())
    service.stop()
    assert service.running is False


def test_unreachable_broker_raises_on_construction(logger):
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost:15672/api/overview", status=500)
        with pytest.raises(RabbitMQError, match="failed to create RabbitMQ client"):
            MonitorService(Config(), logger, 0)


def test_queue_configuration_logged_at_verbosity_two(logger, stream):
    config = Config(
        monitor=MonitorConfig(queues=[QueueConfig(name="a", threshold_checks=5)])
    )
    service = make_service(config, logger, FakeClient(), verbosity=2)
    assert service.queue_intervals == {"a": 60.0}
    logged = entries(stream)
    assert logged[0]["fields"] == {"total_queues": 1}
    queue_cfg = [e for e in logged if e["message"] == "Queue configuration"]
    assert queue_cfg[0]["fields"]["queue"] == "a"
    assert queue_cfg[0]["fields"]["threshold_checks"] == 5