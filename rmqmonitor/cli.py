"""Command-line entry point with the ``monitor`` and ``test`` commands."""

from __future__ import annotations

import argparse
import contextlib
import queue
import signal
import subprocess
import sys
import threading
from typing import Any, Optional, Sequence

from rmqmonitor.config import Config, ConfigError, format_duration, load
from rmqmonitor.logger import Logger
from rmqmonitor.pidfile import PidFile, PidFileError, default_path
from rmqmonitor.rabbitmq import Client, RabbitMQError
from rmqmonitor.service import MonitorService

PROG = "rmqmonitor"
DEFAULT_CONFIG = "config.yaml"
_SIGNAL_NAMES = {signal.SIGINT: "interrupt", signal.SIGTERM: "terminated"}


class _CommandError(RuntimeError):
    """A command failed; the message is shown to the user."""


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with its subcommands."""
    config_help = "config file (default is ./config.yaml)"
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    parser = argparse.ArgumentParser(
        prog=PROG,
        description=(
            "A CLI tool that continuously monitors RabbitMQ queues for stuck messages. "
            "It detects queues where messages are not being processed and logs alerts to a file."
        ),
    )
    parser.add_argument("--config", default=None, help=config_help)
    sub = parser.add_subparsers(dest="command")

    monitor = sub.add_parser(
        "monitor",
        parents=[common],
        help="Start monitoring RabbitMQ queues",
        description="Continuously monitor RabbitMQ queues for stuck messages and log alerts.",
    )
    monitor.add_argument(
        "-d", "--daemon", action="store_true", help="Run in background (daemon mode)"
    )
    monitor.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Increase verbosity (-v, -vv, -vvv)",
    )
    monitor.set_defaults(handler=run_monitor)

    test = sub.add_parser(
        "test",
        parents=[common],
        help="Test RabbitMQ connection",
        description="Test connection to RabbitMQ Management API and display basic information.",
    )
    test.set_defaults(handler=run_test)
    return parser


def daemon_args(argv: Sequence[str]) -> list[str]:
    """Return the arguments with the daemon flag removed, including from combined short flags."""
    result: list[str] = []
    for arg in argv:
        if arg in ("--daemon", "-d"):
            continue
        if len(arg) > 1 and arg[0] == "-" and arg[1] != "-" and arg[1] == "d":
            remaining = arg[1:].replace("d", "")
            if remaining:
                result.append("-" + remaining)
            continue
        result.append(arg)
    return result


def _config_path(args: argparse.Namespace) -> str:
    return getattr(args, "config", None) or DEFAULT_CONFIG


def _load_config(path: str) -> Config:
    try:
        return load(path)
    except ConfigError as exc:
        raise _CommandError(f"failed to load config: {exc}") from exc


def _run_as_daemon(argv: Sequence[str]) -> None:
    command = [sys.executable, "-m", "rmqmonitor.cli", *daemon_args(argv)]
    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise _CommandError(f"failed to start daemon: {exc}") from exc
    print(f"Monitor started in background (PID: {process.pid})")
    print(f"To stop: kill {process.pid}")


def _serve(service: MonitorService, log: Logger) -> None:
    events: "queue.SimpleQueue[tuple[str, Any]]" = queue.SimpleQueue()

    def on_signal(signum: int, _frame: Any) -> None:
        events.put(("signal", signum))

    def run() -> None:
        try:
            service.start()
        except Exception as exc:  # noqa: BLE001 - reported to the main thread
            events.put(("error", exc))
        else:
            events.put(("done", None))

    previous = {sig: signal.signal(sig, on_signal) for sig in _SIGNAL_NAMES}
    worker = threading.Thread(target=run, name="rmqmonitor-service", daemon=True)
    try:
        worker.start()
        while True:
            try:
                kind, value = events.get(timeout=0.5)
                break
            except queue.Empty:
                continue
        if kind == "signal":
            log.info(
                "Received shutdown signal",
                {"signal": _SIGNAL_NAMES.get(value, str(value))},
            )
            service.stop()
            worker.join()
        elif kind == "error":
            log.error("Monitor service error", value)
            raise value
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _monitor(cfg: Config, verbose: int) -> None:
    if verbose >= 3:
        cfg.logging.level = "debug"
    elif verbose == 2:
        cfg.logging.level = "info"

    try:
        log = Logger(cfg.logging)
    except OSError as exc:
        raise _CommandError(f"failed to initialize logger: {exc}") from exc

    with log:
        log.info(
            "Starting RabbitMQ monitor",
            {
                "vhost": cfg.rabbitmq.vhost,
                "interval": format_duration(cfg.monitor.interval),
                "host": cfg.rabbitmq.host,
            },
        )
        try:
            service = MonitorService(cfg, log, verbose)
        except RabbitMQError as exc:
            raise _CommandError(f"failed to create monitor: {exc}") from exc
        _serve(service, log)
        log.info("Monitor stopped")


def run_monitor(args: argparse.Namespace) -> None:
    """Run the monitor in the foreground, or restart it in the background."""
    if getattr(args, "daemon", False):
        raw = getattr(args, "raw_argv", None)
        _run_as_daemon(sys.argv[1:] if raw is None else raw)
        return

    config_path = _config_path(args)
    cfg = _load_config(config_path)

    pid_file = PidFile(default_path(config_path))
    try:
        pid_file.create()
    except PidFileError as exc:
        raise _CommandError(f"failed to create PID file: {exc}") from exc
    try:
        _monitor(cfg, getattr(args, "verbose", 0) or 0)
    finally:
        with contextlib.suppress(PidFileError):
            pid_file.remove()


def run_test(args: argparse.Namespace) -> None:
    """Check the connection to the management API and list vhosts and queues."""
    cfg = _load_config(_config_path(args))
    rmq = cfg.rabbitmq

    print(f"🔗 Connecting to: {rmq.management_url()}")
    print(f"👤 Username: {rmq.username}")
    print(f"🔒 TLS: {str(rmq.use_tls).lower()}\n")

    print("✓ Testing API connection...")
    try:
        client = Client(rmq)
        overview = client.overview()
    except RabbitMQError as exc:
        raise _CommandError(f"❌ Failed to get overview: {exc}") from exc
    print(f"✓ Connected! RabbitMQ version: {overview.get('rabbitmq_version', '')}\n")

    print("📋 Available vhosts:")
    try:
        vhosts = client.list_vhosts()
    except RabbitMQError as exc:
        raise _CommandError(f"❌ Failed to list vhosts: {exc}") from exc
    for name in vhosts:
        marker = "→" if name == rmq.vhost else " "
        print(f"  {marker} {name}")
    print()

    print(f"📊 Queues in vhost '{rmq.vhost}':")
    try:
        queues = client.list_queues(rmq.vhost)
    except RabbitMQError as exc:
        print(f"❌ Failed to list queues: {exc}\n")
        print("💡 Tip: Make sure the vhost name matches one from the list above")
        return

    if not queues:
        print("  (no queues found)")
    for q in queues:
        print(f"  • {q.name} (messages: {q.messages}, consumers: {q.consumers})")
    print()
    print("✅ All checks passed!")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse the command line and run the chosen command; return the exit status."""
    raw = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(raw)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 0
    args.raw_argv = raw
    try:
        handler(args)
    except Exception as exc:  # noqa: BLE001 - every failure becomes an exit status
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())