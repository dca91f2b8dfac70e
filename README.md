# rmqmonitor

A command-line tool that keeps watching the queues of one RabbitMQ virtual
host through the management HTTP API and writes an alert to a log file
whenever a queue looks stuck: messages pile up or stay put while nobody
consumes them.

## Installation

```
pip install .
```

For running the tests: `pip install .[test]`, then `pytest`.

## Configuration

The tool reads a YAML file, `config.yaml` in the current directory unless
`--config` names another. Every key is optional and key names are matched
without regard to case; the values below are the defaults.

```yaml
rabbitmq:
  host: localhost
  port: 15672
  username: guest
  password: password
  vhost: /
  use_tls: false            # true: talk to the API over https

monitor:
  interval: 60s
  detection:
    threshold_checks: 3     # consecutive stuck checks before alerting
    min_message_count: 10   # queues at or below this many ready messages are ignored
    min_consume_rate: 0.1   # deliver/ack rate below this counts as idle; negative disables
  queues: []                # empty: watch every queue in the vhost

logging:
  file_path: /var/log/rabbitmq-monitor/stuck-queues.log
  level: info               # debug, info, warn, error
  format: json              # json; any other value gives text lines
```

Durations are written like `30s`, `1m30s`, `1.5h` or `500ms`; a bare number
is taken as nanoseconds. The configuration is rejected if the host is empty,
the port is outside 1–65535, the interval is not positive,
`threshold_checks` is below 1 or the log file path is empty.

Listing queues limits monitoring to those queues, and each entry can override
the global settings:

```yaml
monitor:
  queues:
    - name: orders
      check_interval: 30s
      threshold_checks: 5
    - name: nightly-reports
      min_consume_rate: -1
```

## Usage

Check that the management API is reachable and list the vhosts and the
queues of the configured vhost:

```
rmqmonitor test --config config.yaml
```

Start monitoring in the foreground (stop it with Ctrl-C or SIGTERM):

```
rmqmonitor monitor --config config.yaml
```

The first check runs at once, then the monitor wakes at the shortest
configured interval and checks each queue whose own interval has come round.

`-v`, `-vv`, `-vvv` raise the detail: `-vv` sets the log level to info and
logs the queue settings and healthy checks; `-vvv` sets it to debug and also
logs every queue check. `-d` starts the monitor again in the background,
without the `-d` flag, and prints the new process ID.

Log entries go to the log file and to standard output, either as one JSON
object per line or as text lines of the form
`[timestamp] level: message {fields} error=...`.

Only one monitor runs at a time: a PID file `rmqmonitor.pid` is kept next to
an absolute config path, otherwise in `/var/run` or, failing that, `/tmp`.
A PID file left by a process that is gone is replaced.

Errors are printed to standard error as `Error: ...` and the command exits
with status 1.

## How a queue counts as stuck

A queue is considered stuck once at least `threshold_checks` snapshots of it
have been taken, it holds more than `min_message_count` ready messages, and
over the last `threshold_checks` checks its ready count grew, stayed the
same, or fell by less than one message per check. The reason in the alert
says whether the queue had no consumers, a consume rate below
`min_consume_rate`, or activity without progress.

An alert is written once the queue has been stuck for `threshold_checks`
consecutive checks, and at most once every five minutes per queue. A healthy
check resets the count.

## Library use

The parts can be used on their own: `rmqmonitor.config.load` reads and
validates a configuration, `rmqmonitor.rabbitmq.Client` fetches queue
metrics, `rmqmonitor.analyzer.Analyzer` turns successive queue snapshots
into `StuckQueueAlert`s, and `rmqmonitor.service.MonitorService` runs the
schedule; `perform_check` runs one round and returns the alerts.

## What it does not do

Alerts are only written to the log file and standard output; nothing is
sent by mail, chat or webhook. Queue metrics come from the management API
alone; the tool does not connect over AMQP or touch any messages.