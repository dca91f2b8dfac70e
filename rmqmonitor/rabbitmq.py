"""A small client for the RabbitMQ management HTTP API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import quote

import requests

from rmqmonitor.config import QueueConfig, RabbitMQConfig

_TIMEOUT = 30.0


class RabbitMQError(RuntimeError):
    """Raised when the management API cannot be reached or answers with an error."""


def _rate(stats: Mapping[str, Any], key: str) -> float:
    details = stats.get(key) or {}
    if not isinstance(details, Mapping):
        return 0.0
    value = details.get("rate")
    return float(value) if value is not None else 0.0


def _int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    return int(value) if value is not None else 0


@dataclass
class QueueInfo:
    """The metrics of one queue that matter for stuck-queue detection."""

    name: str
    vhost: str = "/"
    messages_ready: int = 0
    messages: int = 0
    consumers: int = 0
    consume_rate: float = 0.0
    ack_rate: float = 0.0
    publish_rate: float = 0.0
    state: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "QueueInfo":
        """Build from a queue object as returned by the management API."""
        info = cls(
            name=str(data.get("name", "")),
            vhost=str(data.get("vhost", "")),
            messages_ready=_int(data, "messages_ready"),
            messages=_int(data, "messages"),
            consumers=_int(data, "consumers"),
        )
        stats = data.get("message_stats")
        if isinstance(stats, Mapping):
            info.consume_rate = _rate(stats, "deliver_get_details")
            info.ack_rate = _rate(stats, "ack_details")
            info.publish_rate = _rate(stats, "publish_details")
        return info


class Client:
    """Talks to the management API of one broker, scoped to one vhost."""

    def __init__(
        self, config: RabbitMQConfig, session: Optional[requests.Session] = None
    ):
        self.base_url = config.management_url()
        self.vhost = config.vhost
        self._auth = (config.username, config.password)
        self._session = session if session is not None else requests.Session()
        try:
            self.overview()
        except RabbitMQError as exc:
            raise RabbitMQError(f"failed to connect to RabbitMQ: {exc}") from exc

    def _get(self, path: str) -> Any:
        url = f"{self.base_url}/api/{path}"
        try:
            response = self._session.get(url, auth=self._auth, timeout=_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise RabbitMQError(str(exc)) from exc
        except ValueError as exc:
            raise RabbitMQError(f"invalid response from {url}: {exc}") from exc

    def overview(self) -> dict[str, Any]:
        """Return the broker overview document."""
        data = self._get("overview")
        if not isinstance(data, dict):
            raise RabbitMQError("unexpected overview response")
        return data

    def list_vhosts(self) -> list[str]:
        """Return the names of all virtual hosts."""
        data = self._get("vhosts")
        if not isinstance(data, list):
            raise RabbitMQError("unexpected vhosts response")
        return [str(item.get("name", "")) for item in data if isinstance(item, Mapping)]

    def list_queues(self, vhost: str) -> list[QueueInfo]:
        """Return every queue in the given vhost."""
        data = self._get(f"queues/{quote(vhost, safe='')}")
        if not isinstance(data, list):
            raise RabbitMQError("unexpected queues response")
        return [QueueInfo.from_api(item) for item in data if isinstance(item, Mapping)]

    def get_queues(self) -> list[QueueInfo]:
        """Return every queue in the configured vhost."""
        try:
            return self.list_queues(self.vhost)
        except RabbitMQError as exc:
            raise RabbitMQError(f"failed to list queues: {exc}") from exc

    def get_queue(self, name: str) -> QueueInfo:
        """Return one queue of the configured vhost."""
        path = f"queues/{quote(self.vhost, safe='')}/{quote(name, safe='')}"
        try:
            data = self._get(path)
        except RabbitMQError as exc:
            raise RabbitMQError(f"failed to get queue {name}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise RabbitMQError(f"failed to get queue {name}: unexpected response")
        return QueueInfo.from_api(data)


def filter_queues(
    queues: Iterable[QueueInfo], queue_configs: Iterable[QueueConfig]
) -> list[QueueInfo]:
    """Keep only the configured queues; with no configured queues keep all."""
    queues = list(queues)
    wanted = {cfg.name for cfg in queue_configs}
    if not wanted:
        return queues
    return [queue for queue in queues if queue.name in wanted]