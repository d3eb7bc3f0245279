from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Union

from paho.mqtt.client import topic_matches_sub

from ..domain.errors import BusError
from ..domain.interfaces import ConnectionCallback, MessageCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedMessage:
    topic: str
    payload: bytes
    retain: bool

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


def _as_bytes(payload: Union[str, bytes]) -> bytes:
    return payload if isinstance(payload, bytes) else str(payload).encode("utf-8")


class SimulatedBus:
    """In-memory broker with a single client session.

    Publishes from the session are looped back to its own subscriptions, like a
    real broker. ``drop()``/``restore()`` simulate losing the connection; the
    broker forgets the session's subscriptions on drop.
    """

    def __init__(self) -> None:
        self.published: list[PublishedMessage] = []
        self.subscribe_calls: list[str] = []
        self.fail_subscribes = 0  # next N subscribe calls raise BusError
        self._subs: set[str] = set()
        self._retained: dict[str, bytes] = {}
        self._connected = False
        self._on_message: Optional[MessageCallback] = None
        self._on_connection: Optional[ConnectionCallback] = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> set[str]:
        return set(self._subs)

    def start(self, on_message: MessageCallback, on_connection: ConnectionCallback) -> None:
        self._on_message = on_message
        self._on_connection = on_connection
        self.restore()

    def stop(self) -> None:
        self._connected = False
        self._subs.clear()

    def drop(self) -> None:
        self._connected = False
        self._subs.clear()
        if self._on_connection:
            self._on_connection(False)

    def restore(self) -> None:
        self._connected = True
        if self._on_connection:
            self._on_connection(True)

    def subscribe(self, topic: str) -> None:
        self.subscribe_calls.append(topic)
        if not self._connected:
            raise BusError(f"subscribe {topic!r} failed: not connected")
        if self.fail_subscribes > 0:
            self.fail_subscribes -= 1
            raise BusError(f"subscribe {topic!r} failed: simulated")
        self._subs.add(topic)
        for retained_topic, payload in list(self._retained.items()):
            if topic_matches_sub(topic, retained_topic):
                self._deliver(retained_topic, payload)

    def unsubscribe(self, topic: str) -> None:
        self._subs.discard(topic)

    def publish(self, topic: str, payload: Union[str, bytes], retain: bool = False) -> None:
        if not self._connected:
            raise BusError(f"publish {topic!r} failed: not connected")
        data = _as_bytes(payload)
        self.published.append(PublishedMessage(topic, data, retain))
        self._route(topic, data, retain)

    def inject(self, topic: str, payload: Union[str, bytes], retain: bool = False) -> None:
        """Publish as some other client on the broker."""
        self._route(topic, _as_bytes(payload), retain)

    def messages(self, topic: str) -> list[str]:
        return [m.text for m in self.published if m.topic == topic]

    def _route(self, topic: str, data: bytes, retain: bool) -> None:
        if retain:
            self._retained[topic] = data
        if self._connected and any(topic_matches_sub(sub, topic) for sub in self._subs):
            self._deliver(topic, data)

    def _deliver(self, topic: str, data: bytes) -> None:
        if self._on_message:
            self._on_message(topic, data)
