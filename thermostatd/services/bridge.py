from __future__ import annotations
import asyncio
import logging
import math
from datetime import datetime
from typing import Callable, Optional, Union

from paho.mqtt.client import topic_matches_sub

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.errors import BusError
from ..domain.interfaces import BusTransport
from ..domain.models import SensorReading

logger = logging.getLogger(__name__)

Listener = Callable[[SensorReading], None]


def decode_payload(payload: Union[str, bytes]) -> Union[float, str]:
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload)
    text = text.strip()
    try:
        value = float(text)
    except ValueError:
        return text
    return value if math.isfinite(value) else text


class SensorBridge:
    """Latest-value cache over a bus session, and the only way out to the bus.

    Runs on the asyncio loop. Topics are owned by ``"core"``, ``"admin"`` or
    ``"script"``; a topic stays subscribed while any owner holds it.
    """

    def __init__(
        self,
        transport: BusTransport,
        probe_stale_s: Optional[float] = None,
        retry_initial_s: Optional[float] = None,
        retry_max_s: Optional[float] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._transport = transport
        self.probe_stale_s = settings.probe_stale_seconds if probe_stale_s is None else probe_stale_s
        self._retry_initial = settings.bus_retry_initial_seconds if retry_initial_s is None else retry_initial_s
        self._retry_max = settings.bus_retry_max_seconds if retry_max_s is None else retry_max_s
        self._clock = clock

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        self._owners: dict[str, set[str]] = {}
        self._cache: dict[str, SensorReading] = {}
        self._listeners: list[tuple[str, Listener]] = []
        self._retry_delay: dict[str, float] = {}
        self._retry_handles: dict[str, asyncio.TimerHandle] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._transport.start(self._on_message, self._on_connection)

    async def stop(self) -> None:
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()
        try:
            self._transport.stop()
        except Exception:
            logger.exception("Bus transport did not stop cleanly")
        self._connected = False

    # --- subscriptions ---

    def subscribe(self, topic: str, owner: str = "core") -> None:
        """Register interest in ``topic``. Idempotent; failures are retried, never raised."""
        owners = self._owners.setdefault(topic, set())
        first = not owners
        owners.add(owner)
        if first:
            self._try_subscribe(topic)

    def release(self, owner: str) -> list[str]:
        """Drop every topic held by ``owner``. Returns the topics no longer subscribed."""
        dropped: list[str] = []
        for topic, owners in list(self._owners.items()):
            if owner not in owners:
                continue
            owners.discard(owner)
            if owners:
                continue
            del self._owners[topic]
            self._cancel_retry(topic)
            dropped.append(topic)
            if self._connected:
                try:
                    self._transport.unsubscribe(topic)
                except BusError as exc:
                    logger.warning("Unsubscribe failed: %s", exc)
        if dropped:
            for cached in list(self._cache):
                if not self._wanted(cached):
                    del self._cache[cached]
            logger.info("Released %d topic(s) held by %s", len(dropped), owner)
        return dropped

    def _wanted(self, topic: str) -> bool:
        return any(topic_matches_sub(sub, topic) for sub in self._owners)

    def topics(self, owner: Optional[str] = None) -> list[str]:
        if owner is None:
            return sorted(self._owners)
        return sorted(t for t, owners in self._owners.items() if owner in owners)

    def _try_subscribe(self, topic: str) -> None:
        self._retry_handles.pop(topic, None)
        if topic not in self._owners or not self._connected:
            # picked up by the resubscribe on (re)connect
            return
        try:
            self._transport.subscribe(topic)
        except BusError as exc:
            delay = self._retry_delay.get(topic, self._retry_initial)
            self._retry_delay[topic] = min(delay * 2, self._retry_max)
            logger.warning("%s; retrying in %.1fs", exc, delay)
            if self._loop is not None:
                self._retry_handles[topic] = self._loop.call_later(delay, self._try_subscribe, topic)
            return
        self._retry_delay.pop(topic, None)
        logger.debug("Subscribed to %s", topic)

    def _cancel_retry(self, topic: str) -> None:
        handle = self._retry_handles.pop(topic, None)
        if handle is not None:
            handle.cancel()
        self._retry_delay.pop(topic, None)

    # --- publish / read ---

    def publish(self, topic: str, payload: Union[str, bytes], retain: bool = False) -> bool:
        try:
            self._transport.publish(topic, payload, retain=retain)
        except BusError as exc:
            logger.warning("Publish failed: %s", exc)
            return False
        return True

    def read(self, topic: str) -> Optional[Union[float, str]]:
        r = self._cache.get(topic)
        return r.value if r is not None else None

    def reading(self, topic: str) -> Optional[SensorReading]:
        return self._cache.get(topic)

    def is_stale(self, reading: SensorReading, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return reading.age_seconds(now) > self.probe_stale_s

    def snapshot(self) -> dict[str, SensorReading]:
        return dict(self._cache)

    def add_listener(self, topic_filter: str, callback: Listener) -> Callable[[], None]:
        entry = (topic_filter, callback)
        self._listeners.append(entry)

        def remove() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return remove

    # --- transport callbacks (on the loop) ---

    def _on_connection(self, connected: bool) -> None:
        self._connected = connected
        if not connected:
            logger.warning("Bus connection lost; cached readings kept")
            return
        logger.info("Bus connected; subscribing %d topic(s)", len(self._owners))
        for topic in list(self._owners):
            self._cancel_retry(topic)
            self._try_subscribe(topic)

    def _on_message(self, topic: str, payload: bytes) -> None:
        reading = SensorReading(topic=topic, value=decode_payload(payload), observed_at=self._clock())
        if self._wanted(topic):
            self._cache[topic] = reading
        for topic_filter, callback in list(self._listeners):
            if not topic_matches_sub(topic_filter, topic):
                continue
            try:
                callback(reading)
            except Exception:
                logger.exception("Listener for %s failed", topic_filter)
