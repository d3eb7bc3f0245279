from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Union

import paho.mqtt.client as mqtt

from ..domain.errors import BusError
from ..domain.interfaces import ConnectionCallback, MessageCallback

logger = logging.getLogger(__name__)


class MqttTransport:
    """paho-mqtt session. Network-thread callbacks are handed to the asyncio loop."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        client_id: str = "thermostatd",
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 5,
        reconnect_min_s: int = 1,
        reconnect_max_s: int = 60,
        qos: int = 1,
    ) -> None:
        self._host = host
        self._port = port
        self._keepalive = keepalive
        self._qos = qos
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_message_cb: Optional[MessageCallback] = None
        self._on_connection_cb: Optional[ConnectionCallback] = None

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
        )
        if username:
            self._client.username_pw_set(username, password)
        # paho backs off exponentially between these bounds
        self._client.reconnect_delay_set(min_delay=reconnect_min_s, max_delay=reconnect_max_s)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def start(self, on_message: MessageCallback, on_connection: ConnectionCallback) -> None:
        self._loop = asyncio.get_running_loop()
        self._on_message_cb = on_message
        self._on_connection_cb = on_connection
        logger.info("Connecting to MQTT broker %s:%s", self._host, self._port)
        self._client.connect_async(self._host, self._port, keepalive=self._keepalive)
        self._client.loop_start()

    def stop(self) -> None:
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()

    def subscribe(self, topic: str) -> None:
        rc, _mid = self._client.subscribe(topic, qos=self._qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusError(f"subscribe {topic!r} failed: {mqtt.error_string(rc)}")

    def unsubscribe(self, topic: str) -> None:
        rc, _mid = self._client.unsubscribe(topic)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusError(f"unsubscribe {topic!r} failed: {mqtt.error_string(rc)}")

    def publish(self, topic: str, payload: Union[str, bytes], retain: bool = False) -> None:
        info = self._client.publish(topic, payload, qos=self._qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusError(f"publish {topic!r} failed: {mqtt.error_string(info.rc)}")

    # --- paho network thread ---

    def _dispatch(self, fn: Optional[Callable[..., None]], *args: Any) -> None:
        if fn is None or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(fn, *args)

    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT connect refused: %s", reason_code)
            self._dispatch(self._on_connection_cb, False)
            return
        logger.info("Connected to MQTT, reason_code: %s", reason_code)
        self._dispatch(self._on_connection_cb, True)

    def _on_disconnect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None) -> None:
        logger.warning("Disconnected from MQTT (%s); paho will reconnect", reason_code)
        self._dispatch(self._on_connection_cb, False)

    def _on_message(self, client: mqtt.Client, userdata, msg: mqtt.MQTTMessage) -> None:
        self._dispatch(self._on_message_cb, msg.topic, bytes(msg.payload))
