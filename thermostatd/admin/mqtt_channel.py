from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from ..core.config import settings
from ..domain.commands import ScriptStatus
from ..domain.errors import ConfigError
from ..domain.models import ControllerRunState, SensorReading
from ..services.bridge import SensorBridge
from .interface import AdminInterface
from .schemas import OneshotOverrideIn, TimedOverrideIn

logger = logging.getLogger(__name__)


def _text(reading: SensorReading) -> str:
    value = reading.value
    # numeric-looking payloads were decoded by the bridge
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class MqttAdminChannel:
    """Administrative interface exposed over bus topics.

    Inbound topics are held by the ``"admin"`` owner on the bridge. Replies go
    to the matching ``/error`` topic as ``{"success", "error_at", "error"}``.
    """

    def __init__(self, bridge: SensorBridge, admin: AdminInterface) -> None:
        self._bridge = bridge
        self._admin = admin
        self._tasks: set[asyncio.Task] = set()
        self._removers: list[Callable[[], None]] = []

        timed = settings.timed_override_topic
        oneshot = settings.oneshot_override_topic
        self._routes: dict[str, Callable[[SensorReading], Awaitable[None]]] = {
            settings.mode_topic: self._on_mode,
            settings.script_get_topic: self._on_script_get,
            settings.script_set_topic: self._on_script_set,
            settings.script_test_topic: self._on_script_test,
            f"{timed}/get": self._on_timed_get,
            f"{timed}/set": self._on_timed_set,
            f"{oneshot}/get": self._on_oneshot_get,
            f"{oneshot}/set": self._on_oneshot_set,
            settings.calibration_set_topic: self._on_calibration_set,
        }

    async def start(self, script_status: Optional[ScriptStatus] = None) -> None:
        for topic, handler in self._routes.items():
            # listener first: a retained message can arrive during subscribe
            self._removers.append(self._bridge.add_listener(topic, self._dispatcher(handler)))
            self._bridge.subscribe(topic, owner="admin")

        self.publish_script()
        if script_status is not None:
            self._publish_json(settings.script_error_topic, script_status.as_dict(), retain=True)
        self.publish_timed()
        self.publish_oneshot()
        self.publish_state(self._admin.get_run_state())
        self._admin.add_status_listener(self.publish_state)
        logger.info("Admin channel listening on %d topic(s)", len(self._routes))

    async def stop(self) -> None:
        for remove in self._removers:
            remove()
        self._removers.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._bridge.release("admin")

    # --- outbound ---

    def publish_state(self, state: ControllerRunState) -> None:
        self._publish_json(settings.state_topic, state.as_dict(), retain=True)

    def publish_script(self) -> None:
        self._bridge.publish(settings.script_topic, self._admin.get_script_source(), retain=True)

    def publish_timed(self) -> None:
        o = self._admin.get_run_state().timed_override
        payload = TimedOverrideIn.from_domain(o).model_dump(mode="json") if o else None
        self._publish_json(settings.timed_override_topic, payload, retain=True)

    def publish_oneshot(self) -> None:
        o = self._admin.get_run_state().oneshot_override
        payload = OneshotOverrideIn.from_domain(o).model_dump(mode="json") if o else None
        self._publish_json(settings.oneshot_override_topic, payload, retain=True)

    def _publish_json(self, topic: str, payload: Any, retain: bool = False) -> None:
        self._bridge.publish(topic, json.dumps(payload), retain=retain)

    # --- inbound ---

    def _dispatcher(self, handler: Callable[[SensorReading], Awaitable[None]]) -> Callable[[SensorReading], None]:
        def dispatch(reading: SensorReading) -> None:
            task = asyncio.get_running_loop().create_task(self._guard(handler, reading))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return dispatch

    async def _guard(self, handler: Callable[[SensorReading], Awaitable[None]], reading: SensorReading) -> None:
        try:
            await handler(reading)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Admin handler for %s failed", reading.topic)

    async def _on_mode(self, reading: SensorReading) -> None:
        try:
            await self._admin.set_mode(_text(reading))
        except ConfigError as e:
            logger.warning("Ignoring mode message: %s", e)

    async def _on_script_get(self, reading: SensorReading) -> None:
        self.publish_script()

    async def _on_script_set(self, reading: SensorReading) -> None:
        status = await self._admin.set_script_source(_text(reading))
        self._publish_json(settings.script_error_topic, status.as_dict(), retain=True)
        if status.error_at != "load_script":
            self.publish_script()

    async def _on_script_test(self, reading: SensorReading) -> None:
        status = await self._admin.test_script(_text(reading))
        self._publish_json(settings.script_test_error_topic, status.as_dict())

    async def _on_timed_get(self, reading: SensorReading) -> None:
        self.publish_timed()

    async def _on_timed_set(self, reading: SensorReading) -> None:
        error_topic = f"{settings.timed_override_topic}/error"
        try:
            raw = json.loads(_text(reading))
            await self._admin.set_timed_override(raw)
        except (ValueError, ConfigError) as e:
            self._publish_json(error_topic, {"success": False, "error": str(e)})
            return
        self._publish_json(error_topic, {"success": True})
        self.publish_timed()

    async def _on_oneshot_get(self, reading: SensorReading) -> None:
        self.publish_oneshot()

    async def _on_oneshot_set(self, reading: SensorReading) -> None:
        error_topic = f"{settings.oneshot_override_topic}/error"
        try:
            raw = json.loads(_text(reading))
            await self._admin.set_oneshot_override(raw)
        except (ValueError, ConfigError) as e:
            self._publish_json(error_topic, {"success": False, "error": str(e)})
            return
        self._publish_json(error_topic, {"success": True})
        self.publish_oneshot()

    async def _on_calibration_set(self, reading: SensorReading) -> None:
        try:
            raw = json.loads(_text(reading))
            if not isinstance(raw, dict):
                raise ConfigError("calibration must be a JSON object of probe -> offset")
            calibration = await self._admin.set_calibration(raw)
        except (ValueError, ConfigError) as e:
            logger.warning("Ignoring calibration message: %s", e)
            return
        logger.info("Calibration now %s", calibration)
