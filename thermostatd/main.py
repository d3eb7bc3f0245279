from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import time
from pathlib import Path
from typing import AsyncIterator, Optional

from .core.config import settings
from .core.log import configure_logging

from .admin.interface import AdminInterface
from .admin.mqtt_channel import MqttAdminChannel
from .domain.commands import ScriptStatus
from .domain.errors import ScriptError
from .domain.interfaces import BusTransport
from .domain.models import OperatingMode
from .drivers.bus_sim import SimulatedBus
from .drivers.mqtt_client import MqttTransport
from .scripting.host import ScriptHost
from .scripting.state import RecordingBus, ScriptState
from .scripting.worker import HookWorker
from .services.bridge import SensorBridge
from .services.config_store import ConfigStore
from .services.control_loop import ControlLoop
from .storage.sqlite_repo import SQLiteRepository


logger = logging.getLogger(__name__)


def build_transport() -> BusTransport:
    if settings.bus_mode.lower() == "sim":
        return SimulatedBus()
    return MqttTransport(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_user,
        password=settings.mqtt_pass,
        keepalive=settings.mqtt_keepalive_seconds,
        reconnect_min_s=settings.mqtt_reconnect_min_seconds,
        reconnect_max_s=settings.mqtt_reconnect_max_seconds,
    )


@dataclass
class Runtime:
    bridge: SensorBridge
    store: ConfigStore
    loop: ControlLoop
    admin: AdminInterface
    channel: MqttAdminChannel


@asynccontextmanager
async def lifespan(transport: Optional[BusTransport] = None) -> AsyncIterator[Runtime]:
    configure_logging()
    logger.info("Starting %s (bus=%s)", settings.app_name, settings.bus_mode)

    repo = SQLiteRepository(settings.sqlite_path)
    store = ConfigStore(repo)
    await store.load()

    bridge = SensorBridge(transport or build_transport())
    await bridge.start()
    try:
        control = ControlLoop(bridge, store)
        admin = AdminInterface(control)
        channel = MqttAdminChannel(bridge, admin)

        await control.start()
        try:
            await channel.start(control.script_status)
            try:
                yield Runtime(bridge=bridge, store=store, loop=control, admin=admin, channel=channel)
            finally:
                await channel.stop()
        finally:
            await control.stop()
    finally:
        await bridge.stop()
        logger.info("Shutdown complete")


async def serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # no loop signal handlers on Windows; KeyboardInterrupt still unwinds lifespan
            pass

    async with lifespan():
        await stop.wait()


def check_script(path: str, mode: OperatingMode, temp: float, at: time) -> int:
    """Load a script file and run evaluate once against a fixed state; exit code 0 on success."""
    bus = RecordingBus()
    state = ScriptState(
        mode=mode,
        probes={"primary": temp},
        stale={},
        values={},
        local_time=at,
        subscribe=bus.subscribe,
        publish=bus.publish,
    )
    host = ScriptHost()
    worker = HookWorker("check")
    deadline = host.timeout_s * 2 + settings.script_abandon_grace_seconds
    try:
        decision = asyncio.run(worker.run(deadline, "evaluate", host.dry_run, Path(path).read_text(), state))
    except ScriptError as e:
        status = ScriptStatus(success=False, error_at=f"{e.hook or 'evaluate'}_script", error=str(e))
    else:
        status = ScriptStatus(success=True, decision=decision.value if decision else None)
    finally:
        worker.shutdown()
    print(json.dumps({**status.as_dict(), "published": bus.published, "subscribed": bus.subscribed}))
    return 0 if status.success else 1


def run() -> None:
    p = argparse.ArgumentParser(description="Scriptable thermostat controller")
    p.add_argument("--bus", choices=["mqtt", "sim"], help="Bus transport (default: settings.bus_mode)")
    p.add_argument("--mqtt-host", help="Broker host")
    p.add_argument("--mqtt-port", type=int, help="Broker port")
    p.add_argument("--db", help="SQLite path for persisted configuration")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    p.add_argument("--check", metavar="SCRIPT", help="Validate a script file, evaluate it once and exit")
    p.add_argument("--mode", type=OperatingMode, choices=list(OperatingMode), default=OperatingMode.HEAT,
                   help="Mode for --check (default: heat)")
    p.add_argument("--temp", type=float, default=20.0, help="Primary probe value for --check")
    p.add_argument("--at", type=time.fromisoformat, default=time(12, 0), help="Local HH:MM for --check")

    args = p.parse_args()

    if args.check:
        logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
        sys.exit(check_script(args.check, args.mode, args.temp, args.at))

    if args.bus:
        settings.bus_mode = args.bus
    if args.mqtt_host:
        settings.mqtt_host = args.mqtt_host
    if args.mqtt_port:
        settings.mqtt_port = args.mqtt_port
    if args.db:
        settings.sqlite_path = args.db
    if args.verbose:
        settings.log_level = "DEBUG"

    asyncio.run(serve())


if __name__ == "__main__":
    run()
