from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Callable, Mapping, Optional, Union

from ..domain.models import OperatingMode, SensorReading

Value = Union[float, str]


@dataclass
class ScriptState:
    """Point-in-time view handed to script hooks.

    ``probes`` holds calibrated readings that are fresh; readings past the
    staleness bound are withheld and listed in ``stale`` with their age.
    ``values`` is a copy of the bus cache taken when the snapshot was built,
    so nothing changes underneath a running hook.
    """

    mode: OperatingMode
    probes: dict[str, float]
    stale: dict[str, float]
    values: dict[str, Value]
    local_time: time
    subscribe: Callable[[str], None]
    publish: Callable[[str, str], None]

    def read(self, topic: str) -> Optional[Value]:
        return self.values.get(topic)


@dataclass
class RecordingBus:
    """Bus facade for dry runs: records script bus actions instead of sending them."""

    subscribed: list[str] = field(default_factory=list)
    published: list[tuple[str, str]] = field(default_factory=list)

    def subscribe(self, topic: str) -> None:
        self.subscribed.append(topic)

    def publish(self, topic: str, payload: str) -> None:
        self.published.append((topic, payload))


def build_script_state(
    mode: OperatingMode,
    readings: Mapping[str, SensorReading],
    probe_topics: Mapping[str, str],
    now_utc: datetime,
    local_time: time,
    is_stale: Callable[[SensorReading, datetime], bool],
    calibrate: Callable[[str, float], float],
    subscribe: Callable[[str], None],
    publish: Callable[[str, str], None],
) -> ScriptState:
    probes: dict[str, float] = {}
    stale: dict[str, float] = {}
    for name, topic in probe_topics.items():
        r = readings.get(topic)
        if r is None or not r.numeric:
            continue
        if is_stale(r, now_utc):
            stale[name] = r.age_seconds(now_utc)
            continue
        probes[name] = calibrate(name, float(r.value))

    return ScriptState(
        mode=mode,
        probes=probes,
        stale=stale,
        values={topic: r.value for topic, r in readings.items()},
        local_time=local_time,
        subscribe=subscribe,
        publish=publish,
    )
