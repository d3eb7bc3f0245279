from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from .errors import ConfigError


class OperatingMode(str, Enum):
    OFF = "off"
    HEAT = "heat"
    COOL = "cool"
    AUTO = "auto"

    @classmethod
    def parse(cls, raw: Union[str, bytes]) -> "OperatingMode":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            return cls(raw.strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown operating mode: {raw!r}") from None


class HvacDecision(str, Enum):
    OFF = "off"
    HEAT = "heat"
    COOL = "cool"

    @classmethod
    def parse(cls, raw: Union[str, bytes]) -> "HvacDecision":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            return cls(raw.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown HVAC decision: {raw!r}") from None


class LoopPhase(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    APPLYING = "applying"
    FAULTED = "faulted"


@dataclass(frozen=True)
class SensorReading:
    topic: str
    value: Union[float, str]
    observed_at: datetime

    @property
    def numeric(self) -> bool:
        return isinstance(self.value, float)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.observed_at).total_seconds()


@dataclass(frozen=True)
class TimedOverride:
    command: HvacDecision
    expiration: datetime

    def active(self, now_utc: datetime) -> bool:
        return self.expiration > now_utc


@dataclass(frozen=True)
class OneshotOverride:
    command: HvacDecision
    comparison: Literal["less", "greater"]
    setpoint: float
    probe: str

    def holds(self, value: Optional[float]) -> bool:
        if value is None:
            return False
        if self.comparison == "less":
            return value < self.setpoint
        return value > self.setpoint


@dataclass(frozen=True)
class ScriptFailure:
    error_at: str  # "load_script" | "init_script" | "evaluate_script" | "tick_script"
    kind: str
    message: str
    ts_utc: datetime


@dataclass(frozen=True)
class ControllerRunState:
    mode: OperatingMode
    phase: LoopPhase
    consecutive_failures: int
    last_decision: Optional[HvacDecision]
    applied_decision: Optional[HvacDecision]
    last_evaluation_utc: Optional[datetime]
    script_updated_at: Optional[datetime]
    last_error: Optional[ScriptFailure] = None
    init_error: Optional[str] = None
    timed_override: Optional[TimedOverride] = None
    oneshot_override: Optional[OneshotOverride] = None
    calibration: dict[str, float] = field(default_factory=dict)

    @property
    def faulted(self) -> bool:
        return self.phase is LoopPhase.FAULTED

    def as_dict(self) -> dict:
        def ts(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        err = self.last_error
        timed = self.timed_override
        oneshot = self.oneshot_override
        return {
            "mode": self.mode.value,
            "phase": self.phase.value,
            "faulted": self.faulted,
            "consecutive_failures": self.consecutive_failures,
            "last_decision": self.last_decision.value if self.last_decision else None,
            "applied_decision": self.applied_decision.value if self.applied_decision else None,
            "last_evaluation_utc": ts(self.last_evaluation_utc),
            "script_updated_at": ts(self.script_updated_at),
            "last_error": {
                "error_at": err.error_at,
                "kind": err.kind,
                "error": err.message,
                "ts_utc": err.ts_utc.isoformat(),
            } if err else None,
            "init_error": self.init_error,
            "timed_override": {
                "command": timed.command.value,
                "expiration": timed.expiration.isoformat(),
            } if timed else None,
            "oneshot_override": {
                "command": oneshot.command.value,
                "comparison": oneshot.comparison,
                "setpoint": oneshot.setpoint,
                "probe": oneshot.probe,
            } if oneshot else None,
            "calibration": dict(self.calibration),
        }
