"""Administrative commands, executed one at a time by the control loop."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .models import OneshotOverride, OperatingMode, TimedOverride


@dataclass(frozen=True)
class SetMode:
    mode: OperatingMode


@dataclass(frozen=True)
class SetScriptSource:
    source: str


@dataclass(frozen=True)
class DryRunScript:
    source: str


@dataclass(frozen=True)
class SetCalibration:
    offsets: dict[str, float]


@dataclass(frozen=True)
class SetTimedOverride:
    override: Optional[TimedOverride]


@dataclass(frozen=True)
class SetOneshotOverride:
    override: Optional[OneshotOverride]


@dataclass(frozen=True)
class ScriptStatus:
    success: bool
    error_at: Optional[str] = None
    error: Optional[str] = None
    decision: Optional[str] = None

    def as_dict(self) -> dict:
        out: dict = {"success": self.success}
        if self.decision:
            out["decision"] = self.decision
        if self.error_at:
            out["error_at"] = self.error_at
        if self.error:
            out["error"] = self.error
        return out
