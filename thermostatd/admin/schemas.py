from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import BaseModel, Field, RootModel, field_validator

from ..domain.models import HvacDecision, OneshotOverride, TimedOverride

Command = Literal["heat", "cool", "off"]
Offset = Annotated[float, Field(allow_inf_nan=False, ge=-20, le=20)]


class TimedOverrideIn(BaseModel):
    command: Command
    expiration: datetime

    @field_validator("command", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("expiration")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("expiration must carry a UTC offset")
        return v.astimezone(timezone.utc)

    def to_domain(self) -> TimedOverride:
        return TimedOverride(command=HvacDecision(self.command), expiration=self.expiration)

    @classmethod
    def from_domain(cls, o: TimedOverride) -> "TimedOverrideIn":
        return cls(command=o.command.value, expiration=o.expiration)


class OneshotOverrideIn(BaseModel):
    command: Command
    comparison: Literal["less", "greater"]
    setpoint: float = Field(allow_inf_nan=False)
    probe: str = Field(default="primary", min_length=1)

    @field_validator("command", "comparison", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    def to_domain(self) -> OneshotOverride:
        return OneshotOverride(
            command=HvacDecision(self.command),
            comparison=self.comparison,
            setpoint=self.setpoint,
            probe=self.probe,
        )

    @classmethod
    def from_domain(cls, o: OneshotOverride) -> "OneshotOverrideIn":
        return cls(command=o.command.value, comparison=o.comparison, setpoint=o.setpoint, probe=o.probe)


class CalibrationIn(RootModel[dict[str, Offset]]):
    """Probe name -> offset added to raw readings."""
