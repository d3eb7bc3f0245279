from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from .models import (
    HvacDecision,
    LoopPhase,
    OneshotOverride,
    OperatingMode,
    ScriptFailure,
    TimedOverride,
)

logger = logging.getLogger(__name__)


@dataclass
class ControllerState:
    phase: LoopPhase = LoopPhase.IDLE
    consecutive_failures: int = 0
    last_decision: Optional[HvacDecision] = None
    applied_decision: Optional[HvacDecision] = None
    applied_at: Optional[float] = None  # monotonic seconds
    last_evaluation_utc: Optional[datetime] = None
    last_error: Optional[ScriptFailure] = None
    init_error: Optional[str] = None


@dataclass(frozen=True)
class Arbitration:
    """Outcome of the checks that run before the script is consulted."""

    decision: Optional[HvacDecision]
    reason: str
    consult_script: bool
    clear_timed: bool = False
    clear_oneshot: bool = False


class HvacController:
    def __init__(self, failure_threshold: int = 3, refresh_interval_s: float = 60.0) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.refresh_interval_s = refresh_interval_s
        self.state = ControllerState()

    @property
    def faulted(self) -> bool:
        return self.state.phase is LoopPhase.FAULTED

    def set_phase(self, phase: LoopPhase) -> None:
        # Faulted is only left through record_success()
        if self.faulted and phase is not LoopPhase.FAULTED:
            return
        self.state.phase = phase

    def arbitrate(
        self,
        mode: OperatingMode,
        now_utc: datetime,
        probes: Mapping[str, float],
        timed_override: Optional[TimedOverride],
        oneshot_override: Optional[OneshotOverride],
    ) -> Arbitration:
        if mode is OperatingMode.OFF:
            return Arbitration(HvacDecision.OFF, "Mode is off", consult_script=False)

        if self.faulted:
            # keep calling the script so a fixed condition can recover the loop
            return Arbitration(HvacDecision.OFF, "Faulted (fail-safe)", consult_script=True)

        clear_timed = False
        if timed_override is not None:
            if timed_override.active(now_utc):
                return Arbitration(timed_override.command, "Timed override", consult_script=False)
            clear_timed = True

        clear_oneshot = False
        if oneshot_override is not None:
            value = probes.get(oneshot_override.probe)
            if oneshot_override.holds(value):
                return Arbitration(
                    oneshot_override.command,
                    f"One-shot override ({oneshot_override.probe}={value} "
                    f"{oneshot_override.comparison} {oneshot_override.setpoint})",
                    consult_script=False,
                    clear_timed=clear_timed,
                )
            clear_oneshot = True

        return Arbitration(
            None,
            "Script",
            consult_script=True,
            clear_timed=clear_timed,
            clear_oneshot=clear_oneshot,
        )

    def record_success(self, now_utc: datetime) -> bool:
        """Reset the failure counter. Returns True when this recovers from Faulted."""
        recovered = self.faulted
        self.state.consecutive_failures = 0
        self.state.last_evaluation_utc = now_utc
        if recovered:
            self.state.phase = LoopPhase.IDLE
            logger.warning("Script evaluation succeeded, leaving FAULTED")
        return recovered

    def record_failure(self, failure: ScriptFailure) -> bool:
        """Count a script failure. Returns True when the threshold has been reached."""
        self.state.consecutive_failures += 1
        self.state.last_error = failure
        self.state.last_evaluation_utc = failure.ts_utc
        return self.state.consecutive_failures >= self.failure_threshold

    def enter_faulted(self) -> None:
        if not self.faulted:
            logger.error(
                "Control loop FAULTED after %d consecutive script failures",
                self.state.consecutive_failures,
            )
        self.state.phase = LoopPhase.FAULTED

    def needs_publish(self, decision: HvacDecision, now_mono: float) -> bool:
        s = self.state
        if s.applied_decision is not decision or s.applied_at is None:
            return True
        return (now_mono - s.applied_at) >= self.refresh_interval_s

    def refresh_due(self, now_mono: float) -> bool:
        s = self.state
        if s.applied_decision is None:
            return False
        if s.applied_at is None:
            return True
        return (now_mono - s.applied_at) >= self.refresh_interval_s

    def mark_applied(self, decision: HvacDecision, now_mono: float) -> None:
        if decision is not self.state.applied_decision:
            logger.info("New call: %s", decision.value)
        self.state.applied_decision = decision
        self.state.applied_at = now_mono

    def forget_applied(self) -> None:
        # the next apply re-publishes even if the decision is unchanged
        self.state.applied_at = None
