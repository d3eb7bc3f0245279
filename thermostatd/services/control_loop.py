from __future__ import annotations
import asyncio
import logging
import math
import time
from datetime import datetime
from datetime import time as dtime
from typing import Any, Callable, Mapping, Optional

from ..core.config import settings
from ..core.timeutil import local_time_of_day, now_utc
from ..domain.commands import (
    DryRunScript,
    ScriptStatus,
    SetCalibration,
    SetMode,
    SetOneshotOverride,
    SetScriptSource,
    SetTimedOverride,
)
from ..domain.controller import Arbitration, HvacController
from ..domain.errors import ActuatorError, ScriptError, ScriptRuntimeError, ScriptTimeoutError, ThermostatError
from ..domain.models import (
    ControllerRunState,
    HvacDecision,
    LoopPhase,
    OperatingMode,
    ScriptFailure,
    SensorReading,
)
from ..scripting.host import ScriptHost, ScriptInstance
from ..scripting.state import RecordingBus, ScriptState, build_script_state
from ..scripting.worker import HookWorker
from .bridge import SensorBridge
from .config_store import ConfigStore

logger = logging.getLogger(__name__)

StatusListener = Callable[[ControllerRunState], None]


def _error_at(exc: ScriptError, default: str) -> str:
    return f"{exc.hook}_script" if exc.hook else default


class ControlLoop:
    """Single control authority: evaluates the script and drives the HVAC command topic.

    One asyncio task owns all controller state. Script hooks run on a
    single worker thread, so at most one hook (of any instance) runs at a
    time, and each call carries a hard deadline past the script budget. Administrative commands are queued onto the task and applied
    between evaluations.
    """

    def __init__(
        self,
        bridge: SensorBridge,
        store: ConfigStore,
        host: Optional[ScriptHost] = None,
        controller: Optional[HvacController] = None,
        probe_topics: Optional[Mapping[str, str]] = None,
        command_topic: Optional[str] = None,
        evaluation_interval_s: Optional[float] = None,
        tick_interval_s: Optional[float] = None,
        faulted_retry_s: Optional[float] = None,
        event_triggers: Optional[bool] = None,
        event_debounce_s: Optional[float] = None,
        abandon_grace_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        utc_clock: Callable[[], datetime] = now_utc,
        local_clock: Callable[[], dtime] = local_time_of_day,
    ) -> None:
        self.bridge = bridge
        self.store = store
        self.host = host or ScriptHost()
        self.controller = controller or HvacController(
            failure_threshold=settings.failure_threshold,
            refresh_interval_s=settings.refresh_interval_seconds,
        )
        self.probe_topics = dict(probe_topics if probe_topics is not None else settings.probes)
        self.command_topic = command_topic or settings.hvac_command_topic
        self.evaluation_interval_s = evaluation_interval_s or settings.evaluation_interval_seconds
        self.tick_interval_s = tick_interval_s or settings.tick_interval_seconds
        self.faulted_retry_s = faulted_retry_s or settings.faulted_retry_seconds
        self.event_triggers = settings.event_triggers_enabled if event_triggers is None else event_triggers
        self.event_debounce_s = settings.event_debounce_seconds if event_debounce_s is None else event_debounce_s
        self.abandon_grace_s = (
            settings.script_abandon_grace_seconds if abandon_grace_s is None else abandon_grace_s
        )
        self._clock = clock
        self._utc = utc_clock
        self._local = local_clock

        self.script_status = ScriptStatus(success=False, error_at="load_script", error="Not loaded yet")
        self._instance: Optional[ScriptInstance] = None
        self._worker = HookWorker("script")
        # source whose worker was abandoned; not rebuilt automatically
        self._runaway_source: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self._commands: asyncio.Queue = asyncio.Queue()
        self._status_listeners: list[StatusListener] = []
        self._listener_removers: list[Callable[[], None]] = []

        self._next_eval_at = 0.0
        self._next_tick_at = 0.0
        self._last_eval_at = -math.inf
        self._triggered = False
        self._force_eval = False
        self._stale_names: frozenset[str] = frozenset()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def instance(self) -> Optional[ScriptInstance]:
        return self._instance

    # --- lifecycle ---

    async def start(self) -> None:
        await self.attach()
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="control_loop")

    async def attach(self) -> None:
        """Subscribe the probes and install the stored script (default script if it won't load)."""
        for topic in self.probe_topics.values():
            self._listener_removers.append(self.bridge.add_listener(topic, self._on_probe))
            self.bridge.subscribe(topic, owner="core")

        status = await self._install(self.store.script_source, "script")
        if status.error_at == "load_script" and self.store.script_source != self.store.default_script:
            logger.error("Stored script failed to load (%s); falling back to the default script", status.error)
            status = await self._install(self.store.default_script, "default")
        self.script_status = status

    async def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._task:
            await self._task
            self._task = None

        while not self._commands.empty():
            _cmd, fut = self._commands.get_nowait()
            if not fut.done():
                fut.set_exception(ThermostatError("Control loop stopped"))

        for remove in self._listener_removers:
            remove()
        self._listener_removers.clear()

        # best-effort safe state on every exit path
        if self.bridge.publish(self.command_topic, HvacDecision.OFF.value):
            logger.info("Published final 'off' to %s", self.command_topic)
        else:
            logger.error("Could not publish final 'off' to %s", self.command_topic)

        if self._instance is not None:
            self._instance.close()
            self._instance = None
        self._worker.shutdown()

    def add_status_listener(self, callback: StatusListener) -> None:
        self._status_listeners.append(callback)

    def run_state(self) -> ControllerRunState:
        s = self.controller.state
        return ControllerRunState(
            mode=self.store.mode,
            phase=s.phase,
            consecutive_failures=s.consecutive_failures,
            last_decision=s.last_decision,
            applied_decision=s.applied_decision,
            last_evaluation_utc=s.last_evaluation_utc,
            script_updated_at=self.store.script_updated_at,
            last_error=s.last_error,
            init_error=s.init_error,
            timed_override=self.store.timed_override,
            oneshot_override=self.store.oneshot_override,
            calibration=self.store.calibration,
        )

    # --- commands ---

    async def submit(self, command: Any) -> Any:
        """Run ``command`` on the loop task, or inline when the task is not running."""
        if not self.running or asyncio.current_task() is self._task:
            return await self.execute(command)
        fut = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((command, fut))
        self._wake.set()
        return await fut

    async def execute(self, command: Any) -> Any:
        if isinstance(command, SetMode):
            await self.store.set_mode(command.mode)
            if command.mode is OperatingMode.OFF:
                await self._apply(HvacDecision.OFF, "Mode set to off", force=True)
            else:
                self._request_evaluation()
            result: Any = self.run_state()

        elif isinstance(command, SetScriptSource):
            result = await self._replace_script(command.source)

        elif isinstance(command, DryRunScript):
            return await self._dry_run(command.source)

        elif isinstance(command, SetCalibration):
            result = await self.store.set_calibration(command.offsets)
            self._request_evaluation()

        elif isinstance(command, SetTimedOverride):
            await self.store.set_timed_override(command.override)
            logger.info("Timed override %s", command.override or "cleared")
            self._request_evaluation()
            result = self.store.timed_override

        elif isinstance(command, SetOneshotOverride):
            await self.store.set_oneshot_override(command.override)
            logger.info("One-shot override %s", command.override or "cleared")
            self._request_evaluation()
            result = self.store.oneshot_override

        else:
            raise TypeError(f"Unknown command: {type(command).__name__}")

        self._notify()
        return result

    async def _drain_commands(self) -> None:
        while not self._commands.empty():
            command, fut = self._commands.get_nowait()
            try:
                result = await self.execute(command)
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
            else:
                if not fut.done():
                    fut.set_result(result)

    # --- main loop ---

    async def _run(self) -> None:
        logger.info(
            "Control loop started (evaluate every %ss, tick every %ss, refresh %ss)",
            self.evaluation_interval_s,
            self.tick_interval_s,
            self.controller.refresh_interval_s,
        )

        while not self._stop.is_set():
            try:
                await self._drain_commands()
                now = self._clock()
                if self._evaluation_due(now):
                    await self.evaluate_once()
                if not self.controller.faulted and now >= self._next_tick_at:
                    await self.tick_once()
            except Exception as e:
                logger.exception("Control loop error: %s", e)

            if self._stop.is_set():
                break
            # coalesced wake: any number of triggers collapse into one pass
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._seconds_until_due(self._clock()))
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

        logger.info("Control loop stopped")

    def _evaluation_due(self, now: float) -> bool:
        if self._force_eval or now >= self._next_eval_at:
            return True
        return (
            self._triggered
            and not self.controller.faulted
            and now - self._last_eval_at >= self.event_debounce_s
        )

    def _seconds_until_due(self, now: float) -> float:
        due = [self._next_eval_at]
        if not self.controller.faulted:
            due.append(self._next_tick_at)
            if self._triggered:
                due.append(self._last_eval_at + self.event_debounce_s)
        return max(0.0, min(due) - now)

    def _request_evaluation(self) -> None:
        self._force_eval = True
        self._wake.set()

    def _on_probe(self, reading: SensorReading) -> None:
        if self.event_triggers and reading.numeric:
            self._triggered = True
            self._wake.set()

    # --- evaluation ---

    async def evaluate_once(self) -> Optional[HvacDecision]:
        """One Idle -> Evaluating -> (Applying) -> Idle pass. Returns the decision applied or held."""
        now_mono = self._clock()
        now = self._utc()
        self._last_eval_at = now_mono
        self._triggered = False
        self._force_eval = False

        state = self._snapshot()
        arb = await self._arbitrate(state, now)
        decision = arb.decision

        if arb.consult_script:
            was_faulted = self.controller.faulted
            outcome = await self._consult_script(state, now)
            if self.controller.faulted:
                decision = HvacDecision.OFF
            elif was_faulted:
                # recovered: overrides apply again before the script's answer
                arb = await self._arbitrate(state, now)
                decision = arb.decision if arb.decision is not None else outcome
            else:
                decision = outcome

        if decision is None:
            held = self.controller.state.applied_decision
            if held is not None and self.controller.refresh_due(self._clock()):
                await self._apply(held, "Refresh (no decision)")
        else:
            self.controller.state.last_decision = decision
            await self._apply(decision, arb.reason)

        self._next_eval_at = self._clock() + (
            self.faulted_retry_s if self.controller.faulted else self.evaluation_interval_s
        )
        self._notify()
        return decision if decision is not None else self.controller.state.applied_decision

    async def _arbitrate(self, state: ScriptState, now: datetime) -> Arbitration:
        arb = self.controller.arbitrate(
            self.store.mode,
            now,
            state.probes,
            self.store.timed_override,
            self.store.oneshot_override,
        )
        if arb.clear_timed:
            logger.info("Timed override expired")
            await self.store.set_timed_override(None)
        if arb.clear_oneshot:
            logger.info("One-shot override satisfied; cleared")
            await self.store.set_oneshot_override(None)
        return arb

    async def _consult_script(self, state: ScriptState, now: datetime) -> Optional[HvacDecision]:
        self.controller.set_phase(LoopPhase.EVALUATING)
        try:
            await self._ensure_instance()
            decision = await self._call_hook("evaluate", state)
        except ScriptError as e:
            failure = ScriptFailure(_error_at(e, "evaluate_script"), e.kind, str(e), now)
            logger.warning(
                "Script %s failed (%s, %d in a row): %s",
                failure.error_at, e.kind, self.controller.state.consecutive_failures + 1, e,
            )
            if self.controller.record_failure(failure) and not self.controller.faulted:
                await self._apply(HvacDecision.OFF, "Entering FAULTED", force=True)
                self.controller.enter_faulted()
            return None
        finally:
            self.controller.set_phase(LoopPhase.IDLE)

        self.controller.record_success(now)
        return decision

    async def tick_once(self) -> None:
        self._next_tick_at = self._clock() + self.tick_interval_s
        if self.controller.faulted or self._instance is None:
            return
        try:
            await self._call_hook("tick", self._snapshot())
        except ScriptError as e:
            logger.warning("Script tick failed (%s): %s", e.kind, e)
            self.controller.state.last_error = ScriptFailure(
                _error_at(e, "tick_script"), e.kind, str(e), self._utc()
            )

    async def _apply(self, decision: HvacDecision, reason: str, force: bool = False) -> bool:
        now_mono = self._clock()
        if not force and not self.controller.needs_publish(decision, now_mono):
            return False

        self.controller.set_phase(LoopPhase.APPLYING)
        try:
            if not self.bridge.publish(self.command_topic, decision.value):
                raise ActuatorError(f"Publishing {decision.value!r} to {self.command_topic} failed")
        except ActuatorError as e:
            logger.error("%s; retrying next cycle", e)
            self.controller.forget_applied()
            return False
        finally:
            self.controller.set_phase(LoopPhase.IDLE)

        self.controller.mark_applied(decision, now_mono)
        logger.debug("Applied %s (%s)", decision.value, reason)
        return True

    # --- script plumbing ---

    def _snapshot(self, bus: Optional[RecordingBus] = None) -> ScriptState:
        loop = asyncio.get_running_loop()
        if bus is not None:
            subscribe, publish = bus.subscribe, bus.publish
        else:
            # hooks run on the worker thread; bus actions go back to the loop in order
            def subscribe(topic: str) -> None:
                loop.call_soon_threadsafe(self.bridge.subscribe, topic, "script")

            def publish(topic: str, payload: str) -> None:
                loop.call_soon_threadsafe(self.bridge.publish, topic, payload)

        state = build_script_state(
            mode=self.store.mode,
            readings=self.bridge.snapshot(),
            probe_topics=self.probe_topics,
            now_utc=self._utc(),
            local_time=self._local(),
            is_stale=self.bridge.is_stale,
            calibrate=self.store.calibrated,
            subscribe=subscribe,
            publish=publish,
        )
        stale = frozenset(state.stale)
        if stale != self._stale_names:
            if stale:
                logger.warning("Withholding stale probe(s): %s", ", ".join(sorted(stale)))
            else:
                logger.info("All probes fresh again")
            self._stale_names = stale
        return state

    async def _on_worker(self, hook: str, source: Optional[str], fn: Callable[..., Any], *args: Any,
                         budgets: int = 1) -> Any:
        deadline = self.host.timeout_s * budgets + self.abandon_grace_s
        abandoned = self._worker.abandoned
        try:
            return await self._worker.run(deadline, hook, fn, *args)
        except ScriptTimeoutError:
            if source is not None and self._worker.abandoned > abandoned:
                self._runaway_source = source
            raise

    async def _call_hook(self, hook: str, state: ScriptState) -> Any:
        instance = self._instance
        if instance is None:
            raise ScriptRuntimeError("No script instance is loaded", hook=hook)
        fn = {
            "init": self.host.call_init,
            "evaluate": self.host.call_evaluate,
            "tick": self.host.call_tick,
        }[hook]
        try:
            return await self._on_worker(hook, instance.source, fn, instance, state)
        except ScriptTimeoutError:
            if self._instance is instance:
                if self._runaway_source == instance.source:
                    logger.error("Script is stuck outside its budget; it stays unloaded until a new script is set")
                else:
                    logger.warning("Script instance interrupted by timeout; it will be rebuilt")
                instance.close()
                self._instance = None
            raise

    async def _ensure_instance(self) -> None:
        if self._instance is not None:
            return
        if self.store.script_source == self._runaway_source:
            raise ScriptTimeoutError("Script was abandoned while stuck outside its budget", hook="load")
        status = await self._install(self.store.script_source, "script")
        if status.error_at == "load_script":
            raise ScriptRuntimeError(f"Script could not be rebuilt: {status.error}", hook="load")

    async def _install(self, source: str, name: str) -> ScriptStatus:
        """Build a new instance and run its init. The old instance is kept if the load fails."""
        try:
            instance = await self._on_worker("load", source, self.host.load, source, name)
        except ScriptError as e:
            logger.error("Script load failed (%s): %s", e.kind, e)
            return ScriptStatus(success=False, error_at="load_script", error=str(e))

        self._runaway_source = None
        old, self._instance = self._instance, instance
        if old is not None:
            old.close()
        self.bridge.release("script")

        self.controller.state.init_error = None
        try:
            await self._call_hook("init", self._snapshot())
        except ScriptError as e:
            logger.warning("Script init failed (%s): %s", e.kind, e)
            self.controller.state.init_error = str(e)
            self.controller.state.last_error = ScriptFailure(
                _error_at(e, "init_script"), e.kind, str(e), self._utc()
            )
            return ScriptStatus(success=False, error_at="init_script", error=str(e))
        return ScriptStatus(success=True)

    async def _replace_script(self, source: str) -> ScriptStatus:
        status = await self._install(source, "script")
        if status.error_at != "load_script":
            await self.store.set_script_source(source)
            logger.info("Script replaced (%d bytes)", len(source))
            self._request_evaluation()
        self.script_status = status
        return status

    async def _dry_run(self, source: str) -> ScriptStatus:
        state = self._snapshot(RecordingBus())
        try:
            decision = await self._on_worker("evaluate", None, self.host.dry_run, source, state, budgets=2)
        except ScriptError as e:
            return ScriptStatus(success=False, error_at=_error_at(e, "evaluate_script"), error=str(e))
        return ScriptStatus(success=True, decision=decision.value if decision else None)

    def _notify(self) -> None:
        snapshot = self.run_state()
        for callback in list(self._status_listeners):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Status listener failed")
