from __future__ import annotations
import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Optional

from lupa import LuaRuntime, lua_type

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.errors import (
    ScriptError,
    ScriptRuntimeError,
    ScriptSyntaxError,
    ScriptTimeoutError,
    ScriptUnsafeError,
)
from ..domain.models import HvacDecision
from ..domain.schedule import TimedProgram
from .sandbox import (
    FORBIDDEN_GLOBALS,
    PRELUDE,
    TIMEOUT_MARKER,
    UNSAFE_MARKER,
    find_forbidden_globals,
)
from .state import ScriptState

logger = logging.getLogger(__name__)
script_logger = logging.getLogger("thermostatd.script")

_UNSAFE_NAME = re.compile(re.escape(UNSAFE_MARKER) + r"([A-Za-z_][A-Za-z0-9_]*)")


def _deny_attribute_access(obj: Any, attr_name: Any, is_setting: bool) -> Any:
    raise AttributeError(f"Python attribute access is not permitted: {attr_name!r}")


def _script_print(message: str) -> None:
    script_logger.info("%s", message)


class _Budget:
    """Wall-clock budget polled from the Lua count hook."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._deadline: Optional[float] = None
        self.tripped = False

    def arm(self, seconds: float) -> None:
        self.tripped = False
        self._deadline = self._clock() + seconds

    def disarm(self) -> None:
        self._deadline = None
        self.tripped = False

    def expired(self) -> bool:
        if not self.tripped and self._deadline is not None and self._clock() >= self._deadline:
            self.tripped = True
        return self.tripped


class ScriptInstance:
    """A loaded script with its own Lua runtime and environment."""

    def __init__(self, source: str, name: str, runtime: LuaRuntime, dispatcher: Any, budget: _Budget) -> None:
        self.source = source
        self.name = name
        self.loaded_at: datetime = now_utc()
        self.runtime = runtime
        self.dispatcher = dispatcher
        self.budget = budget
        self.closed = False

    def has_hook(self, hook: str) -> bool:
        if self.closed:
            return False
        return bool(self.dispatcher["has"](hook))

    def close(self) -> None:
        self.closed = True
        self.dispatcher = None
        self.runtime = None


class ScriptHost:
    def __init__(
        self,
        timeout_s: Optional[float] = None,
        instruction_quantum: Optional[int] = None,
        max_memory: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_s = settings.script_timeout_seconds if timeout_s is None else timeout_s
        self.instruction_quantum = instruction_quantum or settings.script_instruction_quantum
        self.max_memory = settings.script_max_memory_bytes if max_memory is None else max_memory
        self._clock = clock

    # --- lifecycle ---

    def load(self, source: str, name: str = "script") -> ScriptInstance:
        """Compile and run the script's top level. Nothing is shared with other instances."""
        if not isinstance(source, str):
            raise ScriptSyntaxError("Script source must be text", hook="load")

        forbidden = find_forbidden_globals(source)
        if forbidden:
            raise ScriptUnsafeError(
                f"Script uses capabilities that are not available: {', '.join(forbidden)}",
                hook="load",
            )

        budget = _Budget(self._clock)
        runtime = self._new_runtime()
        factory = runtime.execute(PRELUDE)
        dispatcher = factory(
            budget.expired,
            _script_print,
            runtime.table_from(sorted(FORBIDDEN_GLOBALS)),
            TIMEOUT_MARKER,
            UNSAFE_MARKER,
            self.instruction_quantum,
        )

        err = self._guarded(budget, "load", dispatcher["compile"], source, name)
        if err is not None:
            raise ScriptSyntaxError(str(err), hook="load")

        logger.info("Loaded script %r (%d bytes)", name, len(source))
        return ScriptInstance(source, name, runtime, dispatcher, budget)

    def call_init(self, instance: ScriptInstance, state: ScriptState) -> None:
        if instance.has_hook("init"):
            self._call_hook(instance, "init", state)

    def call_evaluate(self, instance: ScriptInstance, state: ScriptState) -> Optional[HvacDecision]:
        result = self._call_hook(instance, "evaluate", state)
        return _as_decision(result)

    def call_tick(self, instance: ScriptInstance, state: ScriptState) -> None:
        if instance.has_hook("tick"):
            self._call_hook(instance, "tick", state)

    def dry_run(self, source: str, state: ScriptState) -> Optional[HvacDecision]:
        """Load ``source`` into a throwaway instance and evaluate it once."""
        instance = self.load(source, name="test")
        try:
            return self.call_evaluate(instance, state)
        finally:
            instance.close()

    # --- internals ---

    def _new_runtime(self) -> LuaRuntime:
        kwargs: dict[str, Any] = dict(
            register_eval=False,
            register_builtins=False,
            unpack_returned_tuples=True,
            attribute_filter=_deny_attribute_access,
        )
        if self.max_memory:
            kwargs["max_memory"] = self.max_memory
        return LuaRuntime(**kwargs)

    def _call_hook(self, instance: ScriptInstance, hook: str, state: ScriptState) -> Any:
        if instance.closed:
            raise ScriptRuntimeError("Script instance has been unloaded", hook=hook)

        runtime = instance.runtime

        def run_program(program: Any) -> Any:
            entries = []
            for key, fn in program.items():
                if lua_type(fn) != "function":
                    raise ScriptRuntimeError(
                        f"Timed program must map time strings to functions, found {key!r}",
                        hook=hook,
                    )
                entries.append((key, fn))
            return TimedProgram(entries).evaluate(state.local_time)

        lua_state = instance.dispatcher["make_state"](
            state.mode.value,
            runtime.table_from(state.probes),
            runtime.table_from(state.stale),
            state.read,
            state.subscribe,
            state.publish,
            run_program,
        )
        return self._guarded(instance.budget, hook, instance.dispatcher["call"], hook, lua_state)

    def _guarded(self, budget: _Budget, hook: str, fn: Any, *args: Any) -> Any:
        budget.arm(self.timeout_s)
        try:
            return fn(*args)
        except Exception as exc:
            # translate before disarm() clears the tripped flag
            raise self._translate(budget, hook, exc) from exc
        finally:
            budget.disarm()

    def _translate(self, budget: _Budget, hook: str, exc: Exception) -> ScriptError:
        if budget.tripped:
            return ScriptTimeoutError(
                f"{hook} exceeded its {self.timeout_s:g}s budget and was aborted", hook=hook
            )
        message = str(exc)
        m = _UNSAFE_NAME.search(message)
        if m:
            return ScriptUnsafeError(f"Access to '{m.group(1)}' is not permitted", hook=hook)
        if isinstance(exc, ScriptError):
            return type(exc)(message, hook=hook)
        return ScriptRuntimeError(message or type(exc).__name__, hook=hook)


def _as_decision(value: Any) -> Optional[HvacDecision]:
    if isinstance(value, tuple):
        value = value[0] if value else None
    if value is None or value is False:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        kind = lua_type(value) or type(value).__name__
        raise ScriptRuntimeError(
            f"evaluate must return 'heat', 'cool', 'off' or nil, got a {kind}", hook="evaluate"
        )
    try:
        return HvacDecision.parse(value)
    except ValueError as exc:
        raise ScriptRuntimeError(str(exc), hook="evaluate") from None
