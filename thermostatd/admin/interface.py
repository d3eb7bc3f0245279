from __future__ import annotations
import logging
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from ..domain.commands import (
    DryRunScript,
    ScriptStatus,
    SetCalibration,
    SetMode,
    SetOneshotOverride,
    SetScriptSource,
    SetTimedOverride,
)
from ..domain.errors import ConfigError
from ..domain.models import ControllerRunState, OneshotOverride, OperatingMode, TimedOverride
from ..services.control_loop import ControlLoop
from .schemas import OneshotOverrideIn, TimedOverrideIn

logger = logging.getLogger(__name__)


def _validate(model: type[BaseModel], raw: Any) -> Any:
    if isinstance(raw, model):
        return raw.to_domain()
    try:
        return model.model_validate(raw).to_domain()
    except ValidationError as e:
        raise ConfigError(f"Invalid {model.__name__}: {e}") from None


class AdminInterface:
    """The only writer of controller configuration.

    Each call is turned into a command and run on the control loop's task; the
    caller awaits the result.
    """

    def __init__(self, loop: ControlLoop) -> None:
        self._loop = loop

    async def set_mode(self, mode: Union[OperatingMode, str]) -> ControllerRunState:
        parsed = mode if isinstance(mode, OperatingMode) else OperatingMode.parse(mode)
        return await self._loop.submit(SetMode(parsed))

    async def set_script_source(self, source: str) -> ScriptStatus:
        if not isinstance(source, str):
            raise ConfigError("Script source must be text")
        return await self._loop.submit(SetScriptSource(source))

    async def test_script(self, source: str) -> ScriptStatus:
        if not isinstance(source, str):
            raise ConfigError("Script source must be text")
        return await self._loop.submit(DryRunScript(source))

    async def set_calibration(self, offsets: Mapping[str, float]) -> dict[str, float]:
        return await self._loop.submit(SetCalibration(dict(offsets)))

    async def set_timed_override(
        self, override: Union[TimedOverride, TimedOverrideIn, Mapping[str, Any], None]
    ) -> Optional[TimedOverride]:
        if override is not None and not isinstance(override, TimedOverride):
            override = _validate(TimedOverrideIn, override)
        return await self._loop.submit(SetTimedOverride(override))

    async def set_oneshot_override(
        self, override: Union[OneshotOverride, OneshotOverrideIn, Mapping[str, Any], None]
    ) -> Optional[OneshotOverride]:
        if override is not None and not isinstance(override, OneshotOverride):
            override = _validate(OneshotOverrideIn, override)
        return await self._loop.submit(SetOneshotOverride(override))

    def get_script_source(self) -> str:
        return self._loop.store.script_source

    def get_run_state(self) -> ControllerRunState:
        return self._loop.run_state()

    def add_status_listener(self, callback: Callable[[ControllerRunState], None]) -> None:
        self._loop.add_status_listener(callback)
