"""
thermostatd exceptions

Script errors stop at the script host; the control loop only ever sees
ScriptError subclasses and turns them into its failure counter.
"""


class ThermostatError(Exception):
    """Base exception for thermostatd."""

    pass


class ConfigError(ThermostatError):
    """Malformed schedule, mode or stored configuration."""

    pass


class ScriptError(ThermostatError):
    """A user script failed to load or a hook call failed."""

    kind = "runtime"

    def __init__(self, message: str, hook: str | None = None) -> None:
        super().__init__(message)
        self.hook = hook


class ScriptSyntaxError(ScriptError):
    kind = "syntax"


class ScriptUnsafeError(ScriptError):
    """The script reached for a capability outside the allow-list."""

    kind = "unsafe"


class ScriptRuntimeError(ScriptError):
    kind = "runtime"


class ScriptTimeoutError(ScriptError):
    """The script ran past its wall-clock budget and was aborted."""

    kind = "timeout"


class BusError(ThermostatError):
    """Transport-level failure talking to the message bus."""

    pass


class ActuatorError(ThermostatError):
    """An actuator command could not be published."""

    pass
