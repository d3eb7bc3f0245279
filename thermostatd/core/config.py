from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "thermostatd"
    timezone: str = "America/Los_Angeles"

    # Startup mode when nothing has been persisted yet
    default_mode: str = "off"

    # Bus: "mqtt" for a real broker, "sim" for the in-memory bus
    bus_mode: str = Field(default="mqtt")
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_user: Optional[str] = None
    mqtt_pass: Optional[str] = None
    mqtt_client_id: str = "thermostatd"
    mqtt_keepalive_seconds: int = 5
    mqtt_reconnect_min_seconds: int = 1
    mqtt_reconnect_max_seconds: int = 60

    # Subscribe retry backoff (doubles up to the max)
    bus_retry_initial_seconds: float = 1.0
    bus_retry_max_seconds: float = 60.0

    # Probe name -> sensor topic (JSON in the environment)
    probes: dict[str, str] = Field(
        default_factory=lambda: {"primary": "home/thermostat/probes/primary"}
    )
    probe_stale_seconds: float = 300.0

    # Actuator
    hvac_command_topic: str = "home/thermostat/hvac/remotestate/set"

    # Administrative topics
    mode_topic: str = "home/thermostat/hvac/mode"
    script_topic: str = "home/thermostatd/script"
    script_get_topic: str = "home/thermostatd/script/get"
    script_set_topic: str = "home/thermostatd/script/set"
    script_error_topic: str = "home/thermostatd/script/error"
    script_test_topic: str = "home/thermostatd/script/test"
    script_test_error_topic: str = "home/thermostatd/script/test/error"
    timed_override_topic: str = "home/thermostatd/timed_override"
    oneshot_override_topic: str = "home/thermostatd/oneshot_override"
    calibration_set_topic: str = "home/thermostatd/calibration/set"
    state_topic: str = "home/thermostatd/state"

    # Control loop
    evaluation_interval_seconds: float = 10.0
    tick_interval_seconds: float = 60.0
    refresh_interval_seconds: float = 60.0
    faulted_retry_seconds: float = 30.0
    failure_threshold: int = 3
    event_triggers_enabled: bool = True
    event_debounce_seconds: float = 5.0

    # Scripting
    script_timeout_seconds: float = 2.0
    script_instruction_quantum: int = 1000
    # a hook still running this long past its budget is abandoned with its worker thread
    script_abandon_grace_seconds: float = 2.0
    script_max_memory_bytes: Optional[int] = 32 * 1024 * 1024
    script_path: Optional[str] = None  # seeds the default script when set

    # Storage
    sqlite_path: str = Field(default="thermostatd.db")

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "thermostatd.log"


settings = Settings()
