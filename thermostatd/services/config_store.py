from __future__ import annotations
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Mapping, Optional, Union

from pydantic import ValidationError

from ..admin.schemas import CalibrationIn, OneshotOverrideIn, TimedOverrideIn
from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.errors import ConfigError
from ..domain.interfaces import ConfigRepository
from ..domain.models import OneshotOverride, OperatingMode, TimedOverride

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_PATH = Path(__file__).resolve().parent.parent / "scripting" / "default_script.lua"


def load_default_script(path: Optional[str] = None) -> str:
    """The script used when nothing has been stored yet (``script_path`` wins over the bundled one)."""
    path = path if path is not None else settings.script_path
    if path:
        try:
            return Path(path).read_text()
        except OSError as e:
            logger.warning("Failed to read script_path %s, using bundled default: %s", path, e)
    return DEFAULT_SCRIPT_PATH.read_text()


class ConfigStore:
    """Mode, calibration, script source and overrides.

    Reads are plain attribute access on memory. Every setter validates, then
    updates memory, then writes through to the repository; on a validation
    error the previous value is kept.
    """

    def __init__(
        self,
        repo: ConfigRepository,
        default_mode: Union[OperatingMode, str, None] = None,
        default_script: Optional[str] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._repo = repo
        self._clock = clock
        self.default_script = default_script if default_script is not None else load_default_script()
        if isinstance(default_mode, OperatingMode):
            self.mode = default_mode
        else:
            self.mode = OperatingMode.parse(default_mode or settings.default_mode)
        self._calibration: dict[str, float] = {}
        self.script_source = self.default_script
        self.script_updated_at: Optional[datetime] = None
        self.timed_override: Optional[TimedOverride] = None
        self.oneshot_override: Optional[OneshotOverride] = None

    @property
    def calibration(self) -> dict[str, float]:
        return dict(self._calibration)

    def calibrated(self, probe: str, raw: float) -> float:
        return raw + self._calibration.get(probe, 0.0)

    async def load(self) -> None:
        await self._repo.init()
        stored = await self._repo.load_all()

        loaders = {
            "mode": self._load_mode,
            "calibration": self._load_calibration,
            "script": self._load_script,
            "script_updated_at": self._load_script_updated_at,
            "timed_override": self._load_timed_override,
            "oneshot_override": self._load_oneshot_override,
        }
        for key, loader in loaders.items():
            if key not in stored:
                continue
            try:
                loader(json.loads(stored[key]))
            except (ValueError, TypeError, ConfigError) as e:
                logger.warning("Ignoring stored %s (keeping default): %s", key, e)

        logger.info(
            "Config loaded: mode=%s calibration=%s script=%s",
            self.mode.value,
            self._calibration,
            "stored" if self.script_updated_at else "default",
        )

    # --- setters ---

    async def set_mode(self, mode: Union[OperatingMode, str]) -> OperatingMode:
        parsed = mode if isinstance(mode, OperatingMode) else OperatingMode.parse(mode)
        self.mode = parsed
        await self._save(mode=parsed.value)
        logger.info("Mode set to %s", parsed.value)
        return parsed

    async def set_script_source(self, source: str) -> None:
        if not isinstance(source, str) or not source.strip():
            raise ConfigError("Script source must be non-empty text")
        self.script_source = source
        self.script_updated_at = self._clock()
        await self._save(script=source, script_updated_at=self.script_updated_at.isoformat())

    async def set_calibration(self, offsets: Mapping[str, float]) -> dict[str, float]:
        """Merge per-probe offsets; an offset of 0 removes the entry."""
        try:
            validated = CalibrationIn.model_validate(dict(offsets)).root
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid calibration: {e}") from None
        merged = {**self._calibration, **validated}
        self._calibration = {k: v for k, v in merged.items() if v != 0.0}
        await self._save(calibration=self._calibration)
        return self.calibration

    async def set_timed_override(self, override: Optional[TimedOverride]) -> None:
        self.timed_override = override
        payload = TimedOverrideIn.from_domain(override).model_dump(mode="json") if override else None
        await self._save(timed_override=payload)

    async def set_oneshot_override(self, override: Optional[OneshotOverride]) -> None:
        self.oneshot_override = override
        payload = OneshotOverrideIn.from_domain(override).model_dump(mode="json") if override else None
        await self._save(oneshot_override=payload)

    async def _save(self, **values) -> None:
        await self._repo.save({k: json.dumps(v) for k, v in values.items()}, at=self._clock())

    # --- load helpers ---

    def _load_mode(self, raw) -> None:
        if not isinstance(raw, str):
            raise ConfigError(f"mode must be a string, got {raw!r}")
        self.mode = OperatingMode.parse(raw)

    def _load_calibration(self, raw) -> None:
        try:
            self._calibration = dict(CalibrationIn.model_validate(raw).root)
        except ValidationError as e:
            raise ConfigError(str(e)) from None

    def _load_script(self, raw) -> None:
        if not isinstance(raw, str) or not raw.strip():
            raise ConfigError("stored script is empty")
        self.script_source = raw

    def _load_script_updated_at(self, raw) -> None:
        self.script_updated_at = datetime.fromisoformat(raw)

    def _load_timed_override(self, raw) -> None:
        self.timed_override = TimedOverrideIn.model_validate(raw).to_domain() if raw is not None else None

    def _load_oneshot_override(self, raw) -> None:
        self.oneshot_override = OneshotOverrideIn.model_validate(raw).to_domain() if raw is not None else None
