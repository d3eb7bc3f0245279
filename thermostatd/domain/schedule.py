from __future__ import annotations
import re
from datetime import datetime, time
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple, Union

from .errors import ConfigError

DecisionFn = Callable[[], Any]
TimeKey = Union[str, time]

_HHMM = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def parse_time_of_day(key: TimeKey) -> time:
    """Accept a ``datetime.time`` or an ``"HH:MM"`` string."""
    if isinstance(key, time):
        return key.replace(tzinfo=None)
    if not isinstance(key, str):
        raise ConfigError(f"Timed program keys must be 'HH:MM' strings, found {key!r}")
    m = _HHMM.match(key)
    if not m:
        raise ConfigError(f"Timed program keys must be in 'HH:MM' format. Found {key!r}")
    h, mi = int(m.group(1)), int(m.group(2))
    if h > 23 or mi > 59:
        raise ConfigError(f"Invalid time of day: {key!r}")
    return time(hour=h, minute=mi)


class TimedProgram:
    """A time-of-day keyed program, treated as a sorted ring over 24 hours."""

    def __init__(self, entries: Union[Mapping[TimeKey, DecisionFn], Iterable[Tuple[TimeKey, DecisionFn]]]) -> None:
        items = entries.items() if isinstance(entries, Mapping) else entries
        table: dict[time, DecisionFn] = {}
        for key, fn in items:
            if not callable(fn):
                raise ConfigError(f"Timed program entry {key!r} is not a function")
            # later entries win when two keys name the same time
            table[parse_time_of_day(key)] = fn
        if not table:
            raise ConfigError("Timed program has no entries")
        self._table = table
        self._times = sorted(table)

    def times(self) -> list[time]:
        return list(self._times)

    def active_time(self, now: Union[time, datetime]) -> time:
        t = now.time() if isinstance(now, datetime) else now.replace(tzinfo=None)
        # before the first entry, yesterday's last entry still applies
        active = self._times[-1]
        for start in self._times:
            if start <= t:
                active = start
            else:
                break
        return active

    def select(self, now: Union[time, datetime]) -> DecisionFn:
        return self._table[self.active_time(now)]

    def evaluate(self, now: Union[time, datetime]) -> Any:
        return self.select(now)()


def timed_program(
    entries: Union[Mapping[TimeKey, DecisionFn], Iterable[Tuple[TimeKey, DecisionFn]]],
    now: Optional[Union[time, datetime]] = None,
) -> Any:
    """Select the active entry for ``now`` and return its (possibly empty) result."""
    if now is None:
        from ..core.timeutil import local_time_of_day
        now = local_time_of_day()
    return TimedProgram(entries).evaluate(now)
