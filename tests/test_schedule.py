from datetime import datetime, time

import pytest

from thermostatd.domain.errors import ConfigError
from thermostatd.domain.schedule import TimedProgram, parse_time_of_day, timed_program


def program():
    return {"23:00": lambda: "A", "05:00": lambda: "B"}


def test_wraps_to_previous_days_last_entry():
    assert timed_program(program(), now=time(2, 0)) == "A"


def test_selects_latest_entry_not_after_now():
    assert timed_program(program(), now=time(6, 0)) == "B"


def test_exact_boundary_selects_that_entry():
    assert timed_program(program(), now=time(23, 0)) == "A"
    assert timed_program(program(), now=time(5, 0)) == "B"
    assert timed_program(program(), now=time(4, 59, 59)) == "A"


def test_every_minute_maps_to_exactly_one_entry():
    p = TimedProgram({"07:00": lambda: 1, "12:30": lambda: 2, "21:15": lambda: 3})
    seen = set()
    for minute in range(24 * 60):
        active = p.active_time(time(minute // 60, minute % 60))
        assert active in p.times()
        seen.add(active)
    assert seen == set(p.times())


def test_single_entry_applies_all_day():
    p = TimedProgram({"12:00": lambda: "only"})
    assert p.evaluate(time(0, 0)) == "only"
    assert p.evaluate(time(23, 59)) == "only"


def test_entry_may_have_no_opinion():
    assert timed_program({"00:00": lambda: None}, now=time(9, 0)) is None


def test_accepts_datetime_and_time_keys():
    p = TimedProgram({time(8, 0): lambda: "day", "20:00": lambda: "night"})
    assert p.evaluate(datetime(2024, 1, 1, 9, 30)) == "day"
    assert p.evaluate(datetime(2024, 1, 1, 20, 30)) == "night"


def test_duplicate_time_later_entry_wins():
    p = TimedProgram([("5:00", lambda: "first"), ("05:00", lambda: "second")])
    assert p.times() == [time(5, 0)]
    assert p.evaluate(time(6, 0)) == "second"


def test_empty_program_is_config_error():
    with pytest.raises(ConfigError):
        TimedProgram({})


@pytest.mark.parametrize("key", ["24:00", "7", "07:60", "noon", 700])
def test_bad_keys_are_config_errors(key):
    with pytest.raises(ConfigError):
        TimedProgram({key: lambda: "x"})


def test_non_callable_entry_is_config_error():
    with pytest.raises(ConfigError):
        TimedProgram({"07:00": "heat"})


def test_parse_time_of_day():
    assert parse_time_of_day("7:05") == time(7, 5)
    assert parse_time_of_day(" 23:59 ") == time(23, 59)
