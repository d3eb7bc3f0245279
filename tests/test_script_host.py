import gc
import logging
import time as _time
from datetime import datetime, time, timedelta, timezone

import pytest

from thermostatd.domain.errors import (
    ScriptRuntimeError,
    ScriptSyntaxError,
    ScriptTimeoutError,
    ScriptUnsafeError,
)
from thermostatd.domain.models import HvacDecision, OperatingMode, SensorReading
from thermostatd.scripting.host import ScriptHost
from thermostatd.scripting.state import RecordingBus, ScriptState, build_script_state


def make_state(mode=OperatingMode.HEAT, probes=None, values=None, local_time=time(12, 0), bus=None):
    bus = bus or RecordingBus()
    return ScriptState(
        mode=mode,
        probes={"primary": 20.0} if probes is None else probes,
        stale={},
        values=values or {},
        local_time=local_time,
        subscribe=bus.subscribe,
        publish=bus.publish,
    )


def evaluate(source, state=None, host=None):
    host = host or ScriptHost(timeout_s=1.0)
    inst = host.load(source)
    return host.call_evaluate(inst, state or make_state())


def test_evaluate_returns_decision():
    assert evaluate("function evaluate(state) return 'heat' end") is HvacDecision.HEAT


def test_decision_is_case_insensitive():
    assert evaluate("function evaluate(state) return ' COOL ' end") is HvacDecision.COOL


def test_nil_and_false_mean_no_decision():
    assert evaluate("function evaluate(state) end") is None
    assert evaluate("function evaluate(state) return false end") is None


@pytest.mark.parametrize("ret", ["42", "'warm'", "{}"])
def test_unexpected_return_is_runtime_error(ret):
    with pytest.raises(ScriptRuntimeError) as exc:
        evaluate(f"function evaluate(state) return {ret} end")
    assert exc.value.hook == "evaluate"


def test_syntax_error():
    with pytest.raises(ScriptSyntaxError) as exc:
        ScriptHost().load("function evaluate(state) return 'heat' end end")
    assert exc.value.kind == "syntax"
    assert exc.value.hook == "load"


def test_missing_evaluate_fails_load():
    with pytest.raises(ScriptSyntaxError):
        ScriptHost().load("function tick(state) end")


@pytest.mark.parametrize("body", [
    "os.execute('ls')",
    "io.open('/etc/passwd')",
    "require('socket')",
    "local f = load('return 1')",
    "local d = debug",
])
def test_forbidden_capabilities_rejected_at_load(body):
    with pytest.raises(ScriptUnsafeError):
        ScriptHost().load(f"function evaluate(state) {body} end")


def test_forbidden_names_in_strings_comments_and_fields_are_fine():
    src = """
    -- os and io are not reachable from here
    local note = "io.open is unavailable"
    local t = {}
    t.os = 'linux'
    function evaluate(state) return t.os == 'linux' and 'off' or nil end
    """
    assert evaluate(src) is HvacDecision.OFF


def test_forbidden_global_reached_dynamically_is_unsafe():
    with pytest.raises(ScriptUnsafeError):
        evaluate("function evaluate(state) local m = _G['o' .. 's'] return 'off' end")


def test_runtime_error_carries_message():
    with pytest.raises(ScriptRuntimeError) as exc:
        evaluate("function evaluate(state) error('boom') end")
    assert "boom" in str(exc.value)
    assert exc.value.kind == "runtime"


def test_busy_loop_is_aborted_within_budget():
    host = ScriptHost(timeout_s=0.2)
    inst = host.load("function evaluate(state) while true do end end")
    started = _time.monotonic()
    with pytest.raises(ScriptTimeoutError) as exc:
        host.call_evaluate(inst, make_state())
    assert _time.monotonic() - started < 5
    assert exc.value.kind == "timeout"


def test_pcall_cannot_swallow_timeout():
    host = ScriptHost(timeout_s=0.2)
    inst = host.load("""
    function evaluate(state)
      pcall(function() while true do end end)
      return 'heat'
    end
    """)
    with pytest.raises(ScriptTimeoutError):
        host.call_evaluate(inst, make_state())


def test_busy_loop_at_top_level_is_aborted():
    with pytest.raises(ScriptTimeoutError):
        ScriptHost(timeout_s=0.2).load("while true do end\nfunction evaluate(s) end")


def test_instance_usable_after_timeout_budget_reset():
    host = ScriptHost(timeout_s=0.2)
    inst = host.load("""
    function evaluate(state)
      if state.mode == 'cool' then while true do end end
      return 'heat'
    end
    """)
    with pytest.raises(ScriptTimeoutError):
        host.call_evaluate(inst, make_state(mode=OperatingMode.COOL))
    assert host.call_evaluate(inst, make_state()) is HvacDecision.HEAT


def test_init_and_tick_are_optional():
    host = ScriptHost()
    inst = host.load("function evaluate(state) return 'off' end")
    host.call_init(inst, make_state())
    host.call_tick(inst, make_state())


def test_init_subscribes_and_evaluate_reads_cache():
    bus = RecordingBus()
    host = ScriptHost()
    inst = host.load("""
    function init(state) state.mqtt:subscribe('home/pin') end
    function evaluate(state)
      if state.mqtt['home/pin'] == 'on' then return 'cool' end
    end
    """)
    host.call_init(inst, make_state(bus=bus))
    assert bus.subscribed == ["home/pin"]
    assert host.call_evaluate(inst, make_state(values={"home/pin": "on"})) is HvacDecision.COOL
    assert host.call_evaluate(inst, make_state()) is None


def test_publish_goes_through_facade():
    bus = RecordingBus()
    host = ScriptHost()
    inst = host.load("function evaluate(state) state.mqtt:publish('home/fan', 'on') end")
    host.call_evaluate(inst, make_state(bus=bus))
    assert bus.published == [("home/fan", "on")]


def test_state_is_read_only():
    with pytest.raises(ScriptRuntimeError):
        evaluate("function evaluate(state) state.mode = 'off' end")
    with pytest.raises(ScriptRuntimeError):
        evaluate("function evaluate(state) state.probes.primary = 99 end")


def test_probes_and_mode_visible():
    src = """
    function evaluate(state)
      if state.mode == 'heat' and state.probes.primary < 19 then return 'heat' end
      return 'off'
    end
    """
    assert evaluate(src, make_state(probes={"primary": 18.0})) is HvacDecision.HEAT
    assert evaluate(src, make_state(probes={"primary": 21.0})) is HvacDecision.OFF


def test_timed_program_from_script():
    src = """
    function evaluate(state)
      return state:timed_program {
        ['23:00'] = function() return 'cool' end,
        ['05:00'] = function() return 'heat' end,
      }
    end
    """
    assert evaluate(src, make_state(local_time=time(2, 0))) is HvacDecision.COOL
    assert evaluate(src, make_state(local_time=time(6, 0))) is HvacDecision.HEAT


def test_timed_program_entry_without_opinion():
    src = "function evaluate(state) return state:timed_program { ['00:00'] = function() end } end"
    assert evaluate(src) is None


@pytest.mark.parametrize("program", [
    "{ ['25:00'] = function() return 'heat' end }",
    "{ ['05:00'] = 'heat' }",
    "{}",
    "'05:00'",
])
def test_bad_timed_program_is_runtime_error(program):
    with pytest.raises(ScriptRuntimeError):
        evaluate(f"function evaluate(state) return state:timed_program({program}) end")


def test_instances_do_not_share_globals():
    src = """
    counter = 0
    function evaluate(state)
      counter = counter + 1
      if counter > 1 then return 'heat' end
      return 'off'
    end
    """
    host = ScriptHost()
    a = host.load(src)
    assert host.call_evaluate(a, make_state()) is HvacDecision.OFF
    b = host.load(src)
    assert host.call_evaluate(b, make_state()) is HvacDecision.OFF
    assert host.call_evaluate(a, make_state()) is HvacDecision.HEAT


def test_print_goes_to_script_logger(caplog):
    caplog.set_level(logging.INFO, logger="thermostatd.script")
    evaluate("function evaluate(state) print('temp', state.probes.primary) end")
    assert "temp" in caplog.text


def test_dry_run_uses_throwaway_instance():
    host = ScriptHost()
    bus = RecordingBus()
    decision = host.dry_run(
        "function evaluate(state) state.mqtt:publish('x', 'y') return 'cool' end",
        make_state(bus=bus),
    )
    assert decision is HvacDecision.COOL
    assert bus.published == [("x", "y")]


def test_closed_instance_cannot_be_called():
    host = ScriptHost()
    inst = host.load("function evaluate(state) return 'off' end")
    inst.close()
    with pytest.raises(ScriptRuntimeError):
        host.call_evaluate(inst, make_state())


def test_dot_call_forms_are_accepted():
    bus = RecordingBus()
    src = """
    function evaluate(state)
      state.mqtt.publish('home/fan', 'auto')
      return state.timed_program({ ['06:00'] = function() return 'heat' end })
    end
    """
    assert evaluate(src, make_state(bus=bus)) is HvacDecision.HEAT
    assert bus.published == [("home/fan", "auto")]


def test_gc_metamethods_are_refused():
    with pytest.raises(ScriptRuntimeError) as exc:
        ScriptHost(timeout_s=1.0).load(
            "setmetatable({}, {__gc = function() while true do end end})\n"
            "function evaluate(s) return 'heat' end"
        )
    assert "__gc" in str(exc.value)

    with pytest.raises(ScriptRuntimeError):
        evaluate("function evaluate(s) setmetatable({}, {__gc = print}) return 'heat' end")

    # plain metatables still work
    assert evaluate("""
    local t = setmetatable({}, {__index = function() return 'cool' end})
    function evaluate(s) return t.anything end
    """) is HvacDecision.COOL


def test_finalizer_added_later_never_runs_on_close():
    host = ScriptHost(timeout_s=1.0)
    inst = host.load("""
    local mt = {}
    keep = setmetatable({}, mt)
    mt.__gc = function() while true do end end
    function evaluate(s) return 'heat' end
    """)
    assert host.call_evaluate(inst, make_state()) is HvacDecision.HEAT
    inst.close()
    gc.collect()
    assert inst.closed


def test_string_metatable_does_not_leak_dump():
    assert evaluate("""
    function evaluate(state)
      if getmetatable('') ~= false then return 'heat' end
      if ('x').dump ~= nil or string.dump ~= nil then return 'heat' end
      if ('abc'):upper() ~= 'ABC' or ('a,b'):find(',') ~= 2 then return 'heat' end
      return 'cool'
    end
    """) is HvacDecision.COOL


def test_script_state_uses_staleness_and_calibration_callbacks():
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    readings = {
        "p/a": SensorReading("p/a", 20.0, now - timedelta(seconds=10)),
        "p/b": SensorReading("p/b", 18.0, now - timedelta(seconds=400)),
        "p/c": SensorReading("p/c", "n/a", now),
    }
    bus = RecordingBus()
    state = build_script_state(
        mode=OperatingMode.HEAT,
        readings=readings,
        probe_topics={"a": "p/a", "b": "p/b", "c": "p/c", "d": "p/d"},
        now_utc=now,
        local_time=time(12, 0),
        is_stale=lambda r, at: r.age_seconds(at) > 300,
        calibrate=lambda name, raw: raw + (0.5 if name == "a" else 0.0),
        subscribe=bus.subscribe,
        publish=bus.publish,
    )
    assert state.probes == {"a": 20.5}
    assert state.stale == {"b": 400.0}
    assert state.read("p/c") == "n/a"
