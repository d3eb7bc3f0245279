import asyncio
import threading
from datetime import time

import pytest

from thermostatd.domain.errors import ScriptRuntimeError, ScriptTimeoutError
from thermostatd.domain.models import HvacDecision, OperatingMode
from thermostatd.scripting.host import ScriptHost
from thermostatd.scripting.state import ScriptState
from thermostatd.scripting.worker import HookWorker

STALLS_IN_PUBLISH = "function evaluate(state) state.mqtt:publish('stall', 'now') return 'heat' end"


def stalling_state(release):
    return ScriptState(
        mode=OperatingMode.HEAT,
        probes={},
        stale={},
        values={},
        local_time=time(12, 0),
        subscribe=lambda topic: None,
        publish=lambda topic, payload: release.wait(10),
    )


def test_runs_calls_and_passes_errors_through():
    worker = HookWorker("t")

    def boom():
        raise ScriptRuntimeError("bad", hook="evaluate")

    async def main():
        assert await worker.run(1.0, "evaluate", lambda a, b: a + b, 2, 3) == 5
        with pytest.raises(ScriptRuntimeError):
            await worker.run(1.0, "evaluate", boom)
        assert worker.abandoned == 0

    asyncio.run(main())
    worker.shutdown()


def test_call_stuck_outside_lua_is_abandoned():
    release = threading.Event()
    host = ScriptHost(timeout_s=0.2)
    inst = host.load(STALLS_IN_PUBLISH)
    worker = HookWorker("t")
    stuck = worker.thread

    async def main():
        with pytest.raises(ScriptTimeoutError) as exc:
            await worker.run(0.5, "evaluate", host.call_evaluate, inst, stalling_state(release))
        assert exc.value.kind == "timeout"
        assert exc.value.hook == "evaluate"
        assert worker.abandoned == 1
        assert worker.thread is not stuck

        fresh = host.load("function evaluate(s) return 'cool' end")
        assert await worker.run(1.0, "evaluate", host.call_evaluate, fresh, stalling_state(release)) \
            is HvacDecision.COOL

    try:
        asyncio.run(main())
    finally:
        release.set()
    stuck.join(5)
    assert not stuck.is_alive()
    worker.shutdown()


def test_shutdown_stops_thread_and_refuses_work():
    worker = HookWorker("t")
    worker.shutdown()
    worker.thread.join(5)
    assert not worker.thread.is_alive()

    async def main():
        with pytest.raises(ScriptRuntimeError):
            await worker.run(1.0, "tick", lambda: None)

    asyncio.run(main())
