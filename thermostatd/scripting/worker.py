from __future__ import annotations
import asyncio
import itertools
import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional

from ..domain.errors import ScriptRuntimeError, ScriptTimeoutError

logger = logging.getLogger(__name__)

_Job = Optional[tuple[Callable[..., Any], tuple, Future]]


class HookWorker:
    """Runs script calls one at a time on a daemon thread.

    The Lua count hook cannot interrupt a C library function (a backtracking
    ``string.find``, say), so every call also carries a hard deadline. A call
    that overruns it abandons the thread: a fresh worker takes over and the
    stuck one is left to finish on its own. Worker threads are daemons, so an
    abandoned one never holds up interpreter exit.
    """

    def __init__(self, name: str = "script") -> None:
        self.name = name
        self.abandoned = 0
        self._ids = itertools.count(1)
        self._closed = False
        self._queue, self._thread = self._spawn()

    def _spawn(self) -> tuple["queue.SimpleQueue[_Job]", threading.Thread]:
        q: "queue.SimpleQueue[_Job]" = queue.SimpleQueue()
        t = threading.Thread(
            target=_serve, args=(q,), name=f"{self.name}-{next(self._ids)}", daemon=True
        )
        t.start()
        return q, t

    @property
    def thread(self) -> threading.Thread:
        return self._thread

    async def run(self, deadline_s: float, hook: str, fn: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise ScriptRuntimeError("Script worker has been shut down", hook=hook)
        fut: Future = Future()
        self._queue.put((fn, args, fut))
        try:
            return await asyncio.wait_for(asyncio.wrap_future(fut), deadline_s)
        except asyncio.TimeoutError:
            self._abandon(hook)
            raise ScriptTimeoutError(
                f"{hook} did not return within {deadline_s:g}s and was abandoned", hook=hook
            ) from None

    def _abandon(self, hook: str) -> None:
        stuck = self._thread
        # lets the stuck thread exit if it ever returns
        self._queue.put(None)
        self.abandoned += 1
        logger.error(
            "Script %s is stuck outside the instruction budget; abandoning thread %s (%d so far)",
            hook, stuck.name, self.abandoned,
        )
        self._queue, self._thread = self._spawn()

    def shutdown(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put(None)


def _serve(q: "queue.SimpleQueue[_Job]") -> None:
    while True:
        job = q.get()
        if job is None:
            return
        fn, args, fut = job
        if not fut.set_running_or_notify_cancel():
            continue
        try:
            result = fn(*args)
        except BaseException as exc:
            fut.set_exception(exc)
        else:
            fut.set_result(result)
