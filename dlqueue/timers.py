"""A coalescing timer for debounced work on the running asyncio loop."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Set, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


class CoalescingTimer:
    """
    Collapses bursts of `schedule()` calls into a single deferred callback.

    `schedule()` arms the timer only if it is not already armed, so under a
    steady stream of changes the callback still fires once per `delay`.
    `reschedule()` restarts the countdown instead. `flush()` cancels any pending
    run, waits for any callback run still in flight, then invokes the callback
    and waits for it. Coroutine runs never overlap, so the last update written
    on teardown is never overtaken by an older one.

    The callback may be a plain function or a coroutine function.
    """
    def __init__(self, delay: float, callback: TimerCallback, name: str = 'timer'):
        self.delay = delay
        self.callback = callback
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self):
        if self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def reschedule(self):
        self.cancel()
        self.schedule()

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self):
        self.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        result = self.callback()
        if inspect.isawaitable(result):
            await self._run_exclusive(result)

    async def _run_exclusive(self, awaitable: Awaitable[Any]):
        async with self._lock:
            return await awaitable

    def _fire(self):
        self._handle = None
        try:
            result = self.callback()
        except Exception:
            logger.exception(f"Error in {self.name} callback")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._run_exclusive(result))
            self._inflight.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._inflight.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception(f"Error in {self.name} callback")
