"""
Single-flight execution for overlapping async work.

`SingleFlight.run(factory)` starts the operation only when nothing is in
flight; any caller arriving while it runs awaits the same task and receives
the same result object. The shared task is shielded, so cancelling one waiter
never aborts the operation the others are joined to.
"""

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self.joined = 0

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            task.add_done_callback(self._release)
            self._task = task
        else:
            self.joined += 1
        return await asyncio.shield(task)

    async def wait(self) -> None:
        """Wait for the in-flight operation, if any, without starting one."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    def _release(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        if not task.cancelled():
            # Retrieve so an exception nobody awaited is not reported as lost
            task.exception()
