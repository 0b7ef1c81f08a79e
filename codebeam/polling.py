import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


class RepeatingTask:
    """
    Run an async callback every `interval` seconds until cancelled.

    `cancel()` is synchronous: once it returns the callback is never started
    again, and a callback that is currently awaiting is interrupted at its
    next suspension point. A callback can end the loop by returning STOP.
    """

    STOP = object()

    def __init__(
        self,
        callback: Callable[[], Awaitable[object]],
        interval: float,
        name: str = "poll",
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.callback = callback
        self.interval = interval
        self.name = name
        self.on_error = on_error
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "RepeatingTask":
        if self._cancelled:
            raise RuntimeError(f"{self.name} was cancelled and cannot restart")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                return
            try:
                result = await self.callback()
            except Exception as e:
                logger.debug("%s stopped by error: %s", self.name, e)
                if self.on_error is not None:
                    self.on_error(e)
                return
            if result is self.STOP:
                return
