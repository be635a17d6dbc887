import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Union

from leadflow.logging_config import get_logger

logger = get_logger("timers")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


TickCallback = Callable[[], Union[None, Awaitable[None]]]


class RepeatingTimer:
    """Runs a callback every ``interval_seconds`` on the running event loop.

    A failing tick is logged and the loop keeps going. Ticks do not overlap:
    the next sleep starts after the callback returns.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: TickCallback,
        initial_delay_seconds: Optional[float] = None,
    ):
        self.name = name
        self.interval_seconds = max(interval_seconds, 0.01)
        self.initial_delay_seconds = initial_delay_seconds
        self.callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        delay = self.initial_delay_seconds if self.initial_delay_seconds is not None else self.interval_seconds
        while True:
            try:
                await asyncio.sleep(delay)
                result = self.callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    f"Timer {self.name} tick failed",
                    extra={"context": {"timer": self.name, "error": str(exc)}},
                )
            delay = self.interval_seconds

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(f"Timer {self.name} started", extra={"context": {"interval": self.interval_seconds}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
