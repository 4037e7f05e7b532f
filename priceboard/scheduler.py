import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class TimerScheduler(Protocol):
    """Keyed one-shot timers. Scheduling an existing key replaces it."""

    def call_later(self, key: str, delay: float, callback: Callable[[], None]) -> None: ...

    def cancel(self, key: str) -> bool: ...


class AsyncioTimerScheduler:
    """
    One-shot timers on the running asyncio loop, addressed by key.

    All callbacks run on the loop thread, so state they touch never needs
    locking.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, key: str, delay: float, callback: Callable[[], None]) -> None:
        self.cancel(key)
        self._handles[key] = self._get_loop().call_later(max(0.0, delay), self._fire, key, callback)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def pending(self) -> List[str]:
        return sorted(self._handles)

    def _fire(self, key: str, callback: Callable[[], None]) -> None:
        self._handles.pop(key, None)
        try:
            callback()
        except Exception:
            logger.exception("Timer callback %r failed", key)


class TickLoop:
    """
    Runs ``fetch`` then ``process`` every ``interval`` seconds.

    The next tick is scheduled only after the current one has returned, so
    two ticks can never overlap; a slow tick simply pushes the next one back.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[object]],
        process: Callable[[object], object],
        interval: float,
    ):
        self._fetch = fetch
        self._process = process
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        try:
            snapshot = await self._fetch()
        except Exception:
            logger.exception("Quote fetch failed; skipping tick")
            return
        try:
            self._process(snapshot)
        except Exception:
            logger.exception("Tick processing failed")
        finally:
            self.ticks += 1

    async def _run(self) -> None:
        while True:
            started = time.monotonic()
            await self.run_once()
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Tick loop started (every %.1fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Tick loop stopped")
