"""
Scheduled conversation refresh.

Re-invokes a refresh coroutine every `interval` seconds plus uniform jitter
in [-jitter, +jitter]. notify() is the cue for realtime "new data may be
available" signals: it wakes the loop for an immediate refresh. The signal
itself never carries content; the refresh result is the only source of
truth.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from chatpipe.errors import TransientIOError

logger = logging.getLogger(__name__)


class ConversationPoller:
    def __init__(
        self,
        refresh: Callable[[], Awaitable[Any]],
        *,
        interval: float = 3.0,
        jitter: float = 0.5,
        on_update: Optional[Callable[[Any], None]] = None,
        rng: Optional[random.Random] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._refresh = refresh
        self.interval = interval
        self.jitter = max(0.0, jitter)
        self._on_update = on_update
        self._rng = rng or random.Random()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        return max(0.0, self.interval + self._rng.uniform(-self.jitter, self.jitter))

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    def notify(self) -> None:
        """Request an immediate refresh."""
        self._wakeup.set()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def refresh_once(self) -> Any:
        try:
            result = await self._refresh()
        except TransientIOError as e:
            logger.warning(f"Conversation refresh failed: {e.message}")
            return None
        self.refresh_count += 1
        if self._on_update:
            self._on_update(result)
        return result

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            await self.refresh_once()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass
