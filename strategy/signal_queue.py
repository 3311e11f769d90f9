import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from api.metrics import metrics
from strategy.signal_types import Signal


logger = logging.getLogger(__name__)

SignalHandler = Callable[[Signal], Awaitable[None]]


class SignalQueue:
    """FIFO buffer between webhook intake and the admission engine.

    Producers never block: while the queue is inactive, enqueue drops the
    signal instead of buffering it.
    """

    def __init__(self, active: bool = True):
        self._items: Deque[Signal] = deque()
        self.active = active

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, signal: Signal) -> bool:
        if not self.active:
            logger.info("Queue inactive, dropping %s signal for %s", signal.action, signal.symbol)
            metrics.record_drop('inactive')
            return False
        self._items.append(signal)
        metrics.update_queue_depth('signals', len(self._items))
        return True

    def pop_all(self):
        drained = []
        while self._items:
            drained.append(self._items.popleft())
        metrics.update_queue_depth('signals', 0)
        return drained


class SignalDispatcher:
    """Drains the queue on a fixed cadence into the admission handler."""

    def __init__(self, queue: SignalQueue, handler: SignalHandler, interval_s: float = 1.0):
        self.queue = queue
        self.handler = handler
        self.interval_s = interval_s
        self.running = False
        self._drain_lock = asyncio.Lock()

    async def drain(self) -> int:
        if self._drain_lock.locked():
            logger.debug("Drain pass already running, skipping tick")
            return 0
        async with self._drain_lock:
            batch = self.queue.pop_all()
            if not batch:
                return 0
            started = time.perf_counter()
            for signal in batch:
                try:
                    await self.handler(signal)
                except Exception:
                    logger.exception("Signal %s processing failed", signal.signal_id)
                    metrics.record_drop('handler_error')
            metrics.record_drain(len(batch), time.perf_counter() - started)
            return len(batch)

    async def run(self, interval_s: Optional[float] = None) -> None:
        interval = interval_s or self.interval_s
        self.running = True
        while self.running:
            await self.drain()
            await asyncio.sleep(interval)

    def stop(self) -> None:
        self.running = False
