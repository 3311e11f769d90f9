import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def run_periodic(
    interval_s: float,
    callback: Callable[[], Awaitable[None]],
    name: str,
    is_running: Optional[Callable[[], bool]] = None,
) -> None:
    """Invoke ``callback`` every ``interval_s`` seconds until cancelled or stopped.

    A failing tick is logged and the loop keeps its cadence.
    """
    while is_running is None or is_running():
        await asyncio.sleep(interval_s)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed", name)


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if task_list:
        await asyncio.gather(*task_list, return_exceptions=True)
