from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from review_engine.services.notifications import NotificationManager

logger = logging.getLogger(__name__)

_running_tasks: dict[str, asyncio.Task[Any]] = {}


def start_task(name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
    """Create an asyncio task and register it by name."""
    task = asyncio.create_task(coro, name=name)
    _running_tasks[name] = task
    task.add_done_callback(lambda _: _running_tasks.pop(name, None))
    return task


def get_task(name: str) -> asyncio.Task[Any] | None:
    return _running_tasks.get(name)


def is_running(name: str) -> bool:
    task = _running_tasks.get(name)
    return task is not None and not task.done()


async def stop_task(name: str) -> None:
    task = _running_tasks.get(name)
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def run_notification_scans(manager: NotificationManager, interval: float) -> None:
    """Run manager.scan() every `interval` seconds until cancelled.

    A failing tick is logged and the loop carries on with the next one.
    """
    logger.info("Notification scanner started (every %.0fs)", interval)
    while True:
        try:
            result = await manager.scan()
            if result.overdue_enqueued or result.reminders_enqueued:
                logger.info(
                    "Scan enqueued %d overdue alerts and %d reminders",
                    result.overdue_enqueued,
                    result.reminders_enqueued,
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Notification scan failed")
        await asyncio.sleep(interval)
