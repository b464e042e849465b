"""Fire-and-forget background tasks with their own error channel.

WHAT:
    `spawn_background()` schedules a coroutine as an asyncio Task, keeps a
    strong reference to it until it finishes, and logs + captures any failure
    from a done-callback.

WHY:
    Follow-up work (branch rollups after an insights pass, sync reports to the
    notifier) must never fail or delay the operation that triggered it.
    Running it as a separate task makes the decoupling structural: the caller
    never awaits it and never sees its exception.

REFERENCES:
    - adsync/services/insights_sync_service.py (auto-rollup trigger)
    - adsync/services/dispatch_service.py (sync reports)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Dict, Optional, Set

from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task] = set()


def spawn_background(
    coro: Coroutine[Any, Any, Any],
    name: str,
    extra: Optional[Dict[str, Any]] = None,
) -> asyncio.Task:
    """Run `coro` in the background; failures are logged, never raised."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _on_done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if finished.cancelled():
            logger.warning("[BACKGROUND] Task %s was cancelled", name)
            return
        exc = finished.exception()
        if exc is not None:
            logger.error("[BACKGROUND] Task %s failed: %s", name, exc, exc_info=exc)
            capture_exception(exc, extra={"operation": name, **(extra or {})})

    task.add_done_callback(_on_done)
    return task


def pending_background_tasks() -> Set[asyncio.Task]:
    """Snapshot of tasks still running."""
    return set(_background_tasks)


async def drain_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for in-flight background tasks, e.g. on worker shutdown."""
    tasks = pending_background_tasks()
    if not tasks:
        return
    logger.info("[BACKGROUND] Waiting for %d background tasks", len(tasks))
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
