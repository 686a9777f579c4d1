"""Spawn asyncio background tasks that cannot fail silently."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to safely exit it."""

    pass


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that raises SystemExit on task exception."""
    if (
        not task.cancelled()
        and task.exception() is not None
        and not isinstance(task.exception(), SafeTaskExitError)
    ):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )
        raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background with its errors surfaced.

    Used for the long-lived loops nobody awaits until shutdown, such as the
    signaling client reconnect loop and the relay stats reporter. Tasks
    spawned here log the full traceback of any exception and terminate the
    program via
    [`exit_on_error()`][peerchat.utils.tasks.exit_on_error].

    Tasks can raise
    [`SafeTaskExitError`][peerchat.utils.tasks.SafeTaskExitError] to signal
    they are finished without causing a system exit.

    Args:
        coro: Coroutine function to run as a task.
        args: Positional arguments for the coroutine.
        name: Optional task name, useful when debugging pending tasks.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(exit_on_error)
    return task
