"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_for_condition(
    condition: Callable[[], bool],
    timeout: float = 5,
    interval: float = 0.01,
) -> None:
    """Poll until a condition is true.

    Raises:
        asyncio.TimeoutError: If the condition is still false after
            `timeout` seconds.
    """

    async def _wait() -> None:
        while not condition():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_wait(), timeout)
