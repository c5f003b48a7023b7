from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout_sec: float, *, label: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_sec)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"{label} timed out after {timeout_sec:g}s") from exc


async def settle_with_timeout(awaitable: Awaitable[T], timeout_sec: float, *, label: str) -> T:
    """Like ``with_timeout`` but, on timeout, waits for the call to finish before raising.

    Use it for writes backed by a worker thread: cancelling the awaiting task
    does not stop the thread, so the caller must not move on while it runs.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_sec)
    except asyncio.TimeoutError as exc:
        logger.warning("%s exceeded %gs; waiting for it to settle", label, timeout_sec)
        try:
            await task
        except Exception:
            logger.warning("%s failed after its timeout", label, exc_info=True)
        raise TimeoutError(f"{label} timed out after {timeout_sec:g}s") from exc
