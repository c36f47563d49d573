"""Race engine calls against a deadline.

The awaited call runs as its own task. When the deadline wins the task is
cancelled and detached: whatever it eventually produces is consumed and
logged, never returned to the caller.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from voicecoach.core.exceptions import EngineError, OperationTimeoutError
from voicecoach.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _discard_outcome(task: asyncio.Future, operation: str) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug({"event": "late_operation_error_ignored", "operation": operation, "error": repr(exc)})
    else:
        logger.debug({"event": "late_operation_result_ignored", "operation": operation})


async def run_with_timeout(awaitable: Awaitable[T], timeout: float, *, operation: str) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Raises ``OperationTimeoutError`` when the deadline expires first and
    ``EngineError`` when the call was cancelled from elsewhere. Exceptions
    raised by the call itself propagate unchanged so callers can tell a
    rejection from a timeout.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        task.add_done_callback(lambda t: _discard_outcome(t, operation))
        raise

    if task not in done:
        task.cancel()
        task.add_done_callback(lambda t: _discard_outcome(t, operation))
        raise OperationTimeoutError(
            f"{operation} did not complete within {timeout:.2f}s",
            operation=operation,
            details={"timeout_seconds": timeout},
        )

    if task.cancelled():
        raise EngineError(f"{operation} was cancelled by the engine", operation=operation)
    return task.result()
