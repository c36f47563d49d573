"""Heartbeat supervision of in-flight speech engine operations."""
from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Callable, Optional

from voicecoach.core.logging import get_logger
from voicecoach.voice.models import OperationRecord

logger = get_logger(__name__)

StuckHandler = Callable[[OperationRecord], None]


class OperationWatchdog:
    """Detects an engine operation that has been pending for too long.

    Only one operation is tracked at a time; tracking a new one replaces the
    previous record. ``check`` is synchronous so a recovery can never be
    interleaved with another coroutine touching the same record.
    """

    def __init__(
        self,
        *,
        max_operation_seconds: float,
        heartbeat_seconds: float,
        on_stuck: StuckHandler,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_operation_seconds = max_operation_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._on_stuck = on_stuck
        self._clock = clock
        self._current: Optional[OperationRecord] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[OperationRecord]:
        return self._current

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, name: str) -> Callable[[], None]:
        """Register ``name`` as the in-flight operation and return its release handle."""
        record = OperationRecord(name=name, started_at=self._clock())
        self._current = record
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            # A newer operation may have replaced this one already
            if self._current is record:
                self._current = None

        return release

    def check(self) -> Optional[OperationRecord]:
        """Recover the current operation if it exceeded the limit; return it."""
        record = self._current
        if record is None:
            return None
        if self._clock() - record.started_at <= self.max_operation_seconds:
            return None
        if self._current is not record:
            return None

        self._current = None
        logger.warning(
            {
                "event": "operation_stuck",
                "operation": record.name,
                "elapsed_seconds": round(self._clock() - record.started_at, 3),
            }
        )
        try:
            self._on_stuck(record)
        except Exception:
            logger.exception({"event": "watchdog_recovery_failed", "operation": record.name})
        return record

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="speech-watchdog")

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._current = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            self.check()
