from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from prometheus_client import Counter

LOGGER = logging.getLogger('contractsync.scheduler')

IDLE = 'idle'
RUNNING = 'running'

STARTED = 'started'
QUEUED = 'queued'
DROPPED = 'dropped'

SCHEDULER_TRIGGERS_TOTAL = Counter(
    'contractsync_scheduler_triggers_total',
    'Scheduler triggers by result',
    ['result']
)
SCHEDULER_RUN_FAILURES_TOTAL = Counter(
    'contractsync_scheduler_run_failures_total',
    'Passes that raised out of the orchestrator'
)


class Scheduler:
    """Runs one pass at a time; a trigger during a pass queues at most one follow-up pass."""

    def __init__(self, run: Callable[[], Awaitable[Any]], interval_seconds: float = 60) -> None:
        self._run = run
        self.interval_seconds = interval_seconds
        self.state = IDLE
        self.runs = 0
        self.failures = 0
        self._pending = False
        self._drain_task: asyncio.Task | None = None
        self._tick_task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._pending

    def trigger(self) -> str:
        if self.state == RUNNING:
            if self._pending:
                result = DROPPED
            else:
                self._pending = True
                result = QUEUED
        else:
            self.state = RUNNING
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
            result = STARTED
        SCHEDULER_TRIGGERS_TOTAL.labels(result=result).inc()
        LOGGER.debug('trigger result=%s', result)
        return result

    async def _drain(self) -> None:
        try:
            while True:
                await self._run_once()
                if not self._pending:
                    break
                self._pending = False
        finally:
            self.state = IDLE

    async def _run_once(self) -> None:
        try:
            await self._run()
        except Exception:
            self.failures += 1
            SCHEDULER_RUN_FAILURES_TOTAL.inc()
            LOGGER.exception('scheduled pass failed')
        finally:
            self.runs += 1

    async def wait_idle(self) -> None:
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    async def _tick(self) -> None:
        while True:
            self.trigger()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._tick_task is not None:
            return
        LOGGER.info('scheduler started interval_seconds=%s', self.interval_seconds)
        self._tick_task = asyncio.get_running_loop().create_task(self._tick())

    async def stop(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None
        # an in-flight pass is never cancelled
        self._pending = False
        await self.wait_idle()
        LOGGER.info('scheduler stopped runs=%s failures=%s', self.runs, self.failures)
