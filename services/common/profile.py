from __future__ import annotations

import logging
import time
from collections.abc import Callable

from prometheus_client import Histogram

LOGGER = logging.getLogger('contractsync.profile')

STEP_DURATION_SECONDS = Histogram(
    'contractsync_step_duration_seconds',
    'Duration of orchestrator steps',
    ['step']
)


def Profile(debug: bool = False) -> Callable[[str], Callable[[], float]]:
    """Returns a timer factory: ``end = profile('step'); ...; end()`` observes and returns seconds."""

    def start(step: str) -> Callable[[], float]:
        started = time.perf_counter()
        if debug:
            LOGGER.info('profile start step=%s', step)

        def end() -> float:
            elapsed = time.perf_counter() - started
            STEP_DURATION_SECONDS.labels(step=step).observe(elapsed)
            if debug:
                LOGGER.info('profile end step=%s seconds=%.3f', step, elapsed)
            return elapsed

        return end

    return start
