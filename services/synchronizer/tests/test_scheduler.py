import asyncio
import unittest

from services.synchronizer.scheduler import DROPPED, IDLE, QUEUED, RUNNING, STARTED, Scheduler


class GatedRun:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def __call__(self) -> None:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1


class SchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def test_triggers_during_a_pass_queue_exactly_one_follow_up(self) -> None:
        run = GatedRun()
        scheduler = Scheduler(run)

        self.assertEqual(scheduler.trigger(), STARTED)
        await asyncio.sleep(0)
        self.assertEqual(scheduler.state, RUNNING)
        self.assertEqual(scheduler.trigger(), QUEUED)
        self.assertEqual(scheduler.trigger(), DROPPED)

        run.gate.set()
        await scheduler.wait_idle()

        self.assertEqual(run.calls, 2)
        self.assertEqual(run.max_active, 1)
        self.assertEqual(scheduler.state, IDLE)
        self.assertFalse(scheduler.pending)

    async def test_trigger_when_idle_starts_a_single_pass(self) -> None:
        run = GatedRun()
        run.gate.set()
        scheduler = Scheduler(run)

        scheduler.trigger()
        await scheduler.wait_idle()

        self.assertEqual(run.calls, 1)
        self.assertEqual(scheduler.runs, 1)

    async def test_failed_pass_returns_to_idle_and_next_trigger_runs(self) -> None:
        outcomes = [RuntimeError('discovery failed for every family'), None]
        calls = []

        async def run() -> None:
            calls.append(1)
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome

        scheduler = Scheduler(run)
        with self.assertLogs('contractsync.scheduler', level='ERROR'):
            scheduler.trigger()
            await scheduler.wait_idle()

        self.assertEqual(scheduler.state, IDLE)
        self.assertEqual(scheduler.failures, 1)

        self.assertEqual(scheduler.trigger(), STARTED)
        await scheduler.wait_idle()
        self.assertEqual(len(calls), 2)
        self.assertEqual(scheduler.failures, 1)

    async def test_periodic_ticks_run_passes_until_stopped(self) -> None:
        run = GatedRun()
        run.gate.set()
        scheduler = Scheduler(run, interval_seconds=0.01)

        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        self.assertGreaterEqual(run.calls, 2)
        self.assertEqual(scheduler.state, IDLE)
        calls = run.calls
        await asyncio.sleep(0.03)
        self.assertEqual(run.calls, calls)

    async def test_stop_waits_for_the_pass_in_flight(self) -> None:
        run = GatedRun()
        scheduler = Scheduler(run, interval_seconds=60)
        scheduler.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        stopping = asyncio.ensure_future(scheduler.stop())
        await asyncio.sleep(0)
        self.assertFalse(stopping.done())

        run.gate.set()
        await stopping
        self.assertEqual(run.calls, 1)
        self.assertEqual(scheduler.state, IDLE)
