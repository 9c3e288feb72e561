import asyncio
import unittest
from datetime import datetime, timedelta

from expense_tracker.scheduler import Scheduler, run_job, seconds_until_hour


class SecondsUntilHourTests(unittest.TestCase):
    def test_later_today(self) -> None:
        self.assertEqual(seconds_until_hour(1, datetime(2026, 2, 15, 0, 30)), 30 * 60)

    def test_rolls_to_tomorrow(self) -> None:
        self.assertEqual(seconds_until_hour(1, datetime(2026, 2, 15, 1, 0)), 24 * 60 * 60)

    def test_rejects_invalid_hour(self) -> None:
        with self.assertRaises(ValueError):
            seconds_until_hour(24, datetime(2026, 2, 15))


class SchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def test_failing_job_is_logged(self) -> None:
        def broken():
            raise RuntimeError("db down")

        with self.assertLogs("expense_tracker.scheduler", level="ERROR"):
            await run_job("broken", broken)

    async def test_start_and_stop(self) -> None:
        scheduler = Scheduler()

        scheduler.start(sweep=lambda: None, sweep_hour=1, renew_watches=lambda: 0,
                        renewal_interval=timedelta(days=6))
        self.assertEqual(len(scheduler.tasks), 2)

        await scheduler.stop()
        self.assertEqual(scheduler.tasks, [])

    async def test_renewal_is_optional(self) -> None:
        scheduler = Scheduler()

        scheduler.start(sweep=lambda: None, sweep_hour=3)
        await asyncio.sleep(0)
        self.assertEqual(len(scheduler.tasks), 1)
        await scheduler.stop()


if __name__ == "__main__":
    unittest.main()
