from __future__ import annotations

import asyncio
import unittest

from raffle_operator.lottery.errors import PayoutFailed
from raffle_operator.lottery.event_manager import OPERATOR_ALERT
from raffle_operator.lottery.models import RafflePhase
from raffle_operator.lottery.scheduler import AutomationScheduler

from tests.support import ENTRANCE_FEE, INTERVAL, make_raffle

CONFIG = {"operator": {"check_interval": 0.01, "error_backoff": 0.01, "fulfillment_timeout": 60}}


class AutomationSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.h = make_raffle()
        self.scheduler = AutomationScheduler(self.h.raffle, CONFIG, store=self.h.store)

    async def test_config_values_are_read(self) -> None:
        self.assertEqual(self.scheduler.check_interval, 0.01)
        self.assertEqual(self.scheduler.fulfillment_timeout, 60)

        defaults = AutomationScheduler(self.h.raffle, {}, store=self.h.store)
        self.assertEqual(defaults.check_interval, 10)
        self.assertEqual(defaults.error_backoff, 30)
        self.assertEqual(defaults.fulfillment_timeout, 600)

    async def test_run_once_skips_when_not_due(self) -> None:
        await self.h.raffle.enter("alice", ENTRANCE_FEE)

        self.assertIsNone(await self.scheduler.run_once())
        self.assertEqual(self.h.raffle.phase, RafflePhase.OPEN)
        self.assertEqual(self.scheduler.status.performed_upkeeps, 0)
        self.assertIsNotNone(self.scheduler.status.last_check)

    async def test_run_once_performs_upkeep_when_due(self) -> None:
        await self.h.raffle.enter("alice", ENTRANCE_FEE)
        self.h.clock.advance(INTERVAL + 1)

        request_id = await self.scheduler.run_once()

        self.assertEqual(request_id, 1)
        self.assertEqual(self.h.raffle.phase, RafflePhase.CALCULATING)
        self.assertEqual(self.scheduler.status.last_request_id, 1)
        self.assertEqual(self.scheduler.status.performed_upkeeps, 1)

        # Already closed; the next poll does nothing
        self.assertIsNone(await self.scheduler.run_once())
        self.assertEqual(self.h.oracle.pending_requests(), [1])

    async def test_overdue_request_raises_one_alert(self) -> None:
        await self.h.raffle.enter("alice", ENTRANCE_FEE)
        self.h.clock.advance(INTERVAL + 1)
        request_id = await self.scheduler.run_once()

        self.h.clock.advance(60)
        await self.scheduler.run_once()
        self.assertEqual(self.h.store.get_live_feed(event_type=OPERATOR_ALERT), [])

        self.h.clock.advance(1)
        await self.scheduler.run_once()
        await self.scheduler.run_once()

        alerts = self.h.store.get_live_feed(event_type=OPERATOR_ALERT)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].details["kind"], "fulfillment_overdue")
        self.assertEqual(alerts[0].details["requestId"], request_id)
        self.assertEqual(alerts[0].details["waitedSeconds"], 61)
        self.assertEqual(self.scheduler.get_status()["alerts_raised"], 1)

        # Alerting never resolves the round
        self.assertEqual(self.h.raffle.phase, RafflePhase.CALCULATING)
        self.assertEqual(self.h.raffle.outstanding_request_id, request_id)

    async def test_failed_payout_raises_alert(self) -> None:
        await self.h.raffle.enter("alice", ENTRANCE_FEE)
        self.h.payout.block("alice")
        self.h.clock.advance(INTERVAL + 1)
        request_id = await self.scheduler.run_once()
        with self.assertRaises(PayoutFailed):
            await self.h.raffle.fulfill_random_words(request_id, [0])

        await self.scheduler.run_once()
        await self.scheduler.run_once()

        alerts = self.h.store.get_live_feed(event_type=OPERATOR_ALERT)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].details["kind"], "payout_stuck")
        self.assertEqual(alerts[0].details["requestId"], request_id)

    async def test_alert_keys_are_dropped_once_round_reopens(self) -> None:
        await self.h.raffle.enter("alice", ENTRANCE_FEE)
        self.h.payout.block("alice")
        self.h.clock.advance(INTERVAL + 1)
        request_id = await self.scheduler.run_once()
        with self.assertRaises(PayoutFailed):
            await self.h.raffle.fulfill_random_words(request_id, [0])
        await self.scheduler.run_once()
        self.assertEqual(self.scheduler._alerted, {f"payout:{request_id}"})

        self.h.payout.unblock("alice")
        await self.h.raffle.retry_payout()
        await self.scheduler.run_once()

        self.assertEqual(self.h.raffle.phase, RafflePhase.OPEN)
        self.assertEqual(self.scheduler._alerted, set())
        self.assertEqual(self.scheduler.get_status()["alerts_raised"], 1)

    async def test_background_loop_performs_upkeep(self) -> None:
        await self.h.raffle.enter("alice", ENTRANCE_FEE)
        self.h.clock.advance(INTERVAL + 1)

        await self.scheduler.start()
        self.assertEqual(self.scheduler.get_status()["status"], "running")
        for _ in range(100):
            if self.scheduler.status.performed_upkeeps:
                break
            await asyncio.sleep(0.01)
        await self.scheduler.stop()

        self.assertEqual(self.scheduler.status.performed_upkeeps, 1)
        self.assertEqual(self.h.raffle.phase, RafflePhase.CALCULATING)
        self.assertEqual(self.scheduler.get_status()["status"], "stopped")
        self.assertIsNone(self.scheduler.scheduler_task)


if __name__ == "__main__":
    unittest.main()
