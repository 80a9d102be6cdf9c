from __future__ import annotations

import asyncio
import unittest

from raffle_operator.lottery.errors import (
    NoPendingPayout,
    PayoutFailed,
    RoundNotOpen,
    InsufficientFee,
    UnknownOrStaleRequest,
    UpkeepNotNeeded,
)
from raffle_operator.lottery.event_manager import (
    ENTRY_RECORDED,
    PAYOUT_FAILED,
    RANDOMNESS_REQUESTED,
    WINNER_CHOSEN,
    WINNER_REQUESTED,
)
from raffle_operator.lottery.models import RafflePhase, RandomnessRequestParams
from raffle_operator.lottery.randomness import LocalRandomnessOracle

from tests.support import ENTRANCE_FEE, INTERVAL, START_TIME, make_raffle


class FailingOracle(LocalRandomnessOracle):
    async def request_random_words(self, params: RandomnessRequestParams) -> int:
        raise RuntimeError("oracle unreachable")


class RaffleStateMachineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.h = make_raffle()
        self.raffle = self.h.raffle

    async def _enter_all(self, players, fee: int = ENTRANCE_FEE) -> None:
        for player in players:
            await self.raffle.enter(player, fee)

    async def _close_round(self) -> int:
        self.h.clock.advance(INTERVAL + 1)
        return await self.raffle.perform_upkeep()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    async def test_initial_state(self) -> None:
        self.assertEqual(self.raffle.phase, RafflePhase.OPEN)
        self.assertEqual(self.raffle.player_count(), 0)
        self.assertEqual(self.raffle.pool_balance(), 0)
        self.assertEqual(self.raffle.last_timestamp, START_TIME)
        self.assertIsNone(self.raffle.recent_winner)
        self.assertEqual(self.raffle.entrance_fee, ENTRANCE_FEE)
        self.assertEqual(self.raffle.interval, INTERVAL)
        self.assertEqual(self.raffle.request_confirmations, 3)
        self.assertEqual(self.raffle.num_words, 1)

    async def test_entries_count_and_sum(self) -> None:
        fees = [10, 11, 25]
        for i, fee in enumerate(fees):
            await self.raffle.enter(f"p{i}", fee)

        self.assertEqual(self.raffle.player_count(), 3)
        self.assertEqual(self.raffle.pool_balance(), sum(fees))
        self.assertEqual(self.raffle.get_players(), ["p0", "p1", "p2"])

    async def test_underpaid_entry_does_not_mutate(self) -> None:
        with self.assertRaises(InsufficientFee):
            await self.raffle.enter("alice", ENTRANCE_FEE - 1)
        self.assertEqual(self.raffle.player_count(), 0)
        self.assertEqual(self.raffle.pool_balance(), 0)
        self.assertEqual(self.h.store.get_live_feed(event_type=ENTRY_RECORDED), [])

    async def test_entry_rejected_while_calculating(self) -> None:
        await self._enter_all(["alice"])
        await self._close_round()

        with self.assertRaises(RoundNotOpen):
            await self.raffle.enter("bob", ENTRANCE_FEE)
        self.assertEqual(self.raffle.player_count(), 1)
        self.assertEqual(self.raffle.pool_balance(), ENTRANCE_FEE)

    # ------------------------------------------------------------------
    # Upkeep
    # ------------------------------------------------------------------
    async def test_upkeep_refused_before_interval(self) -> None:
        await self._enter_all(["alice", "bob"])
        self.h.clock.advance(INTERVAL)

        with self.assertRaises(UpkeepNotNeeded) as ctx:
            await self.raffle.perform_upkeep()

        self.assertEqual(ctx.exception.pool, 2 * ENTRANCE_FEE)
        self.assertEqual(ctx.exception.player_count, 2)
        self.assertEqual(ctx.exception.phase, RafflePhase.OPEN)
        self.assertEqual(self.raffle.phase, RafflePhase.OPEN)

    async def test_upkeep_refused_without_players(self) -> None:
        self.h.clock.advance(INTERVAL + 1)
        with self.assertRaises(UpkeepNotNeeded) as ctx:
            await self.raffle.perform_upkeep()
        self.assertEqual((ctx.exception.pool, ctx.exception.player_count), (0, 0))
        self.assertEqual(self.h.oracle.pending_requests(), [])

    async def test_upkeep_moves_to_calculating_and_requests_once(self) -> None:
        await self._enter_all(["alice"])
        request_id = await self._close_round()

        self.assertEqual(self.raffle.phase, RafflePhase.CALCULATING)
        self.assertEqual(self.raffle.outstanding_request_id, request_id)

        with self.assertRaises(UpkeepNotNeeded) as ctx:
            await self.raffle.trigger()
        self.assertEqual(ctx.exception.phase, RafflePhase.CALCULATING)
        self.assertEqual(self.h.oracle.pending_requests(), [request_id])

    async def test_concurrent_triggers_issue_one_request(self) -> None:
        await self._enter_all(["alice", "bob"])
        self.h.clock.advance(INTERVAL + 1)

        results = await asyncio.gather(
            *(self.raffle.perform_upkeep() for _ in range(5)), return_exceptions=True
        )

        request_ids = [r for r in results if isinstance(r, int)]
        refused = [r for r in results if isinstance(r, UpkeepNotNeeded)]
        self.assertEqual(len(request_ids), 1)
        self.assertEqual(len(refused), 4)
        self.assertEqual(self.h.oracle.pending_requests(), request_ids)

    async def test_oracle_failure_reopens_round(self) -> None:
        h = make_raffle(oracle=FailingOracle())
        await h.raffle.enter("alice", ENTRANCE_FEE)
        h.clock.advance(INTERVAL + 1)

        with self.assertRaises(RuntimeError):
            await h.raffle.perform_upkeep()
        self.assertEqual(h.raffle.phase, RafflePhase.OPEN)
        self.assertIsNone(h.raffle.outstanding_request_id)
        self.assertEqual(h.raffle.player_count(), 1)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    async def test_winner_is_random_word_modulo_player_count(self) -> None:
        await self._enter_all(["A", "B", "C", "D", "E"])
        request_id = await self._close_round()
        self.h.clock.advance(5)

        await self.h.oracle.fulfill(request_id, [12])

        self.assertEqual(self.raffle.recent_winner, "C")
        self.assertEqual(self.raffle.phase, RafflePhase.OPEN)
        self.assertEqual(self.raffle.player_count(), 0)
        self.assertEqual(self.raffle.pool_balance(), 0)
        self.assertIsNone(self.raffle.outstanding_request_id)
        self.assertEqual(self.raffle.last_timestamp, START_TIME + INTERVAL + 1 + 5)
        self.assertEqual(self.h.payout.balance_of("C"), 5 * ENTRANCE_FEE)
        self.assertEqual(self.raffle.round_number, 2)

    async def test_round_trip_pays_pool_exactly_once(self) -> None:
        fees = [10, 20, 30]
        for player, fee in zip(["x", "y", "z"], fees):
            await self.raffle.enter(player, fee)
        request_id = await self._close_round()

        await self.raffle.fulfill_random_words(request_id, [1])

        self.assertEqual(self.h.payout.balance_of("y"), sum(fees))
        self.assertEqual(self.h.payout.treasury_balance, 0)
        with self.assertRaises(UnknownOrStaleRequest):
            await self.raffle.fulfill_random_words(request_id, [1])
        self.assertEqual(self.h.payout.balance_of("y"), sum(fees))

    async def test_stale_fulfillment_leaves_state_unchanged(self) -> None:
        await self._enter_all(["alice", "bob"])
        request_id = await self._close_round()
        before = self.raffle.get_state()

        with self.assertRaises(UnknownOrStaleRequest):
            await self.raffle.fulfill_random_words(request_id + 10, [3])

        self.assertEqual(self.raffle.get_state(), before)
        self.assertEqual(self.raffle.outstanding_request_id, request_id)

    async def test_fulfillment_while_open_is_rejected(self) -> None:
        await self._enter_all(["alice"])
        with self.assertRaises(UnknownOrStaleRequest):
            await self.raffle.fulfill_random_words(1, [0])
        self.assertEqual(self.raffle.player_count(), 1)

    async def test_next_round_waits_for_a_full_interval_after_settlement(self) -> None:
        await self._enter_all(["alice"])
        request_id = await self._close_round()
        await self.raffle.fulfill_random_words(request_id, [0])

        await self.raffle.enter("bob", ENTRANCE_FEE)
        self.assertFalse(self.raffle.is_eligible())
        self.h.clock.advance(INTERVAL + 1)
        self.assertTrue(self.raffle.is_eligible())

    async def test_events_are_emitted_in_round_order(self) -> None:
        await self._enter_all(["alice", "bob"])
        request_id = await self._close_round()
        await self.raffle.fulfill_random_words(request_id, [0])

        kinds = [item.event_type for item in self.h.store.get_live_feed()]
        self.assertEqual(
            kinds,
            [ENTRY_RECORDED, ENTRY_RECORDED, RANDOMNESS_REQUESTED, WINNER_REQUESTED, WINNER_CHOSEN],
        )
        chosen = self.h.store.get_live_feed(event_type=WINNER_CHOSEN)[0]
        self.assertEqual(chosen.details["winner"], "alice")
        self.assertEqual(chosen.details["requestId"], request_id)

    async def test_history_snapshot_is_recorded(self) -> None:
        await self._enter_all(["alice", "bob", "carol"])
        request_id = await self._close_round()
        await self.raffle.fulfill_random_words(request_id, [5])

        history = self.h.store.get_round_history()
        self.assertEqual(len(history), 1)
        snapshot = history[0]
        self.assertEqual(snapshot.round_number, 1)
        self.assertEqual(snapshot.winner, "carol")
        self.assertEqual(snapshot.winner_index, 2)
        self.assertEqual(snapshot.prize, 3 * ENTRANCE_FEE)
        self.assertEqual(snapshot.participant_count, 3)
        self.assertEqual(snapshot.started_at, START_TIME)

    async def test_automatic_oracle_delivery_settles_round(self) -> None:
        h = make_raffle(oracle=LocalRandomnessOracle(auto_fulfill_delay=0))
        await h.raffle.enter("alice", ENTRANCE_FEE)
        h.clock.advance(INTERVAL + 1)
        await h.raffle.perform_upkeep()

        for _ in range(50):
            if h.raffle.phase == RafflePhase.OPEN:
                break
            await asyncio.sleep(0.01)

        self.assertEqual(h.raffle.phase, RafflePhase.OPEN)
        self.assertEqual(h.raffle.recent_winner, "alice")
        await h.oracle.close()

    # ------------------------------------------------------------------
    # Payout failure and recovery
    # ------------------------------------------------------------------
    async def test_payout_failure_keeps_round_calculating(self) -> None:
        await self._enter_all(["alice", "bob"])
        self.h.payout.block("bob")
        request_id = await self._close_round()

        with self.assertRaises(PayoutFailed) as ctx:
            await self.raffle.fulfill_random_words(request_id, [1])

        self.assertEqual(ctx.exception.winner, "bob")
        self.assertEqual(ctx.exception.amount, 2 * ENTRANCE_FEE)
        self.assertEqual(self.raffle.phase, RafflePhase.CALCULATING)
        self.assertEqual(self.raffle.player_count(), 2)
        self.assertEqual(self.raffle.pool_balance(), 2 * ENTRANCE_FEE)
        self.assertEqual(self.raffle.recent_winner, "bob")
        self.assertIsNone(self.raffle.outstanding_request_id)
        self.assertEqual(self.raffle.pending_settlement.winner, "bob")
        self.assertEqual(len(self.h.store.get_live_feed(event_type=PAYOUT_FAILED)), 1)

        # The oracle cannot re-roll the winner by delivering again
        with self.assertRaises(UnknownOrStaleRequest):
            await self.raffle.fulfill_random_words(request_id, [0])
        self.assertFalse(self.raffle.is_eligible(self.h.clock.now + 10 * INTERVAL))

    async def test_retry_payout_completes_settlement(self) -> None:
        await self._enter_all(["alice", "bob"])
        self.h.payout.block("bob")
        request_id = await self._close_round()
        with self.assertRaises(PayoutFailed):
            await self.raffle.fulfill_random_words(request_id, [1])

        with self.assertRaises(PayoutFailed):
            await self.raffle.retry_payout()
        self.assertEqual(self.raffle.pending_settlement.attempts, 2)

        self.h.payout.unblock("bob")
        reference = await self.raffle.retry_payout()

        self.assertIsNotNone(reference)
        self.assertEqual(self.raffle.phase, RafflePhase.OPEN)
        self.assertIsNone(self.raffle.pending_settlement)
        self.assertEqual(self.raffle.player_count(), 0)
        self.assertEqual(self.h.payout.balance_of("bob"), 2 * ENTRANCE_FEE)
        self.assertEqual(self.raffle.recent_winner, "bob")

    async def test_retry_without_failed_payout(self) -> None:
        with self.assertRaises(NoPendingPayout):
            await self.raffle.retry_payout()

    async def test_state_view(self) -> None:
        await self._enter_all(["alice"])
        state = self.raffle.get_state()

        self.assertEqual(state["phaseLabel"], "OPEN")
        self.assertEqual(state["playerCount"], 1)
        self.assertEqual(state["poolWei"], ENTRANCE_FEE)
        self.assertEqual(state["entranceFeeWei"], ENTRANCE_FEE)
        self.assertIsNone(state["outstandingRequestId"])
        self.assertIsNone(state["pendingPayout"])


if __name__ == "__main__":
    unittest.main()
