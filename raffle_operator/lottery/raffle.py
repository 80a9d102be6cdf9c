"""
Raffle state machine - entries, upkeep, randomness settlement and payout
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from raffle_operator.lottery.errors import (
    NoPendingPayout,
    PayoutFailed,
    RaffleError,
    UpkeepNotNeeded,
)
from raffle_operator.lottery.event_manager import (
    ENTRY_RECORDED,
    PAYOUT_FAILED,
    RAFFLE_UPDATE,
    RANDOMNESS_REQUESTED,
    WINNER_CHOSEN,
    WINNER_REQUESTED,
    RaffleEventStore,
    event_store,
)
from raffle_operator.lottery.ledger import EntryLedger
from raffle_operator.lottery.models import (
    PendingSettlement,
    RaffleConfig,
    RafflePhase,
    RoundSnapshot,
    UpkeepCheck,
)
from raffle_operator.lottery.payout import PayoutService
from raffle_operator.lottery.randomness import RandomnessGateway, RandomnessOracle
from raffle_operator.lottery.upkeep import UpkeepEvaluator
from raffle_operator.utils.common import shorten_eth_address
from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)


def _wall_clock() -> int:
    return int(time.time())


class RaffleStateMachine:
    """Single raffle round cycling OPEN -> CALCULATING -> OPEN.

    Entries, upkeep and oracle fulfillments all go through one asyncio lock,
    so at most one transition runs at a time. Read-only queries do not lock.
    """

    def __init__(
        self,
        config: RaffleConfig,
        oracle: RandomnessOracle,
        payout: PayoutService,
        store: RaffleEventStore = event_store,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._config = config
        self._payout = payout
        self._store = store
        self._clock = clock or _wall_clock
        self._lock = asyncio.Lock()

        self._phase = RafflePhase.OPEN
        self._last_timestamp = self._clock()
        self._recent_winner: Optional[str] = None
        self._pending: Optional[PendingSettlement] = None
        self._round_number = 1

        self._ledger = EntryLedger(config.entrance_fee, lambda: self._phase, on_entry=self._on_entry)
        self._upkeep = UpkeepEvaluator(
            self._ledger, config.interval, lambda: self._phase, lambda: self._last_timestamp
        )
        self._gateway = RandomnessGateway(
            oracle, config.request_params(), self._clock, on_request=self._on_randomness_requested
        )
        self._gateway.bind_settlement(self._settle)
        oracle.bind(self.fulfill_random_words)

        logger.info(
            f"Raffle initialized: entrance fee {config.entrance_fee} wei, interval {config.interval}s"
        )

    # =============== TRANSITIONS ===============

    async def enter(self, participant: str, fee_paid: int) -> None:
        """Add one entry for ``participant``; errors come from the ledger unchanged."""
        async with self._lock:
            try:
                self._ledger.add(participant, fee_paid)
            except RaffleError as exc:
                logger.warning(f"Entry rejected for {participant}: {exc}")
                raise

    async def perform_upkeep(self, now: Optional[int] = None) -> int:
        """Close the round and request randomness; returns the request id."""
        async with self._lock:
            now = self._clock() if now is None else now
            if not self._upkeep.is_eligible(now):
                logger.info(
                    f"Upkeep not needed: pool={self._ledger.pool_balance()}, "
                    f"players={self._ledger.player_count()}, phase={self._phase.name}"
                )
                raise UpkeepNotNeeded(
                    pool=self._ledger.pool_balance(),
                    player_count=self._ledger.player_count(),
                    phase=self._phase,
                )

            self._phase = RafflePhase.CALCULATING
            try:
                request_id = await self._gateway.request_randomness()
            except Exception:
                self._phase = RafflePhase.OPEN
                logger.error("Randomness request failed; raffle reopened")
                raise

            self._store.publish(
                WINNER_REQUESTED,
                f"Round {self._round_number} closed, awaiting randomness for request {request_id}",
                {"requestId": request_id, "roundNumber": self._round_number},
            )
            self._store.notify(RAFFLE_UPDATE, self.get_state())
            return request_id

    # Name used by the automation layer
    trigger = perform_upkeep

    async def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> None:
        """Oracle callback entry point; settles the round on a valid delivery."""
        async with self._lock:
            try:
                await self._gateway.fulfill(request_id, random_words)
            except PayoutFailed:
                raise
            except RaffleError as exc:
                logger.warning(f"Fulfillment rejected: {exc}")
                raise

    async def retry_payout(self) -> Optional[str]:
        """Re-attempt a failed payout against the unchanged winner and pool."""
        async with self._lock:
            if self._pending is None:
                raise NoPendingPayout("No failed payout is awaiting retry")
            self._pending.attempts += 1
            logger.info(
                f"Retrying payout to {self._pending.winner} (attempt {self._pending.attempts})"
            )
            return await self._complete_payout(self._pending)

    async def _settle(self, request_id: int, random_value: int) -> None:
        player_count = self._ledger.player_count()
        winner_index = random_value % player_count
        winner = self._ledger.player_at(winner_index)
        self._recent_winner = winner

        logger.info(
            f"Request {request_id}: random word selects index {winner_index} of {player_count} ({winner})"
        )
        pending = PendingSettlement(
            request_id=request_id,
            random_word=random_value,
            winner_index=winner_index,
            winner=winner,
            amount=self._ledger.pool_balance(),
        )
        await self._complete_payout(pending)

    async def _complete_payout(self, pending: PendingSettlement) -> Optional[str]:
        try:
            reference = await self._payout.pay(pending.winner, pending.amount)
        except Exception as exc:
            pending.last_error = str(exc)
            self._pending = pending
            logger.error(f"Payout to {pending.winner} failed, raffle stays CALCULATING: {exc}")
            self._store.publish(
                PAYOUT_FAILED,
                f"Payout of {pending.amount} wei to {shorten_eth_address(pending.winner)} failed",
                {
                    "winner": pending.winner,
                    "amount": pending.amount,
                    "requestId": pending.request_id,
                    "attempts": pending.attempts,
                    "reason": str(exc),
                },
            )
            raise PayoutFailed(pending.winner, pending.amount, str(exc)) from exc

        settled_at = self._clock()
        snapshot = RoundSnapshot(
            round_number=self._round_number,
            winner=pending.winner,
            winner_index=pending.winner_index,
            prize=pending.amount,
            participant_count=self._ledger.player_count(),
            request_id=pending.request_id,
            random_word=pending.random_word,
            started_at=self._last_timestamp,
            settled_at=settled_at,
        )

        self._ledger.reset()
        self._phase = RafflePhase.OPEN
        # The next interval counts from settlement, not from a zero sentinel.
        self._last_timestamp = settled_at
        self._pending = None
        self._round_number += 1

        self._store.add_history_snapshot(snapshot)
        self._store.publish(
            WINNER_CHOSEN,
            f"{shorten_eth_address(pending.winner)} won {pending.amount} wei in round {snapshot.round_number}",
            {
                "winner": pending.winner,
                "prize": pending.amount,
                "requestId": pending.request_id,
                "roundNumber": snapshot.round_number,
                "reference": reference,
            },
        )
        self._store.notify(RAFFLE_UPDATE, self.get_state())
        return reference

    # =============== EVENT HOOKS ===============

    def _on_entry(self, participant: str, fee_paid: int) -> None:
        self._store.publish(
            ENTRY_RECORDED,
            f"{shorten_eth_address(participant)} entered round {self._round_number}",
            {"participant": participant, "fee": fee_paid, "roundNumber": self._round_number},
        )

    def _on_randomness_requested(self, request_id: int) -> None:
        self._store.publish(
            RANDOMNESS_REQUESTED,
            f"Randomness requested (request {request_id})",
            {"requestId": request_id, "roundNumber": self._round_number},
        )

    # =============== QUERIES ===============

    def now(self) -> int:
        return self._clock()

    def check_upkeep(self, now: Optional[int] = None) -> UpkeepCheck:
        return self._upkeep.check_upkeep(self._clock() if now is None else now)

    def is_eligible(self, now: Optional[int] = None) -> bool:
        return self.check_upkeep(now).upkeep_needed

    @property
    def entrance_fee(self) -> int:
        return self._config.entrance_fee

    @property
    def interval(self) -> int:
        return self._config.interval

    @property
    def request_confirmations(self) -> int:
        return self._config.request_confirmations

    @property
    def num_words(self) -> int:
        return self._config.num_words

    @property
    def phase(self) -> RafflePhase:
        return self._phase

    @property
    def last_timestamp(self) -> int:
        return self._last_timestamp

    @property
    def recent_winner(self) -> Optional[str]:
        return self._recent_winner

    @property
    def round_number(self) -> int:
        return self._round_number

    @property
    def outstanding_request_id(self) -> Optional[int]:
        return self._gateway.outstanding_request_id

    @property
    def outstanding_since(self) -> Optional[int]:
        request = self._gateway.outstanding_request
        return request.requested_at if request else None

    @property
    def pending_settlement(self) -> Optional[PendingSettlement]:
        return self._pending

    def player_count(self) -> int:
        return self._ledger.player_count()

    def get_player(self, index: int) -> str:
        return self._ledger.player_at(index)

    def pool_balance(self) -> int:
        return self._ledger.pool_balance()

    def get_players(self) -> List[str]:
        return list(self._ledger.snapshot().participants)

    def get_state(self) -> Dict[str, Any]:
        """Serializable view of every read-only query."""
        pending = self._pending
        return {
            "roundNumber": self._round_number,
            "phase": self._phase.value,
            "phaseLabel": self._phase.name,
            "entranceFeeWei": self._config.entrance_fee,
            "intervalSeconds": self._config.interval,
            "lastTimestamp": self._last_timestamp,
            "playerCount": self._ledger.player_count(),
            "poolWei": self._ledger.pool_balance(),
            "recentWinner": self._recent_winner,
            "outstandingRequestId": self.outstanding_request_id,
            "requestConfirmations": self._config.request_confirmations,
            "numWords": self._config.num_words,
            "pendingPayout": (
                {
                    "winner": pending.winner,
                    "amountWei": pending.amount,
                    "requestId": pending.request_id,
                    "attempts": pending.attempts,
                    "lastError": pending.last_error,
                }
                if pending
                else None
            ),
        }
