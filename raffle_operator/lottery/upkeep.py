"""Upkeep eligibility predicate."""

from __future__ import annotations

from typing import Callable

from raffle_operator.lottery.ledger import EntryLedger
from raffle_operator.lottery.models import RafflePhase, UpkeepCheck


class UpkeepEvaluator:
    """Decides whether a new randomness request may be issued.

    Pure: reads the ledger, phase and last timestamp, never mutates them,
    so the scheduler may poll it as often as it likes.
    """

    def __init__(
        self,
        ledger: EntryLedger,
        interval: int,
        phase_provider: Callable[[], RafflePhase],
        last_timestamp_provider: Callable[[], int],
    ) -> None:
        self._ledger = ledger
        self._interval = interval
        self._phase_provider = phase_provider
        self._last_timestamp_provider = last_timestamp_provider

    @property
    def interval(self) -> int:
        return self._interval

    def check_upkeep(self, now: int) -> UpkeepCheck:
        is_open = self._phase_provider() == RafflePhase.OPEN
        time_passed = (now - self._last_timestamp_provider()) > self._interval
        has_players = self._ledger.player_count() > 0
        has_balance = self._ledger.pool_balance() > 0
        return UpkeepCheck(
            upkeep_needed=is_open and time_passed and has_players and has_balance,
            is_open=is_open,
            time_passed=time_passed,
            has_players=has_players,
            has_balance=has_balance,
        )

    def is_eligible(self, now: int) -> bool:
        return self.check_upkeep(now).upkeep_needed
