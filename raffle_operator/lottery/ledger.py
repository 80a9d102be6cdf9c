"""Entry ledger: current-round participants and the prize pool."""

from __future__ import annotations

from typing import Callable, List

from raffle_operator.lottery.errors import IndexOutOfRange, InsufficientFee, RoundNotOpen
from raffle_operator.lottery.models import LedgerSnapshot, RafflePhase
from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)


class EntryLedger:
    """Ordered participant slots plus the accumulated pool.

    The ledger does no locking of its own; callers serialize access.
    """

    def __init__(
        self,
        entrance_fee: int,
        phase_provider: Callable[[], RafflePhase],
        on_entry: Callable[[str, int], None] | None = None,
    ) -> None:
        self._entrance_fee = entrance_fee
        self._phase_provider = phase_provider
        self._on_entry = on_entry
        self._participants: List[str] = []
        self._pool = 0

    @property
    def entrance_fee(self) -> int:
        return self._entrance_fee

    def add(self, participant: str, fee_paid: int) -> None:
        """Record one entry; raises before mutating anything."""
        if fee_paid < self._entrance_fee:
            raise InsufficientFee(fee_paid, self._entrance_fee)
        phase = self._phase_provider()
        if phase != RafflePhase.OPEN:
            raise RoundNotOpen(phase)

        self._participants.append(participant)
        self._pool += fee_paid
        logger.debug("Entry recorded for %s (fee=%s, pool=%s)", participant, fee_paid, self._pool)

        if self._on_entry:
            self._on_entry(participant, fee_paid)

    def player_count(self) -> int:
        return len(self._participants)

    def player_at(self, index: int) -> str:
        if index < 0 or index >= len(self._participants):
            raise IndexOutOfRange(index, len(self._participants))
        return self._participants[index]

    def pool_balance(self) -> int:
        return self._pool

    def reset(self) -> None:
        self._participants = []
        self._pool = 0

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(participants=tuple(self._participants), pool=self._pool)
