"""Exceptions raised by the raffle core and its collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from raffle_operator.lottery.models import RafflePhase


class RaffleError(Exception):
    """Base class for rejected raffle operations."""


class InsufficientFee(RaffleError):
    def __init__(self, fee_paid: int, entrance_fee: int) -> None:
        super().__init__(f"Fee {fee_paid} is below the entrance fee {entrance_fee}")
        self.fee_paid = fee_paid
        self.entrance_fee = entrance_fee


class RoundNotOpen(RaffleError):
    def __init__(self, phase: "RafflePhase") -> None:
        super().__init__(f"Raffle is not open (phase={phase.name})")
        self.phase = phase


class IndexOutOfRange(RaffleError, IndexError):
    def __init__(self, index: int, player_count: int) -> None:
        super().__init__(f"Player index {index} out of range for {player_count} players")
        self.index = index
        self.player_count = player_count


class UpkeepNotNeeded(RaffleError):
    """Trigger refused; carries the state that made the round ineligible."""

    def __init__(self, pool: int, player_count: int, phase: "RafflePhase") -> None:
        super().__init__(
            f"Upkeep not needed (pool={pool}, players={player_count}, phase={phase.name})"
        )
        self.pool = pool
        self.player_count = player_count
        self.phase = phase


class RequestAlreadyOutstanding(RaffleError):
    def __init__(self, request_id: int) -> None:
        super().__init__(f"Randomness request {request_id} is still outstanding")
        self.request_id = request_id


class UnknownOrStaleRequest(RaffleError):
    def __init__(self, request_id: int, outstanding_id: "int | None") -> None:
        super().__init__(
            f"Fulfillment for request {request_id} rejected (outstanding={outstanding_id})"
        )
        self.request_id = request_id
        self.outstanding_id = outstanding_id


class InvalidRandomness(RaffleError, ValueError):
    pass


class PayoutFailed(RaffleError):
    """Winner payout did not go through; the round stays CALCULATING."""

    def __init__(self, winner: str, amount: int, reason: str) -> None:
        super().__init__(f"Payout of {amount} to {winner} failed: {reason}")
        self.winner = winner
        self.amount = amount
        self.reason = reason


class NoPendingPayout(RaffleError):
    pass


class TransferFailed(Exception):
    """Raised by payout services when a transfer does not succeed."""
