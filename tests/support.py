"""Shared fixtures for raffle tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from raffle_operator.lottery.event_manager import ENTRY_RECORDED, RaffleEventStore
from raffle_operator.lottery.models import RaffleConfig
from raffle_operator.lottery.payout import InMemoryPayoutService, PayoutService
from raffle_operator.lottery.raffle import RaffleStateMachine
from raffle_operator.lottery.randomness import LocalRandomnessOracle, RandomnessOracle

START_TIME = 1_700_000_000
ENTRANCE_FEE = 10
INTERVAL = 30


class FakeClock:
    def __init__(self, start: int = START_TIME) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@dataclass
class RaffleHarness:
    raffle: RaffleStateMachine
    oracle: RandomnessOracle
    payout: PayoutService
    store: RaffleEventStore
    clock: FakeClock


def make_raffle(
    *,
    entrance_fee: int = ENTRANCE_FEE,
    interval: int = INTERVAL,
    oracle: Optional[RandomnessOracle] = None,
    payout: Optional[PayoutService] = None,
) -> RaffleHarness:
    clock = FakeClock()
    store = RaffleEventStore()
    oracle = oracle or LocalRandomnessOracle()
    if payout is None:
        payout = InMemoryPayoutService()
        # Fees flow into the in-memory treasury, as the application wires it
        store.add_listener(ENTRY_RECORDED, lambda item: payout.fund(item["details"]["fee"]))
    config = RaffleConfig(entrance_fee=entrance_fee, interval=interval)
    raffle = RaffleStateMachine(config, oracle, payout, store=store, clock=clock)
    return RaffleHarness(raffle=raffle, oracle=oracle, payout=payout, store=store, clock=clock)
