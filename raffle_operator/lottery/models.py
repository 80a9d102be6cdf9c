"""Core data models for the raffle operator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

from web3 import Web3

DEFAULT_KEY_HASH = "0x" + "00" * 32
DEFAULT_REQUEST_CONFIRMATIONS = 3
DEFAULT_NUM_WORDS = 1
DEFAULT_CALLBACK_GAS_LIMIT = 500_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RafflePhase(IntEnum):
    """Raffle phases; values mirror the on-chain `RaffleState` enum."""

    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class RandomnessRequestParams:
    """Parameters passed through to the randomness oracle unchanged."""

    key_hash: str
    subscription_id: int
    request_confirmations: int
    callback_gas_limit: int
    num_words: int


@dataclass(frozen=True)
class RaffleConfig:
    """Validated raffle settings.

    ``entrance_fee`` is in wei and ``interval`` in seconds.
    """

    entrance_fee: int
    interval: int
    key_hash: str = DEFAULT_KEY_HASH
    subscription_id: int = 0
    callback_gas_limit: int = DEFAULT_CALLBACK_GAS_LIMIT
    request_confirmations: int = DEFAULT_REQUEST_CONFIRMATIONS
    num_words: int = DEFAULT_NUM_WORDS

    def __post_init__(self) -> None:
        if self.entrance_fee <= 0:
            raise ValueError("entrance_fee must be positive")
        if self.interval < 0:
            raise ValueError("interval must not be negative")
        if self.num_words < 1:
            raise ValueError("num_words must be at least 1")
        if self.request_confirmations < 0:
            raise ValueError("request_confirmations must not be negative")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RaffleConfig":
        """Build from the ``raffle`` and ``oracle`` config sections.

        The entrance fee may be given as ``entrance_fee_wei`` or as
        ``entrance_fee_eth`` (converted with ``Web3.to_wei``).
        """
        raffle_cfg = config.get("raffle", {})
        oracle_cfg = config.get("oracle", {})

        if raffle_cfg.get("entrance_fee_wei") is not None:
            entrance_fee = int(raffle_cfg["entrance_fee_wei"])
        else:
            raw_eth = raffle_cfg.get("entrance_fee_eth", "0.01")
            try:
                entrance_fee = int(Web3.to_wei(Decimal(str(raw_eth)), "ether"))
            except (InvalidOperation, ValueError) as exc:
                raise ValueError(f"Invalid entrance_fee_eth '{raw_eth}': {exc}") from exc

        return cls(
            entrance_fee=entrance_fee,
            interval=int(raffle_cfg.get("interval_seconds", 30)),
            key_hash=str(oracle_cfg.get("key_hash", DEFAULT_KEY_HASH)),
            subscription_id=int(oracle_cfg.get("subscription_id", 0)),
            callback_gas_limit=int(oracle_cfg.get("callback_gas_limit", DEFAULT_CALLBACK_GAS_LIMIT)),
            request_confirmations=int(oracle_cfg.get("request_confirmations", DEFAULT_REQUEST_CONFIRMATIONS)),
            num_words=int(oracle_cfg.get("num_words", DEFAULT_NUM_WORDS)),
        )

    def request_params(self) -> RandomnessRequestParams:
        return RandomnessRequestParams(
            key_hash=self.key_hash,
            subscription_id=self.subscription_id,
            request_confirmations=self.request_confirmations,
            callback_gas_limit=self.callback_gas_limit,
            num_words=self.num_words,
        )


@dataclass(frozen=True)
class RandomnessRequest:
    """An issued randomness request awaiting fulfillment."""

    request_id: int
    params: RandomnessRequestParams
    requested_at: int


@dataclass(frozen=True)
class UpkeepCheck:
    """Result of the upkeep predicate with per-condition flags."""

    upkeep_needed: bool
    is_open: bool
    time_passed: bool
    has_players: bool
    has_balance: bool
    perform_data: bytes = b""


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable view of the entry ledger."""

    participants: Tuple[str, ...]
    pool: int


@dataclass
class PendingSettlement:
    """Winner selection whose payout has not gone through yet."""

    request_id: int
    random_word: int
    winner_index: int
    winner: str
    amount: int
    attempts: int = 1
    last_error: Optional[str] = None


@dataclass
class RoundSnapshot:
    """Historical record of a settled round."""

    round_number: int
    winner: str
    winner_index: int
    prize: int
    participant_count: int
    request_id: int
    random_word: int
    started_at: int
    settled_at: int


@dataclass
class LiveFeedItem:
    """Entry pushed to the activity feed."""

    event_type: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OperatorStatus:
    """Operational metrics for the automation scheduler."""

    is_running: bool = False
    last_check: Optional[datetime] = None
    last_perform: Optional[datetime] = None
    last_request_id: Optional[int] = None
    performed_upkeeps: int = 0
    consecutive_failures: int = 0
    alerts_raised: int = 0

    def record_check(self) -> None:
        self.last_check = _utcnow()

    def record_perform(self, request_id: int) -> None:
        self.last_perform = _utcnow()
        self.last_request_id = request_id
        self.performed_upkeeps += 1

    def reset_failures(self) -> None:
        self.consecutive_failures = 0

    def increment_failures(self) -> None:
        self.consecutive_failures += 1
