"""Payout services that move the prize pool to the winner."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Set, TYPE_CHECKING

from raffle_operator.lottery.errors import TransferFailed
from raffle_operator.utils.logger import get_logger

if TYPE_CHECKING:
    from raffle_operator.blockchain.client import BlockchainClient

logger = get_logger(__name__)


class PayoutService(ABC):
    """Transfers ``amount`` to ``recipient`` or raises ``TransferFailed``."""

    @abstractmethod
    async def pay(self, recipient: str, amount: int) -> Optional[str]:
        """Return a transfer reference (tx hash, ledger id) on success."""


class InMemoryPayoutService(PayoutService):
    """Balance book with a funded treasury; used for local runs and tests."""

    def __init__(self, treasury_balance: int = 0, blocked_recipients: Iterable[str] = ()) -> None:
        self._treasury = treasury_balance
        self._balances: Dict[str, int] = {}
        self._blocked: Set[str] = {r.lower() for r in blocked_recipients}
        self._transfer_count = 0

    @property
    def treasury_balance(self) -> int:
        return self._treasury

    def fund(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must not be negative")
        self._treasury += amount

    def balance_of(self, recipient: str) -> int:
        return self._balances.get(recipient.lower(), 0)

    def block(self, recipient: str) -> None:
        self._blocked.add(recipient.lower())

    def unblock(self, recipient: str) -> None:
        self._blocked.discard(recipient.lower())

    async def pay(self, recipient: str, amount: int) -> Optional[str]:
        key = recipient.lower()
        if key in self._blocked:
            raise TransferFailed(f"Recipient {recipient} rejected the transfer")
        if amount > self._treasury:
            raise TransferFailed(f"Treasury holds {self._treasury}, cannot pay {amount}")

        self._treasury -= amount
        self._balances[key] = self._balances.get(key, 0) + amount
        self._transfer_count += 1
        reference = f"ledger-{self._transfer_count}"
        logger.info("Credited %s with %s (%s)", recipient, amount, reference)
        return reference


class ChainPayoutService(PayoutService):
    """Pays the winner with an ETH value transfer signed by the operator key."""

    def __init__(self, client: "BlockchainClient", tx_timeout: int = 180) -> None:
        self._client = client
        self._tx_timeout = tx_timeout

    async def pay(self, recipient: str, amount: int) -> Optional[str]:
        try:
            tx_hash = await self._client.transfer(recipient, amount)
            receipt = await self._client.wait_for_transaction(tx_hash, timeout=self._tx_timeout)
        except TransferFailed:
            raise
        except Exception as exc:
            logger.error("Payout transfer to %s failed: %s", recipient, exc)
            raise TransferFailed(str(exc)) from exc

        if receipt.get("status") != 1:
            raise TransferFailed(f"Transaction {tx_hash} reverted")
        logger.info("Paid %s wei to %s in %s", amount, recipient, tx_hash)
        return tx_hash
