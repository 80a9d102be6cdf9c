"""Blockchain client used for on-chain prize payouts."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3

from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)

ETH_TRANSFER_GAS = 21000


class BlockchainClient:
    """Async-friendly wrapper around web3.py for operator value transfers."""

    def __init__(self, config: Dict[str, Any]):
        self._config = config

        blockchain_cfg = config.get("blockchain", {})
        self.rpc_url: str = blockchain_cfg.get("rpc_url", "http://localhost:8545")
        # per-RPC timeout (seconds) to pass to HTTPProvider to avoid blocking requests
        try:
            self.rpc_timeout: float = float(blockchain_cfg.get("rpc_timeout", 10.0))
        except (TypeError, ValueError):
            self.rpc_timeout = 10.0
        self.chain_id: int = int(blockchain_cfg.get("chain_id", 31337))

        self._w3: Optional[Web3] = None

        private_key = blockchain_cfg.get("operator_private_key")
        self.account = Account.from_key(private_key) if private_key else None
        if self.account:
            logger.info("Operator account loaded: %s", self.account.address)

        gas_price_setting = blockchain_cfg.get("gas_price")
        self._gas_price_override: Optional[int] = None
        if gas_price_setting:
            try:
                self._gas_price_override = Web3.to_wei(Decimal(str(gas_price_setting)), "gwei")
            except Exception as exc:
                logger.warning("Unable to parse gas price '%s': %s", gas_price_setting, exc)

        self._latest_block: Optional[int] = None

    async def initialize(self) -> None:
        """Establish the RPC connection."""
        self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
        connected = await asyncio.to_thread(self._w3.is_connected)
        if not connected:  # pragma: no cover - depends on live RPC
            raise ConnectionError(f"Failed to connect to RPC at {self.rpc_url}")

        logger.info("Connected to RPC %s (chain id %s)", self.rpc_url, self.chain_id)

        try:
            actual_chain_id = await asyncio.to_thread(lambda: self._w3.eth.chain_id)
            if actual_chain_id != self.chain_id:
                logger.warning(f"Chain ID mismatch: expected {self.chain_id}, got {actual_chain_id}")
        except Exception as exc:
            logger.warning(f"Could not verify chain ID: {exc}")

    async def close(self) -> None:
        """Tear down references; HTTP provider closes automatically."""
        self._w3 = None

    def _ensure_web3(self) -> Web3:
        if not self._w3:
            raise RuntimeError("Web3 provider not initialised")
        return self._w3

    async def transfer(self, recipient: str, amount_wei: int) -> str:
        """Send ``amount_wei`` to ``recipient`` and return the tx hash."""
        if not self.account:
            raise ValueError("Operator account not configured")
        if not Web3.is_address(recipient):
            raise ValueError(f"Invalid recipient address {recipient}")

        w3 = self._ensure_web3()
        to_address = Web3.to_checksum_address(recipient)

        def _send() -> str:
            balance = w3.eth.get_balance(self.account.address)
            if balance < amount_wei:
                raise ValueError(
                    f"Insufficient balance. Have: {w3.from_wei(balance, 'ether')} ETH, "
                    f"Need: {w3.from_wei(amount_wei, 'ether')} ETH"
                )
            txn = {
                "to": to_address,
                "value": amount_wei,
                "gas": ETH_TRANSFER_GAS,
                "gasPrice": self._gas_price_override or w3.eth.gas_price,
                "nonce": w3.eth.get_transaction_count(self.account.address),
                "chainId": self.chain_id,
            }
            signed = self.account.sign_transaction(txn)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            return Web3.to_hex(tx_hash)

        tx_hash = await asyncio.to_thread(_send)
        logger.info("Sent transfer %s of %s wei to %s", tx_hash, amount_wei, to_address)
        return tx_hash

    async def wait_for_transaction(self, tx_hash: str, timeout: int = 180) -> Dict[str, Any]:
        w3 = self._ensure_web3()

        def _wait():
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            return {
                "status": int(receipt["status"]),
                "blockNumber": int(receipt["blockNumber"]),
                "transactionHash": Web3.to_hex(receipt["transactionHash"]),
                "gasUsed": int(receipt["gasUsed"]),
            }

        return await asyncio.to_thread(_wait)

    async def get_latest_block(self) -> int:
        w3 = self._ensure_web3()
        self._latest_block = await asyncio.to_thread(lambda: int(w3.eth.block_number))
        return self._latest_block

    async def health_check(self) -> Dict[str, Any]:
        try:
            latest_block = await self.get_latest_block()
            return {"status": "healthy", "latestBlock": latest_block}
        except Exception as exc:  # pragma: no cover - health failures are diagnostic
            logger.exception("Blockchain health check failed")
            return {"status": "error", "detail": str(exc)}

    def get_client_status(self) -> Dict[str, Any]:
        return {
            "rpcUrl": self.rpc_url,
            "chainId": self.chain_id,
            "operator": self.account.address if self.account else None,
        }

    @staticmethod
    def wei_to_eth(amount_wei: int) -> Decimal:
        return Web3.from_wei(amount_wei, "ether")
