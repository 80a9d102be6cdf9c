#!/usr/bin/env python3
"""
Raffle Operator Application

Main entry point: wires the raffle state machine, randomness oracle, payout
service, automation scheduler and FastAPI web server.
"""

import asyncio
import os
import secrets
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from raffle_operator.blockchain.client import BlockchainClient
from raffle_operator.lottery.event_manager import ENTRY_RECORDED, event_store
from raffle_operator.lottery.models import RaffleConfig
from raffle_operator.lottery.payout import ChainPayoutService, InMemoryPayoutService, PayoutService
from raffle_operator.lottery.raffle import RaffleStateMachine
from raffle_operator.lottery.randomness import LocalRandomnessOracle
from raffle_operator.lottery.scheduler import AutomationScheduler
from raffle_operator.utils.config import as_bool, load_config
from raffle_operator.utils.logger import get_logger, set_log_level
from raffle_operator.web_server import RaffleWebServer

logger = get_logger(__name__)


class RaffleOperatorApp:
    """Raffle operator application.

    Responsible for initializing and orchestrating the payout backend, the
    randomness oracle, the raffle state machine, the automation scheduler and
    the web server. Handles graceful shutdown.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_config()
        self.blockchain_client: Optional[BlockchainClient] = None
        self.oracle: Optional[LocalRandomnessOracle] = None
        self.raffle: Optional[RaffleStateMachine] = None
        self.scheduler: Optional[AutomationScheduler] = None
        self.web_server: Optional[RaffleWebServer] = None
        self._fee_listener = None
        self.running = True

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False

    def _display_config_summary(self, raffle_config: RaffleConfig):
        logger.info("=" * 60)
        logger.info("CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Entrance fee: {BlockchainClient.wei_to_eth(raffle_config.entrance_fee)} ETH")
        logger.info(f"Interval: {raffle_config.interval}s")
        logger.info(f"Request confirmations: {raffle_config.request_confirmations}")
        logger.info(f"Words per request: {raffle_config.num_words}")
        logger.info(f"Payout backend: {self.config.get('payout', {}).get('backend', 'memory')}")
        server_config = self.config.get('server', {})
        logger.info(f"Server: {server_config.get('host', '0.0.0.0')}:{server_config.get('port', 6080)}")
        logger.info("=" * 60)

    async def _build_payout(self) -> PayoutService:
        payout_config = self.config.get('payout', {})
        backend = str(payout_config.get('backend', 'memory')).lower()

        if backend == 'chain':
            self.blockchain_client = BlockchainClient(self.config)
            await self.blockchain_client.initialize()
            tx_timeout = int(payout_config.get('tx_timeout_seconds', 180))
            return ChainPayoutService(self.blockchain_client, tx_timeout=tx_timeout)
        if backend == 'memory':
            payout = InMemoryPayoutService(treasury_balance=int(payout_config.get('treasury_wei', 0)))
            # Entry fees land in the in-memory treasury
            self._fee_listener = lambda item: payout.fund(int(item["details"]["fee"]))
            event_store.add_listener(ENTRY_RECORDED, self._fee_listener)
            return payout
        raise ValueError(f"Unknown payout backend '{backend}'")

    async def initialize(self):
        """Create every component."""
        # LOG_LEVEL may arrive from .env after the first logger was created
        log_level = os.getenv('LOG_LEVEL') or self.config.get('logging', {}).get('level')
        if log_level:
            set_log_level(log_level)

        raffle_config = RaffleConfig.from_config(self.config)
        self._display_config_summary(raffle_config)

        payout = await self._build_payout()

        oracle_config = self.config.get('oracle', {})
        delay = oracle_config.get('auto_fulfill_delay', 5)
        # A per-process secret keeps words unpredictable from the sequential request ids
        seed = None if as_bool(oracle_config.get('deterministic_words'), False) else secrets.token_bytes(32)
        self.oracle = LocalRandomnessOracle(
            auto_fulfill_delay=float(delay) if as_bool(oracle_config.get('auto_fulfill', True), True) else None,
            seed=seed,
        )

        self.raffle = RaffleStateMachine(raffle_config, self.oracle, payout, store=event_store)
        self.scheduler = AutomationScheduler(self.raffle, self.config, store=event_store)
        self.web_server = RaffleWebServer(
            self.config, self.raffle, self.scheduler, self.blockchain_client, store=event_store, oracle=self.oracle
        )
        logger.info("Raffle operator initialization completed")

    async def start(self):
        """Start services and run until a shutdown signal is received."""
        try:
            await self.initialize()
            await self.scheduler.start()

            server_host = self.config.get('server', {}).get('host', '0.0.0.0')
            server_port = int(self.config.get('server', {}).get('port', 6080))
            server_task = asyncio.create_task(self.web_server.start(host=server_host, port=server_port))
            # Give the server a moment to bind; a bind failure finishes the task
            await asyncio.sleep(0.2)
            if server_task.done() and server_task.exception():
                raise server_task.exception()

            logger.info(f"Raffle operator running at http://{server_host}:{server_port}/api/")
            while self.running and not server_task.done():
                await asyncio.sleep(1)

            logger.info("Shutdown signal received, stopping application...")
        finally:
            await self.stop()

    async def stop(self):
        """Stop all services and release resources."""
        logger.info("Stopping raffle operator")
        self.running = False

        if self.scheduler:
            await self.scheduler.stop()
        if self.oracle:
            await self.oracle.close()
        if self.web_server:
            await self.web_server.stop()
        if self.blockchain_client:
            await self.blockchain_client.close()
        if self._fee_listener:
            event_store.remove_listener(ENTRY_RECORDED, self._fee_listener)
            self._fee_listener = None
        event_store.clear_all_data()

        logger.info("Raffle operator stopped")


async def main():
    """Main entry point for the raffle operator"""
    load_dotenv(Path.cwd() / '.env')
    app = RaffleOperatorApp()

    signal.signal(signal.SIGINT, app._handle_signal)
    signal.signal(signal.SIGTERM, app._handle_signal)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Raffle operator interrupted by user")
    except Exception as e:
        logger.exception(f"Raffle operator failed: {e}")
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
