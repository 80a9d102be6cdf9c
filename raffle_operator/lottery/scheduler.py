"""
Automation Scheduler - polls raffle upkeep and performs it when due
"""

import asyncio
from typing import Any, Dict, Optional, Set

from raffle_operator.lottery.errors import RaffleError, UpkeepNotNeeded
from raffle_operator.lottery.event_manager import OPERATOR_ALERT, RaffleEventStore, event_store
from raffle_operator.lottery.models import OperatorStatus, RafflePhase
from raffle_operator.lottery.raffle import RaffleStateMachine
from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)


class AutomationScheduler:
    """Periodic upkeep keeper with a watchdog for stuck rounds.

    Every ``check_interval`` seconds it evaluates ``check_upkeep`` and, when
    due, calls ``perform_upkeep``. It never resolves a stuck round itself; it
    raises one ``operator_alert`` per request that has waited longer than
    ``fulfillment_timeout`` and one per failed payout.
    """

    def __init__(
        self,
        raffle: RaffleStateMachine,
        config: Dict[str, Any],
        store: RaffleEventStore = event_store,
    ):
        self.raffle = raffle
        self.store = store

        operator_config = config.get('operator', {})
        self.check_interval = float(operator_config.get('check_interval', 10))
        self.error_backoff = float(operator_config.get('error_backoff', 30))
        self.fulfillment_timeout = int(operator_config.get('fulfillment_timeout', 600))

        self.status = OperatorStatus()
        self._alerted: Set[str] = set()
        self.scheduler_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the scheduler loop in the background"""
        if self.status.is_running:
            logger.warning("Automation scheduler is already running")
            return
        self.status.is_running = True
        logger.info(f"Starting automation scheduler (every {self.check_interval}s)")
        self.scheduler_task = asyncio.create_task(self._scheduler_loop(), name="raffle-automation")

    async def stop(self):
        """Stop the scheduler loop"""
        self.status.is_running = False
        if self.scheduler_task:
            self.scheduler_task.cancel()
            try:
                await self.scheduler_task
            except asyncio.CancelledError:
                pass
            self.scheduler_task = None
        logger.info("Automation scheduler stopped")

    async def _scheduler_loop(self):
        """Main scheduler loop"""
        while self.status.is_running:
            try:
                await self.run_once()
                self.status.reset_failures()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.status.increment_failures()
                logger.error(f"Error in scheduler loop: {e}")
                await asyncio.sleep(self.error_backoff)

    async def run_once(self, now: Optional[int] = None) -> Optional[int]:
        """One poll: perform upkeep if due, then run the watchdog.

        Returns the request id when upkeep was performed.
        """
        self.status.record_check()
        request_id = None

        check = self.raffle.check_upkeep(now)
        if check.upkeep_needed:
            try:
                request_id = await self.raffle.perform_upkeep(now)
                self.status.record_perform(request_id)
                logger.info(f"Upkeep performed, randomness request {request_id}")
            except UpkeepNotNeeded as e:
                # Another caller closed the round between check and perform
                logger.info(f"Upkeep raced and was not needed: {e}")
            except RaffleError as e:
                logger.error(f"Upkeep failed: {e}")
                raise

        self._watchdog(now)
        return request_id

    def _watchdog(self, now: Optional[int] = None):
        if self.raffle.phase != RafflePhase.CALCULATING:
            self._alerted.clear()
            return
        now = now if now is not None else self.raffle.now()

        pending = self.raffle.pending_settlement
        if pending is not None:
            self._alert_once(
                f"payout:{pending.request_id}",
                f"Payout to {pending.winner} failed; retry required",
                {"kind": "payout_stuck", "requestId": pending.request_id, "reason": pending.last_error},
            )
            return

        request_id = self.raffle.outstanding_request_id
        since = self.raffle.outstanding_since
        if request_id is None or since is None:
            return
        waited = now - since
        if waited > self.fulfillment_timeout:
            self._alert_once(
                f"request:{request_id}",
                f"Randomness request {request_id} unfulfilled for {waited}s",
                {"kind": "fulfillment_overdue", "requestId": request_id, "waitedSeconds": waited},
            )

    def _alert_once(self, key: str, message: str, details: Dict[str, Any]):
        if key in self._alerted:
            return
        self._alerted.add(key)
        self.status.alerts_raised += 1
        logger.warning(message)
        self.store.publish(OPERATOR_ALERT, message, details)

    def get_status(self) -> Dict[str, Any]:
        """Return scheduler status"""
        return {
            "status": "running" if self.status.is_running else "stopped",
            "check_interval": self.check_interval,
            "fulfillment_timeout": self.fulfillment_timeout,
            "last_check": self.status.last_check.isoformat() if self.status.last_check else None,
            "last_perform": self.status.last_perform.isoformat() if self.status.last_perform else None,
            "last_request_id": self.status.last_request_id,
            "performed_upkeeps": self.status.performed_upkeeps,
            "consecutive_failures": self.status.consecutive_failures,
            "alerts_raised": self.status.alerts_raised,
            "round_number": self.raffle.round_number,
        }
