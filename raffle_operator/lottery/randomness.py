"""Randomness request/fulfillment correlation and oracle adapters."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from web3 import Web3

from raffle_operator.lottery.errors import (
    InvalidRandomness,
    PayoutFailed,
    RaffleError,
    RequestAlreadyOutstanding,
    UnknownOrStaleRequest,
)
from raffle_operator.lottery.models import RandomnessRequest, RandomnessRequestParams
from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)

FulfillmentCallback = Callable[[int, List[int]], Awaitable[None]]


class RandomnessOracle(ABC):
    """External source delivering one unpredictable value set per request.

    Implementations return a request id from ``request_random_words`` without
    waiting for the value, then later invoke the bound consumer exactly once
    with ``(request_id, random_words)``.
    """

    def __init__(self) -> None:
        self._consumer: Optional[FulfillmentCallback] = None

    def bind(self, consumer: FulfillmentCallback) -> None:
        self._consumer = consumer

    @abstractmethod
    async def request_random_words(self, params: RandomnessRequestParams) -> int:
        ...

    async def close(self) -> None:
        pass


class LocalRandomnessOracle(RandomnessOracle):
    """In-process oracle modelled on the VRF coordinator mock.

    Request ids start at 1. Without a seed, words are
    ``keccak256(abi.encode(requestId, i))`` as in the mock, which makes them
    predictable from the id; a running operator passes a secret ``seed`` that
    is mixed into every word. With ``auto_fulfill_delay`` set, each request is
    delivered by a background task after that many seconds; otherwise
    ``fulfill`` must be called explicitly.
    """

    def __init__(self, auto_fulfill_delay: Optional[float] = None, seed: Optional[bytes] = None) -> None:
        super().__init__()
        if seed is not None and len(seed) != 32:
            raise ValueError("seed must be exactly 32 bytes")
        self._auto_fulfill_delay = auto_fulfill_delay
        self._seed = seed
        self._next_request_id = 1
        self._pending: Dict[int, RandomnessRequestParams] = {}
        self._tasks: Set[asyncio.Task] = set()

    @staticmethod
    def derive_words(request_id: int, num_words: int, seed: Optional[bytes] = None) -> List[int]:
        if seed is None:
            digests = (
                Web3.solidity_keccak(["uint256", "uint256"], [request_id, i]) for i in range(num_words)
            )
        else:
            digests = (
                Web3.solidity_keccak(["bytes32", "uint256", "uint256"], [seed, request_id, i])
                for i in range(num_words)
            )
        return [int.from_bytes(digest, "big") for digest in digests]

    def pending_requests(self) -> List[int]:
        return sorted(self._pending)

    async def request_random_words(self, params: RandomnessRequestParams) -> int:
        request_id = self._next_request_id
        self._next_request_id += 1
        self._pending[request_id] = params
        logger.info(
            "Oracle accepted request %s (words=%s, confirmations=%s)",
            request_id,
            params.num_words,
            params.request_confirmations,
        )

        if self._auto_fulfill_delay is not None:
            task = asyncio.get_running_loop().create_task(
                self._deliver_later(request_id), name=f"oracle-fulfill-{request_id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return request_id

    async def fulfill(self, request_id: int, words: Optional[Sequence[int]] = None) -> None:
        """Deliver words for ``request_id``; raises KeyError if not pending.

        A delivery the consumer rejects leaves the request pending so it can be
        delivered again. A failed payout or a stale id consumes it.
        """
        if self._consumer is None:
            raise RuntimeError("Oracle has no consumer bound")
        params = self._pending.pop(request_id)
        if words is None:
            words = self.derive_words(request_id, params.num_words, self._seed)
        logger.info("Oracle delivering %d word(s) for request %s", len(words), request_id)
        try:
            await self._consumer(request_id, list(words))
        except (PayoutFailed, UnknownOrStaleRequest):
            raise
        except Exception:
            self._pending[request_id] = params
            logger.warning("Delivery for request %s rejected; request kept pending", request_id)
            raise

    async def _deliver_later(self, request_id: int) -> None:
        await asyncio.sleep(self._auto_fulfill_delay or 0)
        if request_id not in self._pending:
            logger.debug("Request %s already fulfilled; skipping scheduled delivery", request_id)
            return
        try:
            await self.fulfill(request_id)
        except RaffleError as exc:
            logger.error("Scheduled fulfillment of request %s was rejected: %s", request_id, exc)
        except Exception:
            logger.exception("Scheduled fulfillment of request %s failed", request_id)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


class RandomnessGateway:
    """Owns the single outstanding request and validates its fulfillment.

    Not locked; the raffle state machine serializes every call.
    """

    def __init__(
        self,
        oracle: RandomnessOracle,
        params: RandomnessRequestParams,
        clock: Callable[[], int],
        on_request: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._oracle = oracle
        self._params = params
        self._clock = clock
        self._on_request = on_request
        self._outstanding: Optional[RandomnessRequest] = None
        self._settle: Optional[Callable[[int, int], Awaitable[None]]] = None

    def bind_settlement(self, settle: Callable[[int, int], Awaitable[None]]) -> None:
        self._settle = settle

    @property
    def params(self) -> RandomnessRequestParams:
        return self._params

    @property
    def outstanding_request(self) -> Optional[RandomnessRequest]:
        return self._outstanding

    @property
    def outstanding_request_id(self) -> Optional[int]:
        return self._outstanding.request_id if self._outstanding else None

    async def request_randomness(self) -> int:
        if self._outstanding is not None:
            raise RequestAlreadyOutstanding(self._outstanding.request_id)

        request_id = await self._oracle.request_random_words(self._params)
        self._outstanding = RandomnessRequest(
            request_id=request_id,
            params=self._params,
            requested_at=self._clock(),
        )
        logger.info("Randomness request %s issued", request_id)
        if self._on_request:
            self._on_request(request_id)
        return request_id

    async def fulfill(self, request_id: int, random_words: Sequence[int]) -> None:
        """Accept the delivery for the outstanding request and settle with it."""
        outstanding_id = self.outstanding_request_id
        if outstanding_id is None or request_id != outstanding_id:
            raise UnknownOrStaleRequest(request_id, outstanding_id)
        if not random_words:
            raise InvalidRandomness(f"No random words delivered for request {request_id}")
        random_value = int(random_words[0])
        if random_value < 0:
            raise InvalidRandomness(f"Random word for request {request_id} is negative")
        if self._settle is None:
            raise RuntimeError("No settlement handler bound to the gateway")

        self._outstanding = None
        await self._settle(request_id, random_value)
