"""FastAPI web server for the raffle operator."""

from __future__ import annotations

import asyncio
import functools
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set, Tuple

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from raffle_operator.blockchain.client import BlockchainClient
from raffle_operator.lottery.errors import (
    IndexOutOfRange,
    InsufficientFee,
    InvalidRandomness,
    NoPendingPayout,
    PayoutFailed,
    RaffleError,
    RoundNotOpen,
    UnknownOrStaleRequest,
    UpkeepNotNeeded,
)
from raffle_operator.lottery.event_manager import (
    HISTORY_UPDATE,
    OPERATOR_ALERT,
    RAFFLE_EVENTS,
    RAFFLE_UPDATE,
    RaffleEventStore,
    event_store,
)
from raffle_operator.lottery.raffle import RaffleStateMachine
from raffle_operator.lottery.randomness import LocalRandomnessOracle
from raffle_operator.lottery.scheduler import AutomationScheduler
from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)

BROADCAST_EVENTS = (*RAFFLE_EVENTS, RAFFLE_UPDATE, HISTORY_UPDATE, OPERATOR_ALERT)


class EnterRequest(BaseModel):
    participant: str = Field(min_length=1)
    fee: int = Field(ge=0)


class FulfillRequest(BaseModel):
    request_id: int


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RaffleWebServer:
    """HTTP and WebSocket gateway for the raffle."""

    def __init__(
        self,
        config: Dict[str, Any],
        raffle: RaffleStateMachine,
        scheduler: Optional[AutomationScheduler] = None,
        blockchain_client: Optional[BlockchainClient] = None,
        store: RaffleEventStore = event_store,
        oracle: Optional[LocalRandomnessOracle] = None,
    ) -> None:
        self.config = config
        self.raffle = raffle
        self.scheduler = scheduler
        self.blockchain_client = blockchain_client
        self.oracle = oracle
        self._store = store
        self._oracle_token = str(config.get("oracle", {}).get("fulfill_token") or "")

        self.app = FastAPI(
            title="Raffle Operator API",
            description="Entries, upkeep and randomness fulfillment for the raffle",
            version="1.0.0",
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._broadcast_queue: Optional[asyncio.Queue[Tuple[str, Dict[str, Any] | None]]] = None
        self._broadcast_task: Optional[asyncio.Task[None]] = None
        self._ws_lock: Optional[asyncio.Lock] = None
        self._store_callbacks: Dict[str, Callable[[Optional[dict]], None]] = {}
        self._websockets: Set[WebSocket] = set()

        self._setup_middleware()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def _setup_middleware(self) -> None:
        origins = self.config.get("server", {}).get("cors_origins", ["*"])
        if isinstance(origins, str):
            origins = [o.strip() for o in origins.split(",") if o.strip()]
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_routes(self) -> None:  # noqa: C901
        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @self.app.get("/api/health")
        async def health_check() -> Dict[str, Any]:
            blockchain_health: Dict[str, Any] | None = None
            if self.blockchain_client:
                blockchain_health = await self.blockchain_client.health_check()

            scheduler_state = self.scheduler.get_status() if self.scheduler else {}
            return {
                "status": "ok",
                "timestamp": _utc_iso(),
                "components": {
                    "web": True,
                    "scheduler": scheduler_state.get("status", "unavailable"),
                    "blockchain": blockchain_health or {"status": "unavailable"},
                    "raffle": {"phase": self.raffle.phase.name, "round": self.raffle.round_number},
                },
            }

        @self.app.get("/api/status")
        async def system_status() -> Dict[str, Any]:
            history = self._store.get_round_history(limit=5)
            return {
                "timestamp": _utc_iso(),
                "raffle": self.raffle.get_state(),
                "recent_history": [self._store.serialize_snapshot(item) for item in history],
                "scheduler": self.scheduler.get_status() if self.scheduler else {},
                "blockchain": self.blockchain_client.get_client_status() if self.blockchain_client else {},
                "websocket_connections": len(self._websockets),
            }

        # ------------------------------------------------------------------
        # Raffle queries
        # ------------------------------------------------------------------
        @self.app.get("/api/raffle")
        async def get_raffle() -> Dict[str, Any]:
            return self.raffle.get_state()

        @self.app.get("/api/raffle/players")
        async def get_players() -> Dict[str, Any]:
            players = self.raffle.get_players()
            return {"players": players, "playerCount": len(players), "poolWei": self.raffle.pool_balance()}

        @self.app.get("/api/raffle/players/{index}")
        async def get_player(index: int) -> Dict[str, Any]:
            try:
                return {"index": index, "player": self.raffle.get_player(index)}
            except IndexOutOfRange as exc:
                raise HTTPException(status_code=404, detail=str(exc))

        @self.app.get("/api/raffle/upkeep")
        async def check_upkeep(now: Optional[int] = None) -> Dict[str, Any]:
            check = self.raffle.check_upkeep(now)
            return {
                "upkeepNeeded": check.upkeep_needed,
                "performData": "0x" + check.perform_data.hex(),
                "isOpen": check.is_open,
                "timePassed": check.time_passed,
                "hasPlayers": check.has_players,
                "hasBalance": check.has_balance,
            }

        # ------------------------------------------------------------------
        # Raffle transitions
        # ------------------------------------------------------------------
        @self.app.post("/api/raffle/enter")
        async def enter_raffle(request: EnterRequest) -> Dict[str, Any]:
            try:
                await self.raffle.enter(request.participant, request.fee)
            except RaffleError as exc:
                raise self._http_error(exc)
            return {
                "status": "entered",
                "participant": request.participant,
                "playerCount": self.raffle.player_count(),
                "poolWei": self.raffle.pool_balance(),
            }

        @self.app.post("/api/raffle/perform-upkeep")
        async def perform_upkeep() -> Dict[str, Any]:
            try:
                request_id = await self.raffle.perform_upkeep()
            except RaffleError as exc:
                raise self._http_error(exc)
            return {"status": "requested", "requestId": request_id}

        @self.app.post("/api/oracle/fulfill")
        async def fulfill(
            request: FulfillRequest, x_oracle_token: Optional[str] = Header(default=None)
        ) -> Dict[str, Any]:
            self._check_oracle_token(x_oracle_token)
            if self.oracle is None:
                raise HTTPException(
                    status_code=404,
                    detail={"error": "OracleUnavailable", "message": "No local oracle is attached"},
                )
            # Words always come from the oracle; callers only pick when to deliver
            try:
                await self.oracle.fulfill(request.request_id)
            except KeyError:
                raise HTTPException(
                    status_code=409,
                    detail={
                        "error": "UnknownOrStaleRequest",
                        "message": f"Request {request.request_id} is not pending at the oracle",
                    },
                )
            except RaffleError as exc:
                raise self._http_error(exc)
            return {"status": "settled", "winner": self.raffle.recent_winner, "raffle": self.raffle.get_state()}

        @self.app.post("/api/raffle/retry-payout")
        async def retry_payout() -> Dict[str, Any]:
            try:
                reference = await self.raffle.retry_payout()
            except RaffleError as exc:
                raise self._http_error(exc)
            return {"status": "settled", "winner": self.raffle.recent_winner, "reference": reference}

        # ------------------------------------------------------------------
        # History & feed
        # ------------------------------------------------------------------
        @self.app.get("/api/history")
        async def get_round_history(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            history = self._store.get_round_history(limit=limit)
            rounds = [self._store.serialize_snapshot(item) for item in reversed(history)]
            return {
                "rounds": rounds,
                "summary": {
                    "total_rounds": len(rounds),
                    "total_volume_wei": sum(r["prizeWei"] for r in rounds),
                },
                "timestamp": _utc_iso(),
            }

        @self.app.get("/api/activities")
        async def get_live_feed(limit: int = 50, event_type: Optional[str] = None) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            feed = self._store.get_live_feed(limit=limit, event_type=event_type)
            return {"activities": [self._store.serialize_feed_item(item) for item in reversed(feed)]}

        # ------------------------------------------------------------------
        # WebSocket endpoint
        # ------------------------------------------------------------------
        @self.app.websocket("/ws/raffle")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            async with self._clients_lock():
                self._websockets.add(websocket)
            logger.info("WebSocket client connected (%s total)", len(self._websockets))
            try:
                await websocket.send_json({"type": "snapshot", "payload": self._build_initial_snapshot()})
                # Clients only listen; inbound frames are read to detect disconnects
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                async with self._clients_lock():
                    self._websockets.discard(websocket)
                logger.info("WebSocket client disconnected (%s remaining)", len(self._websockets))

    def _check_oracle_token(self, supplied: Optional[str]) -> None:
        """Require the configured oracle token, when one is set."""
        if not self._oracle_token:
            return
        if supplied is None or not secrets.compare_digest(supplied, self._oracle_token):
            logger.warning("Rejected oracle fulfillment with a missing or wrong token")
            raise HTTPException(
                status_code=401,
                detail={"error": "Unauthorized", "message": "Valid X-Oracle-Token header required"},
            )

    @staticmethod
    def _http_error(exc: RaffleError) -> HTTPException:
        if isinstance(exc, InsufficientFee):
            return HTTPException(
                status_code=400,
                detail={"error": "InsufficientFee", "message": str(exc), "entranceFeeWei": exc.entrance_fee},
            )
        if isinstance(exc, UpkeepNotNeeded):
            return HTTPException(
                status_code=409,
                detail={
                    "error": "UpkeepNotNeeded",
                    "message": str(exc),
                    "pool": exc.pool,
                    "player_count": exc.player_count,
                    "phase": exc.phase.name,
                },
            )
        if isinstance(exc, PayoutFailed):
            return HTTPException(
                status_code=502,
                detail={"error": "PayoutFailed", "message": str(exc), "winner": exc.winner, "amount": exc.amount},
            )
        if isinstance(exc, InvalidRandomness):
            return HTTPException(status_code=422, detail={"error": "InvalidRandomness", "message": str(exc)})
        if isinstance(exc, (RoundNotOpen, UnknownOrStaleRequest, NoPendingPayout)):
            return HTTPException(status_code=409, detail={"error": type(exc).__name__, "message": str(exc)})
        return HTTPException(status_code=400, detail={"error": type(exc).__name__, "message": str(exc)})


    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def _clients_lock(self) -> asyncio.Lock:
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        return self._ws_lock

    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        self._loop = asyncio.get_running_loop()
        if self._broadcast_queue is None:
            self._broadcast_queue = asyncio.Queue()
        self._subscribe_to_store()
        if self._broadcast_task is None:
            self._broadcast_task = asyncio.create_task(self._drain_broadcasts(), name="raffle-ws-broadcast")

        logger.info("Raffle API listening on %s:%s", host, port)
        server = uvicorn.Server(uvicorn.Config(self.app, host=host, port=port, log_level="info"))
        try:
            await server.serve()
        finally:
            logger.info("Raffle API server exited")

    async def stop(self) -> None:
        self._unsubscribe_from_store()
        if self._broadcast_task:
            self._broadcast_task.cancel()
            await asyncio.gather(self._broadcast_task, return_exceptions=True)
            self._broadcast_task = None

        async with self._clients_lock():
            clients = list(self._websockets)
            self._websockets.clear()
        for websocket in clients:
            try:
                await websocket.close(code=1001, reason="Raffle operator shutting down")
            except Exception as exc:  # pragma: no cover - client already gone
                logger.debug("WebSocket close failed: %s", exc)
        logger.info("Raffle API stopped, %d websocket client(s) closed", len(clients))

    # ------------------------------------------------------------------
    # Store events -> websocket clients
    # ------------------------------------------------------------------
    def _subscribe_to_store(self) -> None:
        if self._store_callbacks:
            return
        for event in BROADCAST_EVENTS:
            callback = functools.partial(self._enqueue_broadcast, event)
            self._store.add_listener(event, callback)
            self._store_callbacks[event] = callback

    def _unsubscribe_from_store(self) -> None:
        for event, callback in self._store_callbacks.items():
            self._store.remove_listener(event, callback)
        self._store_callbacks.clear()

    def _enqueue_broadcast(self, event_type: str, payload: Dict[str, Any] | None) -> None:
        # Store listeners may fire outside the server loop
        if self._broadcast_queue is None or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._broadcast_queue.put_nowait, (event_type, payload))

    async def _drain_broadcasts(self) -> None:
        assert self._broadcast_queue is not None
        while True:
            event_type, payload = await self._broadcast_queue.get()
            try:
                await self._broadcast(event_type, payload)
            except Exception:
                logger.exception("Broadcast of %s failed", event_type)

    async def _broadcast(self, event_type: str, payload: Dict[str, Any] | None) -> None:
        async with self._clients_lock():
            clients = list(self._websockets)
        if not clients:
            return

        message = {
            "type": event_type,
            "payload": payload,
            "round": self.raffle.round_number,
            "timestamp": _utc_iso(),
        }
        results = await asyncio.gather(*(ws.send_json(message) for ws in clients), return_exceptions=True)
        stale = [ws for ws, result in zip(clients, results) if isinstance(result, Exception)]
        if stale:
            async with self._clients_lock():
                self._websockets.difference_update(stale)
            logger.debug("Dropped %d unreachable websocket client(s)", len(stale))

    def _build_initial_snapshot(self) -> Dict[str, Any]:
        history = self._store.get_round_history(limit=10)
        feed = self._store.get_live_feed(limit=20)
        return {
            "raffle": self.raffle.get_state(),
            "players": self.raffle.get_players(),
            "history": [self._store.serialize_snapshot(item) for item in reversed(history)],
            "live_feed": [self._store.serialize_feed_item(item) for item in reversed(feed)],
            "scheduler": self.scheduler.get_status() if self.scheduler else {},
        }
