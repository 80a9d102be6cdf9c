"""In-memory event store for the raffle operator."""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from raffle_operator.lottery.models import LiveFeedItem, RoundSnapshot
from raffle_operator.utils.logger import get_logger

logger = get_logger(__name__)

# Raffle events, named after their on-chain counterparts
ENTRY_RECORDED = "EntryRecorded"
RANDOMNESS_REQUESTED = "RandomnessRequested"
WINNER_REQUESTED = "WinnerRequested"
WINNER_CHOSEN = "WinnerChosen"
PAYOUT_FAILED = "PayoutFailed"

# Store-level notifications
RAFFLE_UPDATE = "raffle_update"
HISTORY_UPDATE = "history_update"
OPERATOR_ALERT = "operator_alert"

RAFFLE_EVENTS = (
    ENTRY_RECORDED,
    RANDOMNESS_REQUESTED,
    WINNER_REQUESTED,
    WINNER_CHOSEN,
    PAYOUT_FAILED,
)

Listener = Callable[[Optional[dict]], None]


class RaffleEventStore:
    """Volatile storage for raffle events, live feed and round history."""

    def __init__(self, *, feed_capacity: int = 100, history_capacity: int = 20) -> None:
        self._lock = Lock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._feed_capacity = feed_capacity
        self._history_capacity = history_capacity
        self._live_feed: deque[LiveFeedItem] = deque(maxlen=feed_capacity)
        self._history: deque[RoundSnapshot] = deque(maxlen=history_capacity)

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug(f"[EventStore] Adding listener for event_type={event_type}, callback={callback}")

    def remove_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            if callback in self._listeners.get(event_type, []):
                self._listeners[event_type].remove(callback)

    def _emit(self, event_type: str, payload: Optional[dict]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
        for callback in listeners:
            try:
                callback(payload)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event_type, exc)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish(self, event_type: str, message: str, details: Optional[Dict[str, Any]] = None) -> LiveFeedItem:
        """Append a live-feed item and notify listeners of ``event_type``."""
        item = LiveFeedItem(event_type=event_type, message=message, details=dict(details or {}))
        with self._lock:
            self._live_feed.append(item)
        logger.info("[EventStore] %s: %s", event_type, message)
        self._emit(event_type, self.serialize_feed_item(item))
        return item

    def notify(self, event_type: str, payload: Optional[dict]) -> None:
        """Notify listeners without touching the live feed."""
        self._emit(event_type, payload)

    def add_history_snapshot(self, snapshot: RoundSnapshot) -> None:
        with self._lock:
            self._history.append(snapshot)
        logger.info(f"[EventStore] Added history snapshot for round {snapshot.round_number}")
        self._emit(HISTORY_UPDATE, self.serialize_history())

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get_round_history(self, limit: Optional[int] = None) -> List[RoundSnapshot]:
        with self._lock:
            items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    def get_live_feed(self, limit: Optional[int] = None, event_type: Optional[str] = None) -> List[LiveFeedItem]:
        with self._lock:
            items = list(self._live_feed)
        if event_type is not None:
            items = [item for item in items if item.event_type == event_type]
        if limit is not None:
            return items[-limit:]
        return items

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------
    @staticmethod
    def serialize_feed_item(item: LiveFeedItem) -> dict:
        return {
            "type": item.event_type,
            "message": item.message,
            "details": item.details,
            "timestamp": item.created_at.isoformat(),
        }

    @staticmethod
    def serialize_snapshot(snapshot: RoundSnapshot) -> dict:
        return {
            "roundNumber": snapshot.round_number,
            "winner": snapshot.winner,
            "winnerIndex": snapshot.winner_index,
            "prizeWei": snapshot.prize,
            "participantCount": snapshot.participant_count,
            "requestId": snapshot.request_id,
            "randomWord": str(snapshot.random_word),
            "startedAt": snapshot.started_at,
            "settledAt": snapshot.settled_at,
        }

    def serialize_history(self) -> dict:
        rounds = [self.serialize_snapshot(s) for s in self.get_round_history()]
        rounds.sort(key=lambda x: x["roundNumber"], reverse=True)
        return {"rounds": rounds}

    def clear_all_data(self) -> None:
        with self._lock:
            self._history.clear()
            self._live_feed.clear()
        self._emit(HISTORY_UPDATE, self.serialize_history())
        logger.debug("[EventStore] clear_all_data called")

    # ------------------------------------------------------------------
    # Runtime resizing helpers
    # ------------------------------------------------------------------
    def set_feed_capacity(self, capacity: int) -> None:
        """Resize the live feed capacity (max entries)."""
        with self._lock:
            if capacity == self._feed_capacity:
                return
            old_items = list(self._live_feed)
            self._live_feed = deque(old_items[-capacity:], maxlen=capacity)
            self._feed_capacity = capacity
        logger.info(f"[EventStore] live feed capacity set to {capacity}")

    def set_history_capacity(self, capacity: int) -> None:
        """Resize the round history capacity (max snapshots)."""
        with self._lock:
            if capacity == self._history_capacity:
                return
            old_items = list(self._history)
            self._history = deque(old_items[-capacity:], maxlen=capacity)
            self._history_capacity = capacity
        logger.info(f"[EventStore] history capacity set to {capacity}")


# Global singleton used across the backend.
event_store = RaffleEventStore()
