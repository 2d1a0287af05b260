from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from .models import GameState

logger = structlog.get_logger(__name__)


class StateSubscription:
    """Async iterator over published snapshots for one subscriber.

    ``None`` is delivered when the watched session is cleared.
    """

    def __init__(self, store: "GameStateStore", session_id: Optional[str]):
        self.session_id = session_id
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()

    def _offer(self, state: Optional[GameState], session_id: str) -> None:
        if self.session_id is None or self.session_id == session_id:
            self._queue.put_nowait(state)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Optional[GameState]:
        return await self._queue.get()

    def close(self) -> None:
        self._store._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Optional[GameState]:
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class GameStateStore:
    """Single-writer holder of the authoritative GameState per session.

    Snapshots are immutable; every write swaps the whole snapshot and then
    publishes it, so readers never observe a partially applied change.
    """

    def __init__(self):
        self._states: Dict[str, GameState] = {}
        self._latest_session_id: Optional[str] = None
        self._subscribers: List[StateSubscription] = []

    def snapshot(self, session_id: Optional[str] = None) -> Optional[GameState]:
        if session_id is None:
            session_id = self._latest_session_id
        if session_id is None:
            return None
        return self._states.get(session_id)

    @property
    def current(self) -> Optional[GameState]:
        return self.snapshot()

    def publish(self, state: GameState) -> GameState:
        self._states[state.session_id] = state
        self._latest_session_id = state.session_id
        self._broadcast(state, state.session_id)
        return state

    def update(self, session_id: str, **changes: Any) -> GameState:
        current = self._states.get(session_id)
        if current is None:
            raise KeyError(f"No active game state for session {session_id}")
        return self.publish(current.model_copy(update=changes))

    def clear(self, session_id: Optional[str] = None) -> None:
        if session_id is None:
            session_id = self._latest_session_id
        if session_id is None or session_id not in self._states:
            return
        del self._states[session_id]
        if self._latest_session_id == session_id:
            self._latest_session_id = None
        logger.debug("game_state_cleared", session_id=session_id)
        self._broadcast(None, session_id)

    def subscribe(self, session_id: Optional[str] = None) -> StateSubscription:
        """Register a subscriber; it is primed with the current snapshot if one exists."""

        subscription = StateSubscription(self, session_id)
        current = self.snapshot(session_id)
        if current is not None:
            subscription._offer(current, current.session_id)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: StateSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def _broadcast(self, state: Optional[GameState], session_id: str) -> None:
        for subscription in list(self._subscribers):
            subscription._offer(state, session_id)
