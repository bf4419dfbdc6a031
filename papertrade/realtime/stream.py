"""
WebSocket & SSE market stream manager.

Pushes every published market snapshot, and allocation results, to
connected clients.

Architecture:
    MarketSimulationService (scheduler thread)
            │ publish_snapshot()
            ▼
    MarketStreamManager ── run_coroutine_threadsafe ──▶ event loop
            │                                             │
            │                                       broadcast()
            ▼                                             ▼
    Connected clients (WebSocket / SSE queues)   JSON message per client

Snapshots arrive from worker threads; sends happen on the event loop the
manager was bound to at startup.
"""

import asyncio
import json
import logging
from collections import defaultdict
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from papertrade.domain.market.entities import AllocationResult, MarketSnapshot
from papertrade.domain.market.errors import ServiceUnavailableError
from papertrade.domain.market.ports import MarketBroadcastPort

logger = logging.getLogger(__name__)

COLLABORATOR = "broadcast"


@dataclass
class StreamEvent:
    """A single event pushed to connected clients.

    ``target`` restricts delivery to clients identified with that session
    and is never serialized.
    """

    event_type: str          # "tick", "index", "allocation", "task_completed", ...
    symbol: str | None
    data: dict
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    target: str | None = None

    def to_json(self) -> str:
        return json.dumps({
            "event": self.event_type,
            "symbol": self.symbol,
            "data": self.data,
            "timestamp": self.timestamp,
        }, default=str)

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        return f"event: {self.event_type}\ndata: {self.to_json()}\n\n"


def snapshot_events(snapshot: MarketSnapshot) -> list[StreamEvent]:
    """One tick event per instrument plus one index event."""
    as_of = snapshot.as_of.isoformat()
    events = [
        StreamEvent(
            event_type="tick",
            symbol=symbol,
            data={
                "cycle": snapshot.cycle,
                "price": state.current_price,
                "previous_close": state.previous_close,
                "change": state.change,
                "change_percent": state.change_percent,
                "day_high": state.day_high,
                "day_low": state.day_low,
                "volume": state.volume,
            },
            timestamp=as_of,
        )
        for symbol, state in sorted(snapshot.states.items())
    ]
    events.append(
        StreamEvent(
            event_type="index",
            symbol=None,
            data={
                "cycle": snapshot.cycle,
                "value": snapshot.index.value,
                "change_percent": snapshot.index.change_percent,
            },
            timestamp=as_of,
        )
    )
    return events


class MarketStreamManager(MarketBroadcastPort):
    """Manages real-time market streaming to WebSocket & SSE clients.

    Supports symbol-level subscriptions: clients can subscribe to specific
    tickers or receive all events. Clients that identify with a session id
    also receive the allocation results computed for that session.

    Usage in FastAPI:
        manager = MarketStreamManager()
        manager.bind_loop(asyncio.get_running_loop())   # in the lifespan

        @app.websocket("/ws/market")
        async def ws_endpoint(ws: WebSocket):
            await manager.connect(ws)
            try:
                while True:
                    msg = await ws.receive_text()
                    await manager.handle_client_message(ws, msg)
            except WebSocketDisconnect:
                manager.disconnect(ws)

        # From any thread:
        manager.publish_snapshot(snapshot)
    """

    def __init__(self, max_queue_size: int = 100, max_history: int = 500) -> None:
        self._clients: dict[Any, Optional[asyncio.Queue]] = {}
        self._subscriptions: dict[Any, set[str]] = defaultdict(set)
        self._sessions: dict[Any, str] = {}
        self._max_queue_size = max_queue_size
        self._event_history: list[StreamEvent] = []
        self._max_history = max_history
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stats = {
            "total_connections": 0,
            "total_events_broadcast": 0,
            "total_messages_sent": 0,
            "dropped_messages": 0,
        }

    @property
    def active_connections(self) -> int:
        return len(self._clients)

    @property
    def stats(self) -> dict:
        return {**self._stats, "active_connections": self.active_connections}

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the event loop that owns the client connections."""
        self._loop = loop

    # ------------------------------------------------------------------
    # MarketBroadcastPort (thread-safe entry points)
    # ------------------------------------------------------------------

    def publish_snapshot(self, snapshot: MarketSnapshot) -> None:
        self._dispatch(snapshot_events(snapshot))

    def publish_allocation(self, caller_id: str, result: AllocationResult) -> None:
        event = StreamEvent(
            event_type="allocation",
            symbol=None,
            data={
                "caller_id": caller_id,
                "quantities": dict(result.quantities),
                "total_cost": result.total_cost,
                "achieved_score": result.achieved_score,
                "budget": result.budget,
                "infeasible_reason": result.infeasible_reason,
            },
            target=caller_id,
        )
        self._dispatch([event])

    def publish_system_event(self, event_type: str, data: dict) -> None:
        """Forward a scheduler or lifecycle event (task_completed, reset, ...)."""
        self._dispatch([StreamEvent(event_type=event_type, symbol=None, data=data)])

    def _dispatch(self, events: list[StreamEvent]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            raise ServiceUnavailableError(COLLABORATOR, "no event loop bound")
        future = asyncio.run_coroutine_threadsafe(self._broadcast_all(events), loop)
        future.add_done_callback(self._log_failure)

    async def _broadcast_all(self, events: list[StreamEvent]) -> int:
        sent = 0
        for event in events:
            sent += await self.broadcast(event)
        return sent

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Stream broadcast failed: %s", exc)

    # ------------------------------------------------------------------
    # WebSocket lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: Any) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self._clients[websocket] = None
        self._subscriptions[websocket] = set()  # empty = all symbols
        self._stats["total_connections"] += 1
        logger.info("WebSocket client connected. Active: %d", self.active_connections)

        welcome = StreamEvent(
            event_type="connected",
            symbol=None,
            data={
                "message": "Connected to the PaperTrade market stream",
                "active_clients": self.active_connections,
            },
        )
        await websocket.send_text(welcome.to_json())

    def disconnect(self, websocket: Any) -> None:
        """Remove a disconnected client."""
        self._clients.pop(websocket, None)
        self._subscriptions.pop(websocket, None)
        self._sessions.pop(websocket, None)
        logger.info("WebSocket client disconnected. Active: %d", self.active_connections)

    async def handle_client_message(self, websocket: Any, raw: str) -> None:
        """Process a message from a WebSocket client.

        Supported commands:
            {"action": "subscribe", "symbols": ["NABIL", "NTC"]}
            {"action": "unsubscribe", "symbols": ["NTC"]}
            {"action": "subscribe_all"}
            {"action": "identify", "session_id": "abc"}
            {"action": "ping"}
        """
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await websocket.send_text(json.dumps({"error": "Invalid JSON"}))
            return
        if not isinstance(msg, dict):
            await websocket.send_text(json.dumps({"error": "Expected a JSON object"}))
            return

        action = msg.get("action", "")

        if action == "subscribe":
            symbols = {str(s).upper() for s in msg.get("symbols", [])}
            self._subscriptions[websocket] |= symbols
            await websocket.send_text(json.dumps({
                "event": "subscribed",
                "symbols": sorted(self._subscriptions[websocket]),
            }))

        elif action == "unsubscribe":
            symbols = {str(s).upper() for s in msg.get("symbols", [])}
            self._subscriptions[websocket] -= symbols
            await websocket.send_text(json.dumps({
                "event": "unsubscribed",
                "symbols": sorted(self._subscriptions[websocket]),
            }))

        elif action == "subscribe_all":
            self._subscriptions[websocket] = set()
            await websocket.send_text(json.dumps({"event": "subscribed_all"}))

        elif action == "identify":
            session_id = str(msg.get("session_id", "")).strip()
            if not session_id:
                await websocket.send_text(json.dumps({"error": "session_id is required"}))
                return
            self._sessions[websocket] = session_id
            await websocket.send_text(json.dumps({
                "event": "identified",
                "session_id": session_id,
            }))

        elif action == "ping":
            await websocket.send_text(json.dumps({
                "event": "pong",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }))

        else:
            await websocket.send_text(json.dumps({
                "error": f"Unknown action: {action}",
                "supported": ["subscribe", "unsubscribe", "subscribe_all", "identify", "ping"],
            }))

    # ------------------------------------------------------------------
    # Broadcasting
    # ------------------------------------------------------------------

    def _wants(self, client: Any, event: StreamEvent) -> bool:
        if event.target is not None:
            return self._sessions.get(client) == event.target
        subs = self._subscriptions.get(client, set())
        return not (subs and event.symbol and event.symbol.upper() not in subs)

    async def broadcast(self, event: StreamEvent) -> int:
        """Send an event to all matching clients.

        Returns the number of clients that received the message.
        """
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

        self._stats["total_events_broadcast"] += 1
        sent = 0
        dead: list[Any] = []

        for client, queue in list(self._clients.items()):
            if not self._wants(client, event):
                continue

            if queue is not None:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    self._stats["dropped_messages"] += 1
                    continue
                sent += 1
                self._stats["total_messages_sent"] += 1
                continue

            try:
                await client.send_text(event.to_json())
                sent += 1
                self._stats["total_messages_sent"] += 1
            except Exception:
                dead.append(client)

        for client in dead:
            self.disconnect(client)

        return sent

    # ------------------------------------------------------------------
    # SSE Generator
    # ------------------------------------------------------------------

    async def sse_generator(
        self, symbols: set[str] | None = None
    ) -> AsyncGenerator[str, None]:
        """Async generator that yields Server-Sent Events.

        Each SSE client gets its own bounded queue; when it is full, new
        events for that client are dropped.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._clients[queue] = queue
        self._subscriptions[queue] = symbols or set()
        self._stats["total_connections"] += 1

        try:
            yield ": connected\n\n"
            while True:
                event = await queue.get()
                yield event.to_sse()
        finally:
            self._clients.pop(queue, None)
            self._subscriptions.pop(queue, None)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_recent_events(
        self, limit: int = 50, symbol: str | None = None
    ) -> list[dict]:
        """Return recent public events, optionally filtered by symbol."""
        events = [e for e in self._event_history if e.target is None]
        if symbol:
            events = [e for e in events if e.symbol and e.symbol.upper() == symbol.upper()]
        return [json.loads(e.to_json()) for e in events[-limit:]]
