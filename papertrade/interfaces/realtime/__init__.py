"""
FastAPI router for real-time market streaming.

Provides:
- WebSocket endpoint for live ticks, index updates and allocation results
- SSE (Server-Sent Events) endpoint for HTTP-only clients
- Scheduler status / control endpoints
- Stream status endpoint
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from papertrade.interfaces.market.dependencies import Components, MarketComponents

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


# ------------------------------------------------------------------
# WebSocket endpoint
# ------------------------------------------------------------------


@router.websocket("/ws/market")
async def ws_market(websocket: WebSocket) -> None:
    """WebSocket endpoint for live market streaming.

    Protocol (JSON):
        → {"action": "subscribe", "symbols": ["NABIL", "NTC"]}
        ← {"event": "subscribed", "symbols": ["NABIL", "NTC"]}

        → {"action": "identify", "session_id": "abc"}
        ← {"event": "identified", "session_id": "abc"}

        → {"action": "ping"}
        ← {"event": "pong", "timestamp": "..."}

        ← {"event": "tick", "symbol": "NABIL", "data": {...}}
        ← {"event": "index", "symbol": null, "data": {...}}
        ← {"event": "allocation", "symbol": null, "data": {...}}
    """
    components: MarketComponents = websocket.app.state.market
    manager = components.stream
    await manager.connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            await manager.handle_client_message(websocket, raw)
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception:
        logger.exception("WebSocket session failed.")
        manager.disconnect(websocket)


# ------------------------------------------------------------------
# SSE endpoint
# ------------------------------------------------------------------


@router.get(
    "/stream/market",
    summary="Server-Sent Events market stream",
    description="HTTP streaming endpoint for clients that can't use WebSocket.",
)
async def sse_market(
    components: Components,
    symbols: Annotated[
        str | None,
        Query(description="Comma-separated ticker symbols to subscribe to"),
    ] = None,
) -> StreamingResponse:
    filter_symbols: set[str] | None = None
    if symbols:
        filter_symbols = {s.strip().upper() for s in symbols.split(",") if s.strip()}

    return StreamingResponse(
        components.stream.sse_generator(symbols=filter_symbols),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ------------------------------------------------------------------
# Scheduler control endpoints
# ------------------------------------------------------------------


@router.get(
    "/scheduler/status",
    summary="Get scheduler status",
    description="Return the market clock state, market status and recent task history.",
)
def scheduler_status(components: Components) -> dict:
    return components.scheduler.get_status()


@router.post(
    "/scheduler/run/{task_name}",
    summary="Trigger a scheduler task",
    description="Run a named task immediately: tick, session_close, reset.",
)
def scheduler_run_task(task_name: str, components: Components) -> dict:
    result = components.scheduler.run_now(task_name)
    return {
        "task": result.task_name,
        "status": result.status.value,
        "duration_seconds": result.duration_seconds,
        "details": result.details,
        "error": result.error,
    }


# ------------------------------------------------------------------
# Stream status
# ------------------------------------------------------------------


@router.get(
    "/stream/status",
    summary="Get stream status",
    description="Return WebSocket connection stats and recent events.",
)
def stream_status(components: Components) -> dict:
    manager = components.stream
    return {
        **manager.stats,
        "recent_events": manager.get_recent_events(limit=20),
    }
