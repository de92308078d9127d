"""
Real-time event channel over aiohttp WebSockets.
"""

import json
from typing import Any, Dict, Set

from aiohttp import web, WSMsgType

from .logging import get_logger

PLATE_SOLVING_UPDATE = "plate-solving-update"
IMMICH_SYNC_COMPLETE = "immich-sync-complete"
NOTIFICATION = "notification"


class EventBroker:
    """Tracks connected clients and broadcasts ``{"event", "data"}`` messages."""

    def __init__(self):
        self.clients: Set[web.WebSocketResponse] = set()
        self.logger = get_logger("events")

    @property
    def client_count(self) -> int:
        return len(self.clients)

    async def emit(self, event: str, data: Dict[str, Any]) -> int:
        """Send an event to every client; returns how many received it."""
        message = json.dumps({"event": event, "data": data}, default=str)
        delivered = 0
        for ws in list(self.clients):
            if ws.closed:
                self.clients.discard(ws)
                continue
            try:
                await ws.send_str(message)
                delivered += 1
            except (ConnectionError, RuntimeError) as e:
                self.logger.debug(f"Dropping websocket client: {e}")
                self.clients.discard(ws)
        self.logger.debug(f"📡 {event} → {delivered} client(s)")
        return delivered

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for ``GET /ws``."""
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self.clients.add(ws)
        self.logger.info(f"🔌 Client connected ({self.client_count} total)")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    self.logger.warning(f"⚠️  WebSocket error: {ws.exception()}")
        finally:
            self.clients.discard(ws)
            self.logger.info(f"🔌 Client disconnected ({self.client_count} total)")
        return ws

    async def close_all(self) -> None:
        for ws in list(self.clients):
            await ws.close(code=1001, message=b"Server shutdown")
        self.clients.clear()
