# notifeed/services/websocket_manager.py
from typing import Set

import structlog
from fastapi import WebSocket

from notifeed.models.feed_state import FeedSnapshot

logger = structlog.get_logger(__name__)


class WebSocketManager:
    """
    Keeps the UI sockets watching the feed and pushes every new
    FeedSnapshot to all of them (tabs, popovers, etc.).
    """
    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket, snapshot: FeedSnapshot):
        await websocket.accept()
        self.active_connections.add(websocket)
        await websocket.send_json(snapshot.model_dump(mode="json"))

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast(self, snapshot: FeedSnapshot):
        """
        FeedStore subscriber. Sockets that fail to receive are dropped.
        """
        if not self.active_connections:
            return
        message = snapshot.model_dump(mode="json")
        dead_sockets = []
        for ws in list(self.active_connections):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.debug("ui_socket_send_failed", error=str(e))
                dead_sockets.append(ws)
        for ws in dead_sockets:
            self.active_connections.discard(ws)
