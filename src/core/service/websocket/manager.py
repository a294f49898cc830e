"""WebSocket connection manager for live claim notifications."""

from typing import List
from fastapi import WebSocket

from src.core.logger.logger import logger
from src.core.service.collectible.models import ClaimHistoryEntry


class ConnectionManager:
    """Manages WebSocket connections and broadcasting."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection
        """
        await websocket.accept()
        self.active_connections.append(websocket)
        await websocket.send_json({"type": "connected", "message": "Subscribed to claim events"})
        logger.info("New WebSocket client connected")

    def disconnect(self, websocket: WebSocket):
        """
        Remove a WebSocket connection.

        Args:
            websocket: The WebSocket connection to remove
        """
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info("WebSocket client disconnected")

    async def broadcast(self, data: dict):
        """
        Broadcast a message to all connected clients.

        Args:
            data: The data to broadcast (will be JSON serialized)
        """
        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_json(data)
            except Exception as e:
                logger.debug(f"WebSocket send failed: {e}")
                disconnected.append(connection)

        for connection in disconnected:
            self.disconnect(connection)

    async def broadcast_claim(self, entry: ClaimHistoryEntry):
        """Synchronizer observer: push a newly ingested claim to every client."""
        await self.broadcast({"type": "claim_ingested", "claim": entry.model_dump(mode="json")})

    def get_connection_count(self) -> int:
        return len(self.active_connections)
