from typing import Dict, List, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent
from storyloom.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and message routing"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[connection_id] = websocket
            self.connection_metadata[connection_id] = {
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc),
                "session_id": None
            }
            metrics.set_gauge("websocket.active_connections", len(self.active_connections))

        await self.send_event(connection_id, ConnectionEvent(status="connected"))

        logger.info("WebSocket connected", connection_id=connection_id)

    async def disconnect(self, connection_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            if connection_id in self.active_connections:
                ws = self.active_connections.pop(connection_id)
                self.connection_metadata.pop(connection_id, None)
                metrics.set_gauge("websocket.active_connections", len(self.active_connections))

                try:
                    await ws.close()
                except RuntimeError as e:
                    # Already closed by the client
                    logger.debug("WebSocket already closed", connection_id=connection_id, error=str(e))

        logger.info("WebSocket disconnected", connection_id=connection_id)

    def bind_session(self, connection_id: str, session_id: str):
        """Associate the story session a connection is currently playing"""
        if connection_id in self.connection_metadata:
            self.connection_metadata[connection_id]["session_id"] = session_id

    async def send_event(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific connection"""
        if connection_id not in self.active_connections:
            logger.warning("Attempted to send to disconnected client", connection_id=connection_id)
            return False

        websocket = self.active_connections[connection_id]

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if connection_id in self.connection_metadata:
                self.connection_metadata[connection_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a connection"""
        metadata = self.connection_metadata.get(connection_id) or {}
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            session_id=metadata.get("session_id")
        )
        await self.send_event(connection_id, error_event)

    def connections_for_session(self, session_id: str) -> List[str]:
        return [
            connection_id for connection_id, metadata in self.connection_metadata.items()
            if metadata.get("session_id") == session_id
        ]

    def get_active_connections(self) -> Set[str]:
        return set(self.active_connections.keys())
