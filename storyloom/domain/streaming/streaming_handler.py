from typing import Dict, Any
from datetime import datetime, timezone
import structlog

from storyloom.application.websocket.connection_manager import ConnectionManager
from storyloom.application.websocket.schema.events import NarrativeEvent, ReasoningEvent

logger = structlog.get_logger(__name__)

FLUSH_INTERVAL_SECONDS = 0.1
FLUSH_CHARS = 50


class StreamingHandler:
    """Batches classified narrator output into websocket events.

    Narrative and reasoning are buffered separately per connection and pushed
    every 100ms or 50 characters, whichever comes first.
    """

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager
        self.streaming_sessions: Dict[str, Dict[str, Any]] = {}

    def _buffers(self, connection_id: str) -> Dict[str, Any]:
        if connection_id not in self.streaming_sessions:
            self.streaming_sessions[connection_id] = {
                "narrative": "",
                "reasoning": "",
                "last_send": datetime.now(timezone.utc)
            }
        return self.streaming_sessions[connection_id]

    async def stream_narrative(self, connection_id: str, chunk: str):
        """Queue a narrative chunk"""
        await self._stream(connection_id, "narrative", chunk)

    async def stream_reasoning(self, connection_id: str, chunk: str):
        """Queue a reasoning chunk"""
        await self._stream(connection_id, "reasoning", chunk)

    async def _stream(self, connection_id: str, kind: str, chunk: str):
        if not chunk:
            return

        session_data = self._buffers(connection_id)
        session_data[kind] += chunk

        now = datetime.now(timezone.utc)
        time_diff = (now - session_data["last_send"]).total_seconds()

        if time_diff > FLUSH_INTERVAL_SECONDS or len(session_data[kind]) > FLUSH_CHARS:
            await self._send_buffered(connection_id, session_data)
            session_data["last_send"] = now

    async def _send_buffered(self, connection_id: str, session_data: Dict[str, Any]):
        # Reasoning first: it was generated ahead of the narrative it explains
        if session_data["reasoning"]:
            await self.connection_manager.send_event(
                connection_id, ReasoningEvent(payload=session_data["reasoning"])
            )
            session_data["reasoning"] = ""
        if session_data["narrative"]:
            await self.connection_manager.send_event(
                connection_id, NarrativeEvent(payload=session_data["narrative"])
            )
            session_data["narrative"] = ""

    async def flush_stream(self, connection_id: str):
        """Flush any remaining buffered content"""

        if connection_id in self.streaming_sessions:
            session_data = self.streaming_sessions.pop(connection_id)
            await self._send_buffered(connection_id, session_data)
            logger.debug("Stream flushed", connection_id=connection_id)
