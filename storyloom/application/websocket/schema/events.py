from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from storyloom.domain.models.session import GameMode


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """Server -> client event types"""
    CONNECTION = "connection"
    NARRATIVE = "narrative"
    REASONING = "reasoning"
    SEGMENT = "segment"
    SAVE_STATUS = "save_status"
    ERROR = "error"


class ClientEventType(str, Enum):
    """Client -> server event types"""
    START_GAME = "start_game"
    RESUME = "resume"
    CHOOSE = "choose"
    CUSTOM_ACTION = "custom_action"
    REGENERATE = "regenerate"
    ROLLBACK = "rollback"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class NarrativeEvent(BaseEvent):
    """Streamed story text"""
    type: Literal[EventType.NARRATIVE] = EventType.NARRATIVE
    payload: str


class ReasoningEvent(BaseEvent):
    """Streamed reasoning trace, shown apart from the story"""
    type: Literal[EventType.REASONING] = EventType.REASONING
    payload: str


class SegmentEvent(BaseEvent):
    """Turn finished; carries the session summary and the new segment"""
    type: Literal[EventType.SEGMENT] = EventType.SEGMENT
    payload: Dict[str, Any]


class SaveStatusEvent(BaseEvent):
    """Auto-save outcome; only failures are pushed"""
    type: Literal[EventType.SAVE_STATUS] = EventType.SAVE_STATUS
    success: bool
    attempts: int = 0
    message: Optional[str] = None


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class StartGameRequest(BaseModel):
    type: Literal[ClientEventType.START_GAME] = ClientEventType.START_GAME
    mode: GameMode = GameMode.STANDARD
    custom_scene: Optional[str] = None


class ResumeRequest(BaseModel):
    type: Literal[ClientEventType.RESUME] = ClientEventType.RESUME
    session_id: str


class ChooseRequest(BaseModel):
    type: Literal[ClientEventType.CHOOSE] = ClientEventType.CHOOSE
    choice_id: str


class CustomActionRequest(BaseModel):
    type: Literal[ClientEventType.CUSTOM_ACTION] = ClientEventType.CUSTOM_ACTION
    text: str


class RegenerateRequest(BaseModel):
    type: Literal[ClientEventType.REGENERATE] = ClientEventType.REGENERATE


class RollbackRequest(BaseModel):
    type: Literal[ClientEventType.ROLLBACK] = ClientEventType.ROLLBACK
    segment_index: int = Field(ge=0)


CLIENT_REQUESTS = {
    ClientEventType.START_GAME: StartGameRequest,
    ClientEventType.RESUME: ResumeRequest,
    ClientEventType.CHOOSE: ChooseRequest,
    ClientEventType.CUSTOM_ACTION: CustomActionRequest,
    ClientEventType.REGENERATE: RegenerateRequest,
    ClientEventType.ROLLBACK: RollbackRequest,
}


def parse_client_event(data: Dict[str, Any]) -> BaseModel:
    """Validate an incoming client message against its request model"""

    try:
        event_type = ClientEventType(data.get("type"))
    except ValueError:
        raise ValueError(f"Unknown event type: {data.get('type')!r}")
    return CLIENT_REQUESTS[event_type].model_validate(data)


def segment_payload(summary: Dict[str, Any], segment: Dict[str, Any], history: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"session": summary, "segment": segment, "action_history": history}
