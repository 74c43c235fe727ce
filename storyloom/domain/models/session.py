from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum
import random
import re
import string
import time


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Millisecond timestamp plus a random suffix, e.g. 1718031111000-k3j9x0a1b"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


class GameMode(str, Enum):
    """Adventure mode"""
    STANDARD = "standard"
    CUSTOM = "custom"


class Choice(BaseModel):
    """An option offered to the player, or an action the player took"""
    id: str = Field(default_factory=generate_id)
    text: str = Field(description="Choice or action text")
    selected: bool = Field(default=False, description="Whether the player picked this choice")
    is_player_authored: bool = Field(default=False, description="Free-text action written by the player")


class Segment(BaseModel):
    """One unit of story text plus its scene metadata and choices"""
    id: str = Field(default_factory=generate_id)
    text: str = Field(description="Narrative text")
    scene_description: Optional[str] = Field(None, description="Visual scene description")
    reasoning: Optional[str] = Field(None, description="Reasoning trace emitted while generating")
    choices: List[Choice] = Field(default_factory=list, description="Empty in custom mode")
    image_url: Optional[str] = Field(None, description="Illustration attached after generation")


class Session(BaseModel):
    """Complete adventure state"""
    session_id: str = Field(default_factory=generate_id)
    current_segment: Segment
    segment_history: List[Segment] = Field(default_factory=list, description="Past segments, oldest first")
    action_history: List[Choice] = Field(default_factory=list, description="One action per elapsed turn")
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    mode: GameMode = Field(default=GameMode.STANDARD)
    custom_scene: Optional[str] = Field(None, description="Player-written opening scene (custom mode)")

    @property
    def turn(self) -> int:
        """Number of turns elapsed"""
        return len(self.action_history)

    @property
    def current_scene(self) -> str:
        return self.current_segment.scene_description or ""

    def context_segments(self) -> List[Segment]:
        """Past segments followed by the current one, as fed to the context budgeter"""
        return [*self.segment_history, self.current_segment]

    def advance(self, action: Choice, next_segment: Segment) -> "Session":
        """Return a new snapshot with the current segment pushed into history"""
        return self.model_copy(update={
            "current_segment": next_segment,
            "segment_history": [*self.segment_history, self.current_segment],
            "action_history": [*self.action_history, action.model_copy(update={"selected": True})],
            "last_updated": utcnow(),
        })

    def replace_current(self, segment: Segment) -> "Session":
        """Return a new snapshot whose current segment is swapped out"""
        return self.model_copy(update={"current_segment": segment, "last_updated": utcnow()})

    def rolled_back(self, segment_index: int) -> "Session":
        """Return a new snapshot that resumes from `segment_index` of context_segments()"""

        segments = self.context_segments()
        if segment_index < 0 or segment_index >= len(segments):
            raise IndexError(f"Segment index {segment_index} out of range (0..{len(segments) - 1})")

        return self.model_copy(update={
            "current_segment": segments[segment_index],
            "segment_history": segments[:segment_index],
            "action_history": self.action_history[:segment_index],
            "last_updated": utcnow(),
        })

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Session":
        return cls.model_validate_json(data)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "turn": self.turn,
            "choices_available": len(self.current_segment.choices),
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat()
        }


_TITLE_STOP_WORDS = {
    "the", "and", "but", "for", "are", "with", "they", "have",
    "this", "that", "from", "your", "you",
}


def _title_words(text: str) -> List[str]:
    return [
        word for word in text.strip().split(" ")
        if len(word) > 3 and word.lower() not in _TITLE_STOP_WORDS
    ]


def generate_session_title(session: Session) -> str:
    """Short save-list title built from the custom scene or the opening sentence"""

    count = len(session.action_history)
    action_label = "actions" if session.mode == GameMode.CUSTOM else "choices"

    if session.mode == GameMode.CUSTOM and session.custom_scene:
        words = _title_words(session.custom_scene)
        if len(words) >= 2:
            return f"{' '.join(words[:3])}... ({count} actions)"

    sentences = [s for s in re.split(r"[.!?]+", session.current_segment.text) if s.strip()]
    if sentences:
        words = _title_words(sentences[0])
        if len(words) >= 2:
            return f"{' '.join(words[:3])}... ({count} {action_label})"

    mode_label = "Custom" if session.mode == GameMode.CUSTOM else "Adventure"
    return f"{mode_label} {session.session_id[:8]} ({count} {action_label})"
