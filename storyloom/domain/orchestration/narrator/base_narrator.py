from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List
from datetime import datetime, timezone

from langchain_core.messages import BaseMessage


class Narrator(ABC):
    """Text-generation collaborator that writes the story.

    Implementations wrap a remote model. Failures are raised as
    GenerationError so callers can tell retryable ones apart.
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self.created_at = datetime.now(timezone.utc)
        self.last_active = datetime.now(timezone.utc)

    @abstractmethod
    def stream(
        self,
        messages: List[BaseMessage],
        temperature: float = 0.8,
        max_tokens: int = 2048
    ) -> AsyncIterator[str]:
        """Yield response text fragments of arbitrary size"""
        pass

    async def complete(
        self,
        messages: List[BaseMessage],
        temperature: float = 0.8,
        max_tokens: int = 2048
    ) -> str:
        """Whole response; joins the stream unless overridden"""

        parts = []
        async for fragment in self.stream(messages, temperature, max_tokens):
            parts.append(fragment)
        return "".join(parts)

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = datetime.now(timezone.utc)

    def get_info(self) -> Dict[str, Any]:
        """Get narrator information"""
        return {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat()
        }
