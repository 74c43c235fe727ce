"""Pytest configuration and fixtures."""

from typing import List, Optional, Sequence

import pytest

from storyloom.domain.models.session import Session, Segment, Choice, GameMode
from storyloom.domain.orchestration.narrator.base_narrator import Narrator


STORY_TEXT = (
    "You stand at the edge of a moonlit forest, the wind carrying whispers of an "
    "ancient name. A lantern flickers somewhere between the trees."
)

DEFAULT_CHOICES = (
    "Follow the flickering lantern",
    "Call out the ancient name",
    "Climb the nearest oak to look around",
)


class ScriptedNarrator(Narrator):
    """Replays canned responses in fixed-size fragments.

    Responses are consumed in order; the last one repeats once the list runs out.
    """

    def __init__(self, responses: Sequence[str], chunk_size: int = 7, fail_with: Optional[Exception] = None):
        super().__init__("scripted", "Replays canned responses")
        self.responses: List[str] = list(responses)
        self.chunk_size = chunk_size
        self.fail_with = fail_with
        self.calls: List[dict] = []

    def _next_response(self) -> str:
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    async def stream(self, messages, temperature=0.8, max_tokens=2048):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.fail_with is not None:
            raise self.fail_with

        response = self._next_response()
        for start in range(0, len(response), self.chunk_size):
            yield response[start:start + self.chunk_size]


def build_story_response(
    text: str = STORY_TEXT,
    scene: Optional[str] = "A dark forest under a full moon",
    choices: Sequence[str] = DEFAULT_CHOICES,
    reasoning: Optional[str] = None
) -> str:
    parts = []
    if reasoning is not None:
        parts.append(f"<think>{reasoning}</think>\n")
    parts.append(f"STORY: {text}")
    if scene is not None:
        parts.append(f"\nSCENE: {scene}")
    if choices:
        parts.append("\nCHOICES:\n" + "\n".join(f"{i}. {choice}" for i, choice in enumerate(choices, 1)))
    return "".join(parts)


@pytest.fixture
def story_response():
    """Factory for well-formed narrator responses."""
    return build_story_response


@pytest.fixture
def scripted_narrator():
    """Factory for a ScriptedNarrator."""
    def _make(*responses: str, **kwargs) -> ScriptedNarrator:
        return ScriptedNarrator(responses or [build_story_response()], **kwargs)
    return _make


@pytest.fixture
def make_session():
    """Factory for sessions with `turns` elapsed turns."""
    def _make(
        turns: int = 0,
        mode: GameMode = GameMode.STANDARD,
        custom_scene: Optional[str] = None,
        **kwargs
    ) -> Session:
        with_choices = mode == GameMode.STANDARD
        segments = [
            Segment(
                text=f"Segment {i}: the corridor bends and the torchlight dims as you go deeper.",
                scene_description=f"Scene {i}",
                choices=[Choice(text=f"Option {i}{letter} for the corridor") for letter in "abc"] if with_choices else [],
            )
            for i in range(turns + 1)
        ]
        actions = [
            Choice(text=f"Action {i}", selected=True, is_player_authored=not with_choices)
            for i in range(turns)
        ]
        if mode == GameMode.CUSTOM and custom_scene is None:
            custom_scene = "A lighthouse keeper watches a storm roll in"

        return Session(
            current_segment=segments[-1],
            segment_history=segments[:-1],
            action_history=actions,
            mode=mode,
            custom_scene=custom_scene,
            **kwargs
        )
    return _make
