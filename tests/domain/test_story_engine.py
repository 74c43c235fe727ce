"""Tests for StoryEngine turns, streaming and saving.

The narrator is scripted, so every turn is deterministic. Saves go to an
in-memory store; debounce and backoff are shortened so scheduled writes
settle quickly.
"""

import asyncio

import pytest

from storyloom.domain.errors import GenerationError, InputValidationError, ResponseParseError
from storyloom.domain.models.session import Choice, GameMode
from storyloom.domain.orchestration.core.story_engine import StoryEngine
from storyloom.domain.persistence.session_store import InMemorySessionStore
from storyloom.infrastructure.config import Settings

CUSTOM_SCENE = "A lighthouse keeper watches a storm roll in from the north"


def make_engine(narrator, **settings):
    options = {"save_debounce_seconds": 0.05, "save_backoff_base_seconds": 0}
    options.update(settings)
    return StoryEngine(narrator, store=InMemorySessionStore(), settings=Settings(**options))


class Collector:
    """Records streamed chunks"""

    def __init__(self):
        self.narrative = []
        self.reasoning = []

    async def on_narrative(self, chunk):
        self.narrative.append(chunk)

    async def on_reasoning(self, chunk):
        self.reasoning.append(chunk)


# =============================================================================
# Standard mode
# =============================================================================


class TestStandardMode:
    """Tests for opening and choice-driven turns."""

    @pytest.mark.asyncio
    async def test_start_game_saves_opening(self, scripted_narrator):
        engine = make_engine(scripted_narrator())

        session = await engine.start_game()

        assert session.turn == 0
        assert session.mode == GameMode.STANDARD
        assert session.custom_scene is None
        assert len(session.current_segment.choices) == 3
        assert session.current_segment.scene_description == "A dark forest under a full moon"
        assert await engine.load(session.session_id) == session

    @pytest.mark.asyncio
    async def test_stream_callbacks_split_reasoning(self, scripted_narrator, story_response):
        """Callbacks receive reasoning and narrative separately."""
        response = story_response(reasoning="Open with atmosphere.")
        engine = make_engine(scripted_narrator(response))
        collector = Collector()

        session = await engine.start_game(
            on_narrative=collector.on_narrative, on_reasoning=collector.on_reasoning
        )

        assert "".join(collector.reasoning) == "Open with atmosphere."
        assert "".join(collector.narrative) == response.replace("<think>Open with atmosphere.</think>", "")
        assert session.current_segment.reasoning == "Open with atmosphere."

    @pytest.mark.asyncio
    async def test_choose_advances(self, scripted_narrator, story_response):
        narrator = scripted_narrator(
            story_response(),
            story_response(text="The lantern leads you to a clearing where a stone well glows faintly blue.")
        )
        engine = make_engine(narrator)
        session = await engine.start_game()
        choice = session.current_segment.choices[1]

        updated = await engine.choose(session, choice)

        assert updated.turn == 1
        assert updated.action_history[0].id == choice.id
        assert updated.action_history[0].selected is True
        assert updated.current_segment.text.startswith("The lantern leads you")
        assert updated.segment_history == [session.current_segment]
        assert choice.text in narrator.calls[1]["messages"][-1].content
        assert (await engine.load(session.session_id)).turn == 1

    @pytest.mark.asyncio
    async def test_choose_rejects_unknown_choice(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()

        with pytest.raises(InputValidationError):
            await engine.choose(session, Choice(text="Something never offered"))

    @pytest.mark.asyncio
    async def test_missing_choices_are_generated(self, scripted_narrator, story_response):
        """A story without CHOICES triggers a separate choice request."""
        narrator = scripted_narrator(
            story_response(choices=()),
            "1. Open the ancient door\n2. Climb the spiral stair\n3. Go"
        )
        engine = make_engine(narrator)

        session = await engine.start_game()

        assert [c.text for c in session.current_segment.choices] == [
            "Open the ancient door",
            "Climb the spiral stair",
        ]
        assert narrator.calls[1]["temperature"] == 0.7
        assert narrator.calls[1]["max_tokens"] == 400

    @pytest.mark.asyncio
    async def test_generated_choices_use_configured_tags(self, scripted_narrator, story_response):
        """Reasoning in the choice response is stripped with the configured markers."""
        narrator = scripted_narrator(
            story_response(choices=()),
            "<plan>1. Not a real choice here</plan>1. Follow the river\n2. Cross the bridge"
        )
        engine = make_engine(narrator, reasoning_open_tag="<plan>", reasoning_close_tag="</plan>")

        session = await engine.start_game()

        assert [c.text for c in session.current_segment.choices] == ["Follow the river", "Cross the bridge"]

    @pytest.mark.asyncio
    async def test_illustrations_disabled_uses_default_scene(self, scripted_narrator):
        engine = make_engine(scripted_narrator(), enable_illustrations=False)

        session = await engine.start_game()

        assert session.current_segment.scene_description == "A mysterious scene unfolds"


# =============================================================================
# Custom mode
# =============================================================================


class TestCustomMode:
    """Tests for player-written scenes and actions."""

    @pytest.mark.asyncio
    async def test_scene_validated(self, scripted_narrator):
        engine = make_engine(scripted_narrator())

        with pytest.raises(InputValidationError) as exc_info:
            await engine.start_game(GameMode.CUSTOM, "too short")

        assert exc_info.value.field == "custom_scene"

    @pytest.mark.asyncio
    async def test_custom_game_has_no_choices(self, scripted_narrator):
        """Choices sent by the narrator are ignored in custom mode."""
        engine = make_engine(scripted_narrator())

        session = await engine.start_game(GameMode.CUSTOM, f"  {CUSTOM_SCENE}  ")

        assert session.custom_scene == CUSTOM_SCENE
        assert session.current_segment.choices == []

    @pytest.mark.asyncio
    async def test_custom_action(self, scripted_narrator):
        narrator = scripted_narrator()
        engine = make_engine(narrator)
        session = await engine.start_game(GameMode.CUSTOM, CUSTOM_SCENE)

        updated = await engine.custom_action(session, "  Light the great lamp  ")

        assert updated.turn == 1
        assert updated.action_history[0].text == "Light the great lamp"
        assert updated.action_history[0].is_player_authored is True
        assert '"Light the great lamp"' in narrator.calls[1]["messages"][-1].content

    @pytest.mark.asyncio
    async def test_mode_mismatch_rejected(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        standard = await engine.start_game()
        custom = await engine.start_game(GameMode.CUSTOM, CUSTOM_SCENE)

        with pytest.raises(InputValidationError):
            await engine.custom_action(standard, "Light the lamp")
        with pytest.raises(InputValidationError):
            await engine.choose(custom, Choice(text="anything"))
        with pytest.raises(InputValidationError):
            await engine.custom_action(custom, "Go")


# =============================================================================
# Regenerate, rollback and housekeeping
# =============================================================================


class TestSessionOperations:
    """Tests for regenerate, rollback, illustrations and deletion."""

    @pytest.mark.asyncio
    async def test_regenerate_replaces_current(self, scripted_narrator, story_response):
        narrator = scripted_narrator(
            story_response(),
            story_response(),
            story_response(text="A different take: the lantern gutters out and the forest goes utterly still.")
        )
        engine = make_engine(narrator)
        session = await engine.start_game()
        session = await engine.choose(session, session.current_segment.choices[0])

        regenerated = await engine.regenerate(session)

        assert regenerated.turn == 1
        assert regenerated.segment_history == session.segment_history
        assert regenerated.current_segment.text.startswith("A different take")
        assert narrator.calls[-1]["temperature"] == pytest.approx(0.9)
        assert session.action_history[0].text in narrator.calls[-1]["messages"][-1].content

    @pytest.mark.asyncio
    async def test_regenerate_opening(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()

        regenerated = await engine.regenerate(session)

        assert regenerated.turn == 0
        assert regenerated.current_segment.id != session.current_segment.id

    @pytest.mark.asyncio
    async def test_rollback_overwrites_saved_progress(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()
        session = await engine.choose(session, session.current_segment.choices[0])
        session = await engine.choose(session, session.current_segment.choices[0])

        rolled = await engine.rollback(session, 0)

        assert rolled.turn == 0
        assert (await engine.load(session.session_id)).turn == 0

    @pytest.mark.asyncio
    async def test_rollback_out_of_range(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()

        with pytest.raises(InputValidationError) as exc_info:
            await engine.rollback(session, 5)

        assert exc_info.value.field == "segment_index"

    @pytest.mark.asyncio
    async def test_attach_illustration_is_saved_later(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()

        updated = await engine.attach_illustration(session, "https://img.example/1.png")
        assert (await engine.load(session.session_id)).current_segment.image_url is None

        await asyncio.sleep(0.15)
        await engine.coordinator.wait_idle()

        assert updated.current_segment.image_url == "https://img.example/1.png"
        assert (await engine.load(session.session_id)).current_segment.image_url == "https://img.example/1.png"

    @pytest.mark.asyncio
    async def test_delete_cancels_pending_write(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()
        await engine.attach_illustration(session, "https://img.example/2.png")

        assert await engine.delete(session.session_id) is True
        await asyncio.sleep(0.15)
        await engine.coordinator.wait_idle()

        assert await engine.load(session.session_id) is None
        assert await engine.delete(session.session_id) is False

    @pytest.mark.asyncio
    async def test_list_sessions(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        first = await engine.start_game()
        second = await engine.start_game()
        second = await engine.choose(second, second.current_segment.choices[0])

        listed = await engine.list_sessions()

        assert [item["session_id"] for item in listed] == [second.session_id, first.session_id]
        assert all(item["title"] for item in listed)

    @pytest.mark.asyncio
    async def test_shutdown_drops_pending(self, scripted_narrator):
        engine = make_engine(scripted_narrator())
        session = await engine.start_game()
        await engine.attach_illustration(session, "https://img.example/3.png")

        await engine.shutdown()
        await asyncio.sleep(0.15)

        assert (await engine.load(session.session_id)).current_segment.image_url is None


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Tests for narrator and parse failures."""

    @pytest.mark.asyncio
    async def test_unparseable_response(self, scripted_narrator):
        engine = make_engine(scripted_narrator("Hi"))

        with pytest.raises(ResponseParseError):
            await engine.start_game()

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, scripted_narrator):
        engine = make_engine(scripted_narrator(fail_with=RuntimeError("connection reset")))

        with pytest.raises(GenerationError) as exc_info:
            await engine.start_game()

        assert exc_info.value.code == "api_error"
        assert "connection reset" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_generation_error_passes_through(self, scripted_narrator):
        error = GenerationError.from_status(401)
        engine = make_engine(scripted_narrator(fail_with=error))

        with pytest.raises(GenerationError) as exc_info:
            await engine.start_game()

        assert exc_info.value is error
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_failed_turn_leaves_store_untouched(self, scripted_narrator):
        engine = make_engine(scripted_narrator("Hi"))

        with pytest.raises(ResponseParseError):
            await engine.start_game()

        assert await engine.store.list_ids() == []
