"""Tests for session models, titles and validation."""

import pytest

from storyloom.domain.errors import InputValidationError
from storyloom.domain.models.session import Choice, GameMode, Segment, Session, generate_session_title
from storyloom.domain.persistence.validation import (
    validate_custom_action,
    validate_custom_scene,
    validate_session,
)


class TestSession:
    """Tests for Session snapshots."""

    def test_json_round_trip(self, make_session):
        session = make_session(turns=2)

        restored = Session.from_json(session.to_json())

        assert restored == session
        assert restored.turn == 2

    def test_advance_pushes_history(self, make_session):
        """advance() returns a new snapshot and leaves the original alone."""
        session = make_session(turns=1)
        choice = session.current_segment.choices[0]
        next_segment = Segment(text="Next")

        advanced = session.advance(choice, next_segment)

        assert advanced.turn == 2
        assert advanced.current_segment == next_segment
        assert advanced.segment_history[-1] == session.current_segment
        assert advanced.action_history[-1].selected is True
        assert advanced.action_history[-1].id == choice.id
        assert session.turn == 1
        assert advanced.last_updated >= session.last_updated

    def test_rolled_back(self, make_session):
        """Rolling back to index i keeps i past segments and i actions."""
        session = make_session(turns=3)
        target = session.segment_history[1]

        rolled = session.rolled_back(1)

        assert rolled.current_segment == target
        assert len(rolled.segment_history) == 1
        assert rolled.turn == 1

    def test_rolled_back_to_current(self, make_session):
        session = make_session(turns=2)

        rolled = session.rolled_back(2)

        assert rolled.current_segment == session.current_segment
        assert rolled.turn == 2

    @pytest.mark.parametrize("index", [-1, 4])
    def test_rolled_back_out_of_range(self, make_session, index):
        with pytest.raises(IndexError):
            make_session(turns=3).rolled_back(index)

    def test_summary(self, make_session):
        summary = make_session(turns=2).get_summary()

        assert summary["turn"] == 2
        assert summary["mode"] == "standard"
        assert summary["choices_available"] == 3


class TestSessionTitle:
    """Tests for generate_session_title."""

    def test_from_opening_sentence(self):
        session = Session(current_segment=Segment(text="Moonlight spills across broken marble stairs. More follows."))

        assert generate_session_title(session) == "Moonlight spills across... (0 choices)"

    def test_from_custom_scene(self):
        session = Session(
            current_segment=Segment(text="x"),
            mode=GameMode.CUSTOM,
            custom_scene="A lonely lighthouse keeper watches storms",
            action_history=[Choice(text="Light the lamp", selected=True, is_player_authored=True)],
            segment_history=[Segment(text="Before")],
        )

        assert generate_session_title(session) == "lonely lighthouse keeper... (1 actions)"

    def test_fallback_uses_session_id(self):
        session = Session(session_id="abcdefghijk", current_segment=Segment(text="Go."))

        assert generate_session_title(session) == "Adventure abcdefgh (0 choices)"


class TestValidateSession:
    """Tests for structural session validation."""

    def test_valid(self, make_session):
        assert validate_session(make_session(turns=2)).is_valid

    def test_history_mismatch(self, make_session):
        session = make_session(turns=2)
        broken = session.model_copy(update={"segment_history": session.segment_history[:1]})

        result = validate_session(broken)

        assert not result.is_valid
        assert "Segment history and action history length mismatch" in result.errors

    def test_custom_mode_needs_scene(self, make_session):
        session = make_session(mode=GameMode.CUSTOM).model_copy(update={"custom_scene": None})

        result = validate_session(session)

        assert result.errors == ["Custom mode session missing custom scene description"]

    def test_missing_text(self, make_session):
        session = make_session()
        broken = session.model_copy(update={"current_segment": Segment(text="")})

        assert "Missing segment text" in validate_session(broken).errors


class TestCustomInputValidation:
    """Tests for player-written scene and action validation."""

    def test_scene_trimmed(self):
        assert validate_custom_scene("   A quiet harbor town at dusk   ") == "A quiet harbor town at dusk"

    @pytest.mark.parametrize("scene,message", [
        ("", "Please enter a scene description"),
        ("   ", "Please enter a scene description"),
        ("Too short", "must be at least 20"),
        ("x" * 301, "must not exceed 300"),
    ])
    def test_scene_rejected(self, scene, message):
        with pytest.raises(InputValidationError, match=message) as exc_info:
            validate_custom_scene(scene)

        assert exc_info.value.field == "custom_scene"

    def test_action_bounds(self):
        assert validate_custom_action("Knock") == "Knock"
        assert validate_custom_action("x" * 200) == "x" * 200

        with pytest.raises(InputValidationError, match="at least 5"):
            validate_custom_action("Run")
        with pytest.raises(InputValidationError, match="must not exceed 200"):
            validate_custom_action("x" * 201)
