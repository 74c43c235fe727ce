from typing import List, Optional

from pydantic import BaseModel

from storyloom.domain.errors import InputValidationError
from storyloom.domain.models.session import Session, GameMode


MIN_CUSTOM_SCENE_CHARS = 20
MAX_CUSTOM_SCENE_CHARS = 300
MAX_STORED_CUSTOM_SCENE_CHARS = 500
MIN_CUSTOM_ACTION_CHARS = 5
MAX_CUSTOM_ACTION_CHARS = 200


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = []


def validate_session(session: Session) -> ValidationResult:
    """Check structural invariants before a snapshot is written"""

    errors: List[str] = []

    if not session.session_id:
        errors.append("Missing session ID")
    if session.mode not in (GameMode.STANDARD, GameMode.CUSTOM):
        errors.append('Invalid game mode (must be "standard" or "custom")')

    if session.mode == GameMode.CUSTOM:
        scene = (session.custom_scene or "").strip()
        if not scene:
            errors.append("Custom mode session missing custom scene description")
        elif len(scene) < MIN_CUSTOM_SCENE_CHARS:
            errors.append(f"Custom scene description too short (minimum {MIN_CUSTOM_SCENE_CHARS} characters)")
        elif len(scene) > MAX_STORED_CUSTOM_SCENE_CHARS:
            errors.append(f"Custom scene description too long (maximum {MAX_STORED_CUSTOM_SCENE_CHARS} characters)")

    segment = session.current_segment
    if not segment.id:
        errors.append("Missing segment ID")
    if not segment.text:
        errors.append("Missing segment text")
    for choice in segment.choices:
        if not choice.id or not choice.text:
            errors.append("Invalid choice in current segment")
            break

    if session.action_history and len(session.segment_history) != len(session.action_history):
        errors.append("Segment history and action history length mismatch")

    return ValidationResult(is_valid=not errors, errors=errors)


def _check_length(value: str, field: str, label: str, minimum: int, maximum: int, empty_message: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise InputValidationError(empty_message, field=field)
    if len(trimmed) < minimum:
        raise InputValidationError(f"{label} must be at least {minimum} characters", field=field)
    if len(trimmed) > maximum:
        raise InputValidationError(f"{label} must not exceed {maximum} characters", field=field)
    return trimmed


def validate_custom_scene(scene_description: Optional[str]) -> str:
    """Trimmed custom scene, or InputValidationError"""
    return _check_length(
        scene_description, "custom_scene", "Scene description",
        MIN_CUSTOM_SCENE_CHARS, MAX_CUSTOM_SCENE_CHARS, "Please enter a scene description"
    )


def validate_custom_action(action_text: Optional[str]) -> str:
    """Trimmed custom action, or InputValidationError"""
    return _check_length(
        action_text, "custom_action", "Action",
        MIN_CUSTOM_ACTION_CHARS, MAX_CUSTOM_ACTION_CHARS, "Please enter an action"
    )
