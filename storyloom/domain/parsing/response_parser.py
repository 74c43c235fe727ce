"""
STORY / SCENE / CHOICES extraction from narrator output.

Reasoning is stripped first. Labels may be wrapped in markdown bold and
matched case-insensitively; when no STORY label is present a plain-text
fallback is tried before giving up with ResponseParseError.
"""

from typing import List, Optional
import re

import structlog

from storyloom.domain.errors import ResponseParseError
from storyloom.domain.models.session import Segment, Choice
from storyloom.domain.streaming.reasoning_parser import parse_reasoning_response
from storyloom.domain.streaming.stream_classifier import DEFAULT_OPEN_TAG, DEFAULT_CLOSE_TAG

logger = structlog.get_logger(__name__)

DEFAULT_SCENE = "A mysterious scene unfolds"
MIN_STORY_CHARS = 50
MIN_FALLBACK_CHARS = 20
MIN_CHOICE_CHARS = 10
MIN_CHOICES = 2
MAX_CHOICES = 4

_FLAGS = re.IGNORECASE | re.DOTALL

_STORY_RE = re.compile(r"STORY:\**\s*(.*?)(?=\n\s*\**SCENE\**:|\n\s*\**CHOICES\b|$)", _FLAGS)
_SCENE_RE = re.compile(r"\**SCENE\**:\**\s*(.*?)(?=\n\s*\**CHOICES\b|$)", _FLAGS)
_CHOICES_RE = re.compile(r"(?:^|\n)\s*\**CHOICES\b\**:?\**\s*(.*?)$", _FLAGS)

_NUMBERED_RE = re.compile(r"^\**\d+[.)]\**\s*(.+)$")
_SECTION_HEADER_RE = re.compile(r"^\**(STORY|SCENE|CHOICES):?\**", re.IGNORECASE)
_CHOICE_PROMPT_RE = re.compile(r"^(Do you|What do you|Your options|Choose)", re.IGNORECASE)

_NARRATIVE_PATTERNS = [
    re.compile(r"You\s+(?:are|find|see|hear|feel|walk|run|stand|sit|look)\s+.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"The\s+.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"A\s+.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"As\s+you\s+.*$", re.IGNORECASE | re.MULTILINE),
]


def _strip_bold(text: str) -> str:
    return text.strip().strip("*").strip()


def parse_choices_from_text(choices_text: str) -> List[Choice]:
    """Choices from a CHOICES section; unnumbered lines are taken as-is"""

    choices = []
    for line in choices_text.split("\n"):
        line = line.strip()
        if not line:
            continue

        match = _NUMBERED_RE.match(line)
        text = _strip_bold(match.group(1) if match else line)
        if text:
            choices.append(Choice(text=text))

    return choices


def parse_choices_response(
    response: str,
    open_tag: str = DEFAULT_OPEN_TAG,
    close_tag: str = DEFAULT_CLOSE_TAG
) -> List[Choice]:
    """Choices from a standalone choice-generation response.

    Keeps numbered lines longer than 10 characters, at most four.
    """

    cleaned = parse_reasoning_response(response, open_tag, close_tag).cleaned_response
    choices = []
    for line in cleaned.split("\n"):
        match = _NUMBERED_RE.match(line.strip())
        if match:
            text = _strip_bold(match.group(1))
            if len(text) > MIN_CHOICE_CHARS:
                choices.append(Choice(text=text))

    if len(choices) < MIN_CHOICES:
        raise ResponseParseError(
            f"Failed to parse choices response: not enough valid choices generated ({len(choices)})",
            raw_length=len(response)
        )

    return choices[:MAX_CHOICES]


def _fallback_text(response: str) -> Optional[str]:
    """Plain-text story extraction for responses that ignored the format"""

    trimmed = response.strip()
    if len(trimmed) < MIN_FALLBACK_CHARS:
        return None

    if len(trimmed) > MIN_STORY_CHARS and "STORY:" not in trimmed.upper() and "CHOICES" not in trimmed.upper():
        return trimmed

    story_lines = [
        line.strip() for line in trimmed.split("\n")
        if line.strip()
        and not re.match(r"^\d+\.", line.strip())
        and not _SECTION_HEADER_RE.match(line.strip())
        and not _CHOICE_PROMPT_RE.match(line.strip())
    ]
    if story_lines:
        story_text = " ".join(story_lines).strip()
        if len(story_text) > MIN_STORY_CHARS:
            return story_text

    for pattern in _NARRATIVE_PATTERNS:
        match = pattern.search(trimmed)
        if match and len(match.group(0)) > MIN_STORY_CHARS:
            return match.group(0).strip()

    return None


def parse_story_response(
    response: str,
    include_scene: bool = True,
    with_choices: bool = True,
    open_tag: str = DEFAULT_OPEN_TAG,
    close_tag: str = DEFAULT_CLOSE_TAG
) -> Segment:
    """Build a Segment from a complete narrator response.

    `include_scene` False ignores any SCENE section the narrator sent anyway;
    `with_choices` False (custom mode) always yields an empty choice list.
    """

    parsed = parse_reasoning_response(response, open_tag, close_tag)
    cleaned = parsed.cleaned_response
    reasoning = parsed.reasoning_content or None

    story_match = _STORY_RE.search(cleaned)
    if not story_match or not story_match.group(1).strip():
        fallback = _fallback_text(cleaned)
        if fallback:
            logger.info("Story parsed with fallback", response_length=len(response))
            return Segment(text=fallback, scene_description=DEFAULT_SCENE, reasoning=reasoning)

        if parsed.is_truncated:
            message = "Response appears to be incomplete (truncated reasoning). Try again or check your token limits."
        elif len(response) < MIN_STORY_CHARS:
            message = "Response too short. The model may not be responding properly."
        elif "STORY:" not in response.upper():
            message = "Response missing expected format. The model may not be following instructions."
        else:
            message = "No story content found in response"
        raise ResponseParseError(f"Failed to parse story response: {message}", raw_length=len(response))

    story_text = story_match.group(1).strip()
    if len(story_text) < MIN_STORY_CHARS:
        raise ResponseParseError("Failed to parse story response: story content too short", raw_length=len(response))

    scene_description = DEFAULT_SCENE
    if include_scene:
        scene_match = _SCENE_RE.search(cleaned, story_match.end())
        if scene_match and scene_match.group(1).strip():
            scene_description = scene_match.group(1).strip()

    choices: List[Choice] = []
    if with_choices:
        choices_match = _CHOICES_RE.search(cleaned, story_match.end())
        if choices_match:
            choices = parse_choices_from_text(choices_match.group(1).strip())

    return Segment(text=story_text, scene_description=scene_description, reasoning=reasoning, choices=choices)
