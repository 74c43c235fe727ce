from typing import List, Tuple
import re

from pydantic import BaseModel

from .stream_classifier import StreamClassifier, DEFAULT_OPEN_TAG, DEFAULT_CLOSE_TAG


MIN_RECOVERED_CHARS = 50

# Openers that usually mean the narrator had started the story proper
_STORY_PATTERNS = [
    re.compile(r"STORY:\s*(.*?)$", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:^|\n)\s*(You\s+(?:are|find|see|hear|feel|walk|run|stand|sit|look)\s+.*)$", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:^|\n)\s*(As\s+you\s+.*)$", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:^|\n)\s*(Your\s+.*)$", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:^|\n)\s*(The\s+.*)$", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:^|\n)\s*(A\s+.*)$", re.IGNORECASE | re.DOTALL),
]


class ReasoningParseResult(BaseModel):
    """Whole-response split into reasoning and narrative"""
    reasoning_content: str
    cleaned_response: str
    has_reasoning: bool
    is_truncated: bool = False


def recover_narrative_from_reasoning(reasoning: str) -> str:
    """Best-effort salvage of story text from an unterminated reasoning block.

    Looks for a STORY label or a sentence-like opener and keeps what follows;
    otherwise keeps the last two long sentences if they read like narration.
    Returns an empty string when nothing plausible is found.
    """

    for pattern in _STORY_PATTERNS:
        match = pattern.search(reasoning)
        if match:
            extracted = match.group(1).strip()
            if len(extracted) > MIN_RECOVERED_CHARS:
                return extracted

    sentences = [s.strip() for s in re.split(r"[.!?]+", reasoning) if len(s.strip()) > 20]
    if sentences:
        tail = ". ".join(sentences[-2:]).strip()
        if len(tail) > MIN_RECOVERED_CHARS and any(word in tail for word in ("You ", "The ", "A ")):
            return tail + "."

    return ""


def parse_reasoning_response(
    response: str,
    open_tag: str = DEFAULT_OPEN_TAG,
    close_tag: str = DEFAULT_CLOSE_TAG
) -> ReasoningParseResult:
    """Split a complete response with the same rules the streaming path uses"""

    classifier = StreamClassifier(open_tag, close_tag)
    first = classifier.process_chunk(response)
    last = classifier.flush()
    state = classifier.get_state()

    narrative = (first.narrative_chunk + last.narrative_chunk).strip()
    reasoning = state.accumulated_reasoning.strip()
    has_reasoning = state.is_inside_block or state.is_block_complete

    if state.is_inside_block and not narrative and reasoning:
        narrative = recover_narrative_from_reasoning(reasoning)

    return ReasoningParseResult(
        reasoning_content=reasoning,
        cleaned_response=narrative,
        has_reasoning=has_reasoning,
        is_truncated=state.is_inside_block,
    )


def validate_reasoning_tags(
    text: str,
    open_tag: str = DEFAULT_OPEN_TAG,
    close_tag: str = DEFAULT_CLOSE_TAG
) -> Tuple[bool, List[str]]:
    """Report mismatched or nested reasoning markers"""

    errors: List[str] = []
    open_re = re.compile(re.escape(open_tag), re.IGNORECASE)
    close_re = re.compile(re.escape(close_tag), re.IGNORECASE)

    open_count = len(open_re.findall(text))
    close_count = len(close_re.findall(text))
    if open_count != close_count:
        errors.append(f"Mismatched reasoning tags: {open_count} opening, {close_count} closing")

    block_re = re.compile(f"{re.escape(open_tag)}(.*?){re.escape(close_tag)}", re.IGNORECASE | re.DOTALL)
    for block in block_re.finditer(text):
        if open_re.search(block.group(1)):
            errors.append("Nested reasoning tags detected")
            break

    return len(errors) == 0, errors
