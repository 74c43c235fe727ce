"""
Token-aware context assembly.

Token counts are estimated as ceil(len(text) / 4); no tokenizer is involved,
so every function here is deterministic and never raises on odd input.
The assembled result of build_enhanced_context always estimates at or under
the budget it was given.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import math

from pydantic import BaseModel, Field

from storyloom.domain.models.session import Segment, Choice
from storyloom.infrastructure.observability.logging import session_logger


CHARS_PER_TOKEN = 4
MAX_TOKENS = 32768
RESERVED_TOKENS = 2000
MAX_CONTEXT_TOKENS = MAX_TOKENS - RESERVED_TOKENS

SAFETY_BUFFER_TOKENS = 100
MIN_HISTORY_TOKENS = 1000
HISTORY_SHARE = 0.3
MIN_PARTIAL_REMAINDER_TOKENS = 50
MIN_PARTIAL_SEGMENT_TOKENS = 20

TRUNCATION_MARKER = "..."
TRUNCATED_SUFFIX = " [truncated]"


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate token count from text"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int = MAX_CONTEXT_TOKENS) -> str:
    """Truncate text to fit a token limit, preferring a sentence boundary.

    The boundary is only used when it lies in the last 20% of the kept text.
    """

    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max(0, max_tokens) * CHARS_PER_TOKEN
    truncated = text[:max_chars]

    last_sentence = truncated.rfind(". ")
    if last_sentence > max_chars * 0.8:
        return truncated[:last_sentence + 1] + TRUNCATED_SUFFIX

    return truncated + TRUNCATED_SUFFIX


def _story_line(number: int, text: str) -> str:
    return f"Story {number}: {text}\n"


def _action_line(number: int, text: str) -> str:
    return f"Action {number}: {text}\n"


def _immediate_block(segment: Optional[str], action: Optional[str], scene: str) -> str:
    return f"Previous segment: {segment or ''}\nPrevious action: {action or ''}\nCurrent scene: {scene}"


class TokenBudgetResult(BaseModel):
    """Context selected for one prompt"""
    context_text: str = Field(default="", description="Older Story/Action pairs, oldest first")
    previous_segment: Optional[str] = Field(None, description="Most recent segment, possibly truncated")
    previous_action: Optional[str] = Field(None, description="Most recent action")
    current_scene: str = Field(default="")
    segments_included: int = 0
    actions_included: int = 0

    def render(self) -> str:
        """Full context as sent to the narrator"""

        if not (self.context_text or self.previous_segment or self.previous_action or self.current_scene):
            return ""
        return self.context_text + _immediate_block(self.previous_segment, self.previous_action, self.current_scene)

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.render())


class TruncatedContext(BaseModel):
    """Plain history block packed newest-first"""
    context_text: str = ""
    segments_included: int = 0
    actions_included: int = 0


def build_truncated_context(
    segments: Sequence[Segment],
    actions: Sequence[Choice],
    max_tokens: int = MAX_CONTEXT_TOKENS
) -> TruncatedContext:
    """Pack Story/Action pairs from most recent to oldest until the budget runs out.

    Pairs are aligned from the end of both lists. When the next pair does not
    fit but a useful remainder is left, one more segment is included cut down
    to the remainder, then packing stops.
    """

    pieces: List[str] = []
    current_tokens = 0
    segments_included = 0
    actions_included = 0

    for i in range(max(len(segments), len(actions))):
        segment_text = ""
        action_text = ""

        if i < len(segments):
            segment_text = _story_line(len(segments) - i, segments[-1 - i].text)
        if i < len(actions):
            action_text = _action_line(len(actions) - i, actions[-1 - i].text)

        combined = segment_text + action_text
        combined_tokens = estimate_tokens(combined)

        if current_tokens + combined_tokens > max_tokens:
            remaining = max_tokens - current_tokens
            if remaining > MIN_PARTIAL_REMAINDER_TOKENS and segment_text:
                segment_budget = remaining - estimate_tokens(action_text)

                if segment_budget > MIN_PARTIAL_SEGMENT_TOKENS:
                    number = len(segments) - i
                    full_text = segments[-1 - i].text

                    # The line prefix and the marker come out of the segment's share
                    segment_chars = (
                        segment_budget * CHARS_PER_TOKEN
                        - len(_story_line(number, ""))
                        - len(TRUNCATION_MARKER)
                    )
                    if len(full_text) > segment_chars:
                        full_text = full_text[:max(0, segment_chars)] + TRUNCATION_MARKER

                    partial = _story_line(number, full_text) + action_text
                    partial_tokens = estimate_tokens(partial)

                    if current_tokens + partial_tokens <= max_tokens:
                        pieces.append(partial)
                        current_tokens += partial_tokens
                        segments_included += 1
                        if action_text:
                            actions_included += 1
            break

        pieces.append(combined)
        current_tokens += combined_tokens
        if segment_text:
            segments_included += 1
        if action_text:
            actions_included += 1

    # Collected newest-first; present oldest-first
    return TruncatedContext(
        context_text="".join(reversed(pieces)),
        segments_included=segments_included,
        actions_included=actions_included,
    )


def _fit_chars(text: Optional[str], room: int) -> str:
    """Cut text to at most `room` characters, marker included"""

    if not text:
        return ""
    if len(text) <= room:
        return text
    if room > len(TRUNCATION_MARKER):
        return text[:room - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
    return ""


def _shrink_immediate(
    segment: Optional[str],
    action: Optional[str],
    scene: str,
    max_tokens: int
) -> Tuple[Optional[str], Optional[str], str]:
    """Shrink segment, then scene, then action until the block fits.

    Empties everything when even the bare template is too large.
    """

    max_chars = max_tokens * CHARS_PER_TOKEN

    room = max_chars - len(_immediate_block("", action, scene))
    if room >= 0:
        return _fit_chars(segment, room), action, scene

    room = max_chars - len(_immediate_block("", action, ""))
    if room >= 0:
        return "", action, _fit_chars(scene, room)

    room = max_chars - len(_immediate_block("", "", ""))
    if room >= 0:
        return "", _fit_chars(action, room), ""

    return "", "", ""


def build_enhanced_context(
    segments: Sequence[Segment],
    actions: Sequence[Choice],
    current_scene: str,
    max_tokens: int = MAX_CONTEXT_TOKENS
) -> TokenBudgetResult:
    """Build context that prioritizes the most recent segment and action.

    `segments` are past segments followed by the current one; `actions` is the
    action history. The last segment and last action form the immediate block,
    the rest is packed by build_truncated_context into what the immediate
    block leaves over.
    """

    budget = max(0, max_tokens)
    current_scene = current_scene or ""

    previous_segment: Optional[str] = segments[-1].text if segments else None
    previous_action: Optional[str] = actions[-1].text if actions else None

    template_tokens = estimate_tokens(_immediate_block("", "", current_scene))
    reserved_tokens = template_tokens + estimate_tokens(previous_action) + SAFETY_BUFFER_TOKENS
    available_tokens = budget - reserved_tokens

    # History floor, capped so the most recent segment always keeps 30% of what is left
    min_history_tokens = min(
        max(MIN_HISTORY_TOKENS, HISTORY_SHARE * available_tokens),
        (1 - HISTORY_SHARE) * available_tokens
    )
    max_segment_tokens = max(0, int(available_tokens - min_history_tokens))

    if previous_segment and estimate_tokens(previous_segment) > max_segment_tokens:
        previous_segment = previous_segment[:max_segment_tokens * CHARS_PER_TOKEN] + TRUNCATION_MARKER

    if estimate_tokens(_immediate_block(previous_segment, previous_action, current_scene)) > budget:
        trimmed_segment, trimmed_action, current_scene = _shrink_immediate(
            previous_segment, previous_action, current_scene, budget
        )
        # Anything shrunk away entirely is reported as absent
        previous_segment = trimmed_segment or None
        previous_action = trimmed_action or None

    immediate_tokens = estimate_tokens(_immediate_block(previous_segment, previous_action, current_scene))
    remaining_tokens = max(0, budget - immediate_tokens)

    history = build_truncated_context(segments[:-1], actions[:-1], remaining_tokens)

    result = TokenBudgetResult(
        context_text=history.context_text,
        previous_segment=previous_segment,
        previous_action=previous_action,
        current_scene=current_scene,
        segments_included=history.segments_included + (1 if previous_segment is not None else 0),
        actions_included=history.actions_included + (1 if previous_action is not None else 0),
    )

    session_logger.log_context_budget(
        budget=budget,
        estimated_tokens=result.estimated_tokens,
        segments_included=result.segments_included,
        segments_total=len(segments),
        actions_included=result.actions_included,
        actions_total=len(actions)
    )

    return result


def validate_prompt_size(prompt: str, max_tokens: int = MAX_CONTEXT_TOKENS) -> Dict[str, Any]:
    estimated = estimate_tokens(prompt)
    return {"valid": estimated <= max_tokens, "estimated_tokens": estimated, "max_tokens": max_tokens}


def get_token_stats(text: str, max_tokens: int = MAX_CONTEXT_TOKENS) -> Dict[str, Any]:
    """Get token usage statistics for debugging"""

    estimated = estimate_tokens(text)
    return {
        "estimated_tokens": estimated,
        "characters": len(text),
        "max_tokens": max_tokens,
        "remaining_tokens": max(0, max_tokens - estimated),
        "utilization_percent": round(estimated / max_tokens * 100) if max_tokens > 0 else 0
    }


def debug_context_building(
    segments: Sequence[Segment],
    actions: Sequence[Choice],
    current_scene: str,
    max_tokens: int = MAX_CONTEXT_TOKENS
) -> Dict[str, Any]:
    """Summarize what build_enhanced_context kept and dropped"""

    result = build_enhanced_context(segments, actions, current_scene, max_tokens)
    context_tokens = result.estimated_tokens

    return {
        "total_segments": len(segments),
        "total_actions": len(actions),
        "segments_included": result.segments_included,
        "actions_included": result.actions_included,
        "context_tokens": context_tokens,
        "max_tokens": max_tokens,
        "utilization_percent": round(context_tokens / max_tokens * 100) if max_tokens > 0 else 0,
        "truncation_occurred": (
            result.segments_included < len(segments)
            or result.actions_included < len(actions)
            or result.previous_segment != (segments[-1].text if segments else None)
        )
    }


def estimate_messages_tokens(messages: Sequence[Any]) -> int:
    """Estimate a chat message list: content plus 4 per message, plus 2 overall"""

    total = 0
    for message in messages:
        content = getattr(message, "content", message)
        if not isinstance(content, str):
            content = str(content)
        total += estimate_tokens(content) + 4
    return total + 2
