"""
Incremental splitter for narrator output.

A response may carry one reasoning block delimited by an open and a close
marker (``<think>`` / ``</think>`` by default, matched case-insensitively).
Fragments arrive in any size, so a marker can straddle two fragments. The
classifier only ever holds back the tail of its buffer that could still grow
into a marker, which keeps latency bounded by the marker length.

For any response text and any partition of it into fragments, the joined
narrative chunks and the joined reasoning chunks are the same.
"""

from typing import Tuple
from enum import Enum
import re

from pydantic import BaseModel


DEFAULT_OPEN_TAG = "<think>"
DEFAULT_CLOSE_TAG = "</think>"


class BlockState(str, Enum):
    """Where the classifier is relative to the reasoning block"""
    BEFORE_BLOCK = "before_block"
    INSIDE_BLOCK = "inside_block"
    AFTER_BLOCK = "after_block"


class ClassifiedChunk(BaseModel):
    """Output of one process_chunk call"""
    narrative_chunk: str = ""
    reasoning_chunk: str = ""


class ClassifierState(BaseModel):
    """Snapshot exposed by get_state"""
    accumulated_reasoning: str
    is_inside_block: bool
    is_block_complete: bool


def _partial_suffix_length(buffer: str, markers: Tuple[str, ...]) -> int:
    """Length of the longest buffer tail that is a proper prefix of any marker.

    Markers are passed lower-cased.
    """

    longest = 0
    for marker in markers:
        upper = min(len(marker) - 1, len(buffer))
        for size in range(upper, longest, -1):
            if buffer[-size:].lower() == marker[:size]:
                longest = size
                break
    return longest


class StreamClassifier:
    """Separates the reasoning sub-stream from the narrative sub-stream.

    One instance per response; the buffers are mutable and not safe to share
    between concurrent streams.
    """

    def __init__(self, open_tag: str = DEFAULT_OPEN_TAG, close_tag: str = DEFAULT_CLOSE_TAG):
        if not open_tag or not close_tag:
            raise ValueError("Reasoning delimiters must be non-empty")

        self.open_tag = open_tag
        self.close_tag = close_tag
        self._open_lower = open_tag.lower()
        self._close_lower = close_tag.lower()
        self._open_re = re.compile(re.escape(open_tag), re.IGNORECASE)
        self._close_re = re.compile(re.escape(close_tag), re.IGNORECASE)
        self.reset()

    def reset(self) -> None:
        """Clear all buffers so the instance can classify a new response"""

        self.state = BlockState.BEFORE_BLOCK
        self._buffer = ""
        self._reasoning = ""

    def process_chunk(self, fragment: str) -> ClassifiedChunk:
        """Classify one fragment, returning whatever can be emitted so far"""

        if not fragment:
            return ClassifiedChunk()

        if self.state == BlockState.AFTER_BLOCK:
            return ClassifiedChunk(narrative_chunk=fragment)

        self._buffer += fragment
        narrative = ""
        reasoning = ""

        if self.state == BlockState.BEFORE_BLOCK:
            narrative, entered = self._drain_before_block()
            if not entered:
                return ClassifiedChunk(narrative_chunk=narrative)

        reasoning, closed = self._drain_inside_block()
        if closed:
            # Whatever followed the close marker is narrative, verbatim
            narrative += self._buffer
            self._buffer = ""

        return ClassifiedChunk(narrative_chunk=narrative, reasoning_chunk=reasoning)

    def flush(self) -> ClassifiedChunk:
        """Release the held-back tail once the upstream stream has completed"""

        tail, self._buffer = self._buffer, ""
        if self.state == BlockState.BEFORE_BLOCK:
            return ClassifiedChunk(narrative_chunk=tail)
        if self.state == BlockState.INSIDE_BLOCK:
            # Truncated stream: the block never closed
            self._reasoning += tail
            return ClassifiedChunk(reasoning_chunk=tail)
        return ClassifiedChunk(narrative_chunk=tail)

    def get_state(self) -> ClassifierState:
        pending = self._buffer if self.state == BlockState.INSIDE_BLOCK else ""
        return ClassifierState(
            accumulated_reasoning=self._reasoning + pending,
            is_inside_block=self.state == BlockState.INSIDE_BLOCK,
            is_block_complete=self.state == BlockState.AFTER_BLOCK,
        )

    def _drain_before_block(self) -> Tuple[str, bool]:
        """Emit narrative up to the open marker; drop orphan close markers."""

        narrative = ""
        while True:
            open_match = self._open_re.search(self._buffer)
            close_match = self._close_re.search(self._buffer)

            # Orphan close marker ahead of any open marker is noise
            if close_match and (open_match is None or close_match.start() < open_match.start()):
                narrative += self._buffer[:close_match.start()]
                self._buffer = self._buffer[close_match.end():]
                continue

            if open_match:
                narrative += self._buffer[:open_match.start()]
                self._buffer = self._buffer[open_match.end():]
                self.state = BlockState.INSIDE_BLOCK
                return narrative, True

            held = _partial_suffix_length(self._buffer, (self._open_lower, self._close_lower))
            cut = len(self._buffer) - held
            narrative += self._buffer[:cut]
            self._buffer = self._buffer[cut:]
            return narrative, False

    def _drain_inside_block(self) -> Tuple[str, bool]:
        """Emit reasoning up to the close marker."""

        close_match = self._close_re.search(self._buffer)

        if close_match:
            reasoning = self._buffer[:close_match.start()]
            self._buffer = self._buffer[close_match.end():]
            self._reasoning += reasoning
            self.state = BlockState.AFTER_BLOCK
            return reasoning, True

        held = _partial_suffix_length(self._buffer, (self._close_lower,))
        cut = len(self._buffer) - held
        reasoning = self._buffer[:cut]
        self._buffer = self._buffer[cut:]
        self._reasoning += reasoning
        return reasoning, False
