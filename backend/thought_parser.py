"""Reasoning-span handling for ``<think> … </think>`` model output.

Three views of the same tag convention, deliberately kept separate:

  - format_thinking()      storage form.  Two-state parser; every non-blank
                           span becomes ``*span*`` in document order.  Has a
                           shortcut for "open tag, no close tag anywhere" that
                           the state machine alone would not reproduce.
  - split_thought_spans()  rendering form.  Depth-aware splitter for live or
                           partial display; an unterminated trailing span runs
                           to the end of the text.
  - ThinkingTracker        wire form.  Follows tag boundaries across streamed
                           chunks and reports each state change once.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"
EMPHASIS = "*"


class _State(Enum):
    OUTSIDE = "outside"
    INSIDE_THOUGHT = "inside_thought"


def _emphasize(thought: str) -> str:
    return f"{EMPHASIS}{thought}{EMPHASIS}"


def format_thinking(content: str) -> str:
    """Convert raw model output into the stored representation.

    >>> format_thinking("<think>hello</think>world")
    '*hello*world'
    >>> format_thinking("<think>unterminated")
    '*unterminated*'
    """
    if OPEN_TAG in content and CLOSE_TAG not in content:
        return _emphasize(content.replace(OPEN_TAG, "", 1).strip())

    output: list[str] = []
    thought: list[str] = []
    state = _State.OUTSIDE
    i = 0
    n = len(content)

    while i < n:
        if content.startswith(OPEN_TAG, i):
            state = _State.INSIDE_THOUGHT
            i += len(OPEN_TAG)
            continue

        if content.startswith(CLOSE_TAG, i):
            state = _State.OUTSIDE
            flushed = "".join(thought).strip()
            if flushed:
                output.append(_emphasize(flushed))
            thought = []
            i += len(CLOSE_TAG)
            continue

        if state is _State.INSIDE_THOUGHT:
            thought.append(content[i])
        else:
            output.append(content[i])
        i += 1

    # Unterminated span at end of input counts as a complete thought.
    remaining = "".join(thought).strip()
    if remaining:
        output.append(_emphasize(remaining))

    return "".join(output)


# ── Rendering side ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ThoughtSegment:
    text: str
    is_thought: bool = False
    # False only for a thought whose closing tag has not arrived yet.
    complete: bool = True


def _find_matching_close(content: str, start: int) -> int:
    """Index of the close tag that brings depth back to zero, or -1."""
    depth = 1
    i = start
    while i < len(content):
        if content.startswith(OPEN_TAG, i):
            depth += 1
            i += len(OPEN_TAG)
        elif content.startswith(CLOSE_TAG, i):
            depth -= 1
            if depth == 0:
                return i
            i += len(CLOSE_TAG)
        else:
            i += 1
    return -1


def _strip_tags(text: str) -> str:
    return text.replace(OPEN_TAG, "").replace(CLOSE_TAG, "")


def split_thought_spans(content: str) -> list[ThoughtSegment]:
    """Split text into answer and thought segments for display.

    Nested opening tags raise the depth, so only the close tag matching the
    outermost open ends a span.  Markers nested inside a span are dropped.
    An opening tag without a match makes the rest of the text one
    incomplete thought, which is what a client sees mid-stream.
    """
    segments: list[ThoughtSegment] = []
    pos = 0

    while pos < len(content):
        start = content.find(OPEN_TAG, pos)
        if start == -1:
            segments.append(ThoughtSegment(content[pos:]))
            break

        if start > pos:
            segments.append(ThoughtSegment(content[pos:start]))

        inner_start = start + len(OPEN_TAG)
        close = _find_matching_close(content, inner_start)
        if close == -1:
            segments.append(
                ThoughtSegment(_strip_tags(content[inner_start:]), is_thought=True, complete=False)
            )
            break

        segments.append(ThoughtSegment(_strip_tags(content[inner_start:close]), is_thought=True))
        pos = close + len(CLOSE_TAG)

    return [s for s in segments if s.text]


# ── Wire side ─────────────────────────────────────────────────────────────

class ThinkingTracker:
    """Incremental tag-boundary detector for streamed output.

    Chunks are fed in arrival order.  A tag split across two chunks is
    recognised once its last character arrives.
    """

    def __init__(self) -> None:
        self.thinking = False
        self._tail = ""

    def feed(self, chunk: str) -> list[bool]:
        """Consume one chunk; return the thinking-state changes it caused."""
        text = self._tail + chunk
        changes: list[bool] = []
        pos = 0

        while True:
            open_at = text.find(OPEN_TAG, pos)
            close_at = text.find(CLOSE_TAG, pos)
            if open_at == -1 and close_at == -1:
                break
            if close_at == -1 or (open_at != -1 and open_at < close_at):
                new_state, pos = True, open_at + len(OPEN_TAG)
            else:
                new_state, pos = False, close_at + len(CLOSE_TAG)
            if new_state != self.thinking:
                self.thinking = new_state
                changes.append(new_state)

        self._tail = _partial_tag_suffix(text[pos:])
        return changes


def _partial_tag_suffix(text: str) -> str:
    """Longest suffix of *text* that could still grow into a tag."""
    longest = max(len(OPEN_TAG), len(CLOSE_TAG)) - 1
    for size in range(min(longest, len(text)), 0, -1):
        suffix = text[-size:]
        if OPEN_TAG.startswith(suffix) or CLOSE_TAG.startswith(suffix):
            return suffix
    return ""
