"""Separate ``<think>`` reasoning from the visible answer of a streamed reply."""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_OPEN_TAG = "<think>"
DEFAULT_CLOSE_TAG = "</think>"


@dataclass(frozen=True, slots=True)
class SplitResult:
    visible: str
    reasoning: str
    inside_reasoning: bool


EMPTY_RESULT = SplitResult(visible="", reasoning="", inside_reasoning=False)


class ReasoningSplitter:
    """Split the accumulated raw text of one message on every call.

    The whole text is re-scanned each time instead of keeping a cursor, so a
    delimiter that straddles two deltas is found as soon as it is complete.
    Until then a partial tag such as ``<thi`` is ordinary visible text.
    Reasoning segments are assumed not to nest.
    """

    def __init__(self, open_tag: str = DEFAULT_OPEN_TAG, close_tag: str = DEFAULT_CLOSE_TAG):
        if not open_tag or not close_tag:
            raise ValueError("reasoning delimiters must be non-empty")
        if open_tag == close_tag:
            raise ValueError("reasoning delimiters must differ")
        self.open_tag = open_tag
        self.close_tag = close_tag
        self._pair = re.compile(re.escape(open_tag) + "(.*?)" + re.escape(close_tag), re.DOTALL)
        self.last: SplitResult = EMPTY_RESULT

    def consume(self, raw: str, final: bool = False) -> SplitResult:
        segments = self._pair.findall(raw)
        visible = self._pair.sub("", raw)

        inside = False
        start = visible.find(self.open_tag)
        if start != -1:
            tail = visible[start + len(self.open_tag):]
            if not final:
                tail = self._hold_back_close(tail)
            segments.append(tail)
            visible = visible[:start]
            inside = True

        self.last = SplitResult(visible=visible, reasoning="".join(segments), inside_reasoning=inside)
        return self.last

    def _hold_back_close(self, tail: str) -> str:
        # Keep a partially received close tag out of reasoning.
        return drop_partial_tag(tail, self.close_tag)

    def settled_visible(self, visible: str) -> str:
        """Visible text minus a trailing fragment that may still become an open tag."""
        return drop_partial_tag(visible, self.open_tag)

    def reset(self) -> None:
        self.last = EMPTY_RESULT


def drop_partial_tag(text: str, tag: str) -> str:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return text[:-size]
    return text


def strip_reasoning(
    text: str, open_tag: str = DEFAULT_OPEN_TAG, close_tag: str = DEFAULT_CLOSE_TAG
) -> str:
    return ReasoningSplitter(open_tag, close_tag).consume(text, final=True).visible.strip()
