"""
Incremental splitter for <think>...</think> reasoning in streamed answers
"""
import re
from enum import Enum
from typing import List

from kbchat.models.chat import AnswerUpdate, SplitterUpdate, ThinkingUpdate

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")
_DANGLING_THINK = re.compile(r"<think>[\s\S]*$")


class SplitterState(str, Enum):
    OUTSIDE = "outside"
    INSIDE = "inside"


def strip_thinking(text: str, drop_unterminated: bool = True) -> str:
    """
    Final answer text: every complete <think>...</think> block removed, then
    surrounding whitespace.

    With ``drop_unterminated`` a trailing <think> that never closed is cut
    off as well, so "Intro <think>still" gives "Intro". Without it only
    complete pairs go and that text is kept as is.
    """
    text = _THINK_BLOCK.sub("", text)
    if drop_unterminated:
        text = _DANGLING_THINK.sub("", text)
    return text.strip()


def _partial_marker_suffix(text: str, marker: str) -> int:
    """Length of the longest proper prefix of ``marker`` that ``text`` ends with"""
    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class ThinkAnswerSplitter:
    """
    Routes streamed text into a thinking channel and an answer channel.

    Each feed() returns the updates it caused, in order. An update carries
    the whole buffer so far, never just the new piece, and is only emitted
    when the buffer grew.

    With ``carry_over`` enabled, trailing characters that could start a
    marker are held back and rescanned with the next delta, so a tag split
    across deltas is still recognised, and the final answer also drops an
    unterminated think block. With it disabled every delta is scanned on its
    own, split tags end up in the text verbatim, and the final answer only
    loses complete tag pairs.
    """

    def __init__(self, carry_over: bool = True):
        self.carry_over = carry_over
        self.state = SplitterState.OUTSIDE
        self.has_thinking = False
        self._thinking: List[str] = []
        self._answer: List[str] = []
        self._raw: List[str] = []
        self._pending = ""

    @property
    def inside_think(self) -> bool:
        return self.state is SplitterState.INSIDE

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    @property
    def answer(self) -> str:
        return "".join(self._answer)

    @property
    def raw_text(self) -> str:
        return "".join(self._raw)

    def feed(self, delta: str) -> List[SplitterUpdate]:
        updates: List[SplitterUpdate] = []
        if not delta:
            return updates
        self._raw.append(delta)

        remaining = self._pending + delta
        self._pending = ""

        while remaining:
            marker = THINK_CLOSE if self.inside_think else THINK_OPEN
            index = remaining.find(marker)

            if index == -1:
                if self.carry_over:
                    held = _partial_marker_suffix(remaining, marker)
                    if held:
                        self._pending = remaining[-held:]
                        remaining = remaining[:-held]
                self._append(remaining, updates)
                break

            self._append(remaining[:index], updates)
            remaining = remaining[index + len(marker):]
            if marker == THINK_OPEN:
                self.state = SplitterState.INSIDE
                self.has_thinking = True
            else:
                self.state = SplitterState.OUTSIDE

        return updates

    def flush(self) -> List[SplitterUpdate]:
        """Release held-back characters at end of stream"""
        updates: List[SplitterUpdate] = []
        pending, self._pending = self._pending, ""
        self._append(pending, updates)
        return updates

    def final_answer(self) -> str:
        """Authoritative answer, recomputed from the raw concatenation"""
        return strip_thinking(self.raw_text, drop_unterminated=self.carry_over)

    def _append(self, text: str, updates: List[SplitterUpdate]) -> None:
        if not text:
            return
        if self.inside_think:
            self._thinking.append(text)
            updates.append(ThinkingUpdate(thinking=self.thinking))
        else:
            self._answer.append(text)
            updates.append(AnswerUpdate(answer=self.answer))
