"""
Heuristic importance scoring for messages (0-100).
"""

from typing import Callable

from langchain_core.messages import BaseMessage

from .messages import message_role, message_text

SEARCH_MARKERS = ("[Search:", "According to recent")

# (message, index_in_chunk, chunk_size) -> score
ScoreFn = Callable[[BaseMessage, int, int], float]


def score_message(msg: BaseMessage, index: int, chunk_size: int) -> float:
    """
    Weighted sum of recency, role, length and content signals, capped at 100.

    - recency: index / chunk_size * 30
    - user role: +10
    - length: len / 100, at most 20
    - contains "?": +15
    - contains a fenced code block: +20
    - contains a search-delegation marker: +25
    """
    text = message_text(msg)
    score = 0.0

    if chunk_size > 0:
        score += index / chunk_size * 30
    if message_role(msg) == "user":
        score += 10
    score += min(len(text) / 100, 20)
    if "?" in text:
        score += 15
    if "```" in text:
        score += 20
    if any(marker in text for marker in SEARCH_MARKERS):
        score += 25

    return max(0.0, min(score, 100.0))


class ImportanceScorer:
    """Wraps a scoring strategy; swap ``score_fn`` to change the policy."""

    def __init__(self, score_fn: ScoreFn = score_message):
        self.score_fn = score_fn

    def score(self, msg: BaseMessage, index: int, chunk_size: int) -> float:
        return max(0.0, min(float(self.score_fn(msg, index, chunk_size)), 100.0))

    def mean(self, chunk: list[BaseMessage]) -> float:
        """Average score of a chunk, each message scored by its position."""
        if not chunk:
            return 0.0
        size = len(chunk)
        return sum(self.score(m, i, size) for i, m in enumerate(chunk)) / size
