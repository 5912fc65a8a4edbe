"""
Conversation summarizer for compaction.

Builds a structured digest of a chunk of messages from a fixed template:
turn counts, topic keywords, the first few questions asked, and a pointer
back to the previous chunk's summary. No model call is involved, so the
same chunk always produces the same text.
"""

import re
from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import BaseMessage

from .messages import message_role, message_text
from .scoring import ImportanceScorer
from .token_budget import TokenCounter

TOPIC_VOCABULARY = (
    "AI",
    "API",
    "database",
    "function",
    "code",
    "search",
    "web",
    "memory",
    "context",
)

MAX_KEY_POINTS = 3
QUESTION_PREVIEW_CHARS = 100
BACK_REFERENCE_CHARS = 100

_TOPIC_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(t) for t in TOPIC_VOCABULARY) + r")\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SummaryDraft:
    summary: str
    token_count: int
    importance: float


def extract_topics(messages: list[BaseMessage]) -> list[str]:
    """Vocabulary terms mentioned in the messages, lowercased, first-seen order."""
    topics: dict[str, None] = {}
    for msg in messages:
        for term in _TOPIC_PATTERN.findall(message_text(msg)):
            topics.setdefault(term.lower(), None)
    return list(topics)


class ConversationSummarizer:
    """Generates template summaries for chunks of older messages."""

    def __init__(
        self,
        counter: Optional[TokenCounter] = None,
        scorer: Optional[ImportanceScorer] = None,
    ):
        self.counter = counter or TokenCounter()
        self.scorer = scorer or ImportanceScorer()

    def generate_summary(
        self,
        messages: list[BaseMessage],
        previous_summary: Optional[str] = None,
    ) -> str:
        roles = [message_role(m) for m in messages]
        key_points = []
        for msg in messages:
            text = message_text(msg)
            if "?" in text:
                key_points.append(f"Question: {text[:QUESTION_PREVIEW_CHARS]}...")
            if len(key_points) >= MAX_KEY_POINTS:
                break

        lines = [
            f"[Context Summary of {len(messages)} messages]",
            f"Topics discussed: {', '.join(extract_topics(messages))}",
            f"User queries: {roles.count('user')}",
            f"Assistant responses: {roles.count('assistant')}",
        ]
        if key_points:
            lines.append("Key points:")
            lines.extend(key_points)
        if previous_summary:
            lines.append("")
            lines.append(f"Builds on: {previous_summary[:BACK_REFERENCE_CHARS]}...")
        return "\n".join(lines)

    def summarize(
        self,
        messages: list[BaseMessage],
        previous_summary: Optional[str] = None,
    ) -> SummaryDraft:
        """Summarize a chunk; importance is the mean message score."""
        summary = self.generate_summary(messages, previous_summary)
        return SummaryDraft(
            summary=summary,
            token_count=self.counter.count(summary),
            importance=self.scorer.mean(messages),
        )
