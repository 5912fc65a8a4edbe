"""
Tone policy for model output.

``ToneFilter`` replaces validation and agreement phrases with neutral or
challenging alternatives and reports tone metrics for the text it saw. It is
a plain ``str -> str`` callable so the streaming transform can use it or any
other policy interchangeably.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, fields
from typing import Callable, Optional

logger = logging.getLogger(__name__)

RewritePolicy = Callable[[str], str]

TONE_SYSTEM_PROMPT = """Tone requirements:
- Do not agree with the user simply to please them; challenge flawed assumptions.
- Prefer objective analysis over validation and say so when information is uncertain.
- Never open with praise such as "Great point" or "You're absolutely right"."""

# phrase → replacement, applied first
CONTRARIAN_REPLACEMENTS: dict[str, str] = {
    "I completely agree": "While that perspective has merit",
    "You're absolutely right": "That's one interpretation, though",
    "That's a great point": "Let me examine that claim",
    "Excellent observation": "An interesting assertion to analyze",
    "Brilliant insight": "That viewpoint deserves scrutiny",
    "Perfect analysis": "Consider this alternative analysis",
    "You've nailed it": "That's a common assumption",
    "Couldn't agree more": "The evidence presents a nuanced picture",
    "That's exactly right": "That view has both strengths and weaknesses",
    "You're spot on": "Let's investigate that further",
}

SYCOPHANTIC_PHRASES = [
    *CONTRARIAN_REPLACEMENTS,
    "What a great question",
    "Great question",
    "That's wonderful",
    "How insightful",
    "What a clever",
    "That's fantastic",
    "Amazingly put",
    "incredible perspective",
    "profound understanding",
    "masterful grasp",
    "exceptional point",
]

NEUTRAL_REPLACEMENTS = [
    "Let's examine that more closely",
    "That warrants further analysis",
    "Consider the alternative",
    "The evidence suggests complexity",
    "Multiple perspectives exist here",
]

EVIDENCE_KEYWORDS = ["evidence", "proof", "source", "study", "data", "verify", "substantiate"]

PERSPECTIVE_INDICATORS = [
    "alternatively",
    "however",
    "on the other hand",
    "another perspective",
    "conversely",
    "in contrast",
    "different view",
    "opposing view",
]


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(re.escape(phrase), re.IGNORECASE)


_REPLACEMENT_PATTERNS = [
    (_phrase_pattern(p), r) for p, r in CONTRARIAN_REPLACEMENTS.items()
]
_SYCOPHANTIC_PATTERNS = [_phrase_pattern(p) for p in SYCOPHANTIC_PHRASES]
_EVIDENCE_PATTERNS = [re.compile(rf"\b{k}\b", re.IGNORECASE) for k in EVIDENCE_KEYWORDS]
_PERSPECTIVE_PATTERNS = [_phrase_pattern(p) for p in PERSPECTIVE_INDICATORS]


@dataclass
class ToneMetrics:
    sycophancy_score: float  # 0-1, lower is better
    contrarian_score: float  # 0-1, higher is better
    socratic_density: float  # questions per statement
    evidence_demands: float  # evidence keywords per statement
    perspective_count: float


def calculate_tone_metrics(text: str) -> ToneMetrics:
    sycophancy_count = sum(len(p.findall(text)) for p in _SYCOPHANTIC_PATTERNS)

    question_count = text.count("?")
    statement_count = len(re.split(r"[.!]", text))
    socratic_density = question_count / statement_count if statement_count else 0.0

    evidence = sum(1 for p in _EVIDENCE_PATTERNS if p.search(text))
    perspectives = sum(1 for p in _PERSPECTIVE_PATTERNS if p.search(text))

    word_count = max(len(text.split()), 1)
    sycophancy = min(1.0, sycophancy_count / (word_count / 100))
    contrarian = min(1.0, (question_count + evidence + perspectives) / 10)

    return ToneMetrics(
        sycophancy_score=sycophancy,
        contrarian_score=contrarian,
        socratic_density=socratic_density,
        evidence_demands=evidence / max(1, statement_count),
        perspective_count=perspectives,
    )


def passthrough(text: str) -> str:
    return text


class ToneFilter:
    """
    Phrase-level rewrite plus metrics.

    aggressiveness is 1-10; 0 disables rewriting but metrics are still
    computed.
    """

    def __init__(
        self,
        aggressiveness: int = 7,
        metrics_callback: Optional[Callable[[ToneMetrics], None]] = None,
        log_metrics: bool = False,
    ):
        self.aggressiveness = aggressiveness
        self.metrics_callback = metrics_callback
        self.log_metrics = log_metrics
        self._rotation = 0

    def __call__(self, text: str) -> str:
        return self.rewrite(text)

    def rewrite(self, text: str) -> str:
        if not text.strip():
            return text

        filtered = text
        if self.aggressiveness > 0:
            for pattern, replacement in _REPLACEMENT_PATTERNS:
                filtered = pattern.sub(replacement, filtered)
            for pattern in _SYCOPHANTIC_PATTERNS:
                filtered = pattern.sub(self._next_neutral, filtered)

        metrics = calculate_tone_metrics(filtered)
        if self.log_metrics:
            logger.info("Tone metrics: %s", metrics)
        if self.metrics_callback:
            self.metrics_callback(metrics)
        return filtered

    def _next_neutral(self, _match: re.Match) -> str:
        replacement = NEUTRAL_REPLACEMENTS[self._rotation % len(NEUTRAL_REPLACEMENTS)]
        self._rotation += 1
        return replacement


class MetricsAggregator:
    """Bounded history of tone metrics."""

    def __init__(self, max_size: int = 100):
        self._metrics: deque[ToneMetrics] = deque(maxlen=max_size)

    def __call__(self, metrics: ToneMetrics):
        self.add(metrics)

    def add(self, metrics: ToneMetrics):
        self._metrics.append(metrics)

    def average(self) -> Optional[ToneMetrics]:
        if not self._metrics:
            return None
        count = len(self._metrics)
        return ToneMetrics(**{
            f.name: sum(getattr(m, f.name) for m in self._metrics) / count
            for f in fields(ToneMetrics)
        })

    def latest(self) -> Optional[ToneMetrics]:
        return self._metrics[-1] if self._metrics else None

    def history(self) -> list[ToneMetrics]:
        return list(self._metrics)

    def clear(self):
        self._metrics.clear()
