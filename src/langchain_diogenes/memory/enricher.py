"""
Memory enrichment.

Looks up memories relevant to the latest user turn and renders them as a
hidden block for the system prompt. The user's own message is never touched.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import MemoryConfig
from .store import MemoryStore, keywords
from .types import MemoryRecord, PromptEnrichmentResult

logger = logging.getLogger(__name__)

CONFIDENCE_SCALE = 10.0

# (record, prompt, now) -> relevance score (0 = irrelevant)
MemoryScoreFn = Callable[[MemoryRecord, str, datetime], float]


def score_memory(record: MemoryRecord, prompt: str, now: datetime) -> float:
    """
    Relevance of one memory to a prompt.

    Shared keywords count 2 each and a verbatim phrase hit adds 10. Without
    either the memory is irrelevant. Source and recency bonuses are then
    added and the total is scaled by the record's importance.
    """
    prompt_lower = prompt.lower().strip()
    content_lower = record.content.lower()

    prompt_words = set(keywords(prompt))
    content_words = set(keywords(record.content)) | {t.lower() for t in record.tags}
    score = len(prompt_words & content_words) * 2.0
    if prompt_lower and prompt_lower in content_lower:
        score += 10
    if score == 0:
        return 0.0

    if record.source == "user":
        score += 3
    elif record.source == "assistant":
        score += 1

    ts = record.timestamp if record.timestamp.tzinfo else record.timestamp.replace(
        tzinfo=timezone.utc
    )
    age_days = (now - ts).total_seconds() / 86400
    if age_days < 7:
        score += 2
    if age_days < 1:
        score += 3

    return score * (record.importance or 0.5)


def confidence_from_scores(scores: list[float]) -> float:
    """Saturating map of total relevance to [0, 1]."""
    total = sum(s for s in scores if s > 0)
    return 1.0 - math.exp(-total / CONFIDENCE_SCALE)


def format_enrichment(memories: list[MemoryRecord]) -> str:
    lines = ["[Memory Context - Not shown to user]",
             "Relevant information from previous conversations:"]
    for memory in memories:
        label = "User mentioned" if memory.source == "user" else "Previously discussed"
        lines.append(f"- {label}: {memory.content}")
    lines.append(
        "Use this context naturally in your response without explicitly "
        "mentioning you remember it."
    )
    lines.append("[End Memory Context]")
    return "\n".join(lines)


class MemoryEnricher:
    """Builds the hidden memory context for a user turn."""

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[MemoryConfig] = None,
        score_fn: MemoryScoreFn = score_memory,
    ):
        self.store = store
        self.config = config or MemoryConfig()
        self.score_fn = score_fn

    async def enrich(self, user_turn_text: str, user_id: str) -> PromptEnrichmentResult:
        try:
            candidates = await self.store.query(
                user_id, user_turn_text, self.config.candidate_limit
            )
        except Exception as e:
            logger.warning("Memory lookup failed for user %s: %s", user_id, e)
            return PromptEnrichmentResult.empty(user_turn_text)

        if not candidates:
            logger.debug("No memories found for user %s", user_id)
            return PromptEnrichmentResult.empty(user_turn_text)

        now = datetime.now(timezone.utc)
        scored = [(self.score_fn(m, user_turn_text, now), m) for m in candidates]
        scored = [item for item in scored if item[0] > 0]
        # stable sort keeps store order among equal scores
        scored.sort(key=lambda item: item[0], reverse=True)
        scored = scored[: self.config.enrichment_limit]

        confidence = confidence_from_scores([s for s, _ in scored])
        if not scored or confidence < self.config.min_confidence:
            logger.debug(
                "Enrichment skipped for user %s (%d relevant, confidence %.2f)",
                user_id, len(scored), confidence,
            )
            result = PromptEnrichmentResult.empty(user_turn_text)
            result.confidence_score = confidence
            return result

        relevant = [m for _, m in scored]
        logger.info(
            "Enriching prompt for user %s with %d memories (confidence %.2f)",
            user_id, len(relevant), confidence,
        )
        return PromptEnrichmentResult(
            original_prompt=user_turn_text,
            enriched_content=format_enrichment(relevant),
            relevant_memories=relevant,
            confidence_score=confidence,
            enrichment_method="combined",
        )
