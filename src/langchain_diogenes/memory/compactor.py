"""
Context compaction.

Keeps the conversation under the model's context limit by replacing older
messages with template summaries:

- Below ``max_context_tokens * compaction_threshold`` nothing changes.
- Above it, the last ``max_recent_messages`` are kept verbatim, everything
  older is summarized in chunks of ``summary_chunk_size``, and the union of
  old and new summaries is cut to the ``max_summaries`` most important ones.
- If the result still does not fit, retention drops to the last
  ``aggressive_recent_messages`` and low-importance summaries are evicted.

The caller owns the full message log; compaction only decides what the
model sees.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from langchain_core.messages import BaseMessage, SystemMessage

from .config import MemoryConfig
from .messages import message_timestamp, sort_chronologically
from .store import MemoryStore
from .summarizer import ConversationSummarizer
from .token_budget import TokenCounter
from .types import (
    CompactionResult,
    CompactionState,
    CompactionStrategy,
    CompactionSummary,
    ContextWindow,
    MemoryRecord,
)

logger = logging.getLogger(__name__)

CONTEXT_SUMMARY_ID = "context_summary"
CONTEXT_SUMMARY_TAG = "context_summary"
SUMMARY_SEPARATOR = "\n\n---\n\n"


class ContextCompactor:
    """
    Token-budgeted compaction over a message list and its prior summaries.

    Usage:
        compactor = ContextCompactor(config, counter)
        result = compactor.compact(messages, summaries)
        model_messages = compactor.format_compacted_context(
            result.messages, result.summaries
        )
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        counter: Optional[TokenCounter] = None,
        summarizer: Optional[ConversationSummarizer] = None,
        model_name: str = "",
    ):
        self.config = config or MemoryConfig()
        self.counter = counter or TokenCounter(
            reserved_tokens=self.config.reserved_tokens
        )
        self.summarizer = summarizer or ConversationSummarizer(counter=self.counter)
        self.max_context_tokens = self.config.get_context_window(model_name)

    # ── budget ──

    def total_tokens(
        self,
        messages: list[BaseMessage],
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> int:
        return self.counter.count_context(
            messages, summaries, self.config.reserved_tokens
        )

    def needs_compaction(
        self,
        messages: list[BaseMessage],
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> bool:
        threshold = self.max_context_tokens * self.config.compaction_threshold
        return self.total_tokens(messages, summaries) >= threshold

    def _fits(self, messages, summaries) -> bool:
        return self.total_tokens(messages, summaries) <= self.max_context_tokens

    # ── compaction ──

    def compact(
        self,
        messages: list[BaseMessage],
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> CompactionResult:
        existing = list(summaries or [])

        if not self.needs_compaction(messages, existing):
            total = self.total_tokens(messages, existing)
            logger.debug(
                "No compaction needed (%d/%d tokens)", total, self.max_context_tokens
            )
            return CompactionResult(
                messages=messages,
                summaries=summaries if summaries is not None else [],
                total_tokens=total,
                was_compacted=False,
                removed_messages=0,
                state=CompactionState.FRESH,
            )

        logger.info(
            "Compacting %d messages (state %s → %s)",
            len(messages), CompactionState.FRESH.value, CompactionState.COMPACTING.value,
        )
        ordered = sort_chronologically(messages)

        recent, retained = self._compact_with_window(
            ordered, existing, self.config.max_recent_messages
        )
        if not self._fits(recent, retained):
            recent, retained = self._degrade(ordered, existing)

        total = self.total_tokens(recent, retained)
        removed = len(messages) - len(recent)
        logger.info(
            "Compaction done: kept %d recent messages, %d summaries, removed %d "
            "(%d/%d tokens, state %s)",
            len(recent), len(retained), removed, total,
            self.max_context_tokens, CompactionState.COMPACTED.value,
        )
        return CompactionResult(
            messages=recent,
            summaries=retained,
            total_tokens=total,
            was_compacted=True,
            removed_messages=removed,
            state=CompactionState.COMPACTED,
        )

    def _compact_with_window(
        self,
        ordered: list[BaseMessage],
        existing: list[CompactionSummary],
        keep: int,
    ) -> tuple[list[BaseMessage], list[CompactionSummary]]:
        """Sliding window of ``keep`` messages plus summaries of the rest."""
        split = max(len(ordered) - keep, 0)
        recent = ordered[split:]
        older = ordered[:split]

        new_summaries = self._summarize_chunks(older)
        return recent, self._merge_summaries(existing, new_summaries)

    def _summarize_chunks(self, older: list[BaseMessage]) -> list[CompactionSummary]:
        size = max(self.config.summary_chunk_size, 1)
        chunks = [older[i:i + size] for i in range(0, len(older), size)]

        results = []
        previous: Optional[str] = None
        for chunk in chunks:
            draft = self.summarizer.summarize(chunk, previous)
            results.append(
                CompactionSummary(
                    id=f"summary-{uuid.uuid4().hex[:12]}",
                    message_ids=tuple(m.id or "" for m in chunk),
                    summary=draft.summary,
                    token_count=draft.token_count,
                    importance=draft.importance,
                    timestamp=message_timestamp(chunk[-1]) or datetime.now(timezone.utc),
                    message_count=len(chunk),
                )
            )
            previous = draft.summary
        return results

    def _merge_summaries(
        self,
        existing: list[CompactionSummary],
        new: list[CompactionSummary],
    ) -> list[CompactionSummary]:
        # sorted() is stable, so equal importance keeps old-before-new order
        union = sorted(existing + new, key=lambda s: s.importance, reverse=True)
        dropped = len(union) - self.config.max_summaries
        if dropped > 0:
            logger.debug("Evicting %d low-importance summaries", dropped)
        return union[: self.config.max_summaries]

    def _degrade(
        self,
        ordered: list[BaseMessage],
        existing: list[CompactionSummary],
    ) -> tuple[list[BaseMessage], list[CompactionSummary]]:
        """Aggressive retention for conversations that still overflow."""
        logger.warning(
            "Context still over budget after compaction, keeping last %d messages",
            self.config.aggressive_recent_messages,
        )
        recent, retained = self._compact_with_window(
            ordered, existing, self.config.aggressive_recent_messages
        )
        while retained and not self._fits(recent, retained):
            retained = retained[:-1]
        while len(recent) > 1 and not self._fits(recent, retained):
            recent = recent[1:]
        if not self._fits(recent, retained):
            logger.warning(
                "Latest message alone exceeds the context budget (%d/%d tokens)",
                self.total_tokens(recent, retained), self.max_context_tokens,
            )
        return recent, retained

    # ── status ──

    def get_context_window_status(
        self,
        messages: list[BaseMessage],
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> ContextWindow:
        summaries = list(summaries or [])
        current = self.total_tokens(messages, summaries)
        return ContextWindow(
            messages=messages,
            summaries=summaries,
            current_tokens=current,
            max_tokens=self.max_context_tokens,
            utilization_percent=current / self.max_context_tokens * 100,
        )

    def get_compaction_strategy(
        self,
        messages: list[BaseMessage],
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> CompactionStrategy:
        """Classify utilization; does not change any state."""
        current = self.total_tokens(messages, summaries)
        utilization = current / self.max_context_tokens * 100

        if utilization < 60:
            return CompactionStrategy(False, "none", 0)

        if utilization < self.config.compaction_threshold * 100:
            # light: oldest 30% of messages would be summarized
            return CompactionStrategy(False, "light", int(len(messages) * 0.3) * 100)

        if utilization < 95:
            to_remove = max(len(messages) - self.config.max_recent_messages, 0)
            return CompactionStrategy(True, "moderate", to_remove * 150)

        return CompactionStrategy(True, "aggressive", int(current * 0.7))

    # ── formatting ──

    @staticmethod
    def format_compacted_context(
        messages: list[BaseMessage],
        summaries: list[CompactionSummary],
    ) -> list[BaseMessage]:
        """Summaries as one leading system message, then the recent messages."""
        formatted: list[BaseMessage] = []
        if summaries:
            joined = SUMMARY_SEPARATOR.join(s.summary for s in summaries)
            formatted.append(
                SystemMessage(
                    content=(
                        f"[Previous Conversation Context]\n{joined}"
                        "\n\n[End of Context Summary]"
                    ),
                    id=CONTEXT_SUMMARY_ID,
                )
            )
        formatted.extend(messages)
        return formatted


# ── archival ──


async def save_compaction_to_memory(
    store: MemoryStore,
    user_id: str,
    summary: CompactionSummary,
) -> bool:
    """Persist a summary as an episodic memory record."""
    record = MemoryRecord(
        id=summary.id,
        content=summary.summary,
        type="episodic",
        source="system",
        importance=summary.importance / 100,
        tags=[CONTEXT_SUMMARY_TAG],
        timestamp=summary.timestamp,
        metadata={
            "message_ids": list(summary.message_ids),
            "message_count": summary.message_count,
            "token_count": summary.token_count,
        },
    )
    return await store.put(user_id, record)


async def load_context_from_memory(
    store: MemoryStore,
    user_id: str,
    limit: int = 3,
    counter: Optional[TokenCounter] = None,
) -> list[CompactionSummary]:
    """Load archived summaries back as CompactionSummary objects."""
    counter = counter or TokenCounter()
    records = await store.query(user_id, CONTEXT_SUMMARY_TAG, limit)
    summaries = []
    for record in records:
        if CONTEXT_SUMMARY_TAG not in record.tags:
            continue
        meta = record.metadata
        summaries.append(
            CompactionSummary(
                id=record.id,
                message_ids=tuple(meta.get("message_ids", ())),
                summary=record.content,
                token_count=meta.get("token_count") or counter.count(record.content),
                importance=record.importance * 100,
                timestamp=record.timestamp,
                message_count=meta.get("message_count", 0),
            )
        )
    return summaries
