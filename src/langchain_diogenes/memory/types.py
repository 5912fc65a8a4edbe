"""
Value types shared by the compaction and memory components.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from langchain_core.messages import BaseMessage

MEMORY_TYPES = ("semantic", "episodic", "procedural")
MEMORY_SOURCES = ("user", "assistant", "system")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CompactionSummary:
    """Digest of a contiguous chunk of older messages."""

    id: str
    message_ids: tuple[str, ...]
    summary: str
    token_count: int
    importance: float  # 0-100
    timestamp: datetime
    message_count: int


@dataclass
class ContextWindow:
    """Snapshot of the current context usage; recomputed on demand."""

    messages: list[BaseMessage]
    summaries: list[CompactionSummary]
    current_tokens: int
    max_tokens: int
    utilization_percent: float


class CompactionState(str, Enum):
    FRESH = "fresh"
    COMPACTING = "compacting"
    COMPACTED = "compacted"


@dataclass
class CompactionResult:
    messages: list[BaseMessage]
    summaries: list[CompactionSummary]
    total_tokens: int
    was_compacted: bool
    removed_messages: int
    state: CompactionState = CompactionState.FRESH


@dataclass
class CompactionStrategy:
    """Utilization classification used to warn before compaction triggers."""

    should_compact: bool
    strategy: str  # none | light | moderate | aggressive
    estimated_token_reduction: int


@dataclass
class MemoryRecord:
    """Durable memory as exchanged with a MemoryStore."""

    content: str
    type: str = "semantic"
    source: str = "user"
    importance: float = 0.5  # 0-1
    tags: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_now)
    id: str = field(default_factory=lambda: f"mem-{uuid.uuid4().hex[:16]}")
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in MEMORY_TYPES:
            raise ValueError(f"Unknown memory type: {self.type!r}")
        if self.source not in MEMORY_SOURCES:
            raise ValueError(f"Unknown memory source: {self.source!r}")


@dataclass
class PromptEnrichmentResult:
    original_prompt: str
    enriched_content: str
    relevant_memories: list[MemoryRecord]
    confidence_score: float  # 0-1
    enrichment_method: str  # keyword | semantic | combined

    @classmethod
    def empty(cls, prompt: str) -> "PromptEnrichmentResult":
        return cls(
            original_prompt=prompt,
            enriched_content="",
            relevant_memories=[],
            confidence_score=0.0,
            enrichment_method="keyword",
        )
