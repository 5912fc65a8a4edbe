"""
Conversation memory: context compaction and long-term memory records.

Compaction keeps the model's view of a conversation inside its context
window:

- Recent messages: the last ``max_recent_messages`` kept verbatim
- Summaries: older messages folded into template digests, capped by importance

Long-term memory lives in a MemoryStore (in process or PostgreSQL):

- Enrichment: relevant records are injected into a hidden system block
- Extraction: facts from finished exchanges are written back in the background
"""

from .compactor import (
    ContextCompactor,
    load_context_from_memory,
    save_compaction_to_memory,
)
from .config import MemoryConfig
from .enricher import MemoryEnricher, confidence_from_scores, score_memory
from .extractor import ExtractionQueue, MemoryExtractor
from .messages import (
    make_message,
    message_role,
    message_text,
    message_timestamp,
    sort_chronologically,
)
from .scoring import ImportanceScorer, score_message
from .store import InMemoryMemoryStore, MemoryStore, PostgresMemoryStore
from .summarizer import ConversationSummarizer, SummaryDraft
from .token_budget import TokenCounter, estimate_tokens
from .types import (
    CompactionResult,
    CompactionState,
    CompactionStrategy,
    CompactionSummary,
    ContextWindow,
    MemoryRecord,
    PromptEnrichmentResult,
)

__all__ = [
    "CompactionResult",
    "CompactionState",
    "CompactionStrategy",
    "CompactionSummary",
    "ContextCompactor",
    "ContextWindow",
    "ConversationSummarizer",
    "ExtractionQueue",
    "ImportanceScorer",
    "InMemoryMemoryStore",
    "MemoryConfig",
    "MemoryEnricher",
    "MemoryExtractor",
    "MemoryRecord",
    "MemoryStore",
    "PostgresMemoryStore",
    "PromptEnrichmentResult",
    "SummaryDraft",
    "TokenCounter",
    "confidence_from_scores",
    "estimate_tokens",
    "load_context_from_memory",
    "make_message",
    "message_role",
    "message_text",
    "message_timestamp",
    "save_compaction_to_memory",
    "score_memory",
    "score_message",
    "sort_chronologically",
]
