"""
Pipeline configuration and model context window mappings.
"""

import os
from dataclasses import dataclass

# Model id prefix → usable context (tokens); dated ids match their family
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # OpenRouter routes
    "anthropic/claude-3.5-sonnet": 128_000,
    "anthropic/claude-sonnet-4.5": 200_000,
    "anthropic/claude-3-opus": 200_000,
    "anthropic/claude-3-haiku": 200_000,
    "openai/gpt-4-turbo": 128_000,
    "openai/gpt-3.5-turbo": 16_385,
    "meta-llama/llama-3.1-70b-instruct": 131_072,
    "google/gemini-pro": 32_760,
    # Direct provider ids
    "claude-sonnet-4-5": 200_000,
    "claude-3-5-haiku": 200_000,
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "deepseek-chat": 64_000,
}

DEFAULT_CONTEXT_WINDOW = 128_000


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Tunables for compaction, enrichment and extraction."""

    # Context window (0 = auto-detect from model name)
    max_context_tokens: int = 0

    # Compaction
    compaction_threshold: float = 0.8
    max_recent_messages: int = 10
    aggressive_recent_messages: int = 5
    summary_chunk_size: int = 20
    max_summaries: int = 5
    reserved_tokens: int = 4000  # system prompt + response

    # Enrichment
    enable_enrichment: bool = True
    enrichment_limit: int = 5
    candidate_limit: int = 50
    min_confidence: float = 0.1

    # Extraction
    enable_extraction: bool = True
    extraction_delay_ms: int = 500
    extraction_context_messages: int = 4
    extraction_queue_size: int = 100

    # Write new summaries to the memory store
    archive_summaries: bool = False

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            max_context_tokens=int(os.getenv("MEMORY_MAX_CONTEXT_TOKENS", "0")),
            compaction_threshold=float(
                os.getenv("MEMORY_COMPACTION_THRESHOLD", "0.8")
            ),
            max_recent_messages=int(os.getenv("MEMORY_MAX_RECENT_MESSAGES", "10")),
            aggressive_recent_messages=int(
                os.getenv("MEMORY_AGGRESSIVE_RECENT_MESSAGES", "5")
            ),
            summary_chunk_size=int(os.getenv("MEMORY_SUMMARY_CHUNK_SIZE", "20")),
            max_summaries=int(os.getenv("MEMORY_MAX_SUMMARIES", "5")),
            reserved_tokens=int(os.getenv("MEMORY_RESERVED_TOKENS", "4000")),
            enable_enrichment=_env_bool("MEMORY_ENABLE_ENRICHMENT", "true"),
            enrichment_limit=int(os.getenv("MEMORY_ENRICHMENT_LIMIT", "5")),
            candidate_limit=int(os.getenv("MEMORY_CANDIDATE_LIMIT", "50")),
            min_confidence=float(os.getenv("MEMORY_MIN_CONFIDENCE", "0.1")),
            enable_extraction=_env_bool("MEMORY_ENABLE_EXTRACTION", "true"),
            extraction_delay_ms=int(os.getenv("MEMORY_EXTRACTION_DELAY_MS", "500")),
            extraction_context_messages=int(
                os.getenv("MEMORY_EXTRACTION_CONTEXT_MESSAGES", "4")
            ),
            extraction_queue_size=int(
                os.getenv("MEMORY_EXTRACTION_QUEUE_SIZE", "100")
            ),
            archive_summaries=_env_bool("MEMORY_ARCHIVE_SUMMARIES", "false"),
        )

    def get_context_window(self, model_name: str = "") -> int:
        """
        Context limit for a model: the explicit setting wins, then the
        longest matching id prefix, then DEFAULT_CONTEXT_WINDOW.
        """
        if self.max_context_tokens > 0:
            return self.max_context_tokens
        name = model_name.strip().lower()
        matches = [key for key in MODEL_CONTEXT_WINDOWS if name and name.startswith(key)]
        if not matches:
            return DEFAULT_CONTEXT_WINDOW
        return MODEL_CONTEXT_WINDOWS[max(matches, key=len)]
