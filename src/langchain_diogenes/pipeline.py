"""
Conversation pipeline between the chat transcript and the model call.

Pre-call (awaited before the model is invoked):
- compaction: older history becomes summaries under the token budget
- enrichment: relevant long-term memories go into the hidden system prompt

Post-call:
- the model stream is rewritten sentence by sentence by the tone policy
- memory extraction is queued in the background once the response is done

Usage:
    pipeline = create_pipeline()
    async for text in pipeline.respond(history, user_id="u-1"):
        send(text)
    await pipeline.aclose()
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Optional

from dotenv import load_dotenv
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, SystemMessage

from .memory import (
    CompactionResult,
    CompactionSummary,
    ContextCompactor,
    ExtractionQueue,
    InMemoryMemoryStore,
    MemoryConfig,
    MemoryEnricher,
    MemoryExtractor,
    MemoryStore,
    PromptEnrichmentResult,
    TokenCounter,
    message_role,
    message_text,
    load_context_from_memory,
    save_compaction_to_memory,
    sort_chronologically,
)
from .stream import Fragment, SentenceBufferedTransform, TransformConfig
from .tone import TONE_SYSTEM_PROMPT, MetricsAggregator, ToneFilter

logger = logging.getLogger(__name__)


load_dotenv()


DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"
DEFAULT_SYSTEM_PROMPT = (
    "You are a rigorous conversational partner. Question assumptions, "
    "distinguish facts from speculation, and say when you do not know."
)


def get_credentials() -> tuple[str | None, str | None]:
    """
    API credentials from the environment (generic names first).

    - API key: API_KEY > OPENROUTER_API_KEY > OPENAI_API_KEY
    - Base URL: API_BASE_URL > OPENROUTER_BASE_URL
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("OPENROUTER_API_KEY")
        or os.getenv("OPENAI_API_KEY")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENROUTER_BASE_URL")
    return api_key, base_url


@dataclass
class PreparedContext:
    """Output of the pre-call phase."""

    messages: list[BaseMessage]
    compaction: CompactionResult
    enrichment: Optional[PromptEnrichmentResult] = None
    headers: dict[str, str] = field(default_factory=dict)


class ConversationPipeline:
    """
    Composes compaction, enrichment, the streaming tone transform and
    background extraction around one model.

    Request-scoped state (transform buffers, tone filters) is created per
    call; only the memory store and the extraction queue are shared.
    """

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        model: Optional[BaseChatModel] = None,
        config: Optional[MemoryConfig] = None,
        transform_config: Optional[TransformConfig] = None,
        counter: Optional[TokenCounter] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model_name: str = "",
        extractor: Optional[MemoryExtractor] = None,
    ):
        self.config = config or MemoryConfig()
        self.transform_config = transform_config or TransformConfig()
        self.store = store if store is not None else InMemoryMemoryStore()
        self.model = model
        self.system_prompt = system_prompt
        self.counter = counter or TokenCounter(reserved_tokens=self.config.reserved_tokens)

        self.compactor = ContextCompactor(
            config=self.config,
            counter=self.counter,
            model_name=model_name,
        )
        self.enricher = MemoryEnricher(self.store, self.config)
        self.extractor = extractor or MemoryExtractor(self.store, self.config)
        self.extraction_queue = ExtractionQueue(
            self.extractor,
            delay_ms=self.config.extraction_delay_ms,
            maxsize=self.config.extraction_queue_size,
        )
        self.metrics = MetricsAggregator()
        self._background: set[asyncio.Task] = set()
        self._tokenizer_warm = False

    # ── pre-call ──

    async def prepare_context(
        self,
        history: list[BaseMessage],
        user_id: str,
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> PreparedContext:
        """Compact the history and attach memory context to the system prompt."""
        system_msgs = [m for m in history if message_role(m) == "system"]
        conversation = [m for m in history if message_role(m) != "system"]

        if not self._tokenizer_warm:
            # first load may download the encoding; keep it off the event loop
            await asyncio.to_thread(self.counter.warm)
            self._tokenizer_warm = True

        strategy = self.compactor.get_compaction_strategy(conversation, summaries)
        if strategy.strategy != "none":
            logger.info(
                "Context utilization is %s (estimated reduction %d tokens)",
                strategy.strategy, strategy.estimated_token_reduction,
            )

        compaction = self.compactor.compact(conversation, summaries)
        if compaction.was_compacted and self.config.archive_summaries:
            known = {s.id for s in summaries or ()}
            fresh = [s for s in compaction.summaries if s.id not in known]
            if fresh:
                self._spawn(self.archive_summaries(user_id, fresh))

        enrichment = None
        headers: dict[str, str] = {}
        ordered = sort_chronologically(conversation)
        if (
            self.config.enable_enrichment
            and ordered
            and message_role(ordered[-1]) == "user"
        ):
            enrichment = await self.enricher.enrich(message_text(ordered[-1]), user_id)
            if enrichment.enriched_content:
                headers["X-Memory-Enriched"] = str(len(enrichment.relevant_memories))
                headers["X-Memory-Confidence"] = f"{enrichment.confidence_score:.2f}"

        system_content = self._build_system_prompt(system_msgs, enrichment)
        messages: list[BaseMessage] = []
        if system_content:
            messages.append(SystemMessage(content=system_content, id="system"))
        messages.extend(
            self.compactor.format_compacted_context(
                compaction.messages, compaction.summaries
            )
        )
        return PreparedContext(
            messages=messages,
            compaction=compaction,
            enrichment=enrichment,
            headers=headers,
        )

    def _build_system_prompt(
        self,
        system_msgs: list[BaseMessage],
        enrichment: Optional[PromptEnrichmentResult],
    ) -> str:
        parts = []
        if self.system_prompt:
            parts.append(self.system_prompt)
        parts.extend(message_text(m) for m in system_msgs if message_text(m))
        if self.transform_config.inject_tone_prompt:
            parts.append(TONE_SYSTEM_PROMPT)
        if enrichment and enrichment.enriched_content:
            parts.append(enrichment.enriched_content)
        return "\n\n".join(parts)

    # ── post-call ──

    def new_transform(self) -> SentenceBufferedTransform:
        policy = ToneFilter(
            aggressiveness=self.transform_config.aggressiveness,
            metrics_callback=self.metrics,
            log_metrics=self.transform_config.log_metrics,
        )
        return SentenceBufferedTransform(
            policy=policy,
            force_flush_chars=self.transform_config.force_flush_chars,
        )

    def transform_stream(self, model_stream: AsyncIterable[Fragment]) -> AsyncIterator[str]:
        """Tone-rewrite a model stream, one complete sentence group at a time."""
        return self.new_transform().transform(model_stream)

    def on_response_complete(
        self,
        history: list[BaseMessage],
        response: str,
        user_id: str,
    ) -> bool:
        """Queue memory extraction; returns immediately."""
        if not self.config.enable_extraction or not response.strip():
            return False
        return self.extraction_queue.submit(history, response, user_id)

    async def respond(
        self,
        history: list[BaseMessage],
        user_id: str,
        summaries: Optional[list[CompactionSummary]] = None,
    ) -> AsyncIterator[str]:
        """
        Full request: prepare, call the model, stream transformed text.

        Model errors propagate to the caller. Whether the model fails or the
        consumer stops early, extraction still runs on the text already
        delivered; nothing is extracted when no text was produced.
        """
        if self.model is None:
            raise RuntimeError("ConversationPipeline.respond requires a chat model")

        prepared = await self.prepare_context(history, user_id, summaries)
        produced: list[str] = []
        stream = self.transform_stream(self.model.astream(prepared.messages))
        try:
            async for segment in stream:
                produced.append(segment)
                yield segment
        except (GeneratorExit, asyncio.CancelledError, Exception):
            if produced:
                self.on_response_complete(history, "".join(produced), user_id)
            raise
        finally:
            await stream.aclose()
        self.on_response_complete(history, "".join(produced), user_id)

    # ── background ──

    async def archive_summaries(
        self,
        user_id: str,
        summaries: list[CompactionSummary],
    ) -> int:
        """Write summaries to the memory store; returns how many were saved."""
        saved = 0
        for summary in summaries:
            try:
                if await save_compaction_to_memory(self.store, user_id, summary):
                    saved += 1
            except Exception as e:
                logger.warning("Failed to archive summary %s: %s", summary.id, e)
        return saved

    async def restore_summaries(
        self,
        user_id: str,
        limit: int = 3,
    ) -> list[CompactionSummary]:
        """Archived summaries for a returning user, counted with this pipeline's tokenizer."""
        return await load_context_from_memory(
            self.store, user_id, limit=limit, counter=self.counter
        )

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def aclose(self, drain: bool = True):
        """Stop background work, by default after finishing queued jobs."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.extraction_queue.shutdown(drain=drain)


def create_pipeline(
    model: Optional[str] = None,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> ConversationPipeline:
    """
    Build a pipeline from environment configuration.

    DATABASE_URL selects the Postgres memory store (in-memory otherwise);
    the chat model is created with LangChain's init_chat_model.
    """
    from langchain.chat_models import init_chat_model

    from .memory import PostgresMemoryStore

    model_name = model or os.getenv("CHAT_MODEL", DEFAULT_MODEL)
    config = MemoryConfig.from_env()

    store: MemoryStore
    db_url = os.getenv("DATABASE_URL")
    if db_url:
        try:
            store = PostgresMemoryStore.from_url(db_url)
        except Exception as e:
            logger.warning("Failed to connect memory store, using in-memory store: %s", e)
            store = InMemoryMemoryStore()
    else:
        store = InMemoryMemoryStore()

    api_key, base_url = get_credentials()
    init_kwargs = {"temperature": float(os.getenv("MODEL_TEMPERATURE", "0.9"))}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url
    model_provider = os.getenv("MODEL_PROVIDER", "openai")

    chat_model = init_chat_model(model_name, model_provider=model_provider, **init_kwargs)

    return ConversationPipeline(
        store=store,
        model=chat_model,
        config=config,
        transform_config=TransformConfig.from_env(),
        system_prompt=system_prompt,
        model_name=model_name,
    )
