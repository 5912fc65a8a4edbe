"""
Tests for the conversation pipeline: pre-call context assembly, streaming
response, and background extraction.
"""

import asyncio
import threading
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, SystemMessage

from conftest import build_conversation
from langchain_diogenes.memory.config import MemoryConfig
from langchain_diogenes.memory.messages import make_message
from langchain_diogenes.memory.store import InMemoryMemoryStore
from langchain_diogenes.memory.token_budget import TokenCounter
from langchain_diogenes.memory.types import MemoryRecord
from langchain_diogenes.pipeline import (
    DEFAULT_SYSTEM_PROMPT,
    ConversationPipeline,
    create_pipeline,
)
from langchain_diogenes.tone import TONE_SYSTEM_PROMPT


def _fake_model(text: str) -> GenericFakeChatModel:
    return GenericFakeChatModel(messages=iter([AIMessage(content=text)]))


def _pipeline(counter, store=None, model=None, extractor=None, **overrides):
    settings = {
        "max_context_tokens": 2000,
        "reserved_tokens": 400,
        "extraction_delay_ms": 0,
        **overrides,
    }
    return ConversationPipeline(
        store=store if store is not None else InMemoryMemoryStore(),
        model=model,
        config=MemoryConfig(**settings),
        counter=counter,
        extractor=extractor,
    )


def _mock_extractor(side_effect=None):
    extractor = MagicMock()
    extractor.extract_and_store = AsyncMock(return_value=[], side_effect=side_effect)
    return extractor


class FailingModel:
    async def astream(self, messages):
        yield AIMessageChunk(content="Partial. ")
        raise RuntimeError("model down")


class SilentFailingModel:
    async def astream(self, messages):
        raise RuntimeError("model down")
        yield  # pragma: no cover


# ── Pre-call Tests ──


class TestPrepareContext:
    @pytest.mark.asyncio
    async def test_injects_memories_into_system_prompt(self, counter):
        store = InMemoryMemoryStore()
        await store.put("u1", MemoryRecord(content="I prefer Python for data analysis"))
        pipeline = _pipeline(counter, store=store)
        history = [make_message("user", "Which language suits data analysis?")]

        prepared = await pipeline.prepare_context(history, "u1")

        system = prepared.messages[0]
        assert isinstance(system, SystemMessage)
        assert system.content.startswith(DEFAULT_SYSTEM_PROMPT)
        assert TONE_SYSTEM_PROMPT in system.content
        assert "[Memory Context - Not shown to user]" in system.content
        assert "I prefer Python for data analysis" in system.content
        # the user's turn reaches the model untouched
        assert prepared.messages[-1] is history[-1]
        assert prepared.messages[-1].content == "Which language suits data analysis?"
        assert prepared.headers == {
            "X-Memory-Enriched": "1",
            "X-Memory-Confidence": "0.45",
        }

    @pytest.mark.asyncio
    async def test_no_memories_no_headers(self, counter):
        pipeline = _pipeline(counter)
        prepared = await pipeline.prepare_context([make_message("user", "Hello there")], "u1")
        assert prepared.headers == {}
        assert "[Memory Context" not in prepared.messages[0].content

    @pytest.mark.asyncio
    async def test_system_messages_folded_into_one(self, counter):
        pipeline = _pipeline(counter)
        history = [
            make_message("system", "Answer in one paragraph."),
            make_message("user", "Hello there"),
        ]
        prepared = await pipeline.prepare_context(history, "u1")
        system_msgs = [m for m in prepared.messages if isinstance(m, SystemMessage)]
        assert len(system_msgs) == 1
        assert "Answer in one paragraph." in system_msgs[0].content
        assert prepared.messages[1:] == history[1:]

    @pytest.mark.asyncio
    async def test_enrichment_disabled(self, counter):
        store = InMemoryMemoryStore()
        await store.put("u1", MemoryRecord(content="I prefer Python for data analysis"))
        pipeline = _pipeline(counter, store=store, enable_enrichment=False)
        history = [make_message("user", "Which language suits data analysis?")]
        prepared = await pipeline.prepare_context(history, "u1")
        assert prepared.enrichment is None
        assert prepared.headers == {}

    @pytest.mark.asyncio
    async def test_long_history_is_compacted(self, counter):
        pipeline = _pipeline(counter)
        history = build_conversation(25)
        prepared = await pipeline.prepare_context(history, "u1")
        assert prepared.compaction.was_compacted is True
        assert prepared.messages[1].id == "context_summary"
        assert prepared.messages[2:] == history[-10:]

    @pytest.mark.asyncio
    async def test_archives_new_summaries(self, counter):
        store = InMemoryMemoryStore()
        pipeline = _pipeline(counter, store=store, archive_summaries=True)
        await pipeline.prepare_context(build_conversation(25), "u1")
        await pipeline.aclose()
        archived = [r for r in store.all("u1") if "context_summary" in r.tags]
        assert len(archived) == 1
        assert archived[0].metadata["message_count"] == 15

    @pytest.mark.asyncio
    async def test_tokenizer_loaded_off_event_loop(self):
        threads = []
        encoding = MagicMock()
        encoding.encode.return_value = [1, 2, 3]

        def load(name):
            threads.append(threading.get_ident())
            return encoding

        pipeline = _pipeline(TokenCounter(reserved_tokens=400))
        with patch("langchain_diogenes.memory.token_budget.get_encoding", side_effect=load):
            await pipeline.prepare_context([make_message("user", "Hello there")], "u1")

        assert threads
        assert threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_restore_summaries_uses_pipeline_counter(self, counter):
        store = InMemoryMemoryStore()
        await store.put(
            "u1",
            MemoryRecord(
                id="summary-1",
                content="x" * 40,
                type="episodic",
                source="system",
                importance=0.4,
                tags=["context_summary"],
                metadata={"message_ids": ["msg-0", "msg-1"], "message_count": 2},
            ),
        )
        pipeline = _pipeline(counter, store=store)

        restored = await pipeline.restore_summaries("u1")

        assert [s.id for s in restored] == ["summary-1"]
        assert restored[0].message_ids == ("msg-0", "msg-1")
        # no recorded token_count: the character estimate prices 40 chars at 10
        assert restored[0].token_count == 10


# ── Response Tests ──


class TestRespond:
    @pytest.mark.asyncio
    async def test_streams_rewritten_text_and_extracts(self, counter):
        store = InMemoryMemoryStore()
        model = _fake_model(
            "You're absolutely right. Python fits. You mentioned that you like pandas."
        )
        pipeline = _pipeline(counter, store=store, model=model)
        history = [make_message("user", "I like pandas for data work")]

        segments = [s async for s in pipeline.respond(history, "u1")]

        assert "".join(segments) == (
            "That's one interpretation, though. Python fits. "
            "You mentioned that you like pandas."
        )
        assert pipeline.metrics.latest() is not None

        await pipeline.extraction_queue.drain()
        contents = {r.content for r in store.all("u1")}
        assert "I like pandas for data work" in contents
        assert "You mentioned that you like pandas" in contents
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_extraction_does_not_delay_response(self, counter):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)
            return []

        extractor = _mock_extractor(side_effect=slow)
        pipeline = _pipeline(counter, model=_fake_model("Done. Really."), extractor=extractor)

        start = time.monotonic()
        segments = [s async for s in pipeline.respond([make_message("user", "Hi")], "u1")]
        elapsed = time.monotonic() - start

        assert "".join(segments) == "Done. Really."
        assert elapsed < 1.0
        await pipeline.aclose(drain=False)

    @pytest.mark.asyncio
    async def test_model_error_extracts_partial_text(self, counter):
        extractor = _mock_extractor()
        pipeline = _pipeline(counter, model=FailingModel(), extractor=extractor)
        segments = []
        with pytest.raises(RuntimeError):
            async for segment in pipeline.respond([make_message("user", "Hi")], "u1"):
                segments.append(segment)

        assert segments == ["Partial. "]
        await pipeline.extraction_queue.drain()
        extractor.extract_and_store.assert_awaited_once()
        assert extractor.extract_and_store.call_args[0][2] == "Partial. "
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_model_error_before_output_skips_extraction(self, counter):
        extractor = _mock_extractor()
        pipeline = _pipeline(counter, model=SilentFailingModel(), extractor=extractor)
        with pytest.raises(RuntimeError):
            [s async for s in pipeline.respond([make_message("user", "Hi")], "u1")]

        await pipeline.extraction_queue.drain()
        extractor.extract_and_store.assert_not_awaited()
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_extracts_partial_text(self, counter):
        extractor = _mock_extractor()
        model = _fake_model("First sentence. Second sentence. Third.")
        pipeline = _pipeline(counter, model=model, extractor=extractor)

        agen = pipeline.respond([make_message("user", "Hi")], "u1")
        assert await agen.__anext__() == "First sentence. "
        await agen.aclose()

        await pipeline.extraction_queue.drain()
        extractor.extract_and_store.assert_awaited_once()
        assert extractor.extract_and_store.call_args[0][2] == "First sentence. "
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_extraction_disabled(self, counter):
        extractor = _mock_extractor()
        pipeline = _pipeline(
            counter,
            model=_fake_model("Fine."),
            extractor=extractor,
            enable_extraction=False,
        )
        [s async for s in pipeline.respond([make_message("user", "Hi")], "u1")]
        await pipeline.aclose()
        extractor.extract_and_store.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_respond_requires_model(self, counter):
        pipeline = _pipeline(counter)
        with pytest.raises(RuntimeError):
            await pipeline.respond([make_message("user", "Hi")], "u1").__anext__()

    @pytest.mark.asyncio
    async def test_transform_stream_per_call(self, counter):
        pipeline = _pipeline(counter)

        async def source():
            yield "Great question"
            yield "! Let us see."

        first = [s async for s in pipeline.transform_stream(source())]
        second = [s async for s in pipeline.transform_stream(source())]
        # a fresh tone filter per stream restarts the neutral rotation
        assert first == second


# ── Factory Tests ──


class TestCreatePipeline:
    def test_in_memory_store_without_database(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("MEMORY_MAX_RECENT_MESSAGES", "4")
        with patch("langchain.chat_models.init_chat_model") as init_chat_model:
            pipeline = create_pipeline(model="gpt-4o")
        assert isinstance(pipeline.store, InMemoryMemoryStore)
        assert pipeline.model is init_chat_model.return_value
        assert pipeline.config.max_recent_messages == 4
        assert pipeline.compactor.max_context_tokens == 128_000

    def test_database_failure_falls_back(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://nowhere/db")
        with patch("langchain.chat_models.init_chat_model"), patch(
            "langchain_diogenes.memory.store.PostgresMemoryStore.from_url",
            side_effect=RuntimeError("connection refused"),
        ):
            pipeline = create_pipeline(model="gpt-4o")
        assert isinstance(pipeline.store, InMemoryMemoryStore)
