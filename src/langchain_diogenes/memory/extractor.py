"""
Memory extraction from completed exchanges.

``MemoryExtractor`` turns the tail of a conversation plus the new reply into
memory records using pattern heuristics:

- user self-statements ("I prefer ...", "My name is ...") → semantic, user
- assistant acknowledgements ("You mentioned ...") → semantic, assistant
- one episodic record describing the exchange

``ExtractionQueue`` runs extraction off the request path: jobs are queued,
a single worker waits the configured delay and then extracts. Queue overflow
drops the job; failures are logged and never reach the caller.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import BaseMessage

from .config import MemoryConfig
from .messages import message_role, message_text
from .store import MemoryStore
from .types import MemoryRecord

logger = logging.getLogger(__name__)

USER_FACT_PATTERNS = [
    re.compile(r"\bI (?:am|like|prefer|work at|live in|enjoy|hate|dislike) [^.!?\n]+", re.I),
    re.compile(r"\bMy (?:name is|job is|favorite|hobby is) [^.!?\n]+", re.I),
    re.compile(r"\bI'm (?:a|an) [^.!?\n]+", re.I),
]

ASSISTANT_LEARNING_PATTERNS = [
    re.compile(r"\bI understand (?:that )?you [^.!?\n]+", re.I),
    re.compile(r"\bYou (?:mentioned|said|told me) (?:that )?[^.!?\n]+", re.I),
    re.compile(r"\b(?:So|It seems) you [^.!?\n]+", re.I),
    re.compile(r"\bI'll remember (?:that )?[^.!?\n]+", re.I),
]

TOPIC_PATTERNS = [
    re.compile(r"\babout ([a-z]+(?:\s+[a-z]+)?)", re.I),
    re.compile(r"\bregarding ([a-z]+(?:\s+[a-z]+)?)", re.I),
    re.compile(r"\bdiscuss(?:ing)? ([a-z]+(?:\s+[a-z]+)?)", re.I),
]

_STOPWORDS = {"about", "would", "could", "should", "there", "where", "which"}

MAX_ASSISTANT_LEARNINGS = 3
MAX_TOPICS = 5
PROMPT_PREVIEW_CHARS = 200


def extract_topics(text: str) -> list[str]:
    """Tag candidates: "about X" style phrases, then a few long words."""
    topics: dict[str, None] = {}
    for pattern in TOPIC_PATTERNS:
        for match in pattern.findall(text):
            topics.setdefault(match.lower(), None)
    long_words = [
        w for w in text.lower().split()
        if len(w) > 5 and w not in _STOPWORDS
    ]
    for word in long_words[:3]:
        topics.setdefault(word.strip(".,!?;:\"'()"), None)
    return [t for t in topics if t][:MAX_TOPICS]


def build_conversation_excerpt(
    messages: list[BaseMessage],
    response: str,
    context_messages: int = 4,
) -> str:
    """Last few user/assistant turns plus the new reply."""
    lines = []
    for msg in messages[-context_messages:] if context_messages > 0 else []:
        role = message_role(msg)
        if role == "user":
            lines.append(f"User: {message_text(msg)}")
        elif role == "assistant":
            lines.append(f"Assistant: {message_text(msg)}")
    lines.append(f"Assistant: {response}")
    return "\n\n".join(lines)


class MemoryExtractor:
    """Derives memory records from an exchange and writes them to a store."""

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[MemoryConfig] = None,
        store_episodic: bool = True,
    ):
        self.store = store
        self.config = config or MemoryConfig()
        self.store_episodic = store_episodic

    def extract(
        self,
        messages: list[BaseMessage],
        response: str,
    ) -> list[MemoryRecord]:
        """Pure candidate derivation; nothing is written."""
        user_turns = [
            message_text(m)
            for m in messages[-self.config.extraction_context_messages:]
            if message_role(m) == "user"
        ]
        candidates: list[MemoryRecord] = []

        for text in user_turns:
            for pattern in USER_FACT_PATTERNS:
                for match in pattern.findall(text):
                    candidates.append(
                        MemoryRecord(
                            content=match.strip(),
                            type="semantic",
                            source="user",
                            importance=0.5,
                            tags=extract_topics(match),
                            metadata={"pattern": "user_fact"},
                        )
                    )

        learnings = []
        for pattern in ASSISTANT_LEARNING_PATTERNS:
            learnings.extend(m.strip() for m in pattern.findall(response))
        for info in learnings[:MAX_ASSISTANT_LEARNINGS]:
            candidates.append(
                MemoryRecord(
                    content=info,
                    type="semantic",
                    source="assistant",
                    importance=0.7,
                    tags=extract_topics(info),
                    metadata={"pattern": "assistant_learning"},
                )
            )

        if self.store_episodic and user_turns and response.strip():
            prompt = user_turns[-1]
            preview = prompt[:PROMPT_PREVIEW_CHARS]
            if len(prompt) > PROMPT_PREVIEW_CHARS:
                preview += "..."
            topics = extract_topics(response)
            excerpt = build_conversation_excerpt(
                messages, response, self.config.extraction_context_messages
            )
            candidates.append(
                MemoryRecord(
                    content=(
                        f'User asked: "{preview}" - I responded with insights '
                        f"about: {', '.join(topics)}"
                    ),
                    type="episodic",
                    source="assistant",
                    importance=0.6,
                    tags=list(dict.fromkeys(extract_topics(prompt) + topics)),
                    metadata={"response_length": len(response), "excerpt": excerpt},
                )
            )

        unique: dict[str, MemoryRecord] = {}
        for record in candidates:
            unique.setdefault(record.content.lower(), record)
        return list(unique.values())

    async def extract_and_store(
        self,
        messages: list[BaseMessage],
        user_id: str,
        response: str = "",
    ) -> list[MemoryRecord]:
        records = self.extract(messages, response)
        stored = []
        for record in records:
            try:
                if await self.store.put(user_id, record):
                    stored.append(record)
            except Exception as e:
                logger.warning("Failed to store memory for user %s: %s", user_id, e)
        if stored:
            logger.info("Extracted %d memories for user %s", len(stored), user_id)
        return stored


@dataclass
class ExtractionJob:
    messages: list[BaseMessage]
    response: str
    user_id: str


class ExtractionQueue:
    """
    Background worker for fire-and-forget extraction.

    ``submit`` never blocks and never raises. The queue and its worker task
    belong to the event loop that is running at submit time and are rebuilt
    when a later call runs on a different loop. ``drain`` waits for queued
    jobs and ``shutdown`` stops the worker, optionally draining first.
    """

    def __init__(
        self,
        extractor: MemoryExtractor,
        delay_ms: int = 500,
        maxsize: int = 100,
    ):
        self.extractor = extractor
        self.delay_ms = delay_ms
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue[ExtractionJob]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _bind_loop(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._queue is None:
            if self._queue is not None and not self._queue.empty():
                logger.warning(
                    "Discarding %d extraction jobs queued on a previous event loop",
                    self._queue.qsize(),
                )
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self.maxsize)
            self._worker = None
        return self._queue

    def submit(self, messages: list[BaseMessage], response: str, user_id: str) -> bool:
        """Queue an extraction; returns False if the job was dropped."""
        queue = self._bind_loop()
        job = ExtractionJob(messages=list(messages), response=response, user_id=user_id)
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning(
                "Extraction queue full (%d jobs), dropping job for user %s",
                queue.maxsize, user_id,
            )
            return False
        self._ensure_worker()
        return True

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = self._loop.create_task(self._run(self._queue))
            self._worker.add_done_callback(self._on_worker_done)

    @staticmethod
    def _on_worker_done(task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Extraction worker stopped unexpectedly: %r", exc)

    async def _run(self, queue: asyncio.Queue):
        while True:
            job = await queue.get()
            try:
                if self.delay_ms > 0:
                    await asyncio.sleep(self.delay_ms / 1000)
                await self.extractor.extract_and_store(
                    job.messages, job.user_id, job.response
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Memory extraction failed for user %s: %s", job.user_id, e)
            finally:
                queue.task_done()

    async def drain(self):
        """Wait until every job queued on the current loop has been processed."""
        queue = self._bind_loop()
        if not queue.empty():
            self._ensure_worker()
        await queue.join()

    async def shutdown(self, drain: bool = False):
        if drain:
            await self.drain()
        worker, self._worker = self._worker, None
        if worker is None or worker.done():
            return
        if self._loop is not asyncio.get_running_loop():
            # the owning loop is gone; its tasks cannot be awaited from here
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
