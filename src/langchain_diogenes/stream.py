"""
Sentence-buffered streaming transform.

Model output arrives in arbitrary fragments. The transform holds text back
until it ends on a sentence boundary (``.``, ``!`` or ``?`` followed by
whitespace), rewrites the complete sentences with the tone policy and
emits them. A buffer longer than ``force_flush_chars`` is emitted as-is
(after rewriting) so boundary-free output never stalls, and whatever remains
at the end of the stream is emitted once.

Upstream fragments may be ``bytes`` (decoded incrementally as UTF-8, so a
multi-byte character split across fragments is handled), ``str``, or
LangChain message chunks.
"""

import codecs
import logging
import os
import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Union

from langchain_core.messages import BaseMessage

from .memory.messages import message_text
from .tone import RewritePolicy, passthrough

logger = logging.getLogger(__name__)

SENTENCE_END = re.compile(r"[.!?]\s")

Fragment = Union[bytes, str, BaseMessage]


@dataclass
class TransformConfig:
    force_flush_chars: int = 500
    aggressiveness: int = 7
    inject_tone_prompt: bool = True
    log_metrics: bool = False

    @classmethod
    def from_env(cls) -> "TransformConfig":
        """Load configuration from environment variables."""
        return cls(
            force_flush_chars=int(os.getenv("STREAM_FORCE_FLUSH_CHARS", "500")),
            aggressiveness=int(os.getenv("STREAM_TONE_AGGRESSIVENESS", "7")),
            inject_tone_prompt=os.getenv("STREAM_INJECT_TONE_PROMPT", "true").lower()
            in ("1", "true", "yes"),
            log_metrics=os.getenv("STREAM_LOG_METRICS", "false").lower()
            in ("1", "true", "yes"),
        )


class SentenceBufferedTransform:
    """
    One instance per response stream.

    Usage:
        transform = SentenceBufferedTransform(policy=ToneFilter())
        async for segment in transform.transform(model_stream):
            send(segment)
    """

    def __init__(
        self,
        policy: RewritePolicy = passthrough,
        force_flush_chars: int = 500,
    ):
        self.policy = policy
        self.force_flush_chars = force_flush_chars
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _decode(self, fragment: Fragment) -> str:
        if isinstance(fragment, (bytes, bytearray)):
            return self._decoder.decode(bytes(fragment))
        if isinstance(fragment, BaseMessage):
            return message_text(fragment)
        return fragment or ""

    def _emit(self, text: str) -> list[str]:
        if not text.strip():
            return []
        transformed = self.policy(text)
        if not transformed.strip():
            return []
        return [transformed]

    def feed(self, fragment: Fragment) -> list[str]:
        """Add one fragment; return the segments ready to send."""
        self.buffer += self._decode(fragment)
        out: list[str] = []

        last_end = -1
        for match in SENTENCE_END.finditer(self.buffer):
            last_end = match.end()
        if last_end > -1:
            complete, self.buffer = self.buffer[:last_end], self.buffer[last_end:]
            out.extend(self._emit(complete))

        if len(self.buffer) > self.force_flush_chars:
            logger.debug("Force-flushing %d buffered chars", len(self.buffer))
            pending, self.buffer = self.buffer, ""
            out.extend(self._emit(pending))

        return out

    def flush(self) -> list[str]:
        """End of stream: emit whatever is still buffered."""
        self.buffer += self._decoder.decode(b"", final=True)
        pending, self.buffer = self.buffer, ""
        return self._emit(pending)

    async def transform(self, stream: AsyncIterable[Fragment]) -> AsyncIterator[str]:
        """
        Transform an async stream of fragments.

        An upstream error propagates without flushing. If the consumer stops
        early, nothing further is emitted and the upstream is closed.
        """
        iterator = stream.__aiter__()
        try:
            async for fragment in iterator:
                for segment in self.feed(fragment):
                    yield segment
            for segment in self.flush():
                yield segment
        finally:
            aclose = getattr(iterator, "aclose", None)
            if callable(aclose):
                await aclose()
