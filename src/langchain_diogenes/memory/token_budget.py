"""
Token accounting for the context budget.

Counts text with tiktoken's cl100k_base encoding when it can be loaded and
falls back to a ~4 chars/token estimate otherwise. Message costs prefer the
usage recorded on the message by the provider.
"""

import logging
import math
from functools import lru_cache
from typing import Iterable, Optional

from langchain_core.messages import BaseMessage

from .messages import message_text, message_token_usage
from .types import CompactionSummary

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
MESSAGE_OVERHEAD = 4  # role + formatting tokens per message

# encodings that failed to load in this process
_unavailable_encodings: set[str] = set()


@lru_cache(maxsize=None)
def get_encoding(name: str = DEFAULT_ENCODING):
    """Load a tiktoken encoding once per process."""
    import tiktoken

    return tiktoken.get_encoding(name)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class TokenCounter:
    """
    Token counter used by every budget decision.

    Stateless apart from the one-way switch to the heuristic after the
    tokenizer fails, so a single instance can be shared freely.
    """

    def __init__(
        self,
        encoding_name: str = DEFAULT_ENCODING,
        use_tokenizer: bool = True,
        reserved_tokens: int = 4000,
    ):
        self.encoding_name = encoding_name
        self.use_tokenizer = use_tokenizer
        self.reserved_tokens = reserved_tokens

    def _encoding(self):
        if not self.use_tokenizer:
            return None
        if self.encoding_name in _unavailable_encodings:
            self.use_tokenizer = False
            return None
        try:
            return get_encoding(self.encoding_name)
        except Exception as e:
            logger.warning(
                "Tokenizer %s unavailable, using character estimate: %s",
                self.encoding_name, e,
            )
            _unavailable_encodings.add(self.encoding_name)
            self.use_tokenizer = False
            return None

    def warm(self) -> bool:
        """
        Load the tokenizer now; returns whether it is usable.

        The first load may fetch the BPE file over the network, so async
        callers run this in a worker thread before counting.
        """
        return self._encoding() is not None

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._encoding()
        if encoding is not None:
            try:
                return len(encoding.encode(text, disallowed_special=()))
            except Exception as e:
                logger.warning("Token encoding failed, using estimate: %s", e)
        return estimate_tokens(text)

    def count_message(self, msg: BaseMessage) -> int:
        """Recorded usage if present, else estimated content + overhead."""
        recorded = message_token_usage(msg)
        if recorded is not None:
            return recorded
        return self.count(message_text(msg)) + MESSAGE_OVERHEAD

    def count_messages(
        self,
        messages: Iterable[BaseMessage],
        reserved_tokens: Optional[int] = None,
    ) -> int:
        """Sum of message costs plus the reserved prompt/response tokens."""
        if reserved_tokens is None:
            reserved_tokens = self.reserved_tokens
        return sum(self.count_message(m) for m in messages) + reserved_tokens

    def count_context(
        self,
        messages: Iterable[BaseMessage],
        summaries: Optional[Iterable[CompactionSummary]] = None,
        reserved_tokens: Optional[int] = None,
    ) -> int:
        """Tokens of messages and summaries, including the reserve."""
        total = self.count_messages(messages, reserved_tokens)
        for summary in summaries or ():
            total += summary.token_count
        return total
