"""
Helpers for reading conversation messages.

Messages are plain LangChain messages. The pipeline needs a few fields the
base classes do not model directly, so they travel in the standard slots:

- timestamp: ``additional_kwargs["timestamp"]`` (a ``datetime``)
- recorded token usage: ``usage_metadata["total_tokens"]`` on AI messages,
  or ``response_metadata["token_usage"]`` in the OpenAI layout
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)

_ROLE_BY_TYPE = {
    "human": "user",
    "ai": "assistant",
    "system": "system",
}


def make_message(
    role: str,
    content: str,
    *,
    id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    token_usage: Optional[dict] = None,
) -> BaseMessage:
    """
    Build a LangChain message carrying the pipeline's metadata.

    Args:
        role: "user", "assistant" or "system"
        content: message text
        id: message id (a uuid is generated when omitted)
        timestamp: creation time (now, UTC, when omitted)
        token_usage: {"prompt_tokens", "completion_tokens", "total_tokens"}
    """
    kwargs = {
        "content": content,
        "id": id or f"msg-{uuid.uuid4().hex[:12]}",
        "additional_kwargs": {
            "timestamp": timestamp or datetime.now(timezone.utc),
        },
    }
    if token_usage:
        kwargs["response_metadata"] = {"token_usage": dict(token_usage)}

    if role == "user":
        return HumanMessage(**kwargs)
    if role == "assistant":
        return AIMessage(**kwargs)
    if role == "system":
        return SystemMessage(**kwargs)
    raise ValueError(f"Unknown message role: {role!r}")


def message_role(msg: BaseMessage) -> str:
    """Map a LangChain message type to user / assistant / system."""
    return _ROLE_BY_TYPE.get(msg.type, msg.type)


def message_text(msg: BaseMessage) -> str:
    """Flatten message content (string or content blocks) to text."""
    content = msg.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                # thinking / reasoning blocks are not part of the visible text
                if block.get("type") in ("thinking", "reasoning"):
                    continue
                text = block.get("text") or ""
                if text:
                    parts.append(text)
        return "".join(parts)
    return str(content) if content else ""


def message_timestamp(msg: BaseMessage) -> Optional[datetime]:
    ts = msg.additional_kwargs.get("timestamp")
    return ts if isinstance(ts, datetime) else None


def message_token_usage(msg: BaseMessage) -> Optional[int]:
    """Return the recorded total token count of a message, if any."""
    usage = getattr(msg, "usage_metadata", None)
    if usage and usage.get("total_tokens"):
        return int(usage["total_tokens"])
    token_usage = msg.response_metadata.get("token_usage") or {}
    total = token_usage.get("total_tokens")
    if total:
        return int(total)
    return None


def sort_chronologically(messages: list[BaseMessage]) -> list[BaseMessage]:
    """
    Return a copy sorted by timestamp, oldest first.

    The sort is stable. If any message lacks a timestamp the original order
    is kept, since mixing dated and undated messages has no meaningful order.
    """
    stamps = [message_timestamp(m) for m in messages]
    if any(ts is None for ts in stamps):
        return list(messages)
    return sorted(messages, key=lambda m: _aware(message_timestamp(m)))


def _aware(ts: datetime) -> datetime:
    # naive timestamps are taken as UTC so they compare with aware ones
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
