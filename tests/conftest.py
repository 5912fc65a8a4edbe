"""
Pytest 会自动加载 conftest.py：这里把 src 目录加入模块搜索路径，
测试文件即可直接 import langchain_diogenes，并共享下面的 fixtures。
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_diogenes.memory.messages import make_message  # noqa: E402
from langchain_diogenes.memory.token_budget import TokenCounter  # noqa: E402

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def build_conversation(count: int, chars: int = 200) -> list:
    """Alternating user/assistant messages, one minute apart, ``chars`` long each."""
    messages = []
    for i in range(count):
        prefix = f"Message {i:02d} "
        messages.append(
            make_message(
                "user" if i % 2 == 0 else "assistant",
                prefix + "x" * (chars - len(prefix)),
                id=f"msg-{i}",
                timestamp=BASE_TIME + timedelta(minutes=i),
            )
        )
    return messages


@pytest.fixture
def counter():
    """Character-estimate counter: 200-char messages cost 54 tokens each."""
    return TokenCounter(use_tokenizer=False, reserved_tokens=400)


@pytest.fixture
def conversation():
    return build_conversation


@pytest.fixture(autouse=True)
def reset_encoding_failures():
    """tokenizer 加载失败会在进程内被记住，每个测试前清空"""
    from langchain_diogenes.memory import token_budget

    token_budget._unavailable_encodings.clear()
    yield
    token_budget._unavailable_encodings.clear()
