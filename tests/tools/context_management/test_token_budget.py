"""
Tests for token estimation.
"""

import pytest

from agent_rewind.tools.context_management.models import Message, ToolResultBlock
from agent_rewind.tools.context_management.token_budget import (
    BLOCK_OVERHEAD_TOKENS,
    MESSAGE_OVERHEAD_TOKENS,
    TokenEstimator,
)


def test_injected_counter_is_used(estimator):
    message = Message.user("one two three")
    expected = MESSAGE_OVERHEAD_TOKENS + BLOCK_OVERHEAD_TOKENS + 3
    assert estimator.estimate_tokens_for_message(message) == expected


def test_tool_name_is_counted(estimator):
    block = ToolResultBlock(tool_use_id="t", tool_name="read_file", content="a b")
    expected = MESSAGE_OVERHEAD_TOKENS + BLOCK_OVERHEAD_TOKENS + 2 + 1
    assert estimator.estimate_tokens_for_message(Message.user(block)) == expected


def test_empty_text_costs_nothing(estimator):
    assert estimator.estimate_tokens_for_text("") == 0


def test_messages_sum(estimator):
    messages = [Message.user("a"), Message.assistant("b c")]
    assert estimator.estimate_tokens_for_messages(messages) == sum(
        estimator.estimate_tokens_for_message(m) for m in messages
    )


def test_tiktoken_encoding():
    estimator = TokenEstimator(model_name="not-a-real-model")
    try:
        count = estimator.estimate_tokens_for_text("hello world")
    except Exception as exc:  # encodings are downloaded on first use
        pytest.skip(f"tiktoken encoding unavailable: {exc}")
    assert count > 0
