"""
Token estimation for conversation histories.

Uses tiktoken for token counting. Callers that need deterministic counts (or
a provider-specific tokenizer) can pass any ``str -> int`` callable instead.
"""

import logging
from typing import Callable, Iterable, Optional

import tiktoken

from agent_rewind.tools.context_management.models import Message, ToolResultBlock

logger = logging.getLogger(__name__)

# Fixed overhead per message and per block for role markers and separators
MESSAGE_OVERHEAD_TOKENS = 4
BLOCK_OVERHEAD_TOKENS = 2

TokenCounter = Callable[[str], int]


class TokenEstimator:
    """
    Estimates token count for messages using tiktoken.
    """

    def __init__(self, model_name: str = "gpt-4", counter: Optional[TokenCounter] = None):
        """
        Initialize the token estimator.

        Args:
            model_name: Name of the model whose encoding is used for counting
            counter: Optional callable overriding tiktoken entirely
        """
        self.model_name = model_name
        self._counter = counter
        self._encoding = None

    @property
    def encoding(self):
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model_name)
            except KeyError:
                # Fallback to cl100k_base encoding for unknown model names
                logger.warning("Model %s not found. Using cl100k_base encoding.", self.model_name)
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def estimate_tokens_for_text(self, text: str) -> int:
        if not text:
            return 0
        if self._counter is not None:
            return self._counter(text)
        return len(self.encoding.encode(text, disallowed_special=()))

    def estimate_tokens_for_message(self, message: Message) -> int:
        total = MESSAGE_OVERHEAD_TOKENS
        for block in message.blocks:
            total += BLOCK_OVERHEAD_TOKENS + self.estimate_tokens_for_text(block.body)
            if isinstance(block, ToolResultBlock):
                total += self.estimate_tokens_for_text(block.tool_name)
        return total

    def estimate_tokens_for_messages(self, messages: Iterable[Message]) -> int:
        """Estimate the total prompt cost of a message sequence."""
        return sum(self.estimate_tokens_for_message(m) for m in messages)
