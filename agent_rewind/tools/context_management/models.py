"""Data model for conversation history and the context overlay.

Content blocks are a tagged union keyed on ``type``; rendering code matches on
the concrete block class rather than inspecting open-ended metadata maps.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from agent_rewind.config import ModelWindowConfig


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class UpdateType(str, Enum):
    """How a ContextUpdate is rendered in place of the original block."""

    REPLACE = "replace"
    NOTE = "note"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)

    @property
    def body(self) -> str:
        return self.text

    def with_body(self, body: str) -> "TextBlock":
        return TextBlock(text=body)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of a tool execution, as appended to the conversation."""

    tool_use_id: str
    tool_name: str
    content: str
    file_path: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_result", init=False)

    @property
    def body(self) -> str:
        return self.content

    def with_body(self, body: str) -> "ToolResultBlock":
        return replace(self, content=body)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "tool_name": self.tool_name,
            "content": self.content,
        }
        if self.file_path is not None:
            data["file_path"] = self.file_path
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        return data


ContentBlock = Union[TextBlock, ToolResultBlock]


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its serialized form."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data["text"])
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            tool_name=data["tool_name"],
            content=data["content"],
            file_path=data.get("file_path"),
            parameters=data.get("parameters", {}),
        )
    raise ValueError(f"Unknown content block type: {block_type!r}")


@dataclass(frozen=True)
class Message:
    """One conversation turn. Its index is its position in the raw history."""

    role: Role
    blocks: List[ContentBlock]

    @classmethod
    def user(cls, *blocks: Union[str, ContentBlock]) -> "Message":
        return cls(Role.USER, [TextBlock(b) if isinstance(b, str) else b for b in blocks])

    @classmethod
    def assistant(cls, *blocks: Union[str, ContentBlock]) -> "Message":
        return cls(Role.ASSISTANT, [TextBlock(b) if isinstance(b, str) else b for b in blocks])

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "blocks": [b.to_dict() for b in self.blocks]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(Role(data["role"]), [block_from_dict(b) for b in data.get("blocks", [])])


@dataclass(frozen=True)
class ContextUpdate:
    """A non-destructive edit rendered in place of the original block content."""

    timestamp: float
    update_type: UpdateType
    value: str
    message_index: int
    block_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "update_type": self.update_type.value,
            "value": self.value,
            "message_index": self.message_index,
            "block_index": self.block_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextUpdate":
        return cls(
            timestamp=data["timestamp"],
            update_type=UpdateType(data["update_type"]),
            value=data["value"],
            message_index=data["message_index"],
            block_index=data["block_index"],
        )


@dataclass(frozen=True)
class TruncationRange:
    """Inclusive span of message indices hidden from the model."""

    start: int
    end: int

    def __post_init__(self):
        if self.start < 1:
            raise ValueError("Truncation range must start at 1 or later; index 0 is never elided")
        if self.end < self.start:
            raise ValueError(f"Invalid truncation range [{self.start}, {self.end}]")

    def __contains__(self, index: int) -> bool:
        return self.start <= index <= self.end

    def covers(self, other: Optional["TruncationRange"]) -> bool:
        return other is None or (self.start <= other.start and self.end >= other.end)

    def to_list(self) -> List[int]:
        return [self.start, self.end]

    @classmethod
    def from_list(cls, data: Optional[List[int]]) -> Optional["TruncationRange"]:
        if not data:
            return None
        return cls(int(data[0]), int(data[1]))


@dataclass(frozen=True)
class ModelContextProfile:
    context_window_tokens: int
    reserved_output_tokens: int

    @property
    def safe_budget(self) -> int:
        return self.context_window_tokens - self.reserved_output_tokens

    @classmethod
    def for_context_window(cls, context_window_tokens: int,
                           default_reserved: int = 40_000) -> "ModelContextProfile":
        """Derive the output reservation from the window size.

        Small windows get fixed reservations; larger ones reserve the smaller
        of ``default_reserved`` and a fifth of the window.
        """
        if context_window_tokens <= 64_000:
            reserved = 27_000
        elif context_window_tokens <= 128_000:
            reserved = 30_000
        elif context_window_tokens <= 200_000:
            reserved = 40_000
        else:
            reserved = context_window_tokens - max(context_window_tokens - default_reserved,
                                                   int(context_window_tokens * 0.8))
        return cls(context_window_tokens, min(reserved, context_window_tokens // 2))

    @classmethod
    def from_config(cls, window: ModelWindowConfig, default_reserved: int = 40_000) -> "ModelContextProfile":
        if window.reserved_output_tokens is not None:
            return cls(window.context_window_tokens, window.reserved_output_tokens)
        return cls.for_context_window(window.context_window_tokens, default_reserved)
