"""Shared data models for the API layer.

Messages are built from typed content blocks and serialised to the
Anthropic Messages API wire format.  Kept free of other forge imports so
the decoder, context manager, dispatcher and runner can all share it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"

    @classmethod
    def parse(cls, value: Any) -> StopReason | None:
        """Map a wire stop_reason string to a StopReason, None if unrecognised."""
        try:
            return cls(value)
        except (ValueError, TypeError):
            return None


@dataclass
class TextBlock:
    text: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolUseBlock:
    """A model-issued tool call.

    ``input`` is None when the arguments never arrived intact (stream cut
    short or unparseable JSON); dispatch treats that as corrupt input.
    """

    id: str
    name: str
    input: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool | None = None  # omitted on the wire when None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error is not None:
            wire["is_error"] = self.is_error
        return wire


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_wire(data: dict[str, Any]) -> ContentBlock:
    """Rebuild a content block from its wire dict."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""))
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], input=data.get("input"))
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=data.get("content", ""),
            is_error=data.get("is_error"),
        )
    raise ValueError(f"Unknown content block type: {block_type!r}")


@dataclass
class Message:
    """A single role-tagged message in a conversation."""

    role: Role
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def user_text(cls, text: str) -> Message:
        return cls(role=Role.USER, content=[TextBlock(text=text)])

    def to_wire(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": [b.to_wire() for b in self.content]}

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=Role(data["role"]),
            content=[block_from_wire(b) for b in data.get("content", [])],
        )

    def is_tool_result_message(self) -> bool:
        """True for user messages that answer tool calls rather than start an exchange."""
        return (
            self.role == Role.USER
            and bool(self.content)
            and isinstance(self.content[0], ToolResultBlock)
        )

    def is_exchange_start(self) -> bool:
        """True for user messages whose first block is text: a fresh user turn."""
        return (
            self.role == Role.USER
            and bool(self.content)
            and isinstance(self.content[0], TextBlock)
        )

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass
class Usage:
    """Token counts reported by the API for one response."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


def to_json(data: Any) -> str:
    """Compact JSON with non-ASCII text left as-is, matching the request body."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def message_size(message: Message) -> int:
    """Serialised size of a message in bytes of its wire representation."""
    return len(to_json(message.to_wire()).encode("utf-8"))
