"""Shared data models for the orchestration layer.

Messages and content blocks are tagged unions: every variant carries a
literal discriminator (`role` for messages, `type` for blocks) so callers
can match on it exhaustively.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass
class ToolCallBlock:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: Literal["toolCall"] = field(default="toolCall", init=False)


@dataclass
class ThinkingBlock:
    thinking: str
    signature: str | None = None  # opaque provider token, echoed back verbatim
    type: Literal["thinking"] = field(default="thinking", init=False)


ContentBlock = TextBlock | ToolCallBlock | ThinkingBlock


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class UserMessage:
    text: str
    timestamp: int = field(default_factory=now_ms)
    role: Literal["user"] = field(default="user", init=False)


@dataclass
class AssistantMessage:
    """One completion result: content blocks plus response metadata."""

    content: list[ContentBlock] = field(default_factory=list)
    stop_reason: str = "stop"  # stop, length, toolUse, error, aborted
    usage: dict[str, int] | None = None
    error_message: str | None = None
    timestamp: int = field(default_factory=now_ms)
    role: Literal["assistant"] = field(default="assistant", init=False)

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass
class ToolResultMessage:
    tool_call_id: str
    tool_name: str
    text: str
    is_error: bool = False
    timestamp: int = field(default_factory=now_ms)
    role: Literal["toolResult"] = field(default="toolResult", init=False)


Message = UserMessage | AssistantMessage | ToolResultMessage


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------


@dataclass
class Context:
    """Conversation state owned by the active turn."""

    system_prompt: str
    messages: list[Message] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CompactionState:
    """Running summary of compacted messages, carried across turns."""

    summary: str = ""


@dataclass(frozen=True)
class ModelInfo:
    """Descriptor for the model a completion is sent to."""

    provider: str
    id: str
    api: Literal["anthropic-messages", "openai-completions"]
    base_url: str
    context_window: int
    max_tokens: int
    reasoning: bool = False
