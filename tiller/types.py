"""Conversation data model shared by the loop, tools and providers.

Messages are plain dataclasses.  User and tool-result messages are frozen
once built; an assistant message is mutated only by the turn engine while
it is being streamed, and is treated as read-only after its message_end
event is published.
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

if TYPE_CHECKING:
    import asyncio

    from tiller.providers.base import ModelProvider
    from tiller.tools import ToolRegistry

StopReason = Literal["stop", "length", "tool_use", "error", "aborted"]

STOP_REASONS: frozenset[str] = frozenset({"stop", "length", "tool_use", "error", "aborted"})


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------


@dataclass
class TextContent:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ThinkingContent:
    thinking: str
    signature: str | None = None
    type: Literal["thinking"] = "thinking"


@dataclass(frozen=True)
class ImageContent:
    data: str  # base64
    mime_type: str
    type: Literal["image"] = "image"


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the model.

    Always lives inside an assistant message's content, never on its own.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_call"] = "tool_call"


AssistantContent = Union[TextContent, ThinkingContent, ToolCall]
UserContent = Union[TextContent, ImageContent]


@dataclass
class Usage:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total_tokens: int = 0


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserMessage:
    content: str | list[UserContent]
    timestamp: float = field(default_factory=time.time)
    role: Literal["user"] = "user"

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextContent))


@dataclass
class AssistantMessage:
    content: list[AssistantContent] = field(default_factory=list)
    model: str = ""
    usage: Usage = field(default_factory=Usage)
    stop_reason: StopReason = "stop"
    error_message: str | None = None
    timestamp: float = field(default_factory=time.time)
    role: Literal["assistant"] = "assistant"

    def tool_calls(self) -> list[ToolCall]:
        """Tool-call parts in the order the model emitted them."""
        return [part for part in self.content if isinstance(part, ToolCall)]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextContent))


@dataclass(frozen=True)
class ToolResultMessage:
    tool_call_id: str
    tool_name: str
    content: list[UserContent] = field(default_factory=list)
    details: Any = None
    is_error: bool = False
    timestamp: float = field(default_factory=time.time)
    role: Literal["toolResult"] = "toolResult"

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextContent))


AgentMessage = Union[UserMessage, AssistantMessage, ToolResultMessage]

# Steering / follow-up sources: sync or async, drained on read by the caller.
MessageSource = Callable[[], "list[AgentMessage] | Awaitable[list[AgentMessage]]"]

# transform_context hook: (messages, signal) -> new list, never mutate the input.
ContextTransform = Callable[
    ["list[AgentMessage]", "asyncio.Event | None"], Awaitable["list[AgentMessage]"]
]


def user_message(text: str) -> UserMessage:
    return UserMessage(content=text)


async def poll_messages(source: MessageSource | None) -> list[AgentMessage]:
    """Ask a steering/follow-up source for messages. None means no source."""
    if source is None:
        return []
    result = source()
    if inspect.isawaitable(result):
        result = await result
    return list(result or [])


def _empty_registry() -> ToolRegistry:
    from tiller.tools import ToolRegistry

    return ToolRegistry()


# ---------------------------------------------------------------------------
# Run inputs
# ---------------------------------------------------------------------------


@dataclass
class AgentContext:
    """Conversation state owned by exactly one running loop."""

    system_prompt: str = ""
    messages: list[AgentMessage] = field(default_factory=list)
    tools: ToolRegistry = field(default_factory=_empty_registry)


@dataclass
class AgentLoopConfig:
    """Collaborators and policy knobs for one loop run.

    provider: streams one assistant response per turn.
    transform_context: optional hook applied to the history right before
        each provider call (compaction plugs in here).
    get_steering_messages: polled after every tool result and after every
        turn; a non-empty answer pre-empts the rest of a tool batch.
    get_follow_up_messages: polled only once the model stops calling tools.
    max_turns: optional guard on the number of model turns per run.
    """

    provider: ModelProvider
    transform_context: ContextTransform | None = None
    get_steering_messages: MessageSource | None = None
    get_follow_up_messages: MessageSource | None = None
    max_turns: int | None = None
