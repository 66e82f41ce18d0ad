"""Tool capability, tool registry and the sequential tool execution engine.

Provides:
- AgentTool: the capability interface every tool implements
- FunctionTool: wraps a plain async handler (closure style) as an AgentTool
- ToolRegistry: closed name -> tool mapping, resolved once per call
- execute_tool_calls: runs one assistant message's tool calls in order

Tool failures never escape execute_tool_calls.  A thrown error, a missing
tool or an abort all become a ToolResultMessage with is_error=True.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from tiller.events import (
    AgentEvent,
    EventStream,
    MessageEndEvent,
    MessageStartEvent,
    ToolExecutionEndEvent,
    ToolExecutionStartEvent,
    ToolExecutionUpdateEvent,
)
from tiller.types import (
    AgentMessage,
    AssistantMessage,
    MessageSource,
    TextContent,
    ToolCall,
    ToolResultMessage,
    UserContent,
    poll_messages,
)

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[Any], None]


class ToolAbortedError(Exception):
    """The abort signal fired while a tool was running."""


@dataclass
class ToolOutput:
    """What a tool hands back: content for the model, details for the UI."""

    content: list[UserContent] = field(default_factory=list)
    details: Any = None

    @classmethod
    def text(cls, text: str, details: Any = None) -> ToolOutput:
        return cls(content=[TextContent(text=text)], details=details)


# ---------------------------------------------------------------------------
# Tool capability
# ---------------------------------------------------------------------------


class AgentTool(ABC):
    """A callable capability exposed to the model."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    label: str | None = None

    @abstractmethod
    async def execute(
        self,
        tool_call_id: str,
        args: dict[str, Any],
        signal: asyncio.Event | None,
        on_update: UpdateCallback,
    ) -> ToolOutput:
        """Run the tool. May raise; may call on_update any number of times."""

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class FunctionTool(AgentTool):
    """AgentTool backed by an async handler called with **args.

    The handler may additionally declare any of the keyword parameters
    tool_call_id, signal and on_update to receive the call context.
    It may return a ToolOutput, a string, or an MCP-style
    {"content": [{"type": "text", "text": ...}]} dict.
    """

    _CONTEXT_PARAMS = ("tool_call_id", "signal", "on_update")

    def __init__(
        self,
        name: str,
        handler: Callable[..., Awaitable[Any]],
        description: str = "",
        parameters: dict[str, Any] | None = None,
        label: str | None = None,
    ) -> None:
        self.name = name
        self.description = description or (parameters or {}).get("description", "")
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.label = label
        self._handler = handler
        accepted = inspect.signature(handler).parameters
        self._context_params = [p for p in self._CONTEXT_PARAMS if p in accepted]

    async def execute(
        self,
        tool_call_id: str,
        args: dict[str, Any],
        signal: asyncio.Event | None,
        on_update: UpdateCallback,
    ) -> ToolOutput:
        available = {"tool_call_id": tool_call_id, "signal": signal, "on_update": on_update}
        context = {name: available[name] for name in self._context_params}
        result = await self._handler(**args, **context)
        return _to_output(result)


def _to_output(result: Any) -> ToolOutput:
    if isinstance(result, ToolOutput):
        return result
    if isinstance(result, str):
        return ToolOutput.text(result)
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        content: list[UserContent] = []
        for block in result["content"]:
            if isinstance(block, dict) and block.get("type") == "text":
                content.append(TextContent(text=block.get("text", "")))
            else:
                content.append(TextContent(text=json.dumps(block, default=str)))
        return ToolOutput(content=content, details=result.get("details"))
    return ToolOutput.text(json.dumps(result, default=str))


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Registers tools by name and resolves tool calls against them."""

    def __init__(self, tools: Iterable[AgentTool] = ()) -> None:
        self._tools: dict[str, AgentTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: AgentTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("Registered tool '%s'", tool.name)

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    def definitions(self) -> list[dict[str, Any]]:
        """Provider-neutral tool schemas: name, description, parameters."""
        return [tool.definition() for tool in self._tools.values()]

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[AgentTool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)


# ---------------------------------------------------------------------------
# Tool execution engine
# ---------------------------------------------------------------------------


@dataclass
class ToolBatchResult:
    tool_results: list[ToolResultMessage] = field(default_factory=list)
    # Set when steering arrived mid-batch and the rest of the batch was dropped.
    steering_messages: list[AgentMessage] | None = None


async def execute_tool_calls(
    registry: ToolRegistry,
    assistant_message: AssistantMessage,
    signal: asyncio.Event | None,
    stream: EventStream[AgentEvent, list[AgentMessage]],
    get_steering_messages: MessageSource | None = None,
) -> ToolBatchResult:
    """Execute the message's tool calls one at a time, in order.

    Stops early (keeping results produced so far) when steering messages
    show up after a result, or when the abort signal is set.
    """
    batch = ToolBatchResult()
    tool_calls = assistant_message.tool_calls()

    for index, call in enumerate(tool_calls):
        if signal is not None and signal.is_set():
            logger.info(
                "Abort set, skipping %d remaining tool call(s)", len(tool_calls) - index
            )
            break

        result = await _execute_one(registry, call, signal, stream)
        batch.tool_results.append(result)

        steering = await poll_messages(get_steering_messages)
        if steering:
            skipped = len(tool_calls) - index - 1
            if skipped:
                logger.info("Steering received, abandoning %d queued tool call(s)", skipped)
            batch.steering_messages = steering
            break

    return batch


async def _execute_one(
    registry: ToolRegistry,
    call: ToolCall,
    signal: asyncio.Event | None,
    stream: EventStream[AgentEvent, list[AgentMessage]],
) -> ToolResultMessage:
    stream.push(
        ToolExecutionStartEvent(tool_call_id=call.id, tool_name=call.name, args=call.arguments)
    )

    active = True

    def on_update(partial_result: Any) -> None:
        if not active:
            logger.debug("Dropping late update from tool %s (%s)", call.name, call.id)
            return
        stream.push(
            ToolExecutionUpdateEvent(
                tool_call_id=call.id,
                tool_name=call.name,
                args=call.arguments,
                partial_result=partial_result,
            )
        )

    is_error = False
    tool = registry.get(call.name)
    try:
        if tool is None:
            raise LookupError(f"Tool {call.name} not found")
        output = await _run_with_abort(tool, call, signal, on_update)
    except Exception as e:
        logger.warning("Tool %s (%s) failed: %s", call.name, call.id, e)
        output = ToolOutput.text(str(e) or type(e).__name__, details={})
        is_error = True
    finally:
        active = False

    stream.push(
        ToolExecutionEndEvent(
            tool_call_id=call.id, tool_name=call.name, result=output, is_error=is_error
        )
    )

    message = ToolResultMessage(
        tool_call_id=call.id,
        tool_name=call.name,
        content=list(output.content),
        details=output.details,
        is_error=is_error,
    )
    stream.push(MessageStartEvent(message=message))
    stream.push(MessageEndEvent(message=message))
    return message


async def _run_with_abort(
    tool: AgentTool,
    call: ToolCall,
    signal: asyncio.Event | None,
    on_update: UpdateCallback,
) -> ToolOutput:
    """Run the tool, cancelling it if the abort signal fires first."""
    if signal is None:
        try:
            return await tool.execute(call.id, call.arguments, signal, on_update)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The tool raised CancelledError on its own; nobody cancelled us.
            raise ToolAbortedError("Tool execution cancelled") from None

    task = asyncio.ensure_future(tool.execute(call.id, call.arguments, signal, on_update))
    abort_wait = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        abort_wait.cancel()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Tool %s raised while being cancelled", call.name, exc_info=True)

    if task.cancelled():
        raise ToolAbortedError("Tool execution aborted")
    return task.result()
