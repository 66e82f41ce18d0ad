"""Tiller -- an event-streamed agent loop for tool-using language models.

Public API:
    agent_loop, agent_loop_continue - Run the loop, get an EventStream
    Agent           - Stateful facade with steering/follow-up queues and abort
    EventStream     - Append-only event log with a terminal result
    AgentTool, FunctionTool, ToolRegistry, ToolOutput - Tool capability
    AgentContext, AgentLoopConfig - Run inputs
    Settings        - Configuration (re-exported from tiller.config)

Messages:
    UserMessage, AssistantMessage, ToolResultMessage, TextContent,
    ThinkingContent, ImageContent, ToolCall, Usage
"""

from tiller.agent import Agent
from tiller.config import Settings
from tiller.events import AgentEvent, EventStream
from tiller.loop import AgentLoopError, agent_loop, agent_loop_continue
from tiller.tools import AgentTool, FunctionTool, ToolOutput, ToolRegistry
from tiller.types import (
    AgentContext,
    AgentLoopConfig,
    AgentMessage,
    AssistantMessage,
    ImageContent,
    TextContent,
    ThinkingContent,
    ToolCall,
    ToolResultMessage,
    Usage,
    UserMessage,
)

__all__ = [
    "Agent",
    "AgentContext",
    "AgentEvent",
    "AgentLoopConfig",
    "AgentLoopError",
    "AgentMessage",
    "AgentTool",
    "AssistantMessage",
    "EventStream",
    "FunctionTool",
    "ImageContent",
    "Settings",
    "TextContent",
    "ThinkingContent",
    "ToolCall",
    "ToolOutput",
    "ToolRegistry",
    "ToolResultMessage",
    "Usage",
    "UserMessage",
    "agent_loop",
    "agent_loop_continue",
]
