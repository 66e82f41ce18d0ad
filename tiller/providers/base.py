"""Model provider contract and stream chunk types.

A provider turns (system prompt, history, tool schemas, abort signal) into
a finite, non-restartable async stream of chunks terminated by one
Completion record.  Wire formats, auth and retries are the provider's
business; the turn engine only sees these chunk types.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from tiller.types import AgentMessage, StopReason, Usage

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """The model provider failed (HTTP error, in-stream error, bad script)."""


@dataclass
class TextDelta:
    text: str


@dataclass
class ThinkingDelta:
    thinking: str
    signature: str | None = None


@dataclass
class ToolCallDelta:
    """A complete tool call. Providers never emit partial tool calls."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Completion:
    stop_reason: StopReason = "stop"
    usage: Usage = field(default_factory=Usage)
    error_message: str | None = None


ProviderDelta = Union[TextDelta, ThinkingDelta, ToolCallDelta, Completion]


class ModelProvider(Protocol):
    model_id: str

    def stream(
        self,
        *,
        system_prompt: str,
        messages: list[AgentMessage],
        tools: list[dict[str, Any]],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[ProviderDelta]: ...


async def complete_text(
    provider: ModelProvider,
    system_prompt: str,
    messages: list[AgentMessage],
    signal: asyncio.Event | None = None,
) -> str:
    """Run one tool-less request and return its text.

    Raises ProviderError if the provider reports an error completion.
    """
    parts: list[str] = []
    async for delta in provider.stream(
        system_prompt=system_prompt, messages=messages, tools=[], signal=signal
    ):
        if isinstance(delta, TextDelta):
            parts.append(delta.text)
        elif isinstance(delta, Completion) and delta.stop_reason in ("error", "aborted"):
            raise ProviderError(delta.error_message or f"completion ended with {delta.stop_reason}")
    return "".join(parts)


# ---------------------------------------------------------------------------
# Scripted provider (tests, demos, offline runs)
# ---------------------------------------------------------------------------

ScriptStep = Union[
    Sequence[ProviderDelta],
    BaseException,
    Callable[[list[AgentMessage]], Sequence[ProviderDelta]],
]


@dataclass
class ProviderCall:
    system_prompt: str
    messages: list[AgentMessage]
    tools: list[dict[str, Any]]


class ScriptedProvider:
    """Replays one scripted step per stream() call.

    A step is a list of chunks, an exception to raise, or a callable that
    builds the chunks from the history it was sent.  Every call is
    recorded in .calls (with a copy of the history) for assertions.
    """

    def __init__(
        self,
        steps: Sequence[ScriptStep],
        model_id: str = "scripted",
        delay: float = 0.0,
    ) -> None:
        self.model_id = model_id
        self._steps = list(steps)
        self._delay = delay
        self.calls: list[ProviderCall] = []

    @property
    def remaining(self) -> int:
        return len(self._steps)

    async def stream(
        self,
        *,
        system_prompt: str,
        messages: list[AgentMessage],
        tools: list[dict[str, Any]],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[ProviderDelta]:
        self.calls.append(ProviderCall(system_prompt, list(messages), list(tools)))
        if not self._steps:
            raise ProviderError("scripted provider has no steps left")
        step = self._steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        chunks = step(list(messages)) if callable(step) else step
        for chunk in chunks:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield chunk
