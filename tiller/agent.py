"""Stateful agent: history, tool set, steering/follow-up queues, abort.

Wraps agent_loop()/agent_loop_continue() for callers that want one
long-lived conversation.  The queues are owned here and drained
pop-and-clear whenever the loop polls them, so the loop itself stays
stateless between polls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from tiller.events import AgentEndEvent, AgentEvent, EventStream
from tiller.loop import agent_loop, agent_loop_continue
from tiller.providers.base import ModelProvider
from tiller.tools import AgentTool, ToolRegistry
from tiller.types import (
    AgentContext,
    AgentLoopConfig,
    AgentMessage,
    ContextTransform,
    UserMessage,
)

logger = logging.getLogger(__name__)


class Agent:
    """One conversation driven by one provider.

    Only one run may be active at a time; prompt() while streaming raises
    RuntimeError.  Messages produced by a run are appended to the agent's
    history when the run ends.
    """

    def __init__(
        self,
        provider: ModelProvider,
        system_prompt: str = "",
        messages: Iterable[AgentMessage] | None = None,
        tools: Iterable[AgentTool] | None = None,
        transform_context: ContextTransform | None = None,
        max_turns: int | None = None,
    ) -> None:
        self._provider = provider
        self._system_prompt = system_prompt
        self._messages: list[AgentMessage] = list(messages or [])
        self._tools = ToolRegistry(tools or [])
        self._transform_context = transform_context
        self._max_turns = max_turns
        self._steering_queue: list[AgentMessage] = []
        self._follow_up_queue: list[AgentMessage] = []
        self._abort_signal: asyncio.Event | None = None
        self._stream: EventStream[AgentEvent, list[AgentMessage]] | None = None
        self._settle_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[AgentMessage]:
        return list(self._messages)

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def is_streaming(self) -> bool:
        return self._stream is not None

    @property
    def pending_steering(self) -> int:
        return len(self._steering_queue)

    @property
    def pending_follow_ups(self) -> int:
        return len(self._follow_up_queue)

    def set_tools(self, tools: Iterable[AgentTool]) -> None:
        self._tools = ToolRegistry(tools)

    def set_system_prompt(self, system_prompt: str) -> None:
        self._system_prompt = system_prompt

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def steer(self, message: AgentMessage | str) -> None:
        """Queue a message for the next safe injection point of the active run."""
        self._steering_queue.append(_as_message(message))

    def follow_up(self, message: AgentMessage | str) -> None:
        """Queue a message to run after the model stops on its own."""
        self._follow_up_queue.append(_as_message(message))

    def clear_queues(self) -> None:
        self._steering_queue = []
        self._follow_up_queue = []

    def _drain_steering(self) -> list[AgentMessage]:
        drained, self._steering_queue = self._steering_queue, []
        return drained

    def _drain_follow_ups(self) -> list[AgentMessage]:
        drained, self._follow_up_queue = self._follow_up_queue, []
        return drained

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def prompt(
        self, input: str | AgentMessage | list[AgentMessage]
    ) -> EventStream[AgentEvent, list[AgentMessage]]:
        """Start a run with new prompt message(s). Returns the run's stream."""
        self._ensure_idle()
        if isinstance(input, list):
            prompts = list(input)
        else:
            prompts = [_as_message(input)]

        signal = asyncio.Event()
        stream = agent_loop(prompts, self._context(), self._config(), signal)
        return self._track(stream, signal)

    def continue_(self) -> EventStream[AgentEvent, list[AgentMessage]]:
        """Resume from stored history. ValueError if there is none."""
        self._ensure_idle()
        signal = asyncio.Event()
        stream = agent_loop_continue(self._context(), self._config(), signal)
        return self._track(stream, signal)

    def abort(self) -> None:
        """Fire the active run's abort signal. No-op when idle."""
        if self._abort_signal is not None:
            logger.info("Aborting active run")
            self._abort_signal.set()

    async def wait_for_idle(self) -> None:
        if self._settle_task is not None:
            await asyncio.shield(self._settle_task)

    def reset(self) -> None:
        """Forget history and queued messages."""
        self._ensure_idle()
        self._messages = []
        self.clear_queues()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self.is_streaming:
            raise RuntimeError("Agent is already streaming")

    def _context(self) -> AgentContext:
        return AgentContext(
            system_prompt=self._system_prompt,
            messages=list(self._messages),
            tools=self._tools,
        )

    def _config(self) -> AgentLoopConfig:
        return AgentLoopConfig(
            provider=self._provider,
            transform_context=self._transform_context,
            get_steering_messages=self._drain_steering,
            get_follow_up_messages=self._drain_follow_ups,
            max_turns=self._max_turns,
        )

    def _track(
        self,
        stream: EventStream[AgentEvent, list[AgentMessage]],
        signal: asyncio.Event,
    ) -> EventStream[AgentEvent, list[AgentMessage]]:
        self._stream = stream
        self._abort_signal = signal

        # Runs synchronously inside push(agent_end), i.e. before anyone
        # awaiting stream.result() resumes.
        def on_event(event: AgentEvent) -> None:
            if isinstance(event, AgentEndEvent):
                self._messages.extend(event.messages)
                self._release(stream)

        stream.subscribe(on_event)
        self._settle_task = asyncio.get_running_loop().create_task(
            self._settle(stream), name="agent-settle"
        )
        return stream

    async def _settle(self, stream: EventStream[AgentEvent, list[AgentMessage]]) -> None:
        try:
            await stream.result()
        except Exception as e:
            logger.error("Agent run failed: %s", e)
        finally:
            self._release(stream)

    def _release(self, stream: EventStream[AgentEvent, list[AgentMessage]]) -> None:
        if self._stream is stream:
            self._stream = None
            self._abort_signal = None


def _as_message(message: AgentMessage | str) -> AgentMessage:
    if isinstance(message, str):
        return UserMessage(content=message)
    return message
