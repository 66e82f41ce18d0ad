"""Agent loop -- the turn scheduler.

Sequences model turns and tool batches for one run and publishes the
whole lifecycle onto a single EventStream:

    agent_start
    turn_start, [prompt message_start/end...], [steering...]
      assistant message_start / message_update* / message_end
      [tool_execution_* / tool-result message_start/end]*
    turn_end
    [injected steering / follow-up message_start/end]
    turn_start ...
    agent_end(messages produced by this run)

Continuation priority after every turn:
  1. steering returned by the tool batch (it cut the batch short)
  2. steering polled fresh
  3. another turn if the model called tools; otherwise follow-up messages
  4. terminate

Everything inside one run happens in a single task, so history needs no
locking: the loop is the only writer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import replace
from typing import Any

from tiller.events import (
    AgentEndEvent,
    AgentEvent,
    AgentStartEvent,
    EventStream,
    MessageEndEvent,
    MessageStartEvent,
    TurnEndEvent,
    TurnStartEvent,
    create_agent_stream,
)
from tiller.tools import execute_tool_calls
from tiller.turn import stream_assistant_response
from tiller.types import (
    AgentContext,
    AgentLoopConfig,
    AgentMessage,
    ToolResultMessage,
    poll_messages,
)

logger = logging.getLogger(__name__)

AgentStream = EventStream[AgentEvent, list[AgentMessage]]


class AgentLoopError(RuntimeError):
    """The loop itself broke (not the model, not a tool)."""


def agent_loop(
    prompts: list[AgentMessage],
    context: AgentContext,
    config: AgentLoopConfig,
    signal: asyncio.Event | None = None,
) -> AgentStream:
    """Start a fresh run: append prompts to the history and drive the model.

    Must be called with a running event loop. Returns immediately; the run
    continues in a background task publishing onto the returned stream.
    """
    stream = create_agent_stream()
    prompts = list(prompts)
    run_context = replace(context, messages=[*context.messages, *prompts])

    async def _run() -> None:
        stream.push(AgentStartEvent())
        stream.push(TurnStartEvent())
        for prompt in prompts:
            stream.push(MessageStartEvent(message=prompt))
            stream.push(MessageEndEvent(message=prompt))
        await _run_loop(run_context, list(prompts), config, signal, stream)

    _spawn(_run(), stream)
    return stream


def agent_loop_continue(
    context: AgentContext,
    config: AgentLoopConfig,
    signal: asyncio.Event | None = None,
) -> AgentStream:
    """Resume from stored history without new prompts.

    Raises ValueError right away if there is no history to continue.
    """
    if not context.messages:
        raise ValueError("Cannot continue: no messages in context")

    stream = create_agent_stream()
    run_context = replace(context, messages=list(context.messages))

    async def _run() -> None:
        stream.push(AgentStartEvent())
        stream.push(TurnStartEvent())
        await _run_loop(run_context, [], config, signal, stream)

    _spawn(_run(), stream)
    return stream


def _spawn(coro: Coroutine[Any, Any, None], stream: AgentStream) -> asyncio.Task:
    async def _guarded() -> None:
        try:
            await coro
        except asyncio.CancelledError:
            stream.error(AgentLoopError("Agent loop task was cancelled"))
            raise
        except Exception as e:
            logger.exception("Agent loop failed")
            stream.error(e)
        else:
            if not stream.ended:
                stream.error(AgentLoopError("Agent loop exited without agent_end"))

    task = asyncio.get_running_loop().create_task(_guarded(), name="agent-loop")
    _RUNNING.add(task)
    task.add_done_callback(_RUNNING.discard)
    return task


# Strong references so a run is not garbage-collected mid-flight.
_RUNNING: set[asyncio.Task] = set()


def _inject(
    messages: list[AgentMessage],
    context: AgentContext,
    new_messages: list[AgentMessage],
    stream: AgentStream,
) -> None:
    for message in messages:
        stream.push(MessageStartEvent(message=message))
        stream.push(MessageEndEvent(message=message))
        context.messages.append(message)
        new_messages.append(message)


async def _run_loop(
    context: AgentContext,
    new_messages: list[AgentMessage],
    config: AgentLoopConfig,
    signal: asyncio.Event | None,
    stream: AgentStream,
) -> None:
    # Steering queued before the run starts is folded in ahead of the first turn.
    _inject(await poll_messages(config.get_steering_messages), context, new_messages, stream)

    turns = 0
    first_turn = True
    while True:
        if not first_turn:
            stream.push(TurnStartEvent())
        first_turn = False

        message = await stream_assistant_response(context, config, signal, stream)
        context.messages.append(message)
        new_messages.append(message)
        turns += 1

        if message.stop_reason in ("error", "aborted"):
            stream.push(TurnEndEvent(message=message, tool_results=[]))
            break

        tool_results: list[ToolResultMessage] = []
        steering_after_tools: list[AgentMessage] | None = None
        has_tool_calls = bool(message.tool_calls())
        if has_tool_calls:
            batch = await execute_tool_calls(
                context.tools, message, signal, stream, config.get_steering_messages
            )
            tool_results = batch.tool_results
            steering_after_tools = batch.steering_messages
            for result in tool_results:
                context.messages.append(result)
                new_messages.append(result)

        stream.push(TurnEndEvent(message=message, tool_results=tool_results))

        limit_reached = config.max_turns is not None and turns >= config.max_turns

        if steering_after_tools:
            # Already drained from the caller's queue: record it even when stopping.
            _inject(steering_after_tools, context, new_messages, stream)
            if not limit_reached:
                continue

        if limit_reached:
            logger.warning("Agent loop reached max_turns=%d, stopping", config.max_turns)
            break

        steering = await poll_messages(config.get_steering_messages)
        if steering:
            _inject(steering, context, new_messages, stream)
            continue

        if has_tool_calls:
            continue

        follow_ups = await poll_messages(config.get_follow_up_messages)
        if follow_ups:
            _inject(follow_ups, context, new_messages, stream)
            continue

        break

    logger.debug("Agent run finished: turns=%d new_messages=%d", turns, len(new_messages))
    stream.push(AgentEndEvent(messages=list(new_messages)))
