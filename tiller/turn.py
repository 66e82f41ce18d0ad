"""Turn engine -- one streamed request/response against the model.

Builds a single AssistantMessage part by part as provider chunks arrive
and publishes a message_update after every change.  Provider failures and
aborts are recorded on the message (stop_reason "error" / "aborted"),
never raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from tiller.events import (
    AgentEvent,
    EventStream,
    MessageEndEvent,
    MessageStartEvent,
    MessageUpdateEvent,
)
from tiller.providers.base import (
    Completion,
    ProviderDelta,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
)
from tiller.types import (
    STOP_REASONS,
    AgentContext,
    AgentLoopConfig,
    AgentMessage,
    AssistantMessage,
    TextContent,
    ThinkingContent,
    ToolCall,
)

logger = logging.getLogger(__name__)

_EXHAUSTED = object()


class _TurnAborted(Exception):
    pass


async def stream_assistant_response(
    context: AgentContext,
    config: AgentLoopConfig,
    signal: asyncio.Event | None,
    stream: EventStream[AgentEvent, list[AgentMessage]],
) -> AssistantMessage:
    """Stream one assistant message and return it once message_end is out."""
    provider = config.provider
    message = AssistantMessage(model=getattr(provider, "model_id", ""))
    completion: Completion | None = None

    stream.push(MessageStartEvent(message=message))

    try:
        messages = context.messages
        if config.transform_context is not None:
            messages = await config.transform_context(list(messages), signal)

        _raise_if_aborted(signal)
        chunks = provider.stream(
            system_prompt=context.system_prompt,
            messages=list(messages),
            tools=context.tools.definitions(),
            signal=signal,
        )
        try:
            while True:
                delta = await _next_chunk(chunks, signal)
                if delta is _EXHAUSTED:
                    break
                if isinstance(delta, Completion):
                    completion = delta
                    continue
                _apply_delta(message, delta)
                stream.push(MessageUpdateEvent(message=message, delta=delta))
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
    except _TurnAborted:
        message.stop_reason = "aborted"
        message.error_message = "Request was aborted"
        logger.info("Turn aborted after %d content part(s)", len(message.content))
    except Exception as e:
        message.stop_reason = "error"
        message.error_message = str(e) or type(e).__name__
        logger.warning("Provider stream failed: %s", message.error_message)
    else:
        _finalize(message, completion)

    stream.push(MessageEndEvent(message=message))
    logger.debug(
        "Assistant turn done: stop_reason=%s parts=%d tool_calls=%d",
        message.stop_reason,
        len(message.content),
        len(message.tool_calls()),
    )
    return message


def _raise_if_aborted(signal: asyncio.Event | None) -> None:
    if signal is not None and signal.is_set():
        raise _TurnAborted()


async def _next_chunk(
    chunks: AsyncIterator[ProviderDelta], signal: asyncio.Event | None
) -> Any:
    """Await the next chunk, giving up as soon as the abort signal fires."""
    _raise_if_aborted(signal)
    if signal is None:
        return await anext(chunks, _EXHAUSTED)

    pending = asyncio.ensure_future(anext(chunks, _EXHAUSTED))
    abort_wait = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({pending, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        abort_wait.cancel()
        if not pending.done():
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass

    if pending.cancelled():
        raise _TurnAborted()
    return pending.result()


def _apply_delta(message: AssistantMessage, delta: ProviderDelta) -> None:
    last = message.content[-1] if message.content else None

    if isinstance(delta, TextDelta):
        if isinstance(last, TextContent):
            last.text += delta.text
        else:
            message.content.append(TextContent(text=delta.text))
    elif isinstance(delta, ThinkingDelta):
        if isinstance(last, ThinkingContent):
            last.thinking += delta.thinking
            if delta.signature:
                last.signature = delta.signature
        else:
            message.content.append(
                ThinkingContent(thinking=delta.thinking, signature=delta.signature)
            )
    elif isinstance(delta, ToolCallDelta):
        # Tool calls are discrete parts: never merged with a neighbour.
        message.content.append(
            ToolCall(id=delta.id, name=delta.name, arguments=dict(delta.arguments))
        )
    else:
        raise TypeError(f"Unknown provider delta: {type(delta).__name__}")


def _finalize(message: AssistantMessage, completion: Completion | None) -> None:
    if completion is None:
        # Stream ended without a completion record; infer from the content.
        message.stop_reason = "tool_use" if message.tool_calls() else "stop"
        return

    stop_reason = completion.stop_reason
    if stop_reason not in STOP_REASONS:
        logger.warning("Unknown stop reason %r, treating as error", stop_reason)
        message.error_message = f"Unknown stop reason: {stop_reason}"
        stop_reason = "error"
    message.stop_reason = stop_reason
    if completion.error_message:
        message.error_message = completion.error_message

    usage = completion.usage
    if not usage.total_tokens:
        usage.total_tokens = usage.input + usage.output + usage.cache_read + usage.cache_write
    message.usage = usage
