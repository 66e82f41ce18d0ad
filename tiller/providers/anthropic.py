"""Anthropic Messages API provider -- direct httpx calls with SSE streaming.

No SDK: the request payload is built by hand, the response is read line
by line from the event stream and turned into provider deltas.  Text and
thinking are yielded as they arrive; tool calls are buffered per content
block and yielded whole on content_block_stop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from tiller.config import Settings
from tiller.providers.base import (
    Completion,
    ProviderDelta,
    ProviderError,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
)
from tiller.types import (
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

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"
_RETRY_STATUSES = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0

_STOP_REASONS: dict[str, str] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "model_context_window_exceeded": "length",
    "tool_use": "tool_use",
    "refusal": "error",
}

ABANDONED_TOOL_RESULT = "Tool call was not executed (interrupted)"


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # message_start, block_start, text_delta, thinking_delta, signature_delta,
    # tool_input_delta, block_stop, done, message_stop, error
    text: str = ""
    block_type: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] = field(default_factory=dict)


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Skips ping keepalives. stop_reason arrives in message_delta.delta, not
    in message_start. In-stream errors (HTTP 200 with an error event) are
    surfaced as type "error".
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        return StreamEvent(
            type="message_start",
            usage=dict(data.get("message", {}).get("usage") or {}),
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        return StreamEvent(
            type="block_start",
            block_type=block.get("type", ""),
            tool_name=block.get("name", ""),
            tool_id=block.get("id", ""),
            block_index=data.get("index", 0),
        )

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta_type == "thinking_delta":
            return StreamEvent(
                type="thinking_delta", text=delta.get("thinking", ""), block_index=block_index
            )
        if delta_type == "signature_delta":
            return StreamEvent(
                type="signature_delta", text=delta.get("signature", ""), block_index=block_index
            )
        if delta_type == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=dict(data.get("usage") or {}),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


def map_stop_reason(stop_reason: str) -> tuple[str, str | None]:
    """Anthropic stop_reason -> (loop stop reason, error message)."""
    mapped = _STOP_REASONS.get(stop_reason)
    if mapped is None:
        return "error", f"Unknown stop reason: {stop_reason}"
    if stop_reason == "refusal":
        return "error", "Model refused to respond"
    return mapped, None


# ------------------------------------------------------------------
# Wire format
# ------------------------------------------------------------------


def _user_blocks(content: str | list) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    blocks: list[dict[str, Any]] = []
    for part in content:
        if isinstance(part, TextContent):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ImageContent):
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
                }
            )
    return blocks


def _assistant_blocks(message: AssistantMessage) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextContent):
            if part.text:
                blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, ThinkingContent):
            # Unsigned thinking cannot be replayed to the API.
            if part.signature:
                blocks.append(
                    {"type": "thinking", "thinking": part.thinking, "signature": part.signature}
                )
        elif isinstance(part, ToolCall):
            blocks.append(
                {"type": "tool_use", "id": part.id, "name": part.name, "input": part.arguments}
            )
    return blocks


def _tool_result_block(message: ToolResultMessage) -> dict[str, Any]:
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": message.tool_call_id,
        "is_error": message.is_error,
    }
    content = _user_blocks(message.content)
    if content:
        block["content"] = content
    return block


def _append(out: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    # Consecutive same-role turns are merged into one.
    if out and out[-1]["role"] == role:
        out[-1]["content"].extend(blocks)
    else:
        out.append({"role": role, "content": blocks})


def format_messages(messages: list[AgentMessage]) -> list[dict[str, Any]]:
    """Convert AgentMessages into Anthropic wire messages.

    Tool results are folded into one user turn placed right after the
    assistant turn that requested them.  Tool calls that never got a
    result (skipped by steering or abort) are answered with a synthetic
    error result so the history stays acceptable to the API.
    """
    out: list[dict[str, Any]] = []
    pending: list[str] = []
    results: dict[str, dict[str, Any]] = {}

    def flush() -> None:
        if not pending:
            return
        blocks = []
        for tool_use_id in pending:
            block = results.pop(tool_use_id, None)
            if block is None:
                block = {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "is_error": True,
                    "content": [{"type": "text", "text": ABANDONED_TOOL_RESULT}],
                }
            blocks.append(block)
        _append(out, "user", blocks)
        pending.clear()
        results.clear()

    for message in messages:
        if isinstance(message, ToolResultMessage):
            if message.tool_call_id in pending:
                results[message.tool_call_id] = _tool_result_block(message)
            else:
                logger.debug("Dropping tool result without a matching call: %s", message.tool_call_id)
            continue

        flush()
        if isinstance(message, UserMessage):
            _append(out, "user", _user_blocks(message.content))
        elif isinstance(message, AssistantMessage):
            blocks = _assistant_blocks(message)
            if not blocks:
                continue
            _append(out, "assistant", blocks)
            pending.extend(call.id for call in message.tool_calls())

    flush()
    return out


def format_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Provider-neutral tool definitions -> Anthropic tool schemas."""
    return [
        {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
        }
        for tool in tools
    ]


# ------------------------------------------------------------------
# Provider
# ------------------------------------------------------------------


@dataclass
class _ToolBlock:
    id: str
    name: str
    json_parts: list[str] = field(default_factory=list)

    def arguments(self) -> dict[str, Any]:
        raw = "".join(self.json_parts)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed tool input JSON for %s, using {}", self.name)
            return {}
        return parsed if isinstance(parsed, dict) else {}


class AnthropicProvider:
    """Streams assistant turns from the Anthropic Messages API.

    Call start() before the first request and close() on shutdown.  An
    existing httpx.AsyncClient may be injected instead (tests); it must
    already carry the base URL and auth headers.
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        model: str | None = None,
        thinking: bool = True,
    ) -> None:
        self._settings = settings
        self.model_id = model or settings.model
        self._http = http
        self._thinking = thinking
        self._parent: AnthropicProvider | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers.
        # Regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )

        is_oat = "sk-ant-oat" in (auth_token or api_key)
        auth_type = "OAT/subscription" if is_oat else ("Bearer token" if auth_token else "API key")
        logger.info("httpx client initialized (auth: %s, model: %s)", auth_type, self.model_id)

    async def close(self) -> None:
        """Clean up the httpx client. Derived providers leave it to their parent."""
        if self._http is not None and self._parent is None:
            await self._http.aclose()
        self._http = None

    def with_model(self, model: str, thinking: bool = False) -> AnthropicProvider:
        """A provider for another model sharing this one's HTTP client.

        Used for background work such as summarization, where extended
        thinking is off by default.
        """
        derived = AnthropicProvider(self._settings, model=model, thinking=thinking)
        derived._parent = self
        return derived

    def _client(self) -> httpx.AsyncClient:
        http = self._http
        if http is None and self._parent is not None:
            http = self._parent._client()
        if http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return http

    def build_payload(
        self,
        system_prompt: str,
        messages: list[AgentMessage],
        tools: list[dict[str, Any]],
    ) -> dict[str, Any]:
        settings = self._settings
        payload: dict[str, Any] = {
            "model": self.model_id,
            "max_tokens": settings.max_tokens,
            "messages": format_messages(messages),
            "stream": True,
        }
        if system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tools:
            payload["tools"] = format_tools(tools)
        if self._thinking and settings.thinking_mode == "adaptive":
            payload["thinking"] = {"type": "adaptive"}
        elif self._thinking and settings.thinking_mode == "manual":
            payload["thinking"] = {"type": "enabled", "budget_tokens": settings.thinking_budget}
        return payload

    async def stream(
        self,
        *,
        system_prompt: str,
        messages: list[AgentMessage],
        tools: list[dict[str, Any]],
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[ProviderDelta]:
        """Stream one assistant turn, retrying once on 429/500/529 or timeout.

        Retries happen only before the first delta has been yielded; after
        that, failures raise ProviderError.  Aborts are handled by the
        caller closing this generator.
        """
        http = self._client()
        payload = self.build_payload(system_prompt, messages, tools)

        yielded = False
        for attempt in range(2):  # initial + 1 retry
            try:
                async with http.stream("POST", "/v1/messages", json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode(errors="replace")
                        error_type, error_msg = _parse_error_body(body, response.status_code)
                        if response.status_code in _RETRY_STATUSES and attempt == 0:
                            retry_after = _retry_after(response.headers.get("retry-after"))
                            logger.warning(
                                "API error %d (%s), retrying in %.1fs: %s",
                                response.status_code,
                                error_type,
                                retry_after,
                                error_msg,
                            )
                            await asyncio.sleep(retry_after)
                            continue
                        raise ProviderError(
                            f"Anthropic API error ({response.status_code}): "
                            f"{error_type} - {error_msg}"
                        )

                    async for delta in self._read_stream(response):
                        yielded = True
                        yield delta
                    return
            except httpx.TimeoutException as e:
                if attempt == 0 and not yielded:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
                raise ProviderError(f"API request timed out: {e}") from e
            except httpx.HTTPError as e:
                # Connection errors are not retried.
                raise ProviderError(f"HTTP error: {e}") from e

    async def _read_stream(self, response: httpx.Response) -> AsyncIterator[ProviderDelta]:
        usage = Usage()
        stop_reason: str | None = None
        tool_blocks: dict[int, _ToolBlock] = {}

        async for line in response.aiter_lines():
            # Only data: lines carry payloads; event: lines are redundant.
            if not line.startswith("data: "):
                continue
            try:
                data = json.loads(line[6:])
            except json.JSONDecodeError:
                logger.warning("Skipping malformed SSE line: %s", line[:200])
                continue

            event = parse_sse_event(data)
            if event is None:
                continue

            if event.type == "error":
                raise ProviderError(event.text)
            if event.type == "message_start":
                _merge_usage(usage, event.usage)
            elif event.type == "block_start":
                if event.block_type == "tool_use":
                    tool_blocks[event.block_index] = _ToolBlock(id=event.tool_id, name=event.tool_name)
            elif event.type == "text_delta":
                if event.text:
                    yield TextDelta(text=event.text)
            elif event.type == "thinking_delta":
                if event.text:
                    yield ThinkingDelta(thinking=event.text)
            elif event.type == "signature_delta":
                yield ThinkingDelta(thinking="", signature=event.text)
            elif event.type == "tool_input_delta":
                block = tool_blocks.get(event.block_index)
                if block is not None:
                    block.json_parts.append(event.text)
            elif event.type == "block_stop":
                block = tool_blocks.pop(event.block_index, None)
                if block is not None:
                    yield ToolCallDelta(id=block.id, name=block.name, arguments=block.arguments())
            elif event.type == "done":
                stop_reason = event.stop_reason or stop_reason
                _merge_usage(usage, event.usage)
            elif event.type == "message_stop":
                break

        if stop_reason is None:
            raise ProviderError("Stream ended before a stop reason was received")

        usage.total_tokens = usage.input + usage.output + usage.cache_read + usage.cache_write
        mapped, error_message = map_stop_reason(stop_reason)
        if error_message:
            logger.warning("Anthropic stop_reason=%s mapped to error", stop_reason)
        yield Completion(stop_reason=mapped, usage=usage, error_message=error_message)


def _merge_usage(usage: Usage, data: dict[str, Any]) -> None:
    if "input_tokens" in data:
        usage.input = data["input_tokens"] or 0
    if "output_tokens" in data:
        usage.output = data["output_tokens"] or 0
    if "cache_read_input_tokens" in data:
        usage.cache_read = data["cache_read_input_tokens"] or 0
    if "cache_creation_input_tokens" in data:
        usage.cache_write = data["cache_creation_input_tokens"] or 0


def _parse_error_body(body: str, status_code: int) -> tuple[str, str]:
    try:
        error = json.loads(body).get("error", {})
        return error.get("type", "unknown"), error.get("message", "unknown error")
    except (json.JSONDecodeError, AttributeError):
        return "http_error", f"HTTP {status_code}: {body[:500]}"


def _retry_after(header: str | None) -> float:
    try:
        value = float(header) if header else 1.0
    except ValueError:
        value = 1.0
    return min(value, _MAX_RETRY_AFTER)
