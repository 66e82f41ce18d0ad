"""REST API around one Agent.

Endpoints:
  POST   /chat/stream    - Prompt the agent, SSE stream of loop events
  POST   /chat/continue  - Resume from stored history, SSE stream
  POST   /steer          - Queue a steering message
  POST   /follow-up      - Queue a follow-up message
  POST   /abort          - Abort the active run
  GET    /messages       - Conversation history
  DELETE /messages       - Reset history and queues
  GET    /health         - Health check
"""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from tiller.agent import Agent
from tiller.compaction import compaction_stats
from tiller.events import AgentEvent, EventStream, MessageUpdateEvent
from tiller.types import AgentMessage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _to_json(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_json(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def serialize_message(message: AgentMessage) -> dict[str, Any]:
    """JSON-safe dict for one message (role included)."""
    return _to_json(message)


def serialize_event(event: AgentEvent) -> dict[str, Any]:
    """JSON-safe dict for one loop event, keyed by its type."""
    data: dict[str, Any] = {"type": event.type}
    data.update(_to_json(event))
    if isinstance(event, MessageUpdateEvent):
        data["delta_type"] = type(event.delta).__name__
    return data


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


async def _read_message(request: Request) -> str | JSONResponse:
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    message = body.get("message") if isinstance(body, dict) else None
    if not message or not isinstance(message, str):
        return JSONResponse({"error": "Missing required field: message"}, status_code=400)
    return message


def create_app(agent: Agent, lifespan: Any | None = None) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _stream_response(stream: EventStream[AgentEvent, list[AgentMessage]]) -> StreamingResponse:
        async def event_generator():
            try:
                async for event in stream:
                    yield _sse(serialize_event(event))
            except Exception as e:
                logger.error("Stream error: %s", e)
                yield _sse({"type": "error", "text": str(e)})

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def chat_stream(request: Request) -> Response:
        """POST /chat/stream - SSE streaming run for a new prompt."""
        message = await _read_message(request)
        if isinstance(message, JSONResponse):
            return message

        try:
            stream = agent.prompt(message)
        except RuntimeError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return _stream_response(stream)

    async def chat_continue(request: Request) -> Response:
        """POST /chat/continue - SSE streaming run resumed from history."""
        try:
            stream = agent.continue_()
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except RuntimeError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return _stream_response(stream)

    async def steer(request: Request) -> JSONResponse:
        """POST /steer - Queue a message for the next injection point."""
        message = await _read_message(request)
        if isinstance(message, JSONResponse):
            return message
        agent.steer(message)
        return JSONResponse(
            {
                "status": "queued",
                "pending": agent.pending_steering,
                "streaming": agent.is_streaming,
            }
        )

    async def follow_up(request: Request) -> JSONResponse:
        """POST /follow-up - Queue a message for when the model stops."""
        message = await _read_message(request)
        if isinstance(message, JSONResponse):
            return message
        agent.follow_up(message)
        return JSONResponse(
            {
                "status": "queued",
                "pending": agent.pending_follow_ups,
                "streaming": agent.is_streaming,
            }
        )

    async def abort(request: Request) -> JSONResponse:
        """POST /abort - Abort the active run, if any."""
        streaming = agent.is_streaming
        agent.abort()
        return JSONResponse({"status": "aborting" if streaming else "idle"})

    async def list_messages(request: Request) -> JSONResponse:
        """GET /messages - Conversation history."""
        messages = agent.messages
        return JSONResponse(
            {
                "messages": [serialize_message(m) for m in messages],
                "stats": compaction_stats(messages),
            }
        )

    async def reset_messages(request: Request) -> JSONResponse:
        """DELETE /messages - Forget history and queued messages."""
        try:
            agent.reset()
        except RuntimeError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse({"status": "reset"})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus a glance at agent state."""
        return JSONResponse(
            {
                "status": "healthy",
                "model": getattr(agent.provider, "model_id", ""),
                "streaming": agent.is_streaming,
                "messages": len(agent.messages),
                "tools": agent.tools.names,
            }
        )

    routes = [
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/continue", chat_continue, methods=["POST"]),
        Route("/steer", steer, methods=["POST"]),
        Route("/follow-up", follow_up, methods=["POST"]),
        Route("/abort", abort, methods=["POST"]),
        Route("/messages", list_messages, methods=["GET"]),
        Route("/messages", reset_messages, methods=["DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
