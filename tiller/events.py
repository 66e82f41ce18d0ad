"""Agent events and the ordered, multi-subscriber EventStream.

A run publishes every lifecycle fact onto one EventStream.  Delivery is
synchronous: push() hands the event to every current listener, in
registration order, before it returns.  Late subscribers get the full
buffered history replayed first, so nobody misses the beginning of a run.

Listener errors are isolated -- one broken listener never stops delivery
to the others and never reaches the producer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Generic, TypeVar, Union

from tiller.types import AgentMessage, AssistantMessage, ToolResultMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Listener = Callable[[T], None]


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Event taxonomy
# ---------------------------------------------------------------------------


@dataclass
class AgentStartEvent:
    type: ClassVar[str] = "agent_start"
    timestamp: datetime = field(default_factory=_now)


@dataclass
class AgentEndEvent:
    """Terminal event. messages = everything produced by this run."""

    type: ClassVar[str] = "agent_end"
    messages: list[AgentMessage] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_now)


@dataclass
class TurnStartEvent:
    type: ClassVar[str] = "turn_start"
    timestamp: datetime = field(default_factory=_now)


@dataclass
class TurnEndEvent:
    type: ClassVar[str] = "turn_end"
    message: AssistantMessage
    tool_results: list[ToolResultMessage] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_now)


@dataclass
class MessageStartEvent:
    type: ClassVar[str] = "message_start"
    message: AgentMessage
    timestamp: datetime = field(default_factory=_now)


@dataclass
class MessageUpdateEvent:
    """Published after each incremental change to an in-flight message.

    delta is the provider chunk that caused the change.
    """

    type: ClassVar[str] = "message_update"
    message: AgentMessage
    delta: Any = None
    timestamp: datetime = field(default_factory=_now)


@dataclass
class MessageEndEvent:
    type: ClassVar[str] = "message_end"
    message: AgentMessage
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ToolExecutionStartEvent:
    type: ClassVar[str] = "tool_execution_start"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ToolExecutionUpdateEvent:
    type: ClassVar[str] = "tool_execution_update"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    partial_result: Any
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ToolExecutionEndEvent:
    type: ClassVar[str] = "tool_execution_end"
    tool_call_id: str
    tool_name: str
    result: Any
    is_error: bool
    timestamp: datetime = field(default_factory=_now)


AgentEvent = Union[
    AgentStartEvent,
    AgentEndEvent,
    TurnStartEvent,
    TurnEndEvent,
    MessageStartEvent,
    MessageUpdateEvent,
    MessageEndEvent,
    ToolExecutionStartEvent,
    ToolExecutionUpdateEvent,
    ToolExecutionEndEvent,
]


# ---------------------------------------------------------------------------
# EventStream
# ---------------------------------------------------------------------------


class EventStream(Generic[T, R]):
    """Append-only event log with a terminal event and a derived result.

    is_end decides which event terminates the stream; extract_result
    turns that event into the value result() resolves with.  After
    termination (normal or error) push() is a no-op.
    """

    def __init__(
        self,
        is_end: Callable[[T], bool],
        extract_result: Callable[[T], R],
    ) -> None:
        self._is_end = is_end
        self._extract_result = extract_result
        self._listeners: list[Listener] = []
        self._buffer: list[T] = []
        self._ended = False
        self._result: R | None = None
        self._error: BaseException | None = None
        self._future: asyncio.Future[R] | None = None
        self._changed = asyncio.Event()

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def events(self) -> list[T]:
        """Snapshot of everything pushed so far."""
        return list(self._buffer)

    def push(self, event: T) -> None:
        if self._ended:
            return
        self._buffer.append(event)
        for listener in list(self._listeners):
            self._notify(listener, event)
        if self._is_end(event):
            self.end(self._extract_result(event))
        else:
            self._wake()

    def end(self, result: R) -> None:
        """Terminate normally. Idempotent; loses to an earlier error()."""
        if self._ended:
            return
        self._ended = True
        self._result = result
        self._settle()
        self._wake()

    def error(self, err: BaseException) -> None:
        """Terminate with a failure. Idempotent; loses to an earlier end()."""
        if self._ended:
            return
        self._ended = True
        self._error = err
        self._settle()
        self._wake()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener, replay history to it, return an unsubscribe callable."""
        self._listeners.append(listener)
        for event in list(self._buffer):
            self._notify(listener, event)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def result(self) -> R:
        """Await the final value. Raises the stream error if error() won."""
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            self._settle()
        # Shield: one cancelled awaiter must not cancel the shared future.
        return await asyncio.shield(self._future)

    async def __aiter__(self) -> AsyncIterator[T]:
        index = 0
        while True:
            while index < len(self._buffer):
                yield self._buffer[index]
                index += 1
            if self._ended:
                break
            waiter = self._changed
            await waiter.wait()
        if self._error is not None:
            raise self._error

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _notify(self, listener: Listener, event: T) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception(
                "Listener %s failed for event %s",
                getattr(listener, "__qualname__", repr(listener)),
                getattr(event, "type", type(event).__name__),
            )

    def _settle(self) -> None:
        if not self._ended or self._future is None or self._future.done():
            return
        if self._error is not None:
            self._future.set_exception(self._error)
        else:
            self._future.set_result(self._result)  # type: ignore[arg-type]

    def _wake(self) -> None:
        # Wake every iterator blocked on the current waiter, then arm a new one.
        self._changed.set()
        self._changed = asyncio.Event()


def create_agent_stream() -> EventStream[AgentEvent, list[AgentMessage]]:
    return EventStream(
        lambda event: event.type == "agent_end",
        lambda event: list(event.messages) if isinstance(event, AgentEndEvent) else [],
    )
