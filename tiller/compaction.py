"""History compaction -- tool output pruning and LLM summarization.

Two strategies, combined by ContextCompactor:
  prune:     erase the content of old tool results (no LLM call)
  summarize: fold the older prefix of the history into one summary message

ContextCompactor is shaped to be the loop's transform_context hook.  It
works on a copy: the list it returns is only what the model sees for one
request, the loop's own history is never touched.  Any failure falls back
to the uncompacted input.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Literal

from tiller.config import Settings
from tiller.providers.base import ModelProvider, complete_text
from tiller.types import (
    AgentMessage,
    AssistantMessage,
    ImageContent,
    TextContent,
    ThinkingContent,
    ToolCall,
    ToolResultMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

PRUNED_TEXT = "(result pruned)"
SUMMARY_PREFIX = "[Context Summary of prior turns]:\n"
_IMAGE_CHARS = 4800  # rough char-equivalent of one high-res image

SUMMARY_SYSTEM_PROMPT = (
    "You are a context summarizer. Distill the following interaction into a "
    "concise summary of the current state, task progress, and important facts. "
    "Focus on what was achieved and what remains to be done. Keep it under 300 words."
)

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new progress, decisions, context
3. PRESERVE exact file paths, function names, error messages
4. Keep it under 300 words

Output ONLY the updated summary."""


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------


def message_chars(message: AgentMessage) -> int:
    """Character weight of one message, the basis of every estimate."""
    chars = 0
    content = message.content
    if isinstance(content, str):
        return len(content)
    for part in content:
        if isinstance(part, TextContent):
            chars += len(part.text)
        elif isinstance(part, ThinkingContent):
            chars += len(part.thinking)
        elif isinstance(part, ToolCall):
            chars += len(part.name) + len(json.dumps(part.arguments, default=str)) + 50
        elif isinstance(part, ImageContent):
            chars += _IMAGE_CHARS
    return chars


def estimate_tokens(messages: list[AgentMessage]) -> int:
    """Heuristic token count: chars / 4, rounded up."""
    return math.ceil(sum(message_chars(m) for m in messages) / 4)


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with the chars/4 heuristic.  Improves via calibrate() using the
    input_tokens the provider reports for a request whose size we know.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char (chars/4 default)
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def estimate_messages(self, messages: list[AgentMessage]) -> int:
        return math.ceil(sum(message_chars(m) for m in messages) * self._ratio)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


@dataclass
class CompactionResult:
    messages: list[AgentMessage]
    compacted_count: int
    tokens_before: int
    tokens_after: int


# ------------------------------------------------------------------
# Strategies
# ------------------------------------------------------------------


class PruneStrategy:
    """Erase the output of old tool calls, keep the fact that they ran.

    The conversation structure stays intact, so the model still knows a
    tool was called, but bulky outputs (file reads, listings) are gone.
    """

    name = "prune"

    def compact(self, messages: list[AgentMessage], keep_recent: int = 10) -> CompactionResult:
        tokens_before = estimate_tokens(messages)
        boundary = max(0, len(messages) - keep_recent)
        compacted = 0

        processed: list[AgentMessage] = []
        for idx, message in enumerate(messages):
            if idx < boundary and isinstance(message, ToolResultMessage) and not _is_pruned(message):
                message = replace(message, content=[TextContent(text=PRUNED_TEXT)])
                compacted += 1
            processed.append(message)

        return CompactionResult(
            messages=processed,
            compacted_count=compacted,
            tokens_before=tokens_before,
            tokens_after=estimate_tokens(processed),
        )


def _is_pruned(message: ToolResultMessage) -> bool:
    return all(
        isinstance(part, TextContent) and part.text == PRUNED_TEXT for part in message.content
    )


class SummarizeStrategy:
    """Condense the older part of the history into a single summary message.

    Keeps the last keep_recent messages raw.  The previous summary is
    remembered, and when the new prefix extends the one already
    summarized only the new messages are sent, together with the old
    summary.
    """

    name = "summarize"

    def __init__(
        self,
        provider: ModelProvider,
        keep_recent: int = 6,
        system_prompt: str | None = None,
    ) -> None:
        if provider is None:
            raise ValueError("SummarizeStrategy requires a provider")
        self._provider = provider
        self._keep_recent = keep_recent
        self._system_prompt = system_prompt or SUMMARY_SYSTEM_PROMPT
        self._summary: str | None = None
        self._covered: list[tuple[str, float]] = []

    @property
    def summary(self) -> str | None:
        return self._summary

    async def compact(
        self, messages: list[AgentMessage], signal: asyncio.Event | None = None
    ) -> CompactionResult:
        tokens_before = estimate_tokens(messages)
        boundary = max(0, len(messages) - self._keep_recent)
        # The kept tail must not open with tool results orphaned from their call.
        while boundary < len(messages) and isinstance(messages[boundary], ToolResultMessage):
            boundary += 1

        to_summarize = messages[:boundary]
        to_keep = messages[boundary:]
        if not to_summarize:
            return CompactionResult(messages, 0, tokens_before, tokens_before)

        start_time = time.monotonic()
        text = await self._summarize(to_summarize, signal)
        summary_message = UserMessage(content=f"{SUMMARY_PREFIX}{text}")
        processed: list[AgentMessage] = [summary_message, *to_keep]

        logger.info(
            "Summarized %d messages into %d chars (%d ms)",
            len(to_summarize),
            len(text),
            int((time.monotonic() - start_time) * 1000),
        )
        return CompactionResult(
            messages=processed,
            compacted_count=len(to_summarize),
            tokens_before=tokens_before,
            tokens_after=estimate_tokens(processed),
        )

    async def _summarize(
        self, to_summarize: list[AgentMessage], signal: asyncio.Event | None
    ) -> str:
        keys = [_message_key(m) for m in to_summarize]
        covered = len(self._covered)
        if self._summary is not None and keys[:covered] == self._covered:
            fresh = to_summarize[covered:]
            if not fresh:
                return self._summary
            user_content = (
                f"## Existing Summary\n\n{self._summary}\n\n"
                f"## New Conversation\n\n{serialize_for_summary(fresh)}"
            )
            system = UPDATE_SYSTEM_PROMPT
        else:
            user_content = serialize_for_summary(to_summarize)
            system = self._system_prompt

        text = await complete_text(
            self._provider,
            system,
            [UserMessage(content=user_content)],
            signal,
        )
        if not text.strip():
            raise ValueError("Summarizer returned an empty summary")
        self._summary = text
        self._covered = keys
        return text


def _message_key(message: AgentMessage) -> tuple[str, float]:
    return (message.role, message.timestamp)


def serialize_for_summary(messages: list[AgentMessage]) -> str:
    """Render messages as readable text for the summarizer."""
    lines = []
    for message in messages:
        if isinstance(message, UserMessage):
            lines.append(f"**User:** {message.text}")
        elif isinstance(message, AssistantMessage):
            parts = [message.text] if message.text else []
            for call in message.tool_calls():
                parts.append(f"[called {call.name}({json.dumps(call.arguments, default=str)})]")
            lines.append(f"**Assistant:** {chr(10).join(parts)}")
        elif isinstance(message, ToolResultMessage):
            status = "error" if message.is_error else "result"
            lines.append(f"**Tool {message.tool_name} {status}:** {message.text}")
    return "\n\n".join(lines)


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------


class ContextCompactor:
    """Keeps the context sent to the model under a token threshold.

    Usable directly as AgentLoopConfig.transform_context:
        config.transform_context = ContextCompactor(...)
    """

    def __init__(
        self,
        threshold: int = 30000,
        mode: Literal["prune", "summarize", "hybrid"] = "hybrid",
        prune_keep_recent: int = 10,
        summarize_keep_recent: int = 6,
        summarizer_provider: ModelProvider | None = None,
    ) -> None:
        self.threshold = threshold
        self.mode = mode
        self.estimator = TokenEstimator()
        self._prune_keep_recent = prune_keep_recent
        self._pruner = PruneStrategy()
        self._summarizer = (
            SummarizeStrategy(summarizer_provider, keep_recent=summarize_keep_recent)
            if summarizer_provider is not None
            else None
        )
        self._last_calibrated: float | None = None
        # Size of the last list handed to the model, matched against the
        # input_tokens reported on the next assistant message.
        self._sent_chars: int | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, summarizer_provider: ModelProvider | None = None
    ) -> ContextCompactor:
        return cls(
            threshold=settings.compaction_threshold,
            mode=settings.compaction_mode,
            prune_keep_recent=settings.prune_keep_recent,
            summarize_keep_recent=settings.summarize_keep_recent,
            summarizer_provider=summarizer_provider,
        )

    async def __call__(
        self, messages: list[AgentMessage], signal: asyncio.Event | None = None
    ) -> list[AgentMessage]:
        try:
            return await self.run(messages, signal)
        except Exception as e:
            logger.error("Compaction failed: %s - sending uncompacted history", e)
            return messages

    async def run(
        self, messages: list[AgentMessage], signal: asyncio.Event | None = None
    ) -> list[AgentMessage]:
        self._calibrate(messages)
        tokens = self.estimator.estimate_messages(messages)
        if tokens < self.threshold:
            self._sent_chars = sum(message_chars(m) for m in messages)
            return messages

        result = CompactionResult(messages, 0, tokens, tokens)

        if self.mode in ("prune", "hybrid"):
            result = self._pruner.compact(result.messages, keep_recent=self._prune_keep_recent)
            logger.info(
                "Pruned %d tool result(s): ~%d -> ~%d tokens",
                result.compacted_count,
                result.tokens_before,
                result.tokens_after,
            )

        wants_summary = self.mode == "summarize" or (
            self.mode == "hybrid" and result.tokens_after > self.threshold
        )
        if wants_summary:
            if self._summarizer is None:
                logger.debug("Summarization wanted but no summarizer provider configured")
            else:
                result = await self._summarizer.compact(result.messages, signal)

        self._sent_chars = sum(message_chars(m) for m in result.messages)
        return result.messages

    def _calibrate(self, messages: list[AgentMessage]) -> None:
        """Match the newest assistant input_tokens with the request we sent for it."""
        latest = next(
            (m for m in reversed(messages) if isinstance(m, AssistantMessage)), None
        )
        if latest is None or self._sent_chars is None:
            return
        if latest.usage.input <= 0 or latest.timestamp == self._last_calibrated:
            return
        self.estimator.calibrate(self._sent_chars, latest.usage.input)
        self._last_calibrated = latest.timestamp


def compaction_stats(messages: list[AgentMessage]) -> dict[str, Any]:
    """Small summary used by the HTTP surface."""
    return {
        "messages": len(messages),
        "estimated_tokens": estimate_tokens(messages),
        "tool_results": sum(1 for m in messages if isinstance(m, ToolResultMessage)),
    }
