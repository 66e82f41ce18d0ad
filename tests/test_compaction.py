"""Tests for tiller/compaction.py -- estimation, pruning, summarizing, orchestration."""

import pytest

from tiller.compaction import (
    PRUNED_TEXT,
    SUMMARY_PREFIX,
    UPDATE_SYSTEM_PROMPT,
    ContextCompactor,
    PruneStrategy,
    SummarizeStrategy,
    TokenEstimator,
    compaction_stats,
    estimate_tokens,
    serialize_for_summary,
)
from tiller.providers.base import Completion, ProviderError, ScriptedProvider, TextDelta
from tiller.types import (
    AssistantMessage,
    ImageContent,
    TextContent,
    ToolCall,
    ToolResultMessage,
    Usage,
    UserMessage,
)


def _user(text: str, ts: float = 0.0) -> UserMessage:
    return UserMessage(content=text, timestamp=ts) if ts else UserMessage(content=text)


def _result(call_id: str, text: str) -> ToolResultMessage:
    return ToolResultMessage(tool_call_id=call_id, tool_name="ls", content=[TextContent(text=text)])


def _call(call_id: str) -> AssistantMessage:
    return AssistantMessage(content=[ToolCall(id=call_id, name="ls")], stop_reason="tool_use")


def _exchange(count: int, size: int = 400) -> list:
    """count rounds of assistant tool call + bulky tool result."""
    messages: list = [_user("start")]
    for i in range(count):
        messages.append(_call(f"c{i}"))
        messages.append(_result(f"c{i}", "x" * size))
    return messages


def _summary_turn(text: str) -> list:
    return [TextDelta(text), Completion(stop_reason="stop")]


class TestEstimateTokens:
    def test_text_is_chars_over_four_rounded_up(self):
        assert estimate_tokens([_user("12345678")]) == 2
        assert estimate_tokens([_user("123456789")]) == 3

    def test_tool_call_weight(self):
        message = AssistantMessage(content=[ToolCall(id="c1", name="ls", arguments={})])
        # "ls" (2) + "{}" (2) + 50
        assert estimate_tokens([message]) == 14

    def test_image_weight(self):
        message = UserMessage(content=[ImageContent(data="abc", mime_type="image/png")])
        assert estimate_tokens([message]) == 1200

    def test_tool_result_counts_text(self):
        assert estimate_tokens([_result("c1", "abcd")]) == 1


class TestTokenEstimator:
    def test_default_ratio(self):
        estimator = TokenEstimator()
        assert estimator.ratio == 0.25
        assert estimator.estimate_messages([_user("x" * 100)]) == 25

    def test_calibrate_moves_ratio_toward_observed(self):
        estimator = TokenEstimator()
        estimator.calibrate(1000, 500)  # observed 0.5

        assert estimator.ratio == pytest.approx(0.1 * 0.5 + 0.9 * 0.25)
        assert estimator.samples == 1

    def test_calibrate_ignores_empty_samples(self):
        estimator = TokenEstimator()
        estimator.calibrate(0, 100)
        estimator.calibrate(100, 0)
        assert estimator.samples == 0


class TestPruneStrategy:
    def test_prunes_old_tool_results_only(self):
        messages = _exchange(8)

        result = PruneStrategy().compact(messages, keep_recent=4)

        boundary = len(messages) - 4
        for idx, message in enumerate(result.messages):
            if isinstance(message, ToolResultMessage):
                expected = PRUNED_TEXT if idx < boundary else "x" * 400
                assert message.text == expected
        assert result.compacted_count == 6
        assert result.tokens_after < result.tokens_before

    def test_input_is_not_mutated(self):
        messages = _exchange(3)

        PruneStrategy().compact(messages, keep_recent=0)

        assert all(m.text == "x" * 400 for m in messages if isinstance(m, ToolResultMessage))

    def test_already_pruned_not_counted_again(self):
        messages = _exchange(3)
        first = PruneStrategy().compact(messages, keep_recent=0)

        second = PruneStrategy().compact(first.messages, keep_recent=0)

        assert first.compacted_count == 3
        assert second.compacted_count == 0

    def test_tool_call_structure_preserved(self):
        messages = _exchange(2)

        result = PruneStrategy().compact(messages, keep_recent=0)

        assert [m.role for m in result.messages] == [m.role for m in messages]
        assert result.messages[2].tool_call_id == "c0"


class TestSummarizeStrategy:
    def test_requires_provider(self):
        with pytest.raises(ValueError):
            SummarizeStrategy(None)

    @pytest.mark.asyncio
    async def test_summarizes_prefix_and_keeps_tail(self):
        provider = ScriptedProvider([_summary_turn("Listed files twice.")])
        messages = _exchange(4)  # 9 messages

        result = await SummarizeStrategy(provider, keep_recent=4).compact(messages)

        summary = result.messages[0]
        assert isinstance(summary, UserMessage)
        assert summary.text == f"{SUMMARY_PREFIX}Listed files twice."
        assert result.messages[1:] == messages[5:]
        assert result.compacted_count == 5
        assert provider.calls[0].tools == []

    @pytest.mark.asyncio
    async def test_tail_never_starts_with_orphan_tool_result(self):
        provider = ScriptedProvider([_summary_turn("summary")])
        messages = _exchange(4)  # indices: 0 user, odd assistant, even results

        result = await SummarizeStrategy(provider, keep_recent=3).compact(messages)

        # keep_recent=3 would start the tail at a tool result (index 6).
        assert result.messages[1:] == messages[7:]
        assert result.compacted_count == 7

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self):
        provider = ScriptedProvider([])
        messages = [_user("hi")]

        result = await SummarizeStrategy(provider, keep_recent=6).compact(messages)

        assert result.messages == messages
        assert result.compacted_count == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_incremental_update_sends_only_new_messages(self):
        provider = ScriptedProvider([_summary_turn("first summary"), _summary_turn("second summary")])
        strategy = SummarizeStrategy(provider, keep_recent=1)
        messages = [_user("a", 1.0), _user("b", 2.0), _user("c", 3.0)]

        await strategy.compact(messages)
        result = await strategy.compact([*messages, _user("d", 4.0)])

        second = provider.calls[1]
        assert second.system_prompt == UPDATE_SYSTEM_PROMPT
        assert "first summary" in second.messages[0].text
        assert "**User:** c" in second.messages[0].text
        assert "**User:** a" not in second.messages[0].text
        assert result.messages[0].text.endswith("second summary")

    @pytest.mark.asyncio
    async def test_empty_summary_raises(self):
        provider = ScriptedProvider([_summary_turn("   ")])

        with pytest.raises(ValueError, match="empty summary"):
            await SummarizeStrategy(provider, keep_recent=1).compact(_exchange(2))

    @pytest.mark.asyncio
    async def test_provider_error_completion_raises(self):
        provider = ScriptedProvider([[Completion(stop_reason="error", error_message="overloaded")]])

        with pytest.raises(ProviderError, match="overloaded"):
            await SummarizeStrategy(provider, keep_recent=1).compact(_exchange(2))


class TestSerializeForSummary:
    def test_renders_roles_and_tool_calls(self):
        messages = [
            _user("list it"),
            AssistantMessage(
                content=[TextContent(text="sure"), ToolCall(id="c1", name="ls", arguments={"p": "."})]
            ),
            ToolResultMessage(
                tool_call_id="c1", tool_name="ls", content=[TextContent(text="boom")], is_error=True
            ),
        ]

        text = serialize_for_summary(messages)

        assert "**User:** list it" in text
        assert '[called ls({"p": "."})]' in text
        assert "**Tool ls error:** boom" in text


class TestContextCompactor:
    @pytest.mark.asyncio
    async def test_below_threshold_returns_input(self):
        compactor = ContextCompactor(threshold=1000)
        messages = _exchange(1)

        assert await compactor(messages) is messages

    @pytest.mark.asyncio
    async def test_prune_mode_over_threshold(self):
        compactor = ContextCompactor(threshold=100, mode="prune", prune_keep_recent=2)
        messages = _exchange(5)

        result = await compactor(messages)

        assert sum(1 for m in result if m.text == PRUNED_TEXT) == 4
        assert len(result) == len(messages)

    @pytest.mark.asyncio
    async def test_hybrid_summarizes_when_pruning_is_not_enough(self):
        provider = ScriptedProvider([_summary_turn("condensed")])
        compactor = ContextCompactor(
            threshold=50,
            mode="hybrid",
            prune_keep_recent=2,
            summarize_keep_recent=2,
            summarizer_provider=provider,
        )

        result = await compactor(_exchange(5, size=2000))

        assert result[0].text.startswith(SUMMARY_PREFIX)
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_hybrid_without_provider_only_prunes(self):
        compactor = ContextCompactor(threshold=50, mode="hybrid", prune_keep_recent=2)

        result = await compactor(_exchange(5, size=2000))

        assert result[0].text == "start"
        assert any(m.text == PRUNED_TEXT for m in result)

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_input(self):
        provider = ScriptedProvider([RuntimeError("summarizer down")])
        compactor = ContextCompactor(
            threshold=10, mode="summarize", summarize_keep_recent=1, summarizer_provider=provider
        )
        messages = _exchange(3)

        assert await compactor(messages) is messages

    @pytest.mark.asyncio
    async def test_calibrates_from_reported_usage(self):
        compactor = ContextCompactor(threshold=10_000)
        messages = [_user("x" * 400)]

        await compactor(messages)
        reply = AssistantMessage(content=[TextContent(text="ok")], usage=Usage(input=200))
        await compactor([*messages, reply])

        # 400 chars were sent and 200 tokens reported: observed ratio 0.5.
        assert compactor.estimator.samples == 1
        assert compactor.estimator.ratio == pytest.approx(0.1 * 0.5 + 0.9 * 0.25)

    @pytest.mark.asyncio
    async def test_same_reply_calibrates_once(self):
        compactor = ContextCompactor(threshold=10_000)
        reply = AssistantMessage(content=[TextContent(text="ok")], usage=Usage(input=200))

        await compactor([_user("x" * 400)])
        await compactor([_user("x" * 400), reply])
        await compactor([_user("x" * 400), reply, _user("again")])

        assert compactor.estimator.samples == 1

    def test_from_settings(self):
        from unittest.mock import MagicMock

        settings = MagicMock()
        settings.compaction_threshold = 1234
        settings.compaction_mode = "prune"
        settings.prune_keep_recent = 3
        settings.summarize_keep_recent = 2

        compactor = ContextCompactor.from_settings(settings)

        assert compactor.threshold == 1234
        assert compactor.mode == "prune"


class TestCompactionStats:
    def test_counts(self):
        stats = compaction_stats(_exchange(2, size=8))
        assert stats["messages"] == 5
        assert stats["tool_results"] == 2
        assert stats["estimated_tokens"] > 0
