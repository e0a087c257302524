"""Tests for history compression."""

from unittest.mock import AsyncMock

import pytest

from chatbridge.content.schemas import GenerationResponse, Role, ToolResult, Turn
from chatbridge.conversation import compression
from chatbridge.conversation.compression import (
    COMPRESSION_SYSTEM_PROMPT,
    SUMMARY_ACKNOWLEDGMENT,
    ConversationCompressor,
    advance_to_user_turn,
    find_index_after_fraction,
)
from chatbridge.conversation.history import ConversationHistory
from chatbridge.errors import CompressionError, ValidationError


def _exchanges(n: int, size: int = 50) -> list[Turn]:
    turns: list[Turn] = []
    for i in range(n):
        turns.append(Turn.user(f"question {i} " + "x" * size))
        turns.append(Turn.model(f"answer {i} " + "y" * size))
    return turns


class FakeCounter:
    """Reports a fixed count first, then a smaller one after compression."""

    def __init__(self, *counts: int | None) -> None:
        self.counts = list(counts)
        self.calls: list[list[Turn]] = []

    async def count_tokens(self, model, contents):
        self.calls.append(contents)
        return self.counts.pop(0) if self.counts else 100


class FakeSummarizer:
    def __init__(self, text: str = "## Goal\nSummary of earlier talk") -> None:
        self.text = text
        self.calls: list[tuple] = []

    async def generate_summary(self, model, contents, system_instruction):
        self.calls.append((model, contents, system_instruction))
        return GenerationResponse(turn=Turn.model(self.text))


@pytest.fixture
def limit_100k(monkeypatch):
    monkeypatch.setattr(compression, "token_limit", lambda model: 100_000)


# ---------------------------------------------------------------------------
# Cut index
# ---------------------------------------------------------------------------


class TestFindIndexAfterFraction:
    @pytest.mark.parametrize("fraction", [0.01, 0.3, 0.5, 0.7, 0.99])
    def test_bounds(self, fraction):
        history = _exchanges(4)
        index = find_index_after_fraction(history, fraction)
        assert 0 <= index <= len(history)

    @pytest.mark.parametrize("fraction", [0, -0.5, 1, 1.5])
    def test_rejects_out_of_range(self, fraction):
        with pytest.raises(ValidationError):
            find_index_after_fraction(_exchanges(2), fraction)

    def test_empty_history(self):
        assert find_index_after_fraction([], 0.5) == 0

    def test_weighted_by_content_length(self):
        history = [Turn.user("x" * 1000), Turn.model("a"), Turn.user("b"), Turn.model("c")]
        assert find_index_after_fraction(history, 0.5) == 0

    def test_monotonic_in_fraction(self):
        history = _exchanges(10)
        indexes = [find_index_after_fraction(history, f / 10) for f in range(1, 10)]
        assert indexes == sorted(indexes)


class TestAdvanceToUserTurn:
    def test_skips_model_and_tool_results(self):
        history = [
            Turn.user("a"),
            Turn.model("b"),
            Turn(role=Role.USER, fragments=[ToolResult(id="1")]),
            Turn.model("c"),
            Turn.user("d"),
        ]
        assert advance_to_user_turn(history, 1) == 4
        assert advance_to_user_turn(history, 0) == 0

    def test_can_run_off_the_end(self):
        history = [Turn.user("a"), Turn.model("b")]
        assert advance_to_user_turn(history, 1) == 2


# ---------------------------------------------------------------------------
# ConversationCompressor
# ---------------------------------------------------------------------------


class TestTryCompress:
    @pytest.mark.asyncio
    async def test_compresses_above_threshold(self, limit_100k):
        """80k of 100k with default 0.7/0.3 thresholds triggers compression."""
        turns = _exchanges(10)
        store = ConversationHistory(turns)
        counter = FakeCounter(80_000, 20_000)
        summarizer = FakeSummarizer()
        compressor = ConversationCompressor(store, counter, summarizer)

        result = await compressor.try_compress("test-model")

        assert result is not None
        assert result.original_token_count == 80_000
        assert result.new_token_count == 20_000

        history = store.get_history()
        assert history[0] == Turn.user("## Goal\nSummary of earlier talk")
        assert history[1] == Turn.model(SUMMARY_ACKNOWLEDGMENT)

        cut = advance_to_user_turn(turns, find_index_after_fraction(turns, 0.7))
        assert history[2:] == turns[cut:]
        assert history[2].role == Role.USER

        model, summarized, prompt = summarizer.calls[0]
        assert model == "test-model"
        assert summarized == turns[:cut]
        assert prompt == COMPRESSION_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_below_threshold_is_noop(self, limit_100k):
        store = ConversationHistory(_exchanges(4))
        summarizer = FakeSummarizer()
        compressor = ConversationCompressor(store, FakeCounter(50_000), summarizer)

        assert await compressor.try_compress("m") is None
        assert summarizer.calls == []
        assert len(store) == 8

    @pytest.mark.asyncio
    async def test_force_ignores_threshold(self, limit_100k):
        store = ConversationHistory(_exchanges(6))
        compressor = ConversationCompressor(store, FakeCounter(10, 5), FakeSummarizer())
        result = await compressor.try_compress("m", force=True)
        assert result is not None
        assert store.get_history()[1].text == SUMMARY_ACKNOWLEDGMENT

    @pytest.mark.asyncio
    async def test_custom_threshold(self, limit_100k):
        store = ConversationHistory(_exchanges(6))
        compressor = ConversationCompressor(store, FakeCounter(55_000, 1), FakeSummarizer())
        assert await compressor.try_compress("m", threshold=0.5) is not None

    @pytest.mark.asyncio
    async def test_empty_history_is_noop(self):
        counter = FakeCounter()
        compressor = ConversationCompressor(ConversationHistory(), counter, FakeSummarizer())
        assert await compressor.try_compress("m", force=True) is None
        assert counter.calls == []

    @pytest.mark.asyncio
    async def test_unknown_token_count_is_noop(self):
        store = ConversationHistory(_exchanges(3))
        compressor = ConversationCompressor(store, FakeCounter(None), FakeSummarizer())
        assert await compressor.try_compress("m", force=True) is None
        assert len(store) == 6

    @pytest.mark.asyncio
    async def test_nothing_before_tail_is_noop(self):
        store = ConversationHistory([Turn.user("x" * 5000), Turn.model("ok")])
        summarizer = FakeSummarizer()
        compressor = ConversationCompressor(store, FakeCounter(10), summarizer)
        assert await compressor.try_compress("m", force=True) is None
        assert summarizer.calls == []

    @pytest.mark.asyncio
    async def test_summary_failure_leaves_history_untouched(self):
        turns = _exchanges(6)
        store = ConversationHistory(turns)
        summarizer = AsyncMock()
        summarizer.generate_summary.side_effect = RuntimeError("backend down")
        compressor = ConversationCompressor(store, FakeCounter(10), summarizer)

        with pytest.raises(CompressionError, match="backend down"):
            await compressor.try_compress("m", force=True)
        assert store.get_history() == turns

    @pytest.mark.asyncio
    async def test_empty_summary_is_an_error(self):
        store = ConversationHistory(_exchanges(6))
        compressor = ConversationCompressor(store, FakeCounter(10), FakeSummarizer("  "))
        with pytest.raises(CompressionError):
            await compressor.try_compress("m", force=True)
        assert len(store) == 12

    @pytest.mark.asyncio
    async def test_compresses_curated_view(self, limit_100k):
        turns = _exchanges(6)
        turns[2:4] = [Turn.user("dropped"), Turn.model("")]
        store = ConversationHistory(turns)
        summarizer = FakeSummarizer()
        compressor = ConversationCompressor(store, FakeCounter(90_000, 1), summarizer)

        await compressor.try_compress("m")
        summarized = summarizer.calls[0][1]
        assert all(t.text != "dropped" for t in summarized)
