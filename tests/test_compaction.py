"""Tests for token counting, budget trimming and history summaries."""

from unittest.mock import AsyncMock

import pytest

from conftest import char_counter
from maitre.api.compaction import (
    SUMMARY_PREFIX,
    ChunkSummarizer,
    ModelSummarizer,
    TokenBudgeter,
    TokenEstimator,
    build_counter,
    count_turn,
    count_turns,
    serialize_for_summary,
    split_chunks,
)
from maitre.api.models import ModelResponse, Role, ToolCall, Turn
from maitre.errors import BudgetUnsatisfiable, ModelTimeout

# ------------------------------------------------------------------
# Counters
# ------------------------------------------------------------------


class TestTokenEstimator:
    def test_initial_estimate_chars_div_4(self):
        est = TokenEstimator()
        assert est.estimate("a" * 100) == 25

    def test_estimate_minimum_1(self):
        est = TokenEstimator()
        assert est("") == 1
        assert est("a") == 1

    def test_calibrate_shifts_ratio(self):
        est = TokenEstimator()
        est.calibrate(input_chars=1000, actual_tokens=500)
        # 0.1 * 0.5 + 0.9 * 0.25
        assert abs(est.ratio - 0.275) < 0.001
        assert est.samples == 1

    def test_calibrate_ignores_zero(self):
        est = TokenEstimator()
        est.calibrate(0, 100)
        est.calibrate(100, 0)
        assert est.ratio == 0.25
        assert est.samples == 0

    def test_calibrate_converges(self):
        est = TokenEstimator()
        for _ in range(60):
            est.calibrate(1000, 500)
        assert abs(est.ratio - 0.5) < 0.01


class TestCounting:
    def test_count_turn_sums_parts(self):
        turn = Turn.assistant("abc", [ToolCall(id="c1", name="menu", arguments={})])
        # "abc" + "menu" + "{}"
        assert count_turn(turn, char_counter) == 3 + 4 + 2

    def test_count_turns(self):
        turns = [Turn.user("ab"), Turn.assistant("cde")]
        assert count_turns(turns, char_counter) == 5

    def test_build_counter_estimate(self, settings):
        assert isinstance(build_counter(settings), TokenEstimator)


# ------------------------------------------------------------------
# TokenBudgeter
# ------------------------------------------------------------------


def _dialogue(n_exchanges: int, size: int = 10) -> list[Turn]:
    turns = []
    for i in range(n_exchanges):
        turns.append(Turn.user(f"u{i}".ljust(size, ".")))
        turns.append(Turn.assistant(f"a{i}".ljust(size, ".")))
    return turns


class TestTokenBudgeter:
    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValueError):
            TokenBudgeter(0, char_counter)

    def test_everything_fits(self):
        system = Turn.system("sys")
        turns = [system, *_dialogue(2)]
        result = TokenBudgeter(1000, char_counter).trim(turns)
        assert result.window == turns
        assert result.evicted == []
        assert result.tokens == 3 + 40

    def test_keeps_newest_suffix_within_budget(self):
        system = Turn.system("s" * 10)
        body = _dialogue(5)
        # system 10 + 4 turns of 10
        result = TokenBudgeter(50, char_counter).trim([system, *body])
        assert result.window[0] is system
        assert result.window[1:] == body[-4:]
        assert result.evicted == body[:-4]
        assert result.tokens == 50

    def test_window_starts_on_user_turn(self):
        system = Turn.system("s" * 10)
        body = _dialogue(5)
        # Room for 3 turns: the suffix would open on an assistant turn
        result = TokenBudgeter(40, char_counter).trim([system, *body])
        assert result.window[1].role == Role.USER
        assert result.window[1:] == body[-2:]
        assert result.tokens <= 40

    def test_window_is_contiguous_suffix(self):
        body = _dialogue(6, size=7)
        result = TokenBudgeter(33, char_counter).trim(body)
        assert body[len(body) - len(result.window):] == result.window
        assert result.evicted + result.window == body

    def test_never_exceeds_budget(self):
        system = Turn.system("sys")
        body = _dialogue(8, size=13)
        for budget in range(3, 250, 7):
            result = TokenBudgeter(budget, char_counter).trim([system, *body])
            assert count_turns(result.window, char_counter) <= budget
            assert result.window[0] is system

    def test_oversized_system_turn_raises(self):
        with pytest.raises(BudgetUnsatisfiable):
            TokenBudgeter(5, char_counter).trim([Turn.system("x" * 6), Turn.user("hi")])

    def test_newest_turn_too_large_empties_window(self):
        system = Turn.system("sys")
        result = TokenBudgeter(10, char_counter).trim([system, Turn.user("x" * 50)])
        assert result.window == [system]
        assert len(result.evicted) == 1

    def test_input_sequence_untouched(self):
        body = _dialogue(4)
        snapshot = list(body)
        TokenBudgeter(25, char_counter).trim(body)
        assert body == snapshot


# ------------------------------------------------------------------
# Summaries
# ------------------------------------------------------------------


class TestSerializeForSummary:
    def test_skips_tool_narration_and_failures(self):
        call = ToolCall(id="c1", name="menu", arguments={})
        turns = [
            Turn.user("any vegan dishes?"),
            Turn.assistant("", [call]),
            Turn.assistant("Checking the menu...", narration=True),
            Turn.tool_result(call, payload=[{"name": "Salad"}]),
            Turn.assistant("We have a salad."),
            Turn.failure("ModelTimeout", "Sorry"),
        ]
        assert serialize_for_summary(turns) == "user: any vegan dishes?\nassistant: We have a salad."


class TestSplitChunks:
    def test_prefers_line_breaks(self):
        text = "aaaa\nbbbb\ncccc"
        assert split_chunks(text, 9) == ["aaaa\nbbbb", "cccc"]

    def test_long_line_is_cut(self):
        assert split_chunks("x" * 10, 4) == ["xxxx", "xxxx", "xx"]

    def test_chunks_respect_size(self):
        text = "\n".join(f"line {i} " * (i % 5 + 1) for i in range(40))
        for chunk in split_chunks(text, 64):
            assert len(chunk) <= 64


class TestChunkSummarizer:
    @pytest.mark.asyncio
    async def test_empty_when_nothing_evicted(self):
        assert await ChunkSummarizer().summarize("t1", []) == ""

    @pytest.mark.asyncio
    async def test_digest_has_prefix(self):
        summary = await ChunkSummarizer().summarize("t1", [Turn.user("hi"), Turn.assistant("hello")])
        assert summary == f"{SUMMARY_PREFIX}user: hi\nassistant: hello"

    @pytest.mark.asyncio
    async def test_idempotent(self):
        evicted = _dialogue(20, size=50)
        s = ChunkSummarizer(chunk_size=200)
        first = await s.summarize("t1", evicted)
        second = await s.summarize("t1", list(evicted))
        assert first == second

    @pytest.mark.asyncio
    async def test_keeps_first_chunk_only(self):
        evicted = _dialogue(20, size=50)
        summary = await ChunkSummarizer(chunk_size=120).summarize("t1", evicted)
        assert len(summary) <= len(SUMMARY_PREFIX) + 120
        assert "u0" in summary
        assert "u19" not in summary


class TestModelSummarizer:
    @pytest.mark.asyncio
    async def test_memoises_per_evicted_content(self):
        invoker = AsyncMock()
        invoker.invoke.return_value = ModelResponse(turn=Turn.assistant("Guest booked for 4."))
        s = ModelSummarizer(invoker)
        evicted = [Turn.user("book for 4"), Turn.assistant("Done")]

        first = await s.summarize("t1", evicted)
        second = await s.summarize("t1", evicted)

        assert first == second == f"{SUMMARY_PREFIX}Guest booked for 4."
        invoker.invoke.assert_awaited_once()
        assert invoker.invoke.await_args.kwargs["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_falls_back_to_chunk_digest(self):
        invoker = AsyncMock()
        invoker.invoke.side_effect = ModelTimeout("slow")
        s = ModelSummarizer(invoker)
        evicted = [Turn.user("book for 4")]
        assert await s.summarize("t1", evicted) == f"{SUMMARY_PREFIX}user: book for 4"

    @pytest.mark.asyncio
    async def test_nothing_evicted_skips_model(self):
        invoker = AsyncMock()
        assert await ModelSummarizer(invoker).summarize("t1", []) == ""
        invoker.invoke.assert_not_awaited()
