"""Tests for ContextCompactor: token estimation, split points, summaries, handoff."""

from unittest.mock import AsyncMock

import pytest

from commander.api.compaction import (
    LOST_CONTEXT_NOTE,
    MIN_RECENT_MESSAGES,
    NO_CONTEXT_NOTE,
    SUMMARIZER_SYSTEM_PROMPT,
    SUMMARY_HEADING,
    SUMMARY_MAX_TOKENS,
    SUMMARY_TIMEOUT,
    ContextCompactor,
    estimate_message_tokens,
    estimate_tokens,
    format_transcript,
    is_summary_message,
    total_message_tokens,
)
from commander.api.models import (
    AssistantMessage,
    CompactionState,
    Context,
    ModelInfo,
    TextBlock,
    ThinkingBlock,
    ToolCallBlock,
    ToolResultMessage,
    UserMessage,
)
from commander.cancellation import TurnCancelled


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_model(context_window: int = 10_000) -> ModelInfo:
    return ModelInfo(
        provider="ollama",
        id="test",
        api="openai-completions",
        base_url="http://localhost:11434/v1",
        context_window=context_window,
        max_tokens=4096,
    )


def _make_compactor(summary: str = "Mining iron at Sol. Next: sell.") -> tuple[ContextCompactor, AsyncMock]:
    completion = AsyncMock()
    completion.complete_once = AsyncMock(return_value=summary)
    return ContextCompactor(completion), completion


def _make_chat(count: int, chars: int = 600) -> list:
    """Alternating user/assistant text messages of `chars` characters (~chars/4 tokens)."""
    messages = []
    for i in range(count):
        if i % 2 == 0:
            messages.append(UserMessage(text=f"u{i}".ljust(chars, "x")))
        else:
            messages.append(AssistantMessage(content=[TextBlock(text=f"a{i}".ljust(chars, "y"))]))
    return messages


def _make_tool_turn(rounds: int, chars: int = 600) -> list:
    """One instruction followed by assistant tool calls and their results only."""
    messages: list = [UserMessage(text="Play the game.")]
    for i in range(rounds):
        messages.append(AssistantMessage(content=[
            TextBlock(text="m".ljust(chars // 2, "m")),
            ToolCallBlock(id=f"call_{i}", name="game", arguments={"command": "mine"}),
        ]))
        messages.append(ToolResultMessage(
            tool_call_id=f"call_{i}", tool_name="game", text="r".ljust(chars, "r"),
        ))
    return messages


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


class TestTokenEstimation:
    def test_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_monotonic(self):
        sizes = [estimate_tokens("x" * n) for n in range(0, 200)]
        assert sizes == sorted(sizes)

    def test_deterministic(self):
        msg = AssistantMessage(content=[TextBlock(text="hello world")])
        assert estimate_message_tokens(msg) == estimate_message_tokens(msg)

    def test_counts_every_block_kind(self):
        msg = AssistantMessage(content=[
            TextBlock(text="a" * 40),
            ThinkingBlock(thinking="b" * 40),
            ToolCallBlock(id="1", name="game", arguments={"command": "mine"}),
        ])
        assert estimate_message_tokens(msg) > 20

    def test_total(self):
        messages = _make_chat(4, chars=400)
        assert total_message_tokens(messages) == 400


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class TestFormatTranscript:
    def test_tags(self):
        transcript = format_transcript([
            UserMessage(text="Go mine"),
            AssistantMessage(content=[
                TextBlock(text="Heading out"),
                ToolCallBlock(id="c1", name="game", arguments={"command": "travel", "args": {"to": "Sol"}}),
            ]),
            ToolResultMessage(tool_call_id="c1", tool_name="game", text="Arrived"),
            ToolResultMessage(tool_call_id="c2", tool_name="game", text="Error: nope", is_error=True),
        ])
        lines = transcript.split("\n")
        assert lines[0] == "[USER] Go mine"
        assert lines[1] == "[AGENT] Heading out"
        assert lines[2] == '[TOOL CALL] game(command=travel, args={"to": "Sol"})'
        assert lines[3] == "[RESULT] game: Arrived"
        assert lines[4] == "[RESULT [ERROR]] game: Error: nope"

    def test_truncates_long_results(self):
        transcript = format_transcript([
            ToolResultMessage(tool_call_id="c1", tool_name="game", text="z" * 2000),
        ])
        assert transcript.endswith("z" * 500 + "...")


# ---------------------------------------------------------------------------
# maybe_compact
# ---------------------------------------------------------------------------


class TestMaybeCompact:
    @pytest.mark.asyncio
    async def test_under_budget_is_noop(self):
        compactor, completion = _make_compactor()
        context = Context(system_prompt="s", messages=_make_chat(10))

        assert await compactor.maybe_compact(_make_model(), context) is False
        assert len(context.messages) == 10
        completion.complete_once.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_window_scenario(self):
        """10k window, 50 x 150-token messages: ~22 recent kept, rest summarized."""
        compactor, completion = _make_compactor()
        messages = _make_chat(50)
        first = messages[0]
        context = Context(system_prompt="s", messages=list(messages))
        state = CompactionState()

        assert await compactor.maybe_compact(_make_model(10_000), context, state) is True

        assert context.messages[0] is first
        assert is_summary_message(context.messages[1])
        assert "Mining iron at Sol" in context.messages[1].text
        assert context.messages[2:] == messages[28:]
        assert len(context.messages) - 2 == 22
        assert state.summary == "Mining iron at Sol. Next: sell."
        completion.complete_once.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_keeps_minimum_recent_messages(self):
        compactor, _ = _make_compactor()
        # Huge messages: the recent budget fits only a couple of them
        context = Context(system_prompt="s", messages=_make_chat(30, chars=4000))

        assert await compactor.maybe_compact(_make_model(10_000), context) is True
        assert len(context.messages) >= MIN_RECENT_MESSAGES + 2

    @pytest.mark.asyncio
    async def test_idempotent_without_new_messages(self):
        compactor, completion = _make_compactor()
        context = Context(system_prompt="s", messages=_make_chat(50))
        model = _make_model(10_000)

        assert await compactor.maybe_compact(model, context) is True
        snapshot = list(context.messages)

        assert await compactor.maybe_compact(model, context) is False
        assert context.messages == snapshot
        assert completion.complete_once.await_count == 1

    @pytest.mark.asyncio
    async def test_never_splits_tool_results_from_calls(self):
        compactor, _ = _make_compactor()
        context = Context(system_prompt="s", messages=_make_tool_turn(30))

        assert await compactor.maybe_compact(_make_model(10_000), context) is True
        assert isinstance(context.messages[2], AssistantMessage)
        for prev, msg in zip(context.messages[2:], context.messages[3:]):
            if isinstance(msg, ToolResultMessage):
                assert isinstance(prev, AssistantMessage)
                assert msg.tool_call_id in {c.id for c in prev.tool_calls}

    @pytest.mark.asyncio
    async def test_long_turn_after_summary_splits_inside_turn(self):
        """A nudge right after the summary must not swallow the split point."""
        compactor, completion = _make_compactor()
        summary = UserMessage(text=f"{SUMMARY_HEADING}\n\nold notes")
        nudge = UserMessage(text="Continue")
        messages = [
            UserMessage(text="Play the game."),
            summary,
            nudge,
            *_make_tool_turn(40)[1:],
            UserMessage(text="Continue"),
            *_make_tool_turn(3)[1:],
        ]
        context = Context(system_prompt="s", messages=list(messages))

        assert await compactor.maybe_compact(_make_model(10_000), context) is True

        completion.complete_once.assert_awaited_once()
        assert isinstance(context.messages[2], AssistantMessage)
        assert all(m is not nudge for m in context.messages)
        assert all(m is not summary for m in context.messages)
        assert context.messages[-1] is messages[-1]
        assert len(context.messages) - 2 >= MIN_RECENT_MESSAGES

    @pytest.mark.asyncio
    async def test_summarization_request(self):
        compactor, completion = _make_compactor()
        context = Context(system_prompt="s", messages=_make_chat(50))
        state = CompactionState(summary="earlier notes")

        await compactor.maybe_compact(_make_model(10_000), context, state)

        call = completion.complete_once.await_args
        assert call.args[1] == SUMMARIZER_SYSTEM_PROMPT
        assert call.kwargs["timeout"] == SUMMARY_TIMEOUT == 30.0
        assert call.kwargs["max_tokens"] == SUMMARY_MAX_TOKENS == 1024
        (request,) = call.args[2]
        assert isinstance(request, UserMessage)
        assert "Previous summary (from even earlier):\nearlier notes" in request.text
        assert "Transcript to summarize:\n[AGENT] a1" in request.text

    @pytest.mark.asyncio
    async def test_second_compaction_carries_previous_summary(self):
        compactor, completion = _make_compactor("first summary")
        model = _make_model(10_000)
        state = CompactionState()
        context = Context(system_prompt="s", messages=_make_tool_turn(30))

        await compactor.maybe_compact(model, context, state)
        context.messages.extend(_make_tool_turn(20)[1:])
        completion.complete_once.return_value = "second summary"

        assert await compactor.maybe_compact(model, context, state) is True
        prompt = completion.complete_once.await_args.args[2][0].text
        assert "Previous summary (from even earlier):\nfirst summary" in prompt
        assert SUMMARY_HEADING not in prompt
        assert state.summary == "second summary"
        assert sum(1 for m in context.messages if is_summary_message(m)) == 1

    @pytest.mark.asyncio
    async def test_summary_failure_uses_fallback(self):
        compactor, completion = _make_compactor()
        completion.complete_once.side_effect = RuntimeError("timeout")
        context = Context(system_prompt="s", messages=_make_chat(50))
        state = CompactionState()

        assert await compactor.maybe_compact(_make_model(10_000), context, state) is True
        assert NO_CONTEXT_NOTE in context.messages[1].text
        assert state.summary == NO_CONTEXT_NOTE

    @pytest.mark.asyncio
    async def test_summary_failure_keeps_previous_summary(self):
        compactor, completion = _make_compactor()
        completion.complete_once.side_effect = RuntimeError("timeout")
        context = Context(system_prompt="s", messages=_make_chat(50))
        state = CompactionState(summary="earlier notes")

        await compactor.maybe_compact(_make_model(10_000), context, state)
        assert state.summary == f"earlier notes\n\n{LOST_CONTEXT_NOTE}"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        compactor, completion = _make_compactor()
        completion.complete_once.side_effect = TurnCancelled("stop")
        messages = _make_chat(50)
        context = Context(system_prompt="s", messages=list(messages))

        with pytest.raises(TurnCancelled):
            await compactor.maybe_compact(_make_model(10_000), context)
        assert context.messages == messages


# ---------------------------------------------------------------------------
# Handoff
# ---------------------------------------------------------------------------


class TestGenerateHandoff:
    @pytest.mark.asyncio
    async def test_too_short_returns_none(self):
        compactor, completion = _make_compactor()
        context = Context(system_prompt="s", messages=_make_chat(3))

        assert await compactor.generate_handoff(_make_model(), context) is None
        completion.complete_once.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_uses_recent_transcript(self):
        compactor, completion = _make_compactor("- mining at Sol")
        messages = _make_chat(40, chars=20)
        context = Context(system_prompt="s", messages=messages)

        assert await compactor.generate_handoff(_make_model(), context) == "- mining at Sol"
        call = completion.complete_once.await_args
        prompt = call.args[2][0].text
        assert "u10" in prompt
        assert "[USER] u8" not in prompt  # older than the last 30 messages
        assert call.kwargs["timeout"] == 20.0
        assert call.kwargs["max_tokens"] == 512

    @pytest.mark.asyncio
    async def test_failure_returns_none(self):
        compactor, completion = _make_compactor()
        completion.complete_once.side_effect = RuntimeError("down")
        context = Context(system_prompt="s", messages=_make_chat(10))

        assert await compactor.generate_handoff(_make_model(), context) is None
