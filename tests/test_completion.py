"""Tests for CompletionClient retry, timeout and cancellation behavior."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from commander.api.completion import CompletionClient
from commander.api.models import AssistantMessage, Context, ModelInfo, TextBlock, UserMessage
from commander.cancellation import CancellationToken, TurnCancelled
from commander.errors import CompletionError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_model() -> ModelInfo:
    return ModelInfo(
        provider="anthropic",
        id="claude-test",
        api="anthropic-messages",
        base_url="https://api.anthropic.com",
        context_window=200_000,
        max_tokens=4096,
    )


def _make_context() -> Context:
    return Context(system_prompt="test", messages=[UserMessage(text="Play the game.")])


def _make_response(text: str = "ok") -> AssistantMessage:
    return AssistantMessage(content=[TextBlock(text=text)])


def _make_client(provider, sleeps: list[float] | None = None, **kwargs) -> CompletionClient:
    async def record_sleep(delay, cancel=None):
        if sleeps is not None:
            sleeps.append(delay)
        if cancel is not None:
            cancel.raise_if_cancelled()

    return CompletionClient(provider, sleep=record_sleep, **kwargs)


def _make_provider(*results) -> AsyncMock:
    provider = AsyncMock()
    provider.complete = AsyncMock(side_effect=list(results))
    return provider


# ---------------------------------------------------------------------------
# complete_with_retry
# ---------------------------------------------------------------------------


class TestCompleteWithRetry:
    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        provider = _make_provider(_make_response("hello"))
        sleeps: list[float] = []
        client = _make_client(provider, sleeps)

        result = await client.complete_with_retry(_make_model(), _make_context())

        assert result.text == "hello"
        assert provider.complete.await_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self):
        provider = _make_provider(RuntimeError("503"), _make_response("second"))
        sleeps: list[float] = []
        client = _make_client(provider, sleeps)

        result = await client.complete_with_retry(_make_model(), _make_context())

        assert result.text == "second"
        assert provider.complete.await_count == 2
        assert sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_exhausts_attempts_with_backoff(self):
        """Every attempt fails: exactly 3 attempts, backoff 5s, 10s, 20s."""
        provider = _make_provider(
            RuntimeError("a"), RuntimeError("b"), RuntimeError("c"),
        )
        sleeps: list[float] = []
        client = _make_client(provider, sleeps)

        with pytest.raises(CompletionError) as exc_info:
            await client.complete_with_retry(_make_model(), _make_context())

        assert provider.complete.call_count == 3
        assert sleeps == [5.0, 10.0, 20.0]
        assert exc_info.value.attempts == 3
        assert "c" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_error_stop_reason_is_retried(self):
        provider = _make_provider(
            AssistantMessage(stop_reason="error", error_message="overloaded"),
            _make_response("fine"),
        )
        client = _make_client(provider, [])

        result = await client.complete_with_retry(_make_model(), _make_context())
        assert result.text == "fine"

    @pytest.mark.asyncio
    async def test_empty_content_is_retried(self):
        provider = _make_provider(AssistantMessage(content=[]), _make_response("fine"))
        client = _make_client(provider, [])

        result = await client.complete_with_retry(_make_model(), _make_context())
        assert result.text == "fine"
        assert provider.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_immediately(self):
        token = CancellationToken()
        provider = _make_provider(RuntimeError("a"), RuntimeError("b"), RuntimeError("c"))
        sleeps: list[float] = []

        async def cancelling_sleep(delay, cancel=None):
            sleeps.append(delay)
            token.cancel("shutdown")
            cancel.raise_if_cancelled()

        client = CompletionClient(provider, sleep=cancelling_sleep)

        with pytest.raises(TurnCancelled):
            await client.complete_with_retry(_make_model(), _make_context(), token)
        assert provider.complete.await_count == 1
        assert sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_cancel_during_attempt_is_not_retried(self):
        token = CancellationToken()
        provider = AsyncMock()

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        provider.complete = AsyncMock(side_effect=hang)
        client = _make_client(provider, [])
        asyncio.get_running_loop().call_later(0.02, token.cancel, "stop")

        with pytest.raises(TurnCancelled):
            await client.complete_with_retry(_make_model(), _make_context(), token)
        assert provider.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self):
        provider = AsyncMock()
        calls = 0

        async def slow_then_fast(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(10)
            return _make_response("fast")

        provider.complete = AsyncMock(side_effect=slow_then_fast)
        sleeps: list[float] = []
        client = _make_client(provider, sleeps, timeout=0.05)

        result = await client.complete_with_retry(_make_model(), _make_context())
        assert result.text == "fast"
        assert sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_repeated_timeouts_name_the_timeout(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        provider = AsyncMock()
        provider.complete = AsyncMock(side_effect=hang)
        client = _make_client(provider, [], timeout=0.05)

        with pytest.raises(CompletionError, match="timed out after 0.05s") as exc_info:
            await client.complete_with_retry(_make_model(), _make_context())
        assert "failed after 3 attempts" in str(exc_info.value)
        assert "is the model loaded?" in str(exc_info.value.__cause__)
        assert provider.complete.call_count == 3

    @pytest.mark.asyncio
    async def test_passes_max_tokens(self):
        provider = _make_provider(_make_response())
        client = _make_client(provider, [], max_tokens=1234)

        await client.complete_with_retry(_make_model(), _make_context())
        assert provider.complete.await_args.kwargs["max_tokens"] == 1234


# ---------------------------------------------------------------------------
# complete_once
# ---------------------------------------------------------------------------


class TestCompleteOnce:
    @pytest.mark.asyncio
    async def test_returns_stripped_text(self):
        provider = _make_provider(_make_response("  summary  "))
        client = _make_client(provider)

        text = await client.complete_once(
            _make_model(), "summarize", [UserMessage(text="x")], timeout=1.0, max_tokens=100,
        )
        assert text == "summary"
        context = provider.complete.await_args.args[1]
        assert context.system_prompt == "summarize"
        assert context.tools == []

    @pytest.mark.asyncio
    async def test_single_attempt_on_failure(self):
        provider = _make_provider(RuntimeError("down"), _make_response("never"))
        client = _make_client(provider)

        with pytest.raises(RuntimeError):
            await client.complete_once(
                _make_model(), "s", [UserMessage(text="x")], timeout=1.0, max_tokens=100,
            )
        assert provider.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_text_raises(self):
        provider = _make_provider(_make_response("   "))
        client = _make_client(provider)

        with pytest.raises(CompletionError):
            await client.complete_once(
                _make_model(), "s", [UserMessage(text="x")], timeout=1.0, max_tokens=100,
            )

    @pytest.mark.asyncio
    async def test_timeout_raises_completion_error(self):
        provider = AsyncMock()

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        provider.complete = AsyncMock(side_effect=hang)
        client = _make_client(provider)

        with pytest.raises(CompletionError, match="timed out"):
            await client.complete_once(
                _make_model(), "s", [UserMessage(text="x")], timeout=0.05, max_tokens=100,
            )
