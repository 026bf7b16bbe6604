"""Agent turn runner -- the bounded tool-use loop.

A turn is up to max_rounds rounds. Each round compacts the context if
needed, asks the model for the next step and executes the tool calls it
returns, strictly one after another, appending every result to the
context. The turn ends when the model stops calling tools.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Protocol

from commander.api.compaction import ContextCompactor
from commander.api.completion import CompletionClient
from commander.api.models import (
    AssistantMessage,
    CompactionState,
    Context,
    ModelInfo,
    TextBlock,
    ThinkingBlock,
    ToolResultMessage,
)
from commander.cancellation import CancellationToken

logger = logging.getLogger(__name__)

MAX_ROUNDS = 30
MAX_REASON_CHARS = 180
THINKING_MIN_FRAGMENT = 10
THINKING_FRAGMENTS = 3

_SENTENCE_SPLIT = re.compile(r"[.!?\n]")


class ToolExecutor(Protocol):
    async def execute_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        reason: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> str: ...


def extract_reasoning(message: AssistantMessage) -> str:
    """Short description of what the model is doing, for the logs.

    Uses the text blocks when there are any, otherwise the last few
    sentences of the thinking blocks.
    """
    texts = [b.text.strip() for b in message.content if isinstance(b, TextBlock) and b.text.strip()]
    if texts:
        return " ".join(texts)

    thinking = " ".join(
        b.thinking.strip()
        for b in message.content
        if isinstance(b, ThinkingBlock) and b.thinking.strip()
    )
    if not thinking:
        return ""
    fragments = [
        s.strip() for s in _SENTENCE_SPLIT.split(thinking)
        if len(s.strip()) > THINKING_MIN_FRAGMENT
    ]
    return ". ".join(fragments[-THINKING_FRAGMENTS:])


def shorten_reason(reasoning: str) -> str | None:
    if not reasoning:
        return None
    if len(reasoning) > MAX_REASON_CHARS:
        return reasoning[: MAX_REASON_CHARS - 3] + "..."
    return reasoning


class AgentRunner:
    """Runs agent turns against a shared, caller-owned Context."""

    def __init__(
        self,
        completion: CompletionClient,
        compactor: ContextCompactor,
        executor: ToolExecutor,
        max_rounds: int = MAX_ROUNDS,
    ) -> None:
        self._completion = completion
        self._compactor = compactor
        self._executor = executor
        self._max_rounds = max_rounds

    async def run_turn(
        self,
        model: ModelInfo,
        context: Context,
        cancel: CancellationToken | None = None,
        compaction: CompactionState | None = None,
    ) -> None:
        """Run one turn, mutating `context.messages` in place.

        Returns normally when the model stops calling tools, when the round
        limit is hit or when cancellation is observed between steps.

        Raises:
            CompletionError: the model could not be reached after retries.
            TurnCancelled: cancellation fired inside a completion or wait.
        """
        for round_num in range(self._max_rounds):
            if cancel is not None and cancel.cancelled:
                logger.info("Turn aborted")
                return

            await self._compactor.maybe_compact(model, context, compaction, cancel)

            response = await self._completion.complete_with_retry(model, context, cancel)
            context.messages.append(response)

            tool_calls = response.tool_calls
            reasoning = extract_reasoning(response)

            if not tool_calls:
                if reasoning:
                    logger.info("[agent] %s", reasoning)
                logger.debug("Turn finished after %d round(s)", round_num + 1)
                return

            reason = shorten_reason(reasoning)
            for i, call in enumerate(tool_calls):
                if cancel is not None and cancel.cancelled:
                    logger.info("Turn aborted during tool execution")
                    return

                start_time = time.monotonic()
                result = await self._executor.execute_tool(
                    call.name,
                    call.arguments,
                    reason if i == 0 else None,
                    cancel,
                )
                is_error = result.startswith("Error")
                logger.debug(
                    "Tool %s (%s) -> %s in %d ms: %s",
                    call.name,
                    call.id,
                    "error" if is_error else "ok",
                    int((time.monotonic() - start_time) * 1000),
                    result[:200],
                )
                context.messages.append(ToolResultMessage(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    text=result,
                    is_error=is_error,
                ))

        logger.warning("Reached max tool rounds (%d), ending turn", self._max_rounds)
