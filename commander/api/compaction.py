"""Context compaction -- keeps a growing turn inside the model's window.

When the estimated size of the message list reaches 55% of the context
window, older messages are replaced by one LLM-written summary message:

    [initial instruction] [summary] [recent messages, verbatim]

Splits only happen on turn boundaries so an assistant message is never
separated from its tool results. Summarization failure is not fatal: a
degraded note is substituted and the turn carries on.

This module also writes the end-of-session handoff note, which reuses the
same transcript format.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Sequence

from commander.api.completion import CompletionClient
from commander.api.models import (
    AssistantMessage,
    CompactionState,
    Context,
    Message,
    ModelInfo,
    TextBlock,
    ThinkingBlock,
    ToolCallBlock,
    ToolResultMessage,
    UserMessage,
)
from commander.cancellation import CancellationToken, TurnCancelled

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
CONTEXT_BUDGET_RATIO = 0.55  # rest of the window: system prompt, tools, response
RECENT_BUDGET_RATIO = 0.6  # share of the budget kept verbatim after compaction
MIN_RECENT_MESSAGES = 10
SUMMARY_MAX_TOKENS = 1024
SUMMARY_TIMEOUT = 30.0
RESULT_PREVIEW_CHARS = 500

HANDOFF_MAX_MESSAGES = 30
HANDOFF_MAX_TOKENS = 512
HANDOFF_TIMEOUT = 20.0

SUMMARIZER_SYSTEM_PROMPT = "You are a concise summarizer. Output only the summary, no preamble."
HANDOFF_SYSTEM_PROMPT = "You are a concise summarizer. Output only the handoff note, no preamble."

SUMMARY_HEADING = "## Session History Summary"

_SUMMARY_INSTRUCTIONS = (
    "Summarize this game session transcript. "
    "Focus on: (1) what the agent was CURRENTLY DOING and what it planned to do next, "
    "which is the most important part, "
    "(2) current location, credits, ship status, cargo, "
    "(3) active goals, key events, relationships with other players, and important discoveries. "
    "Be concise; bullet points are fine. Preserve all decision-relevant details.\n\n"
)

_HANDOFF_INSTRUCTIONS = """\
The agent's session is ending. Write a brief handoff note (3-8 bullet points) that a future session can use to resume immediately.
Include:
- What the agent was doing RIGHT NOW (mid-action state)
- Immediate next step it planned to take
- Current location, ship, credits, cargo highlights
- Any active goals or ongoing plans
- Important recent events (combat, trades, discoveries)

Be concise and actionable. This will be read by the next session's agent to pick up where this one left off.

Recent transcript:
"""

LOST_CONTEXT_NOTE = "(Additional context was lost due to summarization failure. Check captain's log.)"
NO_CONTEXT_NOTE = "(Earlier session context was lost. Check your captain's log for history.)"


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """chars/4, rounded up. Deterministic and monotonic in len(text)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(msg: Message) -> int:
    if isinstance(msg, UserMessage | ToolResultMessage):
        return estimate_tokens(msg.text)
    total = 0
    for block in msg.content:
        if isinstance(block, TextBlock):
            total += estimate_tokens(block.text)
        elif isinstance(block, ToolCallBlock):
            total += estimate_tokens(block.name + json.dumps(block.arguments, default=str))
        elif isinstance(block, ThinkingBlock):
            total += estimate_tokens(block.thinking)
    return total


def total_message_tokens(messages: Sequence[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def is_summary_message(msg: Message) -> bool:
    return isinstance(msg, UserMessage) and msg.text.startswith(SUMMARY_HEADING)


# ------------------------------------------------------------------
# Transcript
# ------------------------------------------------------------------


def format_transcript(messages: Sequence[Message]) -> str:
    """Render messages as a plain tagged transcript for the summarizer."""
    lines: list[str] = []
    for msg in messages:
        if isinstance(msg, UserMessage):
            lines.append(f"[USER] {msg.text}")
        elif isinstance(msg, AssistantMessage):
            for block in msg.content:
                if isinstance(block, TextBlock):
                    if block.text.strip():
                        lines.append(f"[AGENT] {block.text.strip()}")
                elif isinstance(block, ToolCallBlock):
                    args = ", ".join(
                        f"{key}={value if isinstance(value, str) else json.dumps(value, default=str)}"
                        for key, value in (block.arguments or {}).items()
                    )
                    lines.append(f"[TOOL CALL] {block.name}({args})")
        elif isinstance(msg, ToolResultMessage):
            text = msg.text
            if len(text) > RESULT_PREVIEW_CHARS:
                text = text[:RESULT_PREVIEW_CHARS] + "..."
            error_tag = " [ERROR]" if msg.is_error else ""
            lines.append(f"[RESULT{error_tag}] {msg.tool_name}: {text}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Context Compactor
# ------------------------------------------------------------------


class ContextCompactor:
    """Summarizes old messages once the context passes its token budget.

    Uses the completion client's isolated one-off completion for the summary
    so no turn state is shared with the summarizer.
    """

    def __init__(
        self,
        completion: CompletionClient,
        *,
        summary_timeout: float = SUMMARY_TIMEOUT,
        handoff_timeout: float = HANDOFF_TIMEOUT,
    ) -> None:
        self._completion = completion
        self._summary_timeout = summary_timeout
        self._handoff_timeout = handoff_timeout

    @staticmethod
    def budget_for(model: ModelInfo) -> int:
        return math.floor(model.context_window * CONTEXT_BUDGET_RATIO)

    @staticmethod
    def find_split_point(messages: Sequence[Message], recent_budget: int) -> int:
        """Walk newest to oldest filling the recent bucket. Returns the raw split index.

        Never walks into messages[0] and never stops while fewer than
        MIN_RECENT_MESSAGES messages would remain past the split.
        """
        split = len(messages)
        recent_tokens = 0
        for i in range(len(messages) - 1, 0, -1):
            msg_tokens = estimate_message_tokens(messages[i])
            if (
                recent_tokens + msg_tokens > recent_budget
                and split < len(messages) - MIN_RECENT_MESSAGES
            ):
                break
            recent_tokens += msg_tokens
            split = i
        return split

    @staticmethod
    def find_turn_boundary(messages: Sequence[Message], idx: int) -> int:
        """Snap `idx` to a position directly before a user or assistant message.

        Forward candidates come first, but only as far as still leaves
        MIN_RECENT_MESSAGES in the tail: a user message, else an assistant
        message (inside a long turn, which still keeps every tool result
        with the call that produced it). Only if neither exists does it
        search backward, with the same preference, down to index 2 (a
        split at 1 would compact nothing).
        """
        limit = len(messages) - MIN_RECENT_MESSAGES
        for kind in (UserMessage, AssistantMessage):
            for i in range(idx, limit + 1):
                if isinstance(messages[i], kind):
                    return i
        for kind in (UserMessage, AssistantMessage):
            for i in range(min(idx, len(messages)) - 1, 1, -1):
                if isinstance(messages[i], kind):
                    return i
        return idx

    async def maybe_compact(
        self,
        model: ModelInfo,
        context: Context,
        state: CompactionState | None = None,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """Compact `context` in place if it is over budget. Returns True if compacted."""
        budget = self.budget_for(model)
        current_tokens = total_message_tokens(context.messages)
        if current_tokens < budget:
            return False

        logger.info("Context at ~%d tokens (budget: %d). Compacting...", current_tokens, budget)

        recent_budget = math.floor(budget * RECENT_BUDGET_RATIO)
        split = self.find_split_point(context.messages, recent_budget)
        split = self.find_turn_boundary(context.messages, split)

        old_messages = context.messages[1:split]
        if split <= 1 or all(is_summary_message(m) for m in old_messages):
            logger.info("Nothing to compact (all messages are recent)")
            return False

        recent_messages = context.messages[split:]
        previous = state.summary if state is not None else ""

        start_time = time.monotonic()
        try:
            summary = await self._summarize(model, old_messages, previous, cancel)
            logger.info(
                "Summarized %d messages into ~%d tokens (%d ms)",
                len(old_messages),
                estimate_tokens(summary),
                int((time.monotonic() - start_time) * 1000),
            )
        except TurnCancelled:
            raise
        except Exception as e:
            logger.error("Summarization failed: %s", e)
            summary = f"{previous}\n\n{LOST_CONTEXT_NOTE}" if previous else NO_CONTEXT_NOTE

        if state is not None:
            state.summary = summary

        summary_message = UserMessage(
            text=(
                f"{SUMMARY_HEADING}\n\n"
                "The following is a summary of your earlier actions this session. "
                "Use it to maintain continuity.\n\n"
                f"{summary}\n\n"
                "---\nNow continue your mission. Recent events follow."
            ),
        )
        context.messages = [context.messages[0], summary_message, *recent_messages]
        logger.info(
            "Compacted: %d old messages -> summary + %d recent messages",
            len(old_messages),
            len(recent_messages),
        )
        return True

    async def _summarize(
        self,
        model: ModelInfo,
        old_messages: Sequence[Message],
        previous_summary: str,
        cancel: CancellationToken | None,
    ) -> str:
        # The previous summary message is passed separately below
        transcript = format_transcript([m for m in old_messages if not is_summary_message(m)])

        prompt = _SUMMARY_INSTRUCTIONS
        if previous_summary:
            prompt += f"Previous summary (from even earlier):\n{previous_summary}\n\n"
        prompt += f"Transcript to summarize:\n{transcript}"

        return await self._completion.complete_once(
            model,
            SUMMARIZER_SYSTEM_PROMPT,
            [UserMessage(text=prompt)],
            cancel,
            timeout=self._summary_timeout,
            max_tokens=SUMMARY_MAX_TOKENS,
        )

    async def generate_handoff(
        self,
        model: ModelInfo,
        context: Context,
        cancel: CancellationToken | None = None,
    ) -> str | None:
        """Write a short note a future session can resume from.

        Returns None if the agent barely did anything or the call fails.
        """
        if len(context.messages) < 4:
            return None

        transcript = format_transcript(context.messages[-HANDOFF_MAX_MESSAGES:])
        try:
            return await self._completion.complete_once(
                model,
                HANDOFF_SYSTEM_PROMPT,
                [UserMessage(text=_HANDOFF_INSTRUCTIONS + transcript)],
                cancel,
                timeout=self._handoff_timeout,
                max_tokens=HANDOFF_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Handoff note generation failed: %s", e)
            return None
