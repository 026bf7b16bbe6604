"""LLM completion with per-attempt timeout and exponential backoff.

Each attempt races the provider call against a local timeout and the
caller's cancellation token (first to fire wins). Failed attempts back off
5s, 10s, 20s. Caller cancellation is terminal and never retried.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

from commander.api.models import AssistantMessage, Context, Message, ModelInfo
from commander.api.providers import CompletionProvider
from commander.cancellation import (
    CancellationToken,
    Sleeper,
    TurnCancelled,
    cancellable_sleep,
    run_cancellable,
)
from commander.config import Settings
from commander.errors import CompletionError, DeadlineExceeded

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 5.0  # seconds; attempt i backs off RETRY_BASE_DELAY * 2**i
LLM_TIMEOUT = 120.0
TURN_MAX_TOKENS = 4096


class CompletionClient:
    """Wraps a CompletionProvider with timeout, retry and cancellation."""

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        timeout: float = LLM_TIMEOUT,
        max_tokens: int = TURN_MAX_TOKENS,
        debug: bool = False,
        sleep: Sleeper = cancellable_sleep,
    ) -> None:
        self._provider = provider
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._debug = debug
        self._sleep = sleep

    @classmethod
    def from_settings(cls, provider: CompletionProvider, settings: Settings) -> CompletionClient:
        return cls(
            provider,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            timeout=settings.llm_timeout,
            max_tokens=settings.max_tokens,
            debug=settings.debug,
        )

    async def complete_with_retry(
        self,
        model: ModelInfo,
        context: Context,
        cancel: CancellationToken | None = None,
    ) -> AssistantMessage:
        """Run one turn completion, retrying up to max_retries attempts.

        Raises:
            TurnCancelled: the caller's token fired during an attempt or a wait.
            CompletionError: every attempt failed; chained from the last error.
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                logger.debug(
                    "Calling LLM (attempt %d/%d, %d messages)...",
                    attempt + 1, self._max_retries, len(context.messages),
                )
                result = await self._attempt(model, context, cancel)
                logger.debug(
                    "LLM responded: %d blocks, stop=%s, tokens=%s",
                    len(result.content),
                    result.stop_reason,
                    (result.usage or {}).get("total_tokens", "?"),
                )
                return result
            except TurnCancelled:
                raise
            except Exception as e:
                if cancel is not None and cancel.cancelled:
                    raise TurnCancelled(cancel.reason) from e
                last_error = e

            delay = self._retry_base_delay * 2 ** attempt
            logger.error("LLM error (attempt %d/%d): %s", attempt + 1, self._max_retries, last_error)
            if attempt + 1 < self._max_retries:
                logger.warning("Retrying in %gs...", delay)
            else:
                logger.warning("Cooling down %gs before giving up", delay)
            await self._sleep(delay, cancel)

        raise CompletionError(
            f"LLM call failed after {self._max_retries} attempts: {last_error}",
            attempts=self._max_retries,
        ) from last_error

    async def complete_once(
        self,
        model: ModelInfo,
        system_prompt: str,
        messages: Sequence[Message],
        cancel: CancellationToken | None = None,
        *,
        timeout: float,
        max_tokens: int,
    ) -> str:
        """Isolated single-attempt completion returning the response text.

        The caller supplies its own instruction and messages; no turn state is
        shared. Raises CompletionError on timeout, error or empty text.
        """
        context = Context(system_prompt=system_prompt, messages=list(messages))
        try:
            response = await run_cancellable(
                self._provider.complete(model, context, max_tokens=max_tokens),
                cancel,
                timeout,
            )
        except DeadlineExceeded as e:
            raise CompletionError(f"Completion timed out after {timeout:g}s") from e
        if response.stop_reason == "error":
            raise CompletionError(response.error_message or "LLM returned an error response")

        text = response.text.strip()
        if not text:
            raise CompletionError("Empty completion response")
        return text

    async def _attempt(
        self,
        model: ModelInfo,
        context: Context,
        cancel: CancellationToken | None,
    ) -> AssistantMessage:
        try:
            result = await run_cancellable(
                self._provider.complete(
                    model,
                    context,
                    max_tokens=self._max_tokens,
                    on_payload=self._log_payload if self._debug else None,
                ),
                cancel,
                self._timeout,
            )
        except DeadlineExceeded as e:
            raise CompletionError(
                f"LLM call timed out after {self._timeout:g}s -- is the model loaded?"
            ) from e

        if result.stop_reason == "error":
            raise CompletionError(result.error_message or "LLM returned an error response")
        if not result.content:
            raise CompletionError("LLM returned empty response -- is the model loaded?")
        return result

    @staticmethod
    def _log_payload(payload: dict[str, Any]) -> None:
        logger.debug("LLM payload: %s", json.dumps(payload, default=str)[:20000])
