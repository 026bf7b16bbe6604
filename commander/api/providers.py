"""LLM completion providers and model resolution.

Two wire formats are supported through direct httpx calls (no vendor SDK):
  - Anthropic Messages API (POST /v1/messages)
  - OpenAI-compatible chat completions (POST /chat/completions), which covers
    OpenAI itself, hosted gateways (OpenRouter, Groq, ...) and local servers
    (Ollama, LM Studio, vLLM).

Providers do a single request and translate between the wire format and
commander.api.models. Timeouts, cancellation and retries are layered on top
by CompletionClient.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from commander.api.models import (
    AssistantMessage,
    ContentBlock,
    Context,
    Message,
    ModelInfo,
    TextBlock,
    ThinkingBlock,
    ToolCallBlock,
    ToolResultMessage,
    UserMessage,
)
from commander.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

ANTHROPIC_BASE_URL = "https://api.anthropic.com"

HOSTED_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "xai": "https://api.x.ai/v1",
    "mistral": "https://api.mistral.ai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}

LOCAL_PROVIDERS = ("ollama", "lmstudio", "vllm")

DEFAULT_CONTEXT_WINDOW = 128_000
ANTHROPIC_CONTEXT_WINDOW = 200_000

PayloadHook = Callable[[dict[str, Any]], None]


class CompletionProvider(Protocol):
    """A backend that turns a Context into one AssistantMessage."""

    async def complete(
        self,
        model: ModelInfo,
        context: Context,
        *,
        max_tokens: int,
        on_payload: PayloadHook | None = None,
    ) -> AssistantMessage: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------


def parse_model_string(model_str: str) -> tuple[str, str]:
    """Split "provider/model-id" on the first slash."""
    provider, sep, model_id = model_str.partition("/")
    if not sep or not provider or not model_id:
        raise ValueError(
            f'Invalid model string "{model_str}". Expected format: '
            "provider/model-id (e.g. ollama/gpt-oss:20b)"
        )
    return provider, model_id


def _api_key_for(provider: str, settings: Settings) -> str:
    return getattr(settings, f"{provider}_api_key", "") or ""


def resolve_model(model_str: str, settings: Settings) -> tuple[ModelInfo, str]:
    """Resolve a model string to a ModelInfo and the API key to use with it."""
    provider, model_id = parse_model_string(model_str)

    # OpenRouter meta-models are registered as "openrouter/<name>"
    if provider == "openrouter" and "/" not in model_id:
        model_id = f"openrouter/{model_id}"

    if provider == "anthropic":
        model = ModelInfo(
            provider=provider,
            id=model_id,
            api="anthropic-messages",
            base_url=ANTHROPIC_BASE_URL,
            context_window=settings.context_window or ANTHROPIC_CONTEXT_WINDOW,
            max_tokens=settings.max_tokens,
            reasoning=True,
        )
        api_key = settings.anthropic_api_key
    elif provider in HOSTED_BASE_URLS:
        model = ModelInfo(
            provider=provider,
            id=model_id,
            api="openai-completions",
            base_url=HOSTED_BASE_URLS[provider],
            context_window=settings.context_window or DEFAULT_CONTEXT_WINDOW,
            max_tokens=settings.max_tokens,
        )
        api_key = _api_key_for(provider, settings)
    elif provider in LOCAL_PROVIDERS:
        model = ModelInfo(
            provider=provider,
            id=model_id,
            api="openai-completions",
            base_url=getattr(settings, f"{provider}_base_url"),
            context_window=settings.context_window or DEFAULT_CONTEXT_WINDOW,
            max_tokens=settings.max_tokens,
        )
        # Local servers ignore the key but some reject an empty Authorization header
        api_key = "local"
    elif settings.openai_compat_base_url:
        model = ModelInfo(
            provider=provider,
            id=model_id,
            api="openai-completions",
            base_url=settings.openai_compat_base_url,
            context_window=settings.context_window or DEFAULT_CONTEXT_WINDOW,
            max_tokens=settings.max_tokens,
        )
        api_key = settings.openai_compat_api_key or "local"
    else:
        known = ", ".join(["anthropic", *HOSTED_BASE_URLS, *LOCAL_PROVIDERS])
        raise ValueError(
            f'Unknown provider "{provider}". Known providers: {known}\n'
            "For a custom OpenAI-compatible endpoint, set COMMANDER_OPENAI_COMPAT_BASE_URL "
            "and COMMANDER_OPENAI_COMPAT_API_KEY."
        )

    if not api_key:
        logger.warning("No API key configured for provider %s -- calls will likely fail", provider)
    logger.info("Using model %s/%s at %s", provider, model_id, model.base_url)
    return model, api_key


def build_provider(model: ModelInfo, api_key: str, settings: Settings) -> CompletionProvider:
    """Create the provider matching the model's wire format."""
    timeout = httpx.Timeout(
        connect=settings.llm_timeout_connect,
        read=settings.llm_timeout,
        write=10.0,
        pool=10.0,
    )
    if model.api == "anthropic-messages":
        return AnthropicProvider(api_key, base_url=model.base_url, timeout=timeout)
    return OpenAICompatProvider(api_key, base_url=model.base_url, timeout=timeout)


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------


def build_anthropic_headers(api_key: str) -> dict[str, str]:
    """Auth headers for the Messages API.

    OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers; regular
    API keys use x-api-key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    if "sk-ant-oat" in api_key:
        headers["authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
        headers["anthropic-dangerous-direct-browser-access"] = "true"
    else:
        headers["x-api-key"] = api_key
    return headers


_ANTHROPIC_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "toolUse",
    "pause_turn": "stop",
    "refusal": "error",
}


class AnthropicProvider:
    """Completion provider for the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout: httpx.Timeout | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._http = http or httpx.AsyncClient(
            base_url=base_url,
            headers=build_anthropic_headers(api_key),
            timeout=timeout or httpx.Timeout(connect=10, read=120, write=10, pool=10),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    async def close(self) -> None:
        await self._http.aclose()

    def build_payload(self, model: ModelInfo, context: Context, max_tokens: int) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model.id,
            "max_tokens": max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": context.system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": self._format_messages(context.messages),
        }
        if context.tools:
            payload["tools"] = [
                {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "input_schema": tool.get("parameters", {"type": "object", "properties": {}}),
                }
                for tool in context.tools
            ]
        return payload

    @staticmethod
    def _format_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to API format.

        Consecutive tool results are merged into a single user message, which
        is what the API requires after an assistant turn with several tool_use
        blocks.
        """
        out: list[dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, UserMessage):
                out.append({"role": "user", "content": msg.text})
            elif isinstance(msg, AssistantMessage):
                blocks: list[dict[str, Any]] = []
                for block in msg.content:
                    if isinstance(block, TextBlock):
                        if block.text.strip():
                            blocks.append({"type": "text", "text": block.text})
                    elif isinstance(block, ToolCallBlock):
                        blocks.append({
                            "type": "tool_use",
                            "id": block.id,
                            "name": block.name,
                            "input": block.arguments,
                        })
                    elif isinstance(block, ThinkingBlock):
                        # Unsigned thinking cannot be replayed
                        if block.signature:
                            blocks.append({
                                "type": "thinking",
                                "thinking": block.thinking,
                                "signature": block.signature,
                            })
                if blocks:
                    out.append({"role": "assistant", "content": blocks})
            elif isinstance(msg, ToolResultMessage):
                result = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.text,
                    "is_error": msg.is_error,
                }
                prev = out[-1] if out else None
                if (
                    prev is not None
                    and prev["role"] == "user"
                    and isinstance(prev["content"], list)
                    and prev["content"]
                    and prev["content"][0].get("type") == "tool_result"
                ):
                    prev["content"].append(result)
                else:
                    out.append({"role": "user", "content": [result]})
        return out

    @staticmethod
    def parse_response(data: dict[str, Any]) -> AssistantMessage:
        content: list[ContentBlock] = []
        for block in data.get("content", []):
            block_type = block.get("type")
            if block_type == "text":
                content.append(TextBlock(text=block.get("text", "")))
            elif block_type == "tool_use":
                content.append(ToolCallBlock(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=block.get("input") or {},
                ))
            elif block_type == "thinking":
                content.append(ThinkingBlock(
                    thinking=block.get("thinking", ""),
                    signature=block.get("signature"),
                ))
        usage = data.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0))
        output_tokens = int(usage.get("output_tokens", 0))
        return AssistantMessage(
            content=content,
            stop_reason=_ANTHROPIC_STOP_REASONS.get(data.get("stop_reason") or "", "stop"),
            usage={
                "input": input_tokens,
                "output": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            },
        )

    async def complete(
        self,
        model: ModelInfo,
        context: Context,
        *,
        max_tokens: int,
        on_payload: PayloadHook | None = None,
    ) -> AssistantMessage:
        payload = self.build_payload(model, context, max_tokens)
        if on_payload:
            on_payload(payload)

        try:
            response = await self._http.post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise RuntimeError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"HTTP error: {e}") from e

        if response.status_code == 200:
            return self.parse_response(response.json())

        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            error_type = error.get("type", "unknown")
            error_msg = error.get("message", "unknown error")
        else:
            error_type = "http_error"
            error_msg = str(error) if error else f"HTTP {response.status_code}: {response.text[:500]}"
        return AssistantMessage(
            stop_reason="error",
            error_message=f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
        )


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


_OPENAI_STOP_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "toolUse",
    "function_call": "toolUse",
    "content_filter": "error",
}


class OpenAICompatProvider:
    """Completion provider for OpenAI-style /chat/completions endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: httpx.Timeout | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(
            timeout=timeout or httpx.Timeout(connect=10, read=120, write=10, pool=10),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self._http.aclose()

    def build_payload(self, model: ModelInfo, context: Context, max_tokens: int) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": context.system_prompt}]
        for msg in context.messages:
            if isinstance(msg, UserMessage):
                messages.append({"role": "user", "content": msg.text})
            elif isinstance(msg, AssistantMessage):
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
                tool_calls = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in msg.tool_calls
                ]
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                messages.append(entry)
            elif isinstance(msg, ToolResultMessage):
                messages.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.text,
                })

        body: dict[str, Any] = {
            "model": model.id,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if context.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool.get("description", ""),
                        "parameters": tool.get("parameters", {"type": "object", "properties": {}}),
                    },
                }
                for tool in context.tools
            ]
            body["tool_choice"] = "auto"
        return body

    @staticmethod
    def parse_response(data: dict[str, Any]) -> AssistantMessage:
        content: list[ContentBlock] = []
        choices = data.get("choices") or []
        finish_reason = ""
        if choices:
            choice = choices[0]
            message = choice.get("message") or {}
            finish_reason = choice.get("finish_reason") or ""

            # Local reasoning models report their chain of thought out of band
            reasoning = message.get("reasoning_content") or message.get("reasoning")
            if isinstance(reasoning, str) and reasoning.strip():
                content.append(ThinkingBlock(thinking=reasoning))

            text = message.get("content")
            if isinstance(text, str) and text:
                content.append(TextBlock(text=text))

            for call in message.get("tool_calls") or []:
                func = call.get("function", {})
                args_str = func.get("arguments") or "{}"
                try:
                    args = json.loads(args_str) if isinstance(args_str, str) else dict(args_str)
                except json.JSONDecodeError:
                    args = {"raw": args_str}
                if not isinstance(args, dict):
                    args = {"value": args}
                content.append(ToolCallBlock(
                    id=call.get("id", ""),
                    name=func.get("name", ""),
                    arguments=args,
                ))

        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens", 0))
        completion_tokens = int(usage.get("completion_tokens", 0))
        return AssistantMessage(
            content=content,
            stop_reason=_OPENAI_STOP_REASONS.get(finish_reason, "stop"),
            usage={
                "input": prompt_tokens,
                "output": completion_tokens,
                "total_tokens": int(usage.get("total_tokens", prompt_tokens + completion_tokens)),
            },
        )

    async def complete(
        self,
        model: ModelInfo,
        context: Context,
        *,
        max_tokens: int,
        on_payload: PayloadHook | None = None,
    ) -> AssistantMessage:
        body = self.build_payload(model, context, max_tokens)
        if on_payload:
            on_payload(body)

        url = f"{self._base_url}/chat/completions"
        try:
            response = await self._http.post(url, json=body)
        except httpx.TimeoutException as e:
            raise RuntimeError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RuntimeError(f"HTTP error: {e}") from e

        if response.status_code == 200:
            return self.parse_response(response.json())

        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            error_msg = error.get("message", response.text[:500])
        else:
            error_msg = str(error) if error else response.text[:500]
        return AssistantMessage(
            stop_reason="error",
            error_message=f"API error ({response.status_code}): {error_msg}",
        )
