"""Tool dispatcher and the commander's tool set.

Provides:
- ToolDispatcher: registers local tools, routes everything else to the game
  server through a SessionClient, and turns every outcome into result text
- create_local_tools(): closures over a SessionStore that never touch the
  network:
  - save_credentials: persist login credentials
  - update_todo / read_todo: the agent's scratch TODO list
  - status_log: surface a message to the operator log

The result text contract: a leading "Error" means the call failed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from commander.cancellation import CancellationToken, TurnCancelled
from commander.game.notifications import format_tool_result, log_notifications
from commander.game.session import SessionClient
from commander.game.store import Credentials, SessionStore

logger = logging.getLogger(__name__)

GAME_TOOL = "game"
MAX_RESULT_CHARS = 4000
MAX_LOG_VALUE_CHARS = 60
REDACTED_KEYS = frozenset({"password", "token", "secret", "api_key"})
STATUS_CATEGORIES = [
    "mining", "travel", "combat", "trade", "chat",
    "info", "craft", "faction", "mission", "setup",
]

GAME_TOOL_SCHEMA: dict[str, Any] = {
    "description": "Execute a SpaceMolt game command. See the system prompt for available commands.",
    "type": "object",
    "properties": {
        "command": {
            "type": "string",
            "description": "The game command name (e.g. mine, travel, get_status)",
        },
        "args": {
            "type": "object",
            "description": "Command arguments as key-value pairs",
            "additionalProperties": True,
        },
    },
    "required": ["command"],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def truncate_result(text: str, limit: int = MAX_RESULT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n\n... (truncated, {len(text)} chars total)"


def format_args(args: dict[str, Any] | None) -> str:
    """Render tool arguments for the log, hiding secrets."""
    parts = []
    for key, value in (args or {}).items():
        if key in REDACTED_KEYS:
            parts.append(f"{key}=XXX")
            continue
        text = value if isinstance(value, str) else _compact_json(value)
        if len(text) > MAX_LOG_VALUE_CHARS:
            text = text[: MAX_LOG_VALUE_CHARS - 3] + "..."
        parts.append(f"{key}={text}")
    return " ".join(parts)


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def log_tool_call(name: str, args: dict[str, Any] | None, reason: str | None = None) -> None:
    call = f"{name} {format_args(args)}".rstrip()
    if reason:
        logger.info("[tool] %s -- %s", reason, call)
    else:
        logger.info("[tool] %s", call)


def _text(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers local tool handlers and dispatches tool calls.

    Local handlers are async callables that accept **kwargs and return
    {"content": [{"type": "text", "text": "..."}]}. Any name without a
    local handler goes to the game server.
    """

    def __init__(self, game: SessionClient) -> None:
        self._game = game
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {GAME_TOOL: GAME_TOOL_SCHEMA}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a local tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return every tool definition: name, description, parameters."""
        definitions = []
        for name, schema in self._schemas.items():
            parameters = {k: v for k, v in schema.items() if k != "description"}
            definitions.append({
                "name": name,
                "description": schema.get("description", ""),
                "parameters": parameters,
            })
        return definitions

    async def execute_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        reason: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Execute one tool call and return its result text.

        Never raises for tool or game failures; those come back as text
        starting with "Error". Only TurnCancelled propagates.
        """
        args = dict(arguments or {})

        handler = self._handlers.get(name)
        if handler is not None:
            log_tool_call(name, args, reason)
            return await self._run_local(name, handler, args)

        if name == GAME_TOOL:
            command = str(args.get("command") or "")
            command_args = args.get("args")
            if not command:
                return "Error: missing 'command' argument"
            if not isinstance(command_args, dict):
                command_args = None
        else:
            # Model called a game command directly by name
            command = name
            command_args = args or None

        log_tool_call(command, command_args, reason)
        return await self._run_game(command, command_args or None, cancel)

    async def _run_local(self, name: str, handler: Callable[..., Any], args: dict[str, Any]) -> str:
        try:
            result = await handler(**args)
            return result["content"][0]["text"]
        except Exception as e:
            logger.exception("Local tool %s failed", name)
            return f"Error: {name} failed: {e}"

    async def _run_game(
        self,
        command: str,
        args: dict[str, Any] | None,
        cancel: CancellationToken | None,
    ) -> str:
        try:
            response = await self._game.execute(command, args, cancel)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("Game command %s failed: %s", command, e)
            return f"Error executing {command}: {e}"

        log_notifications(response.notifications)
        if response.error is not None:
            return f"Error: [{response.error.code}] {response.error.message}"
        return truncate_result(format_tool_result(response.result, response.notifications))


# ---------------------------------------------------------------------------
# Local tool closures
# ---------------------------------------------------------------------------


def create_local_tools(store: SessionStore) -> dict[str, Any]:
    """Create local tool closures with the store captured in closure context.

    Returns a dict of async callables suitable for ToolDispatcher registration.
    """

    async def save_credentials(
        username: str,
        password: str,
        empire: str = "",
        player_id: str = "",
    ) -> dict[str, Any]:
        credentials = Credentials(
            username=str(username),
            password=str(password),
            empire=str(empire),
            player_id=str(player_id),
        )
        store.save_credentials(credentials)
        logger.info("[setup] Credentials saved for %s", credentials.username)
        return _text(f"Credentials saved successfully for {credentials.username}.")

    async def update_todo(content: str) -> dict[str, Any]:
        store.save_todo(str(content))
        logger.info("[info] TODO list updated")
        return _text("TODO list updated.")

    async def read_todo() -> dict[str, Any]:
        return _text(store.load_todo() or "(empty TODO list)")

    async def status_log(category: str, message: str) -> dict[str, Any]:
        logger.info("[%s] %s", category, message)
        return _text("Logged.")

    return {
        "save_credentials": save_credentials,
        "update_todo": update_todo,
        "read_todo": read_todo,
        "status_log": status_log,
    }


_SAVE_CREDENTIALS_SCHEMA = {
    "description": "Save your login credentials locally. Do this IMMEDIATELY after registering!",
    "type": "object",
    "properties": {
        "username": {"type": "string", "description": "Your username"},
        "password": {"type": "string", "description": "Your password (256-bit hex)"},
        "empire": {"type": "string", "description": "Your empire"},
        "player_id": {"type": "string", "description": "Your player ID"},
    },
    "required": ["username", "password", "empire", "player_id"],
}

_UPDATE_TODO_SCHEMA = {
    "description": "Update your local TODO list to track goals and progress.",
    "type": "object",
    "properties": {
        "content": {"type": "string", "description": "Full TODO list content (replaces existing)"},
    },
    "required": ["content"],
}

_READ_TODO_SCHEMA = {
    "description": "Read your current TODO list.",
    "type": "object",
    "properties": {},
}

_STATUS_LOG_SCHEMA = {
    "description": "Log a status message visible to the human watching.",
    "type": "object",
    "properties": {
        "category": {
            "type": "string",
            "enum": STATUS_CATEGORIES,
            "description": "Message category",
        },
        "message": {"type": "string", "description": "Status message"},
    },
    "required": ["category", "message"],
}

LOCAL_TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    "save_credentials": _SAVE_CREDENTIALS_SCHEMA,
    "update_todo": _UPDATE_TODO_SCHEMA,
    "read_todo": _READ_TODO_SCHEMA,
    "status_log": _STATUS_LOG_SCHEMA,
}


def register_local_tools(dispatcher: ToolDispatcher, store: SessionStore) -> None:
    """Create the local tool closures and register them on the dispatcher."""
    closures = create_local_tools(store)
    for name, schema in LOCAL_TOOL_SCHEMAS.items():
        dispatcher.register(name, closures[name], schema)
    logger.info("Registered %d local tools", len(closures))
