"""Exception hierarchy shared by the completion, compaction and game layers."""

from __future__ import annotations


class CommanderError(Exception):
    """Base class for all errors raised by the orchestration core."""


class CompletionError(CommanderError):
    """An LLM completion failed after all retry attempts."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class DeadlineExceeded(CommanderError):
    """A local timeout fired before the awaited operation finished."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"timed out after {timeout:g}s")
        self.timeout = timeout


class GameTransportError(CommanderError):
    """Unexpected failure talking to the game server.

    Game-rule failures (no fuel, bad target, ...) are never raised; they come
    back as structured error data. This is only for connection errors,
    timeouts and unparseable responses.
    """

    def __init__(self, command: str, message: str) -> None:
        super().__init__(f"{command}: {message}")
        self.command = command
