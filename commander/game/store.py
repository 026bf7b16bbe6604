"""Persistence collaborator for credentials and the agent's TODO list.

The on-disk format belongs to whoever embeds the core; the core only needs
this small protocol. MemoryStore is the process-local implementation used by
the driver and the tests.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel


class Credentials(BaseModel):
    username: str
    password: str
    empire: str = ""
    player_id: str = ""


class SessionStore(Protocol):
    def load_credentials(self) -> Credentials | None: ...

    def save_credentials(self, credentials: Credentials) -> None: ...

    def load_todo(self) -> str: ...

    def save_todo(self, content: str) -> None: ...


class MemoryStore:
    """Keeps credentials and the TODO list for the lifetime of the process."""

    def __init__(self, credentials: Credentials | None = None, todo: str = "") -> None:
        self._credentials = credentials
        self._todo = todo

    def load_credentials(self) -> Credentials | None:
        return self._credentials

    def save_credentials(self, credentials: Credentials) -> None:
        self._credentials = credentials

    def load_todo(self) -> str:
        return self._todo

    def save_todo(self, content: str) -> None:
        self._todo = content
