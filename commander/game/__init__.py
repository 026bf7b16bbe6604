"""Game side -- session-managed server access and the agent's tools.

Public API:
    SessionClient    - executes commands, keeps the remote session valid
    ToolDispatcher   - routes tool calls to local tools or the game server
    MemoryStore      - in-process credentials / TODO store

Models:
    RemoteSession, GameResponse, GameError, Credentials
"""

from commander.game.session import GameError, GameResponse, RemoteSession, SessionClient
from commander.game.store import Credentials, MemoryStore, SessionStore
from commander.game.tools import ToolDispatcher, register_local_tools

__all__ = [
    "Credentials",
    "GameError",
    "GameResponse",
    "MemoryStore",
    "RemoteSession",
    "SessionClient",
    "SessionStore",
    "ToolDispatcher",
    "register_local_tools",
]
