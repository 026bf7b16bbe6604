"""Game server client that keeps the remote session valid.

execute() is the only public operation. Around every command it:
  1. renews the session up front when it expires within the renew margin,
  2. waits out rate limiting for as long as the server reports it,
  3. recreates the session and retries once if the server says it is gone.

Game-rule failures come back as GameResponse.error data. Only transport
failures raise (GameTransportError).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from commander.cancellation import CancellationToken, Sleeper, cancellable_sleep, run_cancellable
from commander.config import Settings
from commander.errors import GameTransportError
from commander.game.store import SessionStore

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"
SESSION_COMMAND = "session"
LOGIN_COMMAND = "login"
RATE_LIMITED = "rate_limited"
SESSION_INVALID_CODES = frozenset({
    "session_expired",
    "session_invalid",
    "invalid_session",
    "session_required",
    "not_authenticated",
})


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class RemoteSession(BaseModel):
    """Server-side authorization handle. Replaced wholesale, never patched."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    expires_at: datetime = Field(validation_alias=AliasChoices("expires_at", "expiresAt"))
    authenticated: bool = False

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    def remaining_seconds(self, now: datetime | None = None) -> float:
        return (self.expires_at - (now or datetime.now(UTC))).total_seconds()


class GameError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str = "unknown"
    message: str = ""
    wait_seconds: float | None = None


class GameResponse(BaseModel):
    """Either {result, notifications} or {error}."""

    model_config = ConfigDict(extra="allow")

    result: Any = None
    notifications: list[Any] = Field(default_factory=list)
    error: GameError | None = None

    @field_validator("notifications", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


def _rate_limit_wait(data: dict[str, Any]) -> float | None:
    """Seconds to wait if `data` is a rate_limited reply carrying wait_seconds."""
    error = data.get("error")
    if not isinstance(error, dict):
        return None
    try:
        parsed = GameError.model_validate(error)
    except ValidationError:
        return None
    if parsed.code != RATE_LIMITED:
        return None
    return parsed.wait_seconds


# ---------------------------------------------------------------------------
# Session client
# ---------------------------------------------------------------------------


class SessionClient:
    """Executes game commands against a session it creates and renews itself."""

    def __init__(
        self,
        base_url: str,
        store: SessionStore | None = None,
        *,
        renew_margin: float = 60.0,
        rate_limit_warn_every: int = 5,
        timeout: httpx.Timeout | None = None,
        http: httpx.AsyncClient | None = None,
        sleep: Sleeper = cancellable_sleep,
    ) -> None:
        self._store = store
        self._renew_margin = renew_margin
        self._rate_limit_warn_every = max(1, rate_limit_warn_every)
        self._sleep = sleep
        self._session: RemoteSession | None = None
        self._http = http or httpx.AsyncClient(
            base_url=base_url,
            headers={"User-Agent": "SpaceMolt-Commander", "content-type": "application/json"},
            timeout=timeout or httpx.Timeout(connect=10, read=60, write=10, pool=10),
            limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
        )

    @classmethod
    def from_settings(cls, settings: Settings, store: SessionStore | None = None) -> SessionClient:
        return cls(
            settings.game_base_url,
            store,
            renew_margin=settings.session_renew_margin,
            rate_limit_warn_every=settings.rate_limit_warn_every,
            timeout=httpx.Timeout(
                connect=settings.game_timeout_connect,
                read=settings.game_timeout_read,
                write=10.0,
                pool=10.0,
            ),
        )

    @property
    def session(self) -> RemoteSession | None:
        return self._session

    async def close(self) -> None:
        await self._http.aclose()

    async def execute(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        cancel: CancellationToken | None = None,
    ) -> GameResponse:
        """Run a game command, transparently renewing the session as needed.

        Raises GameTransportError for connection failures or unparseable
        responses, TurnCancelled if `cancel` fires while waiting.
        """
        await self._ensure_session(cancel)

        response = await self._send_with_rate_limit(command, args, cancel)
        if response.error is not None and response.error.code in SESSION_INVALID_CODES:
            logger.warning(
                "Session rejected during %s (%s), recreating and retrying once",
                command, response.error.code,
            )
            await self._create_session(cancel)
            response = await self._send_with_rate_limit(command, args, cancel)
        return response

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def _ensure_session(self, cancel: CancellationToken | None) -> None:
        if self._session is None:
            await self._create_session(cancel)
            return
        remaining = self._session.remaining_seconds()
        if remaining < self._renew_margin:
            logger.info("Session expires in %.0fs, renewing", remaining)
            await self._create_session(cancel)

    async def _create_session(self, cancel: CancellationToken | None) -> None:
        self._session = None
        data = await self._post_with_rate_limit(SESSION_COMMAND, {}, cancel)
        error = data.get("error")
        if error:
            message = error.get("message", error) if isinstance(error, dict) else error
            raise GameTransportError(SESSION_COMMAND, f"could not create session: {message}")

        payload = data.get("session") or data.get("result") or data
        try:
            session = RemoteSession.model_validate(payload)
        except ValidationError as e:
            raise GameTransportError(SESSION_COMMAND, f"malformed session response: {e}") from e

        self._session = session
        logger.info("Created session %s (expires %s)", session.id, session.expires_at.isoformat())
        await self._authenticate(cancel)

    async def _authenticate(self, cancel: CancellationToken | None) -> None:
        credentials = self._store.load_credentials() if self._store is not None else None
        if credentials is None:
            logger.debug("No stored credentials, continuing unauthenticated")
            return

        response = await self._send_with_rate_limit(
            LOGIN_COMMAND,
            {"username": credentials.username, "password": credentials.password},
            cancel,
        )
        if response.error is not None:
            logger.warning(
                "Login as %s failed: [%s] %s",
                credentials.username, response.error.code, response.error.message,
            )
            return

        current = self._session
        if current is not None:
            self._session = RemoteSession(
                id=current.id, expires_at=current.expires_at, authenticated=True
            )
        logger.info("Logged in as %s", credentials.username)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send_with_rate_limit(
        self,
        command: str,
        args: dict[str, Any] | None,
        cancel: CancellationToken | None,
    ) -> GameResponse:
        data = await self._post_with_rate_limit(command, args or {}, cancel)
        try:
            return GameResponse.model_validate(data)
        except ValidationError as e:
            raise GameTransportError(command, f"malformed response: {e}") from e

    async def _post_with_rate_limit(
        self,
        command: str,
        body: dict[str, Any],
        cancel: CancellationToken | None,
    ) -> dict[str, Any]:
        """POST until the server stops answering rate_limited, sleeping as told."""
        waits = 0
        while True:
            data = await self._post(command, body, cancel)
            wait = _rate_limit_wait(data)
            if wait is None:
                return data

            waits += 1
            if waits % self._rate_limit_warn_every == 0:
                logger.warning(
                    "Still rate limited on %s after %d waits, waiting %gs more",
                    command, waits, wait,
                )
            else:
                logger.info("Rate limited on %s, waiting %gs", command, wait)
            await self._sleep(wait, cancel)

    async def _post(
        self,
        command: str,
        body: dict[str, Any],
        cancel: CancellationToken | None,
    ) -> dict[str, Any]:
        headers: dict[str, str] = {}
        if self._session is not None:
            headers[SESSION_HEADER] = self._session.id

        try:
            response = await run_cancellable(
                self._http.post(f"/{command}", json=body, headers=headers),
                cancel,
            )
        except httpx.HTTPError as e:
            raise GameTransportError(command, str(e) or type(e).__name__) from e

        try:
            data = response.json()
        except ValueError as e:
            raise GameTransportError(
                command, f"HTTP {response.status_code}: non-JSON response"
            ) from e
        if not isinstance(data, dict):
            raise GameTransportError(command, f"HTTP {response.status_code}: unexpected payload")
        if response.status_code >= 500 and "error" not in data:
            raise GameTransportError(command, f"HTTP {response.status_code}")

        # 429s may carry the wait only in Retry-After
        error = data.get("error")
        if (
            response.status_code == 429
            and isinstance(error, dict)
            and error.get("wait_seconds") is None
            and "retry-after" in response.headers
        ):
            try:
                error["wait_seconds"] = float(response.headers["retry-after"])
            except ValueError:
                logger.debug("Ignoring non-numeric Retry-After: %s", response.headers["retry-after"])
        return data
