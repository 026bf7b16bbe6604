"""Commander entry point.

Initializes all components and drives turns until interrupted:
  Settings -> Provider -> CompletionClient -> Compactor -> SessionClient
  -> ToolDispatcher -> AgentRunner

SIGINT/SIGTERM fire the shared CancellationToken; the in-flight turn stops at
its next suspension point and a handoff note is written for the next session.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from commander.api.compaction import ContextCompactor
from commander.api.completion import CompletionClient
from commander.api.models import CompactionState, Context, UserMessage
from commander.api.providers import build_provider, resolve_model
from commander.api.runner import AgentRunner
from commander.cancellation import CancellationToken, TurnCancelled, cancellable_sleep
from commander.config import Settings
from commander.errors import CompletionError
from commander.game.session import SessionClient
from commander.game.store import Credentials, MemoryStore
from commander.game.tools import ToolDispatcher, register_local_tools

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are an autonomous player of SpaceMolt, a multiplayer space game.
Use the `game` tool to run game commands (call get_commands if unsure what exists).
Save your credentials with save_credentials as soon as you register.
Keep your TODO list current with update_todo and report progress with status_log.
Act on your own; nobody will answer questions."""

CONTINUE_PROMPT = "Continue your mission."


def create_components(settings: Settings) -> dict[str, Any]:
    """Build every component in dependency order."""
    model, api_key = resolve_model(settings.model, settings)
    provider = build_provider(model, api_key, settings)
    completion = CompletionClient.from_settings(provider, settings)
    compactor = ContextCompactor(
        completion,
        summary_timeout=settings.summary_timeout,
        handoff_timeout=settings.handoff_timeout,
    )

    credentials = None
    if settings.game_username and settings.game_password:
        credentials = Credentials(username=settings.game_username, password=settings.game_password)
    store = MemoryStore(credentials)

    game = SessionClient.from_settings(settings, store)
    dispatcher = ToolDispatcher(game)
    register_local_tools(dispatcher, store)

    runner = AgentRunner(completion, compactor, dispatcher, max_rounds=settings.max_rounds)

    return {
        "model": model,
        "provider": provider,
        "compactor": compactor,
        "store": store,
        "game": game,
        "dispatcher": dispatcher,
        "runner": runner,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Close network clients in reverse order."""
    logger.info("Shutting down commander...")

    game = components.get("game")
    if game:
        await game.close()

    provider = components.get("provider")
    if provider:
        await provider.close()

    logger.info("Commander shutdown complete.")


async def run(settings: Settings, cancel: CancellationToken | None = None) -> None:
    """Drive turns until `cancel` fires, then write the handoff note."""
    cancel = cancel or CancellationToken()
    components = create_components(settings)
    model = components["model"]
    runner: AgentRunner = components["runner"]

    context = Context(
        system_prompt=SYSTEM_PROMPT,
        messages=[UserMessage(text=settings.instruction)],
        tools=components["dispatcher"].tool_definitions(),
    )
    compaction = CompactionState()

    try:
        turn = 0
        while not cancel.cancelled:
            turn += 1
            if turn > 1:
                context.messages.append(UserMessage(text=CONTINUE_PROMPT))
            logger.info("Starting turn %d (%d messages in context)", turn, len(context.messages))
            try:
                await runner.run_turn(model, context, cancel, compaction)
            except CompletionError as e:
                logger.error("LLM call failed: %s", e)
            except TurnCancelled:
                break

            try:
                await cancellable_sleep(settings.turn_pause, cancel)
            except TurnCancelled:
                break

        handoff = await components["compactor"].generate_handoff(model, context)
        if handoff:
            logger.info("Session handoff:\n%s", handoff)
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point -- parse settings, configure logging, run until interrupted."""
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    async def _run() -> None:
        cancel = CancellationToken()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, cancel.cancel, f"received {sig.name}")
            except NotImplementedError:
                logger.debug("Signal handlers unsupported on this platform")
        await run(settings, cancel)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
