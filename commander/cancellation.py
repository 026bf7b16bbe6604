"""Cooperative cancellation for the single in-flight turn.

The driver owns one CancellationToken and threads it through every
suspension point (completions, game commands, backoff sleeps). Local
timeouts are composed with it first-to-fire-wins via run_cancellable().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from commander.errors import CommanderError, DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TurnCancelled(CommanderError):
    """The caller's cancellation token fired."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """One-shot cancellation signal backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self._reason)


Sleeper = Callable[[float, CancellationToken | None], Awaitable[None]]


async def run_cancellable(
    aw: Awaitable[T],
    cancel: CancellationToken | None = None,
    timeout: float | None = None,
) -> T:
    """Await `aw`, aborting it when `cancel` fires or `timeout` elapses.

    Raises TurnCancelled if the token fired first and DeadlineExceeded if the
    local timeout fired first. The losing awaitable is cancelled and reaped.
    """
    if cancel is not None and cancel.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise TurnCancelled(cancel.reason)

    task = asyncio.ensure_future(aw)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter: asyncio.Future | None = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _pending = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    if cancel is not None and cancel.cancelled:
        raise TurnCancelled(cancel.reason)
    raise DeadlineExceeded(timeout if timeout is not None else 0.0)


async def cancellable_sleep(seconds: float, cancel: CancellationToken | None = None) -> None:
    """Sleep for `seconds`, raising TurnCancelled as soon as `cancel` fires."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    cancel.raise_if_cancelled()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise TurnCancelled(cancel.reason)
