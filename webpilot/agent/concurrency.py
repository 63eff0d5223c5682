"""
Cancellation primitives for a run.

A run has a single logical thread of control; the only concurrency is racing an
awaited provider event or executor against the caller's abort signal.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from ..exceptions import RunAborted

logger = logging.getLogger(__name__)

T = TypeVar('T')


class AbortSignal:
    """One-shot abort flag observable from coroutines."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def abort(self, reason: str = 'aborted') -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f'Abort requested: {reason}')

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise RunAborted(self.reason or 'aborted')


async def race_abort(awaitable: Awaitable[T], signal: Optional[AbortSignal]) -> T:
    """Await ``awaitable`` unless ``signal`` fires first.

    On abort the in-flight operation is cancelled and ``RunAborted`` is raised.
    """
    if signal is None:
        return await awaitable
    signal.raise_if_aborted()

    work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise
    if work in done:
        waiter.cancel()
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug('Operation raised while being cancelled on abort', exc_info=True)
    raise RunAborted(signal.reason or 'aborted')


async def anext_or_abort(iterator: Any, signal: Optional[AbortSignal]) -> Any:
    """Next item from an async iterator, observing the abort signal. Raises StopAsyncIteration at the end."""
    return await race_abort(iterator.__anext__(), signal)
