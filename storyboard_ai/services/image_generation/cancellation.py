"""
Cooperative cancellation for generate() calls.
Every suspension point (HTTP call, backoff sleep, poll sleep, stream read) is raced
against the signal so a caller can abort early.
"""
import asyncio
import contextlib
from typing import Awaitable, Callable, TypeVar

from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


class CancellationSignal:
    """Set once by the caller; observed by the client at every await."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise self._error()

    def _error(self) -> ClassifiedError:
        message = "Generation cancelled"
        if self.reason:
            message += f": {self.reason}"
        return ClassifiedError(ErrorKind.CANCELLED, message, retryable=False)

    async def run(self, aw: Awaitable[T]) -> T:
        """Await aw unless the signal fires first; then cancel aw and raise CANCELLED."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise self._error()


async def guarded(aw: Awaitable[T], signal: CancellationSignal | None) -> T:
    """Await aw, racing it against signal when one is given."""
    if signal is None:
        return await aw
    return await signal.run(aw)


async def pause(delay: float, signal: CancellationSignal | None, sleep: Sleeper = asyncio.sleep) -> None:
    """Sleep for delay seconds, interruptible by signal."""
    await guarded(sleep(delay), signal)
