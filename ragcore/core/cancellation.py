from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from ragcore.core.errors import PipelineCancelled

T = TypeVar("T")


class CancellationToken:
    """Request-wide deadline plus an explicit cancel switch.

    One token is threaded through every stage of a pipeline run. Stages use
    ``remaining()`` to bound their own timeouts and ``guard()`` to race an
    in-flight call against cancellation, so a cancelled request aborts its
    outstanding network calls instead of waiting for them.
    """

    def __init__(self, deadline_s: Optional[float] = None, clock=time.monotonic):
        self._clock = clock
        self._deadline = clock() + deadline_s if deadline_s is not None else None
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason: Optional[str] = None

    @classmethod
    def none(cls) -> "CancellationToken":
        return cls(deadline_s=None)

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.expired

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp a stage timeout to what is left of the request deadline."""
        left = self.remaining()
        if timeout is None:
            return left
        if left is None:
            return timeout
        return min(timeout, left)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PipelineCancelled(self.reason or "cancelled")
        if self.expired:
            raise PipelineCancelled("deadline exceeded")

    async def guard(self, aw: Awaitable[T]) -> T:
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._get_event().wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        self.raise_if_cancelled()
        raise PipelineCancelled("deadline exceeded")
