"""CancellationToken — cooperative, idempotent cancellation for provider calls."""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)

CANCELLED = "cancelled"
TIMEOUT = "timeout"


class CancellationToken:
    """A one-shot cancellation signal shared by a caller and an adapter.

    ``cancel()`` may be called any number of times from any coroutine; only
    the first call has an effect and none of them block.  A timeout is just a
    cancellation scheduled on the running loop, so adapters handle it exactly
    like a user-initiated stop and callers tell them apart with :attr:`reason`.

    Example::

        token = CancellationToken()
        token.cancel_after(300)
        async for msg in provider.execute_query(options.model_copy(update={"cancellation": token})):
            ...
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._timer: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self._reason!r})"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """``"cancelled"``, ``"timeout"`` or a caller-supplied reason; ``None`` until cancelled."""
        return self._reason

    def cancel(self, reason: str = CANCELLED) -> bool:
        """Request cancellation.  Returns ``True`` only for the call that took effect."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        self.clear_timeout()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.warning("cancellation_callback_failed", error=str(exc))
        return True

    def cancel_after(self, seconds: float, reason: str = TIMEOUT) -> None:
        """Schedule :meth:`cancel` on the running loop after *seconds*."""
        self.clear_timeout()
        if self.cancelled:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, reason)

    def clear_timeout(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> None:
        await self._event.wait()
