"""
Cancellation tokens for cooperative stream interruption.

The orchestrator races every provider read against ``wait()``, so a
cancel is observed even while the upstream is silent.
"""

import asyncio
from typing import Any, Callable, List

import structlog

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Mutable, idempotent cancel signal for one request.

    Usage:
        token = CancellationToken()

        # In the streaming loop:
        async for event in events:
            if token.is_cancelled:
                break

        # From the caller:
        token.cancel()
    """

    def __init__(self):
        self._cancelled = False
        self._event = None
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation. Callbacks run on the first call only."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        for callback in self._callbacks:
            self._invoke(callback)

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        """Register a callback; invoked immediately if already cancelled."""
        self._callbacks.append(callback)
        if self._cancelled:
            self._invoke(callback)

    def _invoke(self, callback: Callable[[], Any]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("cancel_callback_failed")

    async def wait(self) -> None:
        """Block until ``cancel`` is called."""
        if self._event is None:
            # Created lazily so the token can be built outside a running loop
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()
