"""Cooperative cancellation token threaded through every suspension point."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Set once by the caller (e.g. a "stop" button), observed by the work.

    Loops poll ``cancelled`` between chunks; awaits that may stall (a
    provider read, a non-streaming call) race against ``wait()`` so a
    cancel ends them without waiting for the network.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Generation stopped by user.") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info(f"Cancellation requested: {reason}")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()
