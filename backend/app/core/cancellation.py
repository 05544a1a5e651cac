"""
Cooperative cancellation tokens for the fetch → normalise → store chain.

A token is handed down every stage of a fetch. Stages check it before
committing side effects (cache writes, orchestrator state updates), and
the network layer races the request against ``token.wait()``.

Usage:
    token = CancellationToken()
    task = asyncio.create_task(client.fetch_events("24h", token=token))
    token.cancel("superseded")
"""

from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    """Idempotent, asyncio-backed cancellation handle."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Request cancellation. Returns False if the token was already
        cancelled; the first reason wins.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> str:
        """Suspend until the token is cancelled; returns the reason."""
        await self._event.wait()
        return self._reason or "cancelled"

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self.cancelled else "live"
        return f"<CancellationToken {state}>"
