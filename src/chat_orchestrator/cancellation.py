from __future__ import annotations

import asyncio


class CancellationToken:
    """Cooperative stop signal shared by a session and its provider stream."""

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation. Only the first reason is kept."""
        if self._reason is not None:
            return False
        self._reason = reason
        return True

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise asyncio.CancelledError(self._reason)
