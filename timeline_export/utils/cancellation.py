"""Cooperative cancellation helpers.

Stages accept a ``cancel_check`` callable, sync or async, returning True
once the export should stop. Every ``ExportOrchestrator`` exposes a
``CancellationToken`` (set through ``ExportOrchestrator.cancel()``) which is
checked together with the caller's own ``cancel_check``.
"""

import asyncio
from typing import Any, Callable, Optional


class CancellationToken:
    """Single cancellation flag shared by every stage of one export."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __call__(self) -> bool:
        return self._cancelled


async def is_cancelled(cancel_check: Optional[Callable[[], Any]]) -> bool:
    """Evaluate a sync or async cancel check."""
    if cancel_check is None:
        return False
    result = cancel_check()
    if asyncio.iscoroutine(result):
        return await result
    return bool(result)


def any_cancelled(*checks: Optional[Callable[[], Any]]) -> Callable[[], Any]:
    """Combine several cancel checks into one async check."""
    active = [c for c in checks if c is not None]

    async def check() -> bool:
        for c in active:
            if await is_cancelled(c):
                return True
        return False

    return check


async def raise_if_cancelled(cancel_check: Optional[Callable[[], Any]]) -> None:
    if await is_cancelled(cancel_check):
        raise asyncio.CancelledError("Export cancelled")
