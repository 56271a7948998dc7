"""Cooperative cancellation for in-flight generations."""

from __future__ import annotations

import asyncio

from retort.errors import GenerationCancelled


class CancelToken:
    """Set once by the caller; checked by the read and emission loops."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelled()
