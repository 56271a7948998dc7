"""In-memory reply cache keyed by request fingerprint.

Entries expire after a fixed TTL and are purged lazily on lookup. There is
no size cap: an entry that is never looked up again stays until process
exit, which is acceptable at this scale.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from retort.schemas import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60.0


def fingerprint(messages: Sequence[ChatMessage], intensity: int | float) -> str:
    """Deterministic key for a (messages, intensity) request.

    Order-sensitive: messages are serialized in sequence with their role
    and content, so any change to either, to their order, or to intensity
    yields a different digest.
    """
    canonical = json.dumps(
        {
            "messages": [[str(m.role), m.content] for m in messages],
            "intensity": intensity,
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    inserted_at: float
    text: str


class ReplyCache:
    """Full completion text per fingerprint, with lazy TTL expiry."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: str) -> str | None:
        """Cached text if younger than the TTL; otherwise evict and return None."""
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.inserted_at < self._ttl:
            logger.debug("Reply cache hit: %s", key[:12])
            return entry.text
        if entry is not None:
            logger.debug("Reply cache entry expired: %s", key[:12])
        self._entries.pop(key, None)
        return None

    def put(self, key: str, text: str) -> None:
        self._entries[key] = CacheEntry(key=key, inserted_at=self._clock(), text=text)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
