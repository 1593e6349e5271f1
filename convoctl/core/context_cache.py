"""
Cache of prepared completion contexts.

Building the provider-format message list for a long history is repeated on
every turn; the cache keeps the last prepared prefix per
(session, model, settings fingerprint) and reuses it while the history it was
built from is unchanged.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

from convoctl.models.session import Message

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


def history_signature(history: list[Message]) -> str:
    """Digest of the ids and contents a prepared context was built from."""
    h = hashlib.sha256()
    for msg in history:
        h.update(msg.id.encode())
        h.update(b"\x00")
        h.update(msg.role.encode())
        h.update(b"\x00")
        h.update(msg.content.encode())
        h.update(b"\x01")
    return h.hexdigest()


@dataclass
class CachedContext:
    """A prepared message prefix and the history it came from."""

    signature: str
    messages: list[dict[str, Any]] = field(default_factory=list)


class ContextCache:
    """In-memory prepared-context cache keyed by (session_id, model, fingerprint)."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CachedContext] = {}

    def get(
        self, session_id: str, model: str, fingerprint: str, signature: str
    ) -> list[dict[str, Any]] | None:
        entry = self._entries.get((session_id, model, fingerprint))
        if entry is None or entry.signature != signature:
            return None
        return [dict(m) for m in entry.messages]

    def put(
        self,
        session_id: str,
        model: str,
        fingerprint: str,
        signature: str,
        messages: list[dict[str, Any]],
    ) -> None:
        self._entries[(session_id, model, fingerprint)] = CachedContext(
            signature=signature, messages=[dict(m) for m in messages]
        )

    def invalidate(self, session_id: str, model: str, fingerprint: str) -> None:
        """Drop the cached context for one key."""
        if self._entries.pop((session_id, model, fingerprint), None) is not None:
            logger.debug("Invalidated cached context %s/%s/%s", session_id, model, fingerprint)

    def invalidate_session(self, session_id: str) -> int:
        """Drop every cached context for a session. Returns the number removed."""
        keys = [k for k in self._entries if k[0] == session_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)
