"""
Session store for persistent conversation storage.

Sessions are stored as JSONL files with the following format:
- First line: Session metadata with type="meta"
- Subsequent lines: Messages in chronological order

All mutations go through `update_session`, which applies a pure transform
to the latest state and persists the result.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable

from convoctl.models.session import Message, Session, SessionMeta, _utcnow
from convoctl.models.settings import GenerationSettings

logger = logging.getLogger(__name__)

SessionMutator = Callable[[Session], "Session | None"]


class SessionNotFoundError(Exception):
    """Raised when a session id does not resolve to a stored session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found.")


class SessionStore:
    """
    Manages session persistence using JSONL files.

    Directory structure:
        .convoctl/sessions/<session_id>.jsonl

    Loaded sessions are cached in memory; the cache always mirrors the
    last write.
    """

    def __init__(self, base_dir: Path | None = None):
        """
        Initialize the session store.

        Args:
            base_dir: Base directory for session storage (default: .convoctl/sessions)
        """
        if base_dir is None:
            base_dir = Path(".convoctl/sessions")
        self.base_dir = base_dir
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _dir(self) -> Path:
        """Get the sessions directory, creating if needed."""
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir

    def _session_path(self, session_id: str) -> Path:
        """Get the path to a session file."""
        return self._dir() / f"{session_id}.jsonl"

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def create_session(
        self,
        model: str,
        title: str | None = None,
        settings: GenerationSettings | None = None,
        session_id: str | None = None,
    ) -> Session:
        """
        Create and persist a new, empty session.

        Args:
            model: Model identifier used for generations in this session
            title: Optional title (default: the placeholder title)
            settings: Generation settings (default: GenerationSettings())
            session_id: Optional session ID to use (instead of auto-generating)

        Returns:
            The newly created session
        """
        kwargs: dict[str, Any] = {"model": model}
        if title:
            kwargs["title"] = title
        if settings is not None:
            kwargs["settings"] = settings
        if session_id:
            kwargs["session_id"] = session_id
        session = Session(meta=SessionMeta(**kwargs))
        self._save_session(session)
        self._sessions[session.meta.session_id] = session
        logger.debug("Created session %s", session.meta.session_id)
        return session

    def add_session(self, session: Session) -> None:
        """Persist a session built elsewhere (replaces any stored copy)."""
        self._save_session(session)
        self._sessions[session.meta.session_id] = session

    def load_session(self, session_id: str) -> Session | None:
        """
        Load a session from disk, bypassing the cache.

        Returns:
            The loaded session, or None if not found
        """
        path = self._session_path(session_id)
        if not path.exists():
            return None

        messages: list[Message] = []
        meta: SessionMeta | None = None

        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue

                data = json.loads(line)

                if data.get("type") == "meta":
                    # Remove the type field before parsing as SessionMeta
                    data.pop("type")
                    meta = SessionMeta(**data)
                else:
                    messages.append(Message(**data))

        if meta is None:
            return None

        return Session(meta=meta, messages=messages)

    def get_session(self, session_id: str) -> Session | None:
        """
        Get the latest state of a session.

        Returns a deep copy, so callers may freely modify it.
        """
        session = self._sessions.get(session_id)
        if session is None:
            session = self.load_session(session_id)
            if session is None:
                return None
            self._sessions[session_id] = session
        return session.model_copy(deep=True)

    def require_session(self, session_id: str) -> Session:
        """
        Like get_session, but a missing session is an error.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def update_session(self, session_id: str, mutate: SessionMutator) -> None:
        """
        Apply a pure transformation to the latest session state and persist it.

        Writes for the same session are serialized. A mutator returning None
        leaves the session untouched. Updates to unknown sessions are ignored.
        """
        async with self._lock_for(session_id):
            current = self.get_session(session_id)
            if current is None:
                logger.warning("update_session: session %s not found", session_id)
                return

            updated = mutate(current)
            if updated is None:
                return

            updated.meta.updated_at = _utcnow()
            self._save_session(updated)
            self._sessions[session_id] = updated.model_copy(deep=True)

    def _save_session(self, session: Session) -> None:
        """Save the full session to disk."""
        path = self._session_path(session.meta.session_id)

        with open(path, "w") as f:
            # Write meta first with type marker
            meta_dict: dict[str, Any] = session.meta.model_dump(mode="json")
            meta_dict["type"] = "meta"
            f.write(json.dumps(meta_dict) + "\n")

            # Write messages
            for msg in session.messages:
                f.write(msg.model_dump_json() + "\n")

    def list_sessions(self) -> list[SessionMeta]:
        """
        List all stored sessions.

        Returns:
            List of session metadata, sorted by updated_at (newest first)
        """
        sessions: list[SessionMeta] = []

        for path in self._dir().glob("*.jsonl"):
            try:
                with open(path) as f:
                    first_line = f.readline().strip()
                    if not first_line:
                        continue

                    data = json.loads(first_line)
                    if data.get("type") == "meta":
                        data.pop("type")
                        sessions.append(SessionMeta(**data))
            except (json.JSONDecodeError, KeyError):
                # Skip invalid session files
                continue

        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def delete_session(self, session_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if deleted, False if not found
        """
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        path = self._session_path(session_id)
        if path.exists():
            path.unlink()
            return True
        return False

    async def delete_message(self, session_id: str, message_id: str) -> None:
        """Remove a single message, keeping everything around it."""

        def _mutate(session: Session) -> Session | None:
            if session.index_of(message_id) == -1:
                return None
            session.messages = [m for m in session.messages if m.id != message_id]
            return session

        await self.update_session(session_id, _mutate)

    async def delete_message_and_following(self, session_id: str, message_id: str) -> list[str]:
        """
        Truncate the session at a message (inclusive).

        Returns:
            Ids of the removed messages
        """
        removed: list[str] = []

        def _mutate(session: Session) -> Session | None:
            idx = session.index_of(message_id)
            if idx == -1:
                return None
            removed.extend(m.id for m in session.messages[idx:])
            session.messages = session.messages[:idx]
            return session

        await self.update_session(session_id, _mutate)
        return removed
