"""
Edit-resubmit controller.

Applies an edit made to an existing message, either locally or by
re-entering the orchestrator with a reconstructed history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from convoctl.core.orchestrator import GenerationOrchestrator, GenerationOutcome
from convoctl.core.session_store import SessionStore
from convoctl.core.telemetry import TelemetryCollector
from convoctl.models.session import (
    Attachment,
    Message,
    MessageRole,
    Session,
    _utcnow,
    find_preceding_user_message_index,
    history_up_to,
    new_message_id,
)

logger = logging.getLogger(__name__)


class EditAction(str, Enum):
    """What to do with an edited message."""

    CANCEL = "cancel"
    SAVE_LOCALLY = "save_locally"
    SAVE_AND_SUBMIT = "save_and_submit"
    CONTINUE_PREFIX = "continue_prefix"


@dataclass
class EditDetails:
    """The message being edited, as it was when editing started."""

    session_id: str
    message_id: str
    role: MessageRole
    original_content: str
    attachments: list[Attachment] = field(default_factory=list)


class EditResubmitController:
    """Routes edit actions to local session updates or the orchestrator."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        store: SessionStore,
        telemetry: TelemetryCollector | None = None,
    ):
        self._orchestrator = orchestrator
        self._store = store
        self._telemetry = telemetry or TelemetryCollector(enabled=False)

    async def submit(
        self, action: EditAction, new_content: str, details: EditDetails
    ) -> GenerationOutcome | None:
        """
        Apply an edit action.

        Everything except CANCEL is ignored while the session is generating.

        Returns:
            The outcome of the generation the action started, if any
        """
        if action == EditAction.CANCEL:
            await self._cancel(details)
            return None

        if self._orchestrator.is_generating(details.session_id):
            logger.debug("Edit ignored: %s is generating", details.session_id)
            return None

        if action == EditAction.SAVE_LOCALLY:
            await self._save_locally(new_content, details)
            return None
        if action == EditAction.SAVE_AND_SUBMIT:
            return await self._save_and_submit(new_content, details)
        if action == EditAction.CONTINUE_PREFIX:
            if details.role != "model":
                logger.warning("Continue prefix is only available for AI messages")
                return None
            return await self._orchestrator.continue_prefix(
                details.session_id, details.message_id, new_content
            )
        raise ValueError(f"Unknown edit action: {action!r}")

    async def _cancel(self, details: EditDetails) -> None:
        if details.role != "model":
            return
        if self._orchestrator.pending_message_id(details.session_id) == details.message_id:
            await self._orchestrator.cancel(details.session_id)

    async def _save_locally(self, new_content: str, details: EditDetails) -> None:
        def _mutate(session: Session) -> Session | None:
            idx = session.index_of(details.message_id)
            if idx == -1:
                return None
            session.messages[idx] = session.messages[idx].model_copy(
                update={"content": new_content, "cached_audio_buffers": None}
            )
            return session

        await self._store.update_session(details.session_id, _mutate)

    async def _save_and_submit(
        self, new_content: str, details: EditDetails
    ) -> GenerationOutcome | None:
        session = self._store.get_session(details.session_id)
        if session is None:
            return None
        idx = session.index_of(details.message_id)
        if idx == -1:
            return None

        if details.role == "user":
            history = history_up_to(session.messages, idx)
            edited = session.messages[idx].model_copy(
                update={
                    "content": new_content,
                    "attachments": list(details.attachments),
                    "timestamp": _utcnow(),
                    "cached_audio_buffers": None,
                },
                deep=True,
            )
            rewritten = history + [edited]
            send_history = history
            send_attachments = list(details.attachments)
        else:
            user_idx = find_preceding_user_message_index(session.messages, idx)
            if user_idx == -1:
                logger.error("Cannot resubmit AI edit: no preceding user message")
                return None
            history = history_up_to(session.messages, user_idx)
            preceding_user = session.messages[user_idx]
            resubmitted = Message(
                id=new_message_id("edit"),
                role="user",
                content=new_content,
                attachments=[a.model_copy(deep=True) for a in preceding_user.attachments],
            )
            rewritten = history + [preceding_user, resubmitted]
            send_history = history + [preceding_user]
            send_attachments = resubmitted.attachments

        stale_ids = [m.id for m in session.messages[idx:]]

        def _mutate(s: Session) -> Session:
            s.messages = [m.model_copy(deep=True) for m in rewritten]
            return s

        await self._store.update_session(details.session_id, _mutate)
        self._telemetry.clear_generation_times(details.session_id, stale_ids)

        return await self._orchestrator.send(
            details.session_id,
            new_content,
            attachments=send_attachments,
            history_override=send_history,
        )
