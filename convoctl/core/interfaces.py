"""
Contracts between the generation core and its external collaborators.

The orchestrator only talks to storage, the completion service, the
cached-context collaborator and the audio auto-fetch hook through these
narrow protocols.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel

from convoctl.core.cancellation import CancellationToken
from convoctl.models.session import AICharacter, Attachment, Message, Session
from convoctl.models.settings import GenerationSettings, SettingsOverride


class UserInput(BaseModel):
    """The prompt half of a completion request."""

    text: str
    attachments: list[Attachment] = []


class FullResponse(BaseModel):
    """Final aggregated response from the completion service."""

    text: str
    grounding_metadata: dict[str, Any] | None = None


OnSuccess = Callable[[FullResponse], Awaitable[None]]
OnError = Callable[[str, bool], Awaitable[None]]  # (message, is_cancellation)
OnComplete = Callable[[], Awaitable[None]]


class SessionUpdater(Protocol):
    """Applies a pure transformation to the latest persisted session."""

    async def update_session(
        self, session_id: str, mutate: Callable[[Session], Session | None]
    ) -> None: ...

    def get_session(self, session_id: str) -> Session | None: ...


class CompletionService(Protocol):
    """
    Streaming-shaped completion call exposed as three callbacks.

    `on_complete` always fires last, whichever path was taken.
    """

    async def completion_request(
        self,
        session_id: str,
        prompt: UserInput,
        model: str,
        settings: GenerationSettings,
        history: list[Message],
        on_success: OnSuccess,
        on_error: OnError,
        on_complete: OnComplete,
        cancellation_token: CancellationToken,
        settings_override: SettingsOverride | None = None,
        persona_roster: list[AICharacter] | None = None,
    ) -> None: ...

    async def mimic_user_request(
        self,
        model: str,
        role_flipped_history: list[dict[str, Any]],
        persona_instruction: str,
        settings: GenerationSettings,
        cancellation_token: CancellationToken,
        overrides: SettingsOverride | None = None,
    ) -> str: ...


class CachedContextInvalidator(Protocol):
    """Drops cached completion contexts for a (session, model, settings) key."""

    def invalidate(self, session_id: str, model: str, fingerprint: str) -> None: ...


NewMessageListener = Callable[[Message], "Awaitable[None] | None"]
