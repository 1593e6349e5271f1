"""
Session models for persistent conversation history.
"""

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from convoctl.models.settings import GenerationSettings

MessageRole = Literal["user", "model", "error"]

DEFAULT_SESSION_TITLE = "New Chat"


def _utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


def new_message_id(kind: str = "msg") -> str:
    """Generate an opaque message id, tagged with what created it."""
    return f"msg-{kind}-{uuid.uuid4().hex[:12]}"


class Attachment(BaseModel):
    """A file attached to a message. Opaque to the generation core."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str
    mime_type: str
    base64_data: str | None = None
    uri: str | None = None


class AICharacter(BaseModel):
    """A named persona a model turn can be attributed to."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str
    system_instruction: str
    contextual_info: str | None = None  # Sent as the prompt when the persona speaks unprompted


class Message(BaseModel):
    """A single message in the conversation."""

    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)
    is_streaming: bool = False
    character_name: str | None = None
    grounding_metadata: dict[str, Any] | None = None
    cached_audio_buffers: list[Any] | None = None  # Owned by the audio collaborator


class SessionMeta(BaseModel):
    """Metadata and generation configuration for a session."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    title: str = DEFAULT_SESSION_TITLE
    model: str
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    ai_characters: list[AICharacter] = Field(default_factory=list)
    is_character_mode_active: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def find_character(self, character_id: str) -> AICharacter | None:
        """Look up a persona by id."""
        for character in self.ai_characters:
            if character.id == character_id:
                return character
        return None

    def find_character_by_name(self, name: str) -> AICharacter | None:
        """Look up a persona by display name."""
        for character in self.ai_characters:
            if character.name == name:
                return character
        return None


class Session(BaseModel):
    """A conversation session with history."""

    meta: SessionMeta
    messages: list[Message] = Field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.meta.session_id

    def index_of(self, message_id: str) -> int:
        """Index of a message by id, or -1."""
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return -1

    def get_message(self, message_id: str) -> Message | None:
        idx = self.index_of(message_id)
        return self.messages[idx] if idx != -1 else None


def find_preceding_user_message_index(messages: list[Message], index: int) -> int:
    """Index of the nearest USER message before `index`, or -1."""
    for i in range(index - 1, -1, -1):
        if messages[i].role == "user":
            return i
    return -1


def history_up_to(messages: list[Message], index: int) -> list[Message]:
    """Messages strictly before `index`, deep-copied."""
    return [m.model_copy(deep=True) for m in messages[:index]]


def replace_message(session: Session, message_id: str, new_message: Message) -> Session:
    """Return a copy of the session with one message swapped by id."""
    return session.model_copy(
        update={
            "messages": [new_message if m.id == message_id else m for m in session.messages]
        }
    )


def remove_message(session: Session, message_id: str) -> Session:
    """Return a copy of the session without the given message."""
    return session.model_copy(
        update={"messages": [m for m in session.messages if m.id != message_id]}
    )
