"""
Generation settings sent along with every completion request.
"""

from __future__ import annotations

import hashlib
import json
from typing import Literal

from pydantic import BaseModel, Field

HarmCategory = Literal[
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]

HarmBlockThreshold = Literal[
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
]

HARM_CATEGORIES: tuple[HarmCategory, ...] = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

DEFAULT_USER_PERSONA_INSTRUCTION = (
    "You are role-playing as the human user in this conversation. "
    "Continue the conversation with the next message the user would write. "
    "Match their tone, length and interests. Respond only with the message text."
)


class SafetySetting(BaseModel):
    """Block threshold for one harm category."""

    category: HarmCategory
    threshold: HarmBlockThreshold = "BLOCK_MEDIUM_AND_ABOVE"


def permissive_safety_settings(
    threshold: HarmBlockThreshold = "BLOCK_NONE",
) -> list[SafetySetting]:
    """Safety settings with every category set to the same threshold."""
    return [SafetySetting(category=c, threshold=threshold) for c in HARM_CATEGORIES]


class GenerationSettings(BaseModel):
    """Per-session generation settings."""

    system_instruction: str | None = None
    user_persona_instruction: str | None = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    safety_settings: list[SafetySetting] = Field(default_factory=list)
    use_google_search: bool = False
    url_context: list[str] = Field(default_factory=list)


class SettingsOverride(BaseModel):
    """
    Partial settings applied on top of the session settings for one call.

    Fields left as None fall through to the session settings.
    """

    system_instruction: str | None = None
    character_id: str | None = None
    safety_settings: list[SafetySetting] | None = None
    use_google_search: bool | None = None
    url_context: list[str] | None = None
    log_label: str | None = None

    def apply(self, settings: GenerationSettings) -> GenerationSettings:
        """Return a copy of settings with this override merged in."""
        updates = {}
        for key in ("system_instruction", "safety_settings", "use_google_search", "url_context"):
            value = getattr(self, key)
            if value is not None:
                updates[key] = value
        merged = settings.model_copy(update=updates)
        return merged.model_copy(deep=True)


def settings_fingerprint(
    settings: GenerationSettings, character_id: str | None = None
) -> str:
    """
    Stable key for a settings combination.

    Used to address cached completion contexts. The character id is folded
    in so each persona gets its own cached context.
    """
    data = settings.model_dump(mode="json")
    if character_id:
        data["_character_id"] = character_id
    encoded = json.dumps(data, sort_keys=True).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]
