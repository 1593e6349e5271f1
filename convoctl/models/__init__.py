"""Data models for convoctl."""

from convoctl.models.app_config import AppConfig, AppConfigError, load_app_config
from convoctl.models.session import AICharacter, Attachment, Message, Session, SessionMeta
from convoctl.models.settings import GenerationSettings, SafetySetting, SettingsOverride

__all__ = [
    "AICharacter",
    "AppConfig",
    "AppConfigError",
    "Attachment",
    "GenerationSettings",
    "load_app_config",
    "Message",
    "SafetySetting",
    "Session",
    "SessionMeta",
    "SettingsOverride",
]
