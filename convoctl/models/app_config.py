"""
Application configuration models.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from convoctl.models.session import DEFAULT_SESSION_TITLE
from convoctl.models.settings import GenerationSettings, HarmBlockThreshold

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("convoctl.yaml")


class ModelConfig(BaseModel):
    """LLM model configuration."""

    provider: str = Field(
        default="gemini/gemini-2.5-flash",
        description="LiteLLM model identifier (e.g., 'gemini/gemini-2.5-flash')",
    )
    max_retries: int = Field(default=3, ge=0, description="Max retries on transient LLM errors")
    retry_delay: float = Field(default=1.0, gt=0, description="Initial retry delay in seconds")
    retry_backoff: float = Field(default=2.0, gt=1, description="Exponential backoff multiplier")
    fallback: list[str] = Field(default_factory=list, description="Fallback model identifiers")


class GenerationDefaults(BaseModel):
    """Defaults applied to newly created sessions."""

    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    mimic_safety_threshold: HarmBlockThreshold = Field(
        default="BLOCK_NONE",
        description="Safety threshold forced on every category when continuing as the user",
    )


class SessionSettings(BaseModel):
    """Session storage and titling settings."""

    base_dir: Path = Field(default=Path(".convoctl/sessions"))
    default_title: str = Field(default=DEFAULT_SESSION_TITLE, min_length=1)
    title_max_length: int = Field(default=35, gt=0)


class AutoSendSettings(BaseModel):
    """Auto-send sequencer settings."""

    max_repetitions: int = Field(default=100, ge=1, le=100)
    retry_countdown_seconds: int = Field(
        default=5, ge=0, description="Seconds to wait before regenerating a failed round"
    )
    max_error_retries: int = Field(
        default=3, ge=0, description="Consecutive regenerations per round before giving up"
    )


class TelemetrySettings(BaseModel):
    """Generation telemetry settings."""

    enabled: bool = True
    base_dir: Path = Field(default=Path(".convoctl/telemetry"))


class AppConfig(BaseModel):
    """
    Application configuration loaded from YAML.
    """

    model: ModelConfig = Field(default_factory=ModelConfig)
    generation: GenerationDefaults = Field(default_factory=GenerationDefaults)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    auto_send: AutoSendSettings = Field(default_factory=AutoSendSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)


class AppConfigError(Exception):
    """Raised when the configuration file is invalid, with a user-friendly message."""

    def __init__(self, path: Path, issues: list[str]):
        self.path = path
        self.issues = issues
        msg = f"Invalid configuration in '{path}':\n" + "\n".join(
            f"  - {issue}" for issue in issues
        )
        super().__init__(msg)


def _friendly_validation_errors(path: Path, exc: ValidationError) -> AppConfigError:
    """Convert Pydantic ValidationError to a user-friendly AppConfigError."""
    issues: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error["loc"])
        msg = error["msg"]
        err_type = error["type"]

        if err_type == "missing":
            issues.append(f"{loc} is required")
        elif "less_than" in err_type or "greater_than" in err_type:
            issues.append(f"{loc}: {msg}")
        elif err_type == "string_too_short":
            issues.append(f"{loc} cannot be empty")
        elif err_type == "literal_error":
            allowed = error.get("ctx", {}).get("expected", "")
            issues.append(f"{loc}: must be one of {allowed}")
        else:
            issues.append(f"{loc}: {msg}")

    return AppConfigError(path, issues)


def load_app_config(path: Path | None = None) -> AppConfig:
    """
    Load and validate the application configuration from YAML.

    A missing file yields the defaults.

    Raises:
        AppConfigError: If the YAML is invalid (with friendly messages)
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return AppConfig()

    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise AppConfigError(path, [f"YAML syntax error: {e}"]) from e

    if data is None:
        return AppConfig()
    if not isinstance(data, dict):
        raise AppConfigError(path, ["top level must be a mapping"])

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise _friendly_validation_errors(path, e) from e
