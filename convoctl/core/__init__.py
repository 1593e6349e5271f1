"""Core module for convoctl."""

from convoctl.core.auto_send import AutoSendSequencer, AutoSendState
from convoctl.core.cancellation import CancellationToken, GenerationCancelled
from convoctl.core.config import ConfigManager, load_config
from convoctl.core.context_cache import ContextCache
from convoctl.core.editing import EditAction, EditDetails, EditResubmitController
from convoctl.core.llm import CompletionClient, LLMError
from convoctl.core.orchestrator import GenerationOrchestrator, GenerationOutcome
from convoctl.core.session_store import SessionNotFoundError, SessionStore
from convoctl.core.telemetry import TelemetryCollector

__all__ = [
    "AutoSendSequencer",
    "AutoSendState",
    "CancellationToken",
    "CompletionClient",
    "ConfigManager",
    "ContextCache",
    "EditAction",
    "EditDetails",
    "EditResubmitController",
    "GenerationCancelled",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "LLMError",
    "SessionNotFoundError",
    "SessionStore",
    "TelemetryCollector",
    "load_config",
]
