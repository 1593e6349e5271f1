"""
Pytest fixtures for convoctl tests.
"""

import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from convoctl.core.cancellation import GenerationCancelled
from convoctl.core.interfaces import FullResponse
from convoctl.core.llm import LLMError
from convoctl.core.orchestrator import GenerationOrchestrator
from convoctl.core.session_store import SessionStore
from convoctl.core.telemetry import TelemetryCollector
from convoctl.models.session import AICharacter, Message, Session, SessionMeta

TEST_MODEL = "gemini/gemini-2.5-flash"


@pytest.fixture(autouse=True)
def _clean_env():
    """Prevent environment variable pollution between tests.

    CLI commands call load_config(), which exports stored provider keys
    into os.environ.
    """
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# -- scripted completion service ------------------------------------------------


@dataclass
class Fail:
    """Reply that reports a non-cancellation error."""

    message: str


@dataclass
class Hang:
    """Reply that blocks until the cancellation token fires."""

    late_text: str | None = None  # delivered as a success after cancellation, if set


@dataclass
class Silent:
    """Reply that ends without success or error (empty stream)."""


@dataclass
class Gate:
    """Reply that succeeds with `text` once released."""

    text: str
    event: asyncio.Event = field(default_factory=asyncio.Event)

    def release(self):
        self.event.set()


class ScriptedCompletionClient:
    """
    Completion service double.

    Replies are consumed in order. A plain string is a successful response;
    Fail, Hang, Gate and Silent script the other outcomes. Every call is recorded.
    """

    def __init__(self, replies=None, mimic_replies=None):
        self.replies = list(replies or [])
        self.mimic_replies = list(mimic_replies or [])
        self.calls: list[dict] = []
        self.mimic_calls: list[dict] = []
        self.started = asyncio.Event()

    def queue(self, *replies):
        self.replies.extend(replies)

    async def completion_request(
        self,
        session_id,
        prompt,
        model,
        settings,
        history,
        on_success,
        on_error,
        on_complete,
        cancellation_token,
        settings_override=None,
        persona_roster=None,
    ):
        self.calls.append(
            {
                "session_id": session_id,
                "prompt": prompt,
                "model": model,
                "settings": settings,
                "history": list(history),
                "settings_override": settings_override,
                "persona_roster": persona_roster,
            }
        )
        reply = self.replies.pop(0) if self.replies else "ok"
        self.started.set()
        try:
            if isinstance(reply, Hang):
                await cancellation_token.wait()
                if reply.late_text is not None:
                    await on_success(FullResponse(text=reply.late_text))
                else:
                    await on_error("Request cancelled by user", True)
            elif isinstance(reply, Fail):
                await on_error(reply.message, False)
            elif isinstance(reply, Gate):
                await reply.event.wait()
                await on_success(FullResponse(text=reply.text))
            elif isinstance(reply, Silent):
                pass
            else:
                await on_success(FullResponse(text=reply))
        finally:
            await on_complete()

    async def mimic_user_request(
        self,
        model,
        role_flipped_history,
        persona_instruction,
        settings,
        cancellation_token,
        overrides=None,
    ):
        self.mimic_calls.append(
            {
                "model": model,
                "history": role_flipped_history,
                "instruction": persona_instruction,
                "settings": settings,
                "overrides": overrides,
            }
        )
        reply = self.mimic_replies.pop(0) if self.mimic_replies else "tell me more"
        self.started.set()
        if isinstance(reply, Hang):
            await cancellation_token.wait()
            raise GenerationCancelled("Request cancelled by user")
        if isinstance(reply, Fail):
            raise LLMError(reply.message)
        return reply


class RecordingCache:
    """Cached-context collaborator that records invalidations."""

    def __init__(self):
        self.invalidations: list[tuple[str, str, str]] = []

    def invalidate(self, session_id, model, fingerprint):
        self.invalidations.append((session_id, model, fingerprint))


# -- fixtures -------------------------------------------------------------------


@pytest.fixture
def store(temp_dir):
    """Session store rooted in a temp directory."""
    return SessionStore(base_dir=temp_dir / "sessions")


@pytest.fixture
def telemetry(temp_dir):
    return TelemetryCollector(base_dir=temp_dir / "telemetry")


@pytest.fixture
def client():
    return ScriptedCompletionClient()


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def orchestrator(store, client, cache, telemetry):
    return GenerationOrchestrator(store, client, cache=cache, telemetry=telemetry)


@pytest.fixture
def make_session(store):
    """Factory that stores a session with the given messages and personas."""

    def _make(messages=None, characters=None, character_mode=False, **meta):
        meta.setdefault("model", TEST_MODEL)
        session = Session(
            meta=SessionMeta(
                ai_characters=characters or [],
                is_character_mode_active=character_mode,
                **meta,
            ),
            messages=messages or [],
        )
        store.add_session(session)
        return session.meta.session_id

    return _make


@pytest.fixture
def persona():
    return AICharacter(
        id="bard",
        name="Bard",
        system_instruction="You speak in rhyme.",
        contextual_info="The tavern is quiet tonight.",
    )


def conversation(*pairs):
    """Build alternating USER/MODEL messages with predictable ids."""
    messages = []
    for i, (user_text, model_text) in enumerate(pairs):
        messages.append(Message(id=f"u{i}", role="user", content=user_text))
        if model_text is not None:
            messages.append(Message(id=f"m{i}", role="model", content=model_text))
    return messages
