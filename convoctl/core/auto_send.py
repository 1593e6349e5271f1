"""
Auto-send sequencer.

Drives the orchestrator a fixed number of times with the same prompt.
A round that ends in an ERROR message is retried by regenerating that
message after a countdown; retries do not use up repetitions.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from dataclasses import dataclass

from convoctl.core.orchestrator import GenerationOrchestrator, GenerationOutcome
from convoctl.core.session_store import SessionStore
from convoctl.models.app_config import AutoSendSettings

logger = logging.getLogger(__name__)


@dataclass
class AutoSendState:
    """Observable state of the sequencer."""

    session_id: str | None = None
    is_active: bool = False
    is_preparing: bool = False
    remaining: int = 0
    prompt_text: str = ""
    target_character_id: str | None = None
    is_waiting_for_error_retry: bool = False
    retry_countdown_seconds: int = 0
    error_retries: int = 0


class AutoSendSequencer:
    """
    Repeats a prompt against one session.

    In character mode `start` without a persona only prepares the run;
    nothing is sent until `select_persona` picks who answers, and every
    round then reuses that persona.
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        store: SessionStore,
        settings: AutoSendSettings | None = None,
        tick_interval: float = 1.0,
    ):
        """
        Args:
            orchestrator: Orchestrator the rounds are sent through
            store: Session store, for character-mode and persona checks
            settings: Repetition and retry limits
            tick_interval: Seconds per countdown tick
        """
        self._orchestrator = orchestrator
        self._store = store
        self._settings = settings or AutoSendSettings()
        self._tick_interval = tick_interval
        self._state = AutoSendState()
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> AutoSendState:
        return dataclasses.replace(self._state)

    @property
    def is_running(self) -> bool:
        return self._state.is_active or self._state.is_preparing

    async def start(
        self,
        session_id: str,
        prompt_text: str,
        repetitions: int,
        persona_id: str | None = None,
    ) -> bool:
        """
        Start repeating `prompt_text` `repetitions` times.

        Returns:
            True if the run started or was prepared
        """
        if self.is_running:
            logger.debug("Auto-send already running")
            return False
        if not 1 <= repetitions <= self._settings.max_repetitions:
            logger.warning(
                "Repetitions must be between 1 and %d", self._settings.max_repetitions
            )
            return False
        if self._orchestrator.is_generating(session_id):
            return False
        session = self._store.get_session(session_id)
        if session is None:
            return False

        character_mode = session.meta.is_character_mode_active
        if not prompt_text.strip() and not character_mode:
            return False

        self._state = AutoSendState(
            session_id=session_id,
            remaining=repetitions,
            prompt_text=prompt_text,
        )
        if character_mode and persona_id is None:
            self._state.is_preparing = True
            logger.debug("Auto-send prepared for %s, waiting for a persona", session_id)
            return True

        if persona_id is not None and character_mode and not session.meta.find_character(persona_id):
            self._state = AutoSendState()
            return False
        self._state.target_character_id = persona_id
        self._launch(session_id)
        return True

    async def select_persona(self, persona_id: str) -> bool:
        """Pick the persona for a prepared run and start sending."""
        state = self._state
        if not state.is_preparing or state.session_id is None:
            return False
        session = self._store.get_session(state.session_id)
        if session is None or session.meta.find_character(persona_id) is None:
            return False
        if self._orchestrator.is_generating(state.session_id):
            return False

        state.is_preparing = False
        state.target_character_id = persona_id
        self._launch(state.session_id)
        return True

    async def stop(self) -> None:
        """Stop the run: cancel the countdown and any generation in flight, then reset."""
        state = self._state
        state.is_active = False
        state.is_preparing = False
        self._state = AutoSendState()

        if state.session_id and self._orchestrator.is_generating(state.session_id):
            await self._orchestrator.cancel(state.session_id)

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        """Tear down on session switch or shutdown."""
        await self.stop()

    async def wait(self) -> None:
        """Wait for the current run to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def _launch(self, session_id: str) -> None:
        self._state.is_active = True
        self._task = asyncio.get_running_loop().create_task(self._run(self._state, session_id))

    async def _run(self, state: AutoSendState, session_id: str) -> None:
        try:
            while state.is_active and state.remaining > 0:
                outcome = await self._orchestrator.send(
                    session_id, state.prompt_text, persona_id=state.target_character_id
                )
                outcome = await self._retry_until_settled(state, session_id, outcome)
                if outcome is None or outcome.status != "completed":
                    break
                state.remaining -= 1
                state.error_retries = 0
                logger.debug("Auto-send round done, %d left", state.remaining)
        finally:
            state.is_active = False
            state.is_waiting_for_error_retry = False
            if self._state is state:
                self._state = AutoSendState()

    async def _retry_until_settled(
        self, state: AutoSendState, session_id: str, outcome: GenerationOutcome | None
    ) -> GenerationOutcome | None:
        """Regenerate a failed round after a countdown, up to the retry limit."""
        while outcome is not None and outcome.status == "failed" and state.is_active:
            if state.error_retries >= self._settings.max_error_retries:
                logger.warning(
                    "Auto-send stopped after %d failed retries", state.error_retries
                )
                return None

            state.is_waiting_for_error_retry = True
            for remaining in range(self._settings.retry_countdown_seconds, 0, -1):
                state.retry_countdown_seconds = remaining
                await asyncio.sleep(self._tick_interval)
                if not state.is_active:
                    return None
            state.retry_countdown_seconds = 0
            state.is_waiting_for_error_retry = False
            state.error_retries += 1

            logger.info("Auto-send retrying failed message %s", outcome.message_id)
            outcome = await self._orchestrator.regenerate_message(session_id, outcome.message_id)
        return outcome
