"""
Generation orchestrator.

Turns a user action into exactly one in-flight completion request per
session, keeps a placeholder message in the session for the lifetime of
the request, and leaves the session consistent whichever way the request
ends.

Every entry point builds a request variant, a single planner turns the
variant into a GenerationPlan, and a single executor runs the plan:

    IDLE -> GENERATING -> COMPLETED | FAILED | CANCELLED -> IDLE
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from convoctl.core.cancellation import CancellationToken, GenerationCancelled
from convoctl.core.context_cache import ContextCache
from convoctl.core.interfaces import (
    CachedContextInvalidator,
    CompletionService,
    FullResponse,
    SessionUpdater,
    UserInput,
)
from convoctl.core.llm import flip_roles
from convoctl.core.telemetry import Span, TelemetryCollector
from convoctl.models.app_config import AppConfig
from convoctl.models.session import (
    AICharacter,
    Attachment,
    Message,
    Session,
    SessionMeta,
    _utcnow,
    find_preceding_user_message_index,
    history_up_to,
    new_message_id,
)
from convoctl.models.settings import (
    DEFAULT_USER_PERSONA_INSTRUCTION,
    GenerationSettings,
    SettingsOverride,
    permissive_safety_settings,
    settings_fingerprint,
)
from convoctl.utils.callbacks import CallbackRef

logger = logging.getLogger(__name__)

ANOMALY_TEXT = "Response processing failed or stream ended unexpectedly."
CONTINUATION_ANOMALY_TEXT = "Continuation failed or stream ended."
MIMIC_FAILURE_TEXT = "Failed to generate user-style response."
MIMIC_LOG_LABEL = "[Continue Flow - User Mimic]"
ATTACHMENTS_ONLY_TITLE = "Chat with attachments"


# -- request variants ----------------------------------------------------------


@dataclass
class NewTurn:
    """A fresh prompt from the user, optionally spoken to a persona."""

    prompt_text: str
    attachments: list[Attachment] = field(default_factory=list)
    history_override: list[Message] | None = None
    persona_id: str | None = None
    is_temporary_context: bool = False


@dataclass
class Continuation:
    """Answer the trailing USER message of the session."""


@dataclass
class MimicTurn:
    """Write the next USER message in the user's voice."""


@dataclass
class Regeneration:
    """Replace an existing MODEL/ERROR message with a new answer."""

    target_message_id: str


@dataclass
class PrefixContinuation:
    """Extend an edited MODEL message, keeping the edited text as a prefix."""

    message_id: str
    prefix: str


GenerationRequest = NewTurn | Continuation | MimicTurn | Regeneration | PrefixContinuation


# -- plan, context, outcome ----------------------------------------------------


@dataclass
class GenerationPlan:
    """Everything the executor needs to run one generation."""

    kind: str
    placeholder: Message
    write_placeholder: Callable[[Session], Session | None]
    prompt: UserInput
    history: list[Message]
    error_prefix: str | None
    anomaly_text: str = ANOMALY_TEXT
    snapshot: Message | None = None
    undo_write: Callable[[Session], Session | None] | None = None
    settings_override: SettingsOverride | None = None
    persona_roster: list[AICharacter] | None = None
    prefix: str = ""
    mimic: bool = False
    mimic_history: list[dict[str, Any]] = field(default_factory=list)
    mimic_instruction: str = ""
    invalidate_fingerprints: list[str] = field(default_factory=list)
    clear_time_ids: list[str] = field(default_factory=list)
    had_attachments: bool = False

    @property
    def pending_message_id(self) -> str:
        return self.placeholder.id


@dataclass
class GenerationContext:
    """
    State of one in-flight request.

    Callbacks compare against the context they were created with, so a
    late callback from a cancelled request never touches a newer one.
    """

    session_id: str
    pending_message_id: str
    original_snapshot: Message | None
    cancellation_token: CancellationToken
    undo_write: Callable[[Session], Session | None] | None = None
    start_time: float = field(default_factory=time.monotonic)
    cancelled: bool = False
    success_observed: bool = False
    error_observed: bool = False
    span: Span | None = None


OutcomeStatus = Literal["completed", "failed", "cancelled"]


@dataclass
class GenerationOutcome:
    """Terminal state of a generation."""

    status: OutcomeStatus
    message_id: str
    kind: str = ""


# -- message transforms ----------------------------------------------------------


def _replace_by_id(message_id: str, new_message: Message) -> Callable[[Session], Session | None]:
    def _mutate(session: Session) -> Session | None:
        idx = session.index_of(message_id)
        if idx == -1:
            return None
        session.messages[idx] = new_message
        return session

    return _mutate


def _derive_title(prompt_text: str, has_attachments: bool, max_length: int) -> str:
    title = (prompt_text or ATTACHMENTS_ONLY_TITLE)[:max_length]
    if len(prompt_text) > max_length or (not prompt_text and has_attachments):
        title += "..."
    return title


def _persona_override(persona: AICharacter) -> SettingsOverride:
    return SettingsOverride(system_instruction=persona.system_instruction, character_id=persona.id)


def context_fingerprints(meta: SessionMeta, settings: GenerationSettings | None = None) -> list[str]:
    """Fingerprints of every cached context a session may have: plain, then one per persona."""
    settings = settings or meta.settings
    fingerprints = [settings_fingerprint(settings)]
    if meta.is_character_mode_active:
        for persona in meta.ai_characters:
            fingerprints.append(
                settings_fingerprint(_persona_override(persona).apply(settings), persona.id)
            )
    return fingerprints


class GenerationOrchestrator:
    """
    Runs generations against a completion service with one request in flight per session.

    Entry operations return a GenerationOutcome once the request has reached
    its terminal state, or None when the call was a no-op (a generation is
    already pending, the session is unknown, or a precondition failed).
    """

    def __init__(
        self,
        store: SessionUpdater,
        client: CompletionService,
        cache: CachedContextInvalidator | None = None,
        telemetry: TelemetryCollector | None = None,
        config: AppConfig | None = None,
        on_new_ai_message: CallbackRef | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Session accessor all mutations go through
            client: Completion service
            cache: Cached-context collaborator invalidated before regeneration
            telemetry: Generation telemetry (disabled collector if omitted)
            config: Application config (defaults if omitted)
            on_new_ai_message: Handle to the listener told about finished MODEL messages
        """
        self._store = store
        self._client = client
        self._cache = cache if cache is not None else ContextCache()
        self._telemetry = telemetry or TelemetryCollector(enabled=False)
        self._config = config or AppConfig()
        self.on_new_ai_message = on_new_ai_message or CallbackRef()
        self._pending: dict[str, GenerationContext] = {}
        self._had_attachments: dict[str, bool] = {}

    # -- observables -----------------------------------------------------------

    def is_generating(self, session_id: str) -> bool:
        return session_id in self._pending

    def pending_message_id(self, session_id: str) -> str | None:
        ctx = self._pending.get(session_id)
        return ctx.pending_message_id if ctx else None

    def elapsed_time_display(self, session_id: str) -> str:
        """Elapsed time of the pending generation, e.g. '12.3s'."""
        ctx = self._pending.get(session_id)
        if ctx is None:
            return "0.0s"
        return f"{time.monotonic() - ctx.start_time:.1f}s"

    def last_message_had_attachments(self, session_id: str) -> bool:
        return self._had_attachments.get(session_id, False)

    # -- entry operations ------------------------------------------------------

    async def send(
        self,
        session_id: str,
        prompt_text: str,
        attachments: list[Attachment] | None = None,
        history_override: list[Message] | None = None,
        persona_id: str | None = None,
        is_temporary_context: bool = False,
    ) -> GenerationOutcome | None:
        """
        Send a user prompt and generate the MODEL reply.

        Args:
            session_id: Target session
            prompt_text: The user's text (may be blank when speaking to a persona)
            attachments: Files attached to the prompt
            history_override: Replace the session history with this list before appending
            persona_id: Persona the reply is attributed to (character mode only)
            is_temporary_context: Use the prompt once without storing it as a USER message
        """
        request = NewTurn(
            prompt_text=prompt_text,
            attachments=list(attachments or []),
            history_override=history_override,
            persona_id=persona_id,
            is_temporary_context=is_temporary_context,
        )
        return await self._run(session_id, request)

    async def continue_flow(self, session_id: str) -> GenerationOutcome | None:
        """
        Move the conversation forward by one turn.

        Answers a trailing USER message, or writes the next USER message in
        the user's voice when the conversation ends with the model.
        """
        if session_id in self._pending:
            logger.debug("continue_flow: generation already pending for %s", session_id)
            return None
        session = self._store.get_session(session_id)
        if session is None or not session.messages:
            return None
        if session.meta.is_character_mode_active:
            logger.debug("continue_flow: not available in character mode (%s)", session_id)
            return None

        last = session.messages[-1]
        if last.role == "user":
            return await self._run(session_id, Continuation())
        return await self._run(session_id, MimicTurn())

    async def regenerate_message(
        self, session_id: str, target_message_id: str
    ) -> GenerationOutcome | None:
        """Regenerate a MODEL or ERROR message in place, keeping its id."""
        return await self._run(session_id, Regeneration(target_message_id=target_message_id))

    async def regenerate_following_user_message(
        self, session_id: str, user_message_id: str
    ) -> GenerationOutcome | None:
        """Regenerate the MODEL/ERROR message directly after a USER message."""
        session = self._store.get_session(session_id)
        if session is None:
            return None
        idx = session.index_of(user_message_id)
        if idx == -1 or session.messages[idx].role != "user":
            return None
        if idx + 1 >= len(session.messages) or session.messages[idx + 1].role == "user":
            logger.warning("No AI message found after %s to regenerate", user_message_id)
            return None
        return await self.regenerate_message(session_id, session.messages[idx + 1].id)

    async def continue_prefix(
        self, session_id: str, message_id: str, prefix: str
    ) -> GenerationOutcome | None:
        """Continue a MODEL message from an edited prefix; the result is prefix + continuation."""
        return await self._run(session_id, PrefixContinuation(message_id=message_id, prefix=prefix))

    async def cancel(self, session_id: str) -> bool:
        """
        Cancel the pending generation for a session.

        The session is rolled back before this returns: an overwritten
        message gets its snapshot back, a new placeholder is removed.

        Returns:
            True if a generation was cancelled
        """
        ctx = self._pending.get(session_id)
        if ctx is None or ctx.cancelled:
            return False

        ctx.cancelled = True
        ctx.cancellation_token.cancel()
        self._had_attachments[session_id] = False
        logger.debug("Cancelling generation %s in %s", ctx.pending_message_id, session_id)

        await self._rollback(ctx)
        if self._pending.get(session_id) is ctx:
            del self._pending[session_id]
        return True

    async def apply_settings(
        self,
        session_id: str,
        model: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> bool:
        """
        Persist a model/settings change and drop the cached contexts it makes stale.

        Returns:
            True if anything changed
        """
        session = self._store.get_session(session_id)
        if session is None:
            return False

        old_meta = session.meta
        new_model = model or old_meta.model
        new_settings = settings or old_meta.settings
        if new_model == old_meta.model and new_settings == old_meta.settings:
            return False

        def _mutate(s: Session) -> Session:
            s.meta.model = new_model
            s.meta.settings = new_settings.model_copy(deep=True)
            return s

        await self._store.update_session(session_id, _mutate)

        for meta_model, fingerprints in (
            (old_meta.model, context_fingerprints(old_meta)),
            (new_model, context_fingerprints(old_meta, new_settings)),
        ):
            for fingerprint in fingerprints:
                self._cache.invalidate(session_id, meta_model, fingerprint)
        logger.debug("Applied settings change to %s (model %s)", session_id, new_model)
        return True

    # -- planning --------------------------------------------------------------

    def _plan(self, session: Session, request: GenerationRequest) -> GenerationPlan | None:
        if isinstance(request, NewTurn):
            return self._plan_new_turn(session, request)
        if isinstance(request, Continuation):
            return self._plan_continuation(session)
        if isinstance(request, MimicTurn):
            return self._plan_mimic(session)
        if isinstance(request, Regeneration):
            return self._plan_regeneration(session, request)
        if isinstance(request, PrefixContinuation):
            return self._plan_prefix_continuation(session, request)
        raise TypeError(f"Unknown generation request: {request!r}")

    def _persona_for_message(self, meta: SessionMeta, message: Message) -> AICharacter | None:
        if meta.is_character_mode_active and message.character_name:
            return meta.find_character_by_name(message.character_name)
        return None

    def _plan_new_turn(self, session: Session, request: NewTurn) -> GenerationPlan | None:
        meta = session.meta
        sessions_config = self._config.sessions

        persona: AICharacter | None = None
        if meta.is_character_mode_active and request.persona_id:
            persona = meta.find_character(request.persona_id)
            if persona is None:
                logger.error("Character with id %s not found", request.persona_id)
                return None

        prompt_text = request.prompt_text
        attachments = request.attachments
        blank = not prompt_text.strip()
        new_title: str | None = None

        placeholder = Message(
            id=new_message_id("model"),
            role="model",
            is_streaming=True,
            character_name=persona.name if persona else None,
        )

        override = request.history_override
        user_message: Message | None = None
        history = history_up_to(session.messages, len(session.messages))

        if request.is_temporary_context and persona is not None and not blank:
            prompt = UserInput(text=prompt_text)
        elif persona is not None and blank and not attachments and override is None:
            info = persona.contextual_info or ""
            prompt = UserInput(text=info if info.strip() else "")
        else:
            if blank and not attachments and persona is None:
                logger.debug("send: empty prompt ignored for %s", meta.session_id)
                return None
            user_message = Message(
                id=new_message_id("user"),
                role="user",
                content=prompt_text,
                attachments=[a.model_copy(deep=True) for a in attachments],
            )
            if override is not None:
                history = [m.model_copy(deep=True) for m in override]
            prompt = UserInput(text=prompt_text, attachments=attachments)

            is_first_user_message = not any(m.role == "user" for m in history)
            if (
                override is None
                and meta.title == sessions_config.default_title
                and is_first_user_message
            ):
                new_title = _derive_title(
                    prompt_text, bool(attachments), sessions_config.title_max_length
                )

        replacement = [m.model_copy(deep=True) for m in override] if override is not None else None
        appended = ([user_message] if user_message else []) + [placeholder]

        def _write(s: Session) -> Session:
            if replacement is not None:
                s.messages = [m.model_copy(deep=True) for m in replacement]
            s.messages.extend(m.model_copy(deep=True) for m in appended)
            if new_title is not None:
                s.meta.title = new_title
            return s

        appended_ids = {m.id for m in appended}
        kept_ids = {m.id for m in replacement} if replacement is not None else None
        displaced = (
            [m.model_copy(deep=True) for m in session.messages if m.id not in kept_ids]
            if kept_ids is not None
            else []
        )
        original_order = [m.id for m in session.messages]

        def _undo(s: Session) -> Session | None:
            remaining = [m for m in s.messages if m.id not in appended_ids]
            if not displaced and len(remaining) == len(s.messages):
                return None
            if displaced:
                # Put back what the override dropped, in its original position.
                by_id = {m.id: m for m in remaining}
                by_id.update((m.id, m) for m in displaced if m.id not in by_id)
                restored = [by_id.pop(mid) for mid in original_order if mid in by_id]
                remaining = restored + [m for m in remaining if m.id in by_id]
            s.messages = remaining
            return s

        return GenerationPlan(
            kind="send",
            placeholder=placeholder,
            write_placeholder=_write,
            prompt=prompt,
            history=history,
            error_prefix="Response failed",
            undo_write=_undo,
            settings_override=_persona_override(persona) if persona else None,
            persona_roster=list(meta.ai_characters) if persona else None,
            had_attachments=bool(attachments) and not request.is_temporary_context,
        )

    def _plan_continuation(self, session: Session) -> GenerationPlan:
        last = session.messages[-1]
        placeholder = Message(id=new_message_id("flow"), role="model", is_streaming=True)

        def _write(s: Session) -> Session:
            s.messages.append(placeholder.model_copy(deep=True))
            return s

        return GenerationPlan(
            kind="continue",
            placeholder=placeholder,
            write_placeholder=_write,
            prompt=UserInput(text=last.content, attachments=last.attachments),
            history=history_up_to(session.messages, len(session.messages) - 1),
            error_prefix="Flow response failed",
            had_attachments=bool(last.attachments),
        )

    def _plan_mimic(self, session: Session) -> GenerationPlan:
        settings = session.meta.settings
        placeholder = Message(id=new_message_id("mimic"), role="user", is_streaming=True)
        overrides = SettingsOverride(
            safety_settings=permissive_safety_settings(
                self._config.generation.mimic_safety_threshold
            ),
            use_google_search=False,
            url_context=[],
            log_label=MIMIC_LOG_LABEL,
        )

        def _write(s: Session) -> Session:
            s.messages.append(placeholder.model_copy(deep=True))
            return s

        return GenerationPlan(
            kind="mimic",
            placeholder=placeholder,
            write_placeholder=_write,
            prompt=UserInput(text=""),
            history=[],
            error_prefix=None,
            settings_override=overrides,
            mimic=True,
            mimic_history=flip_roles(session.messages[:-1]),
            mimic_instruction=settings.user_persona_instruction or DEFAULT_USER_PERSONA_INSTRUCTION,
        )

    def _plan_regeneration(self, session: Session, request: Regeneration) -> GenerationPlan | None:
        meta = session.meta
        idx = session.index_of(request.target_message_id)
        if idx <= 0:
            logger.debug("regenerate: %s is missing or first", request.target_message_id)
            return None
        target = session.messages[idx]
        if target.role not in ("model", "error"):
            return None
        user_idx = find_preceding_user_message_index(session.messages, idx)
        if user_idx == -1:
            return None
        user_message = session.messages[user_idx]

        placeholder = target.model_copy(
            update={
                "role": "model",
                "content": "",
                "grounding_metadata": None,
                "cached_audio_buffers": None,
                "timestamp": _utcnow(),
                "is_streaming": True,
            },
            deep=True,
        )

        persona = self._persona_for_message(meta, target)
        override = _persona_override(persona) if persona else None
        effective = override.apply(meta.settings) if override else meta.settings
        fingerprint = settings_fingerprint(effective, persona.id if persona else None)

        return GenerationPlan(
            kind="regenerate",
            placeholder=placeholder,
            write_placeholder=_replace_by_id(target.id, placeholder.model_copy(deep=True)),
            prompt=UserInput(text=user_message.content, attachments=user_message.attachments),
            history=history_up_to(session.messages, user_idx),
            error_prefix="Regeneration failed",
            snapshot=target.model_copy(deep=True),
            settings_override=override,
            persona_roster=list(meta.ai_characters) if persona else None,
            invalidate_fingerprints=[fingerprint],
            clear_time_ids=[target.id],
            had_attachments=bool(user_message.attachments),
        )

    def _plan_prefix_continuation(
        self, session: Session, request: PrefixContinuation
    ) -> GenerationPlan | None:
        meta = session.meta
        idx = session.index_of(request.message_id)
        if idx == -1 or session.messages[idx].role != "model":
            logger.warning("Continue prefix is only available for AI messages")
            return None
        target = session.messages[idx]
        user_idx = find_preceding_user_message_index(session.messages, idx)
        if user_idx == -1:
            logger.error("Could not find user prompt for continuation of %s", target.id)
            return None
        user_message = session.messages[user_idx]

        placeholder = target.model_copy(
            update={
                "content": request.prefix,
                "cached_audio_buffers": None,
                "timestamp": _utcnow(),
                "is_streaming": True,
            },
            deep=True,
        )
        persona = self._persona_for_message(meta, target)

        return GenerationPlan(
            kind="continue_prefix",
            placeholder=placeholder,
            write_placeholder=_replace_by_id(target.id, placeholder.model_copy(deep=True)),
            prompt=UserInput(text=request.prefix, attachments=user_message.attachments),
            history=history_up_to(session.messages, user_idx),
            error_prefix="Continuation failed",
            anomaly_text=CONTINUATION_ANOMALY_TEXT,
            snapshot=target.model_copy(update={"cached_audio_buffers": None}, deep=True),
            settings_override=_persona_override(persona) if persona else None,
            persona_roster=list(meta.ai_characters) if persona else None,
            prefix=request.prefix,
            clear_time_ids=[target.id],
        )

    # -- execution -------------------------------------------------------------

    async def _run(
        self, session_id: str, request: GenerationRequest
    ) -> GenerationOutcome | None:
        # No await between the guard and registering the context.
        if session_id in self._pending:
            logger.debug("Generation already pending for %s, ignoring %s", session_id, request)
            return None
        session = self._store.get_session(session_id)
        if session is None:
            logger.debug("Session %s not found", session_id)
            return None
        plan = self._plan(session, request)
        if plan is None:
            return None

        ctx = GenerationContext(
            session_id=session_id,
            pending_message_id=plan.pending_message_id,
            original_snapshot=plan.snapshot,
            undo_write=plan.undo_write,
            cancellation_token=CancellationToken(),
        )
        self._pending[session_id] = ctx
        self._had_attachments[session_id] = plan.had_attachments
        try:
            return await self._execute(ctx, session, plan)
        finally:
            # A cancelled context may already have been replaced by a newer request.
            if self._pending.get(session_id) is ctx or session_id not in self._pending:
                self._had_attachments[session_id] = False
            if self._pending.get(session_id) is ctx:
                del self._pending[session_id]

    async def _execute(
        self, ctx: GenerationContext, session: Session, plan: GenerationPlan
    ) -> GenerationOutcome:
        session_id = ctx.session_id
        model = session.meta.model
        ctx.span = self._telemetry.start_generation(session_id, plan.kind, ctx.pending_message_id)

        await self._store.update_session(session_id, plan.write_placeholder)
        if plan.clear_time_ids:
            self._telemetry.clear_generation_times(session_id, plan.clear_time_ids)
        for fingerprint in plan.invalidate_fingerprints:
            self._cache.invalidate(session_id, model, fingerprint)

        async def on_success(response: FullResponse) -> None:
            if ctx.cancelled:
                return
            ctx.success_observed = True
            elapsed = time.monotonic() - ctx.start_time
            self._telemetry.record_generation_time(session_id, ctx.pending_message_id, elapsed)

            final = plan.placeholder.model_copy(
                update={
                    "role": "user" if plan.mimic else "model",
                    "content": plan.prefix + response.text,
                    "grounding_metadata": response.grounding_metadata,
                    "is_streaming": False,
                    "timestamp": _utcnow(),
                    "cached_audio_buffers": None,
                },
                deep=True,
            )
            await self._store.update_session(
                session_id, _replace_by_id(ctx.pending_message_id, final)
            )
            if not plan.mimic and not ctx.cancelled:
                self.on_new_ai_message.fire_and_forget(final)

        async def on_error(message: str, is_cancellation: bool) -> None:
            if ctx.cancelled:
                return
            if is_cancellation:
                ctx.cancelled = True
                await self._rollback(ctx)
                return
            ctx.error_observed = True
            if plan.error_prefix:
                content = f"{plan.error_prefix}: {message}"
            else:
                content = message or MIMIC_FAILURE_TEXT
            error_message = plan.placeholder.model_copy(
                update={
                    "role": "error",
                    "content": content,
                    "is_streaming": False,
                    "cached_audio_buffers": None,
                },
                deep=True,
            )
            await self._store.update_session(
                session_id, _replace_by_id(ctx.pending_message_id, error_message)
            )

        async def on_complete() -> None:
            if ctx.cancelled or ctx.success_observed or ctx.error_observed:
                return
            await self._store.update_session(session_id, self._anomaly_transform(ctx, plan))

        if not ctx.cancelled:
            try:
                if plan.mimic:
                    await self._request_mimic(ctx, session, plan, on_success, on_error, on_complete)
                else:
                    await self._client.completion_request(
                        session_id,
                        plan.prompt,
                        model,
                        session.meta.settings,
                        plan.history,
                        on_success,
                        on_error,
                        on_complete,
                        ctx.cancellation_token,
                        settings_override=plan.settings_override,
                        persona_roster=plan.persona_roster,
                    )
            except Exception as e:
                # Failures end up in the transcript, never in the caller.
                logger.exception("Completion request for %s raised", ctx.pending_message_id)
                if not (ctx.cancelled or ctx.success_observed or ctx.error_observed):
                    await on_error(str(e), False)

        if ctx.cancelled:
            status: OutcomeStatus = "cancelled"
        elif ctx.success_observed:
            status = "completed"
        else:
            status = "failed"

        span_status = {"completed": "ok", "failed": "error", "cancelled": "cancelled"}[status]
        self._telemetry.end_generation(ctx.span, status=span_status)
        logger.debug("Generation %s in %s %s", ctx.pending_message_id, session_id, status)
        return GenerationOutcome(status=status, message_id=ctx.pending_message_id, kind=plan.kind)

    async def _request_mimic(
        self,
        ctx: GenerationContext,
        session: Session,
        plan: GenerationPlan,
        on_success: Callable[[FullResponse], Any],
        on_error: Callable[[str, bool], Any],
        on_complete: Callable[[], Any],
    ) -> None:
        """Run the single-shot mimic call through the same callbacks as a full request."""
        try:
            text = await self._client.mimic_user_request(
                session.meta.model,
                plan.mimic_history,
                plan.mimic_instruction,
                session.meta.settings,
                ctx.cancellation_token,
                overrides=plan.settings_override,
            )
        except GenerationCancelled as e:
            await on_error(str(e), True)
        except Exception as e:
            logger.warning("User-style response failed: %s", e)
            await on_error(str(e), False)
        else:
            if ctx.cancellation_token.cancelled:
                await on_error("Request cancelled by user", True)
            else:
                await on_success(FullResponse(text=text))
        finally:
            await on_complete()

    def _anomaly_transform(
        self, ctx: GenerationContext, plan: GenerationPlan
    ) -> Callable[[Session], Session | None]:
        """The request ended without success or error: never leave the placeholder streaming."""
        message_id = ctx.pending_message_id
        snapshot = ctx.original_snapshot

        def _mutate(session: Session) -> Session | None:
            idx = session.index_of(message_id)
            if idx == -1:
                return None
            current = session.messages[idx]
            if current.is_streaming and current.role != "error":
                session.messages[idx] = current.model_copy(
                    update={
                        "role": "error",
                        "content": plan.anomaly_text,
                        "is_streaming": False,
                        "timestamp": _utcnow(),
                        "cached_audio_buffers": None,
                    }
                )
                return session
            if not current.is_streaming and snapshot is not None:
                session.messages[idx] = snapshot.model_copy(deep=True)
                return session
            return None

        return _mutate

    async def _rollback(self, ctx: GenerationContext) -> None:
        """Put the session back the way it was before the generation started."""
        message_id = ctx.pending_message_id
        snapshot = ctx.original_snapshot
        undo = ctx.undo_write

        def _mutate(session: Session) -> Session | None:
            idx = session.index_of(message_id)
            if idx == -1:
                return None
            if snapshot is not None:
                session.messages[idx] = snapshot.model_copy(deep=True)
            elif undo is not None:
                return undo(session)
            else:
                del session.messages[idx]
            return session

        await self._store.update_session(ctx.session_id, _mutate)
