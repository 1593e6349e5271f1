"""
LiteLLM-backed completion client.

Implements the completion-service contract the orchestrator consumes:
a full-response call reported through success/error/complete callbacks,
and a single-shot "continue as the user" call.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import litellm
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    BudgetExceededError,
    ContextWindowExceededError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
)
from litellm.types.utils import ModelResponse

from convoctl.core.cancellation import CancellationToken, GenerationCancelled
from convoctl.core.context_cache import ContextCache, history_signature
from convoctl.core.interfaces import FullResponse, OnComplete, OnError, OnSuccess, UserInput
from convoctl.models.session import AICharacter, Attachment, Message
from convoctl.models.settings import GenerationSettings, SettingsOverride, settings_fingerprint

# Suppress LiteLLM debug messages (e.g., "Provider List: ...")
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)


# Map of provider prefixes to their expected API key env vars
_PROVIDER_KEY_HINTS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "google": "GOOGLE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "vertex_ai": "GOOGLE_APPLICATION_CREDENTIALS",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

# Providers that understand Gemini safety settings and search tools
_GEMINI_PROVIDERS = ("gemini", "vertex_ai")

_CREDIT_KEYWORDS = ("402", "credits", "insufficient", "budget")


def _provider(model: str) -> str:
    return model.split("/")[0].lower()


def _extract_error_message(error: Exception) -> str:
    """Extract the most useful part of a LiteLLM error message."""
    msg = str(error)
    match = re.search(r'"message"\s*:\s*"([^"]+)"', msg)
    if match:
        return match.group(1)
    if len(msg) > 200:
        return msg[:200] + "..."
    return msg


class LLMError(Exception):
    """User-friendly LLM error with actionable guidance."""

    def __init__(self, message: str, original: Exception | None = None):
        self.original = original
        super().__init__(message)


def _friendly_llm_error(model: str, error: Exception | None) -> LLMError:
    """Convert a LiteLLM exception to a user-friendly error message."""
    provider = _provider(model)

    if error is None:
        return LLMError(f"No response from '{model}'.")

    if isinstance(error, AuthenticationError):
        key_name = _PROVIDER_KEY_HINTS.get(provider, f"{provider.upper()}_API_KEY")
        return LLMError(
            f"Authentication failed for '{model}'. "
            f"Check that {key_name} is set correctly.\n"
            f"  Run: convoctl config set {key_name}",
            original=error,
        )

    if isinstance(error, NotFoundError):
        return LLMError(
            f"Model '{model}' not found. Check the model name and provider.\n"
            f"  LiteLLM format: provider/model (e.g., gemini/gemini-2.5-flash)",
            original=error,
        )

    if isinstance(error, RateLimitError):
        return LLMError(
            f"Rate limit exceeded for '{model}'. Wait a moment and try again.",
            original=error,
        )

    if isinstance(error, BudgetExceededError):
        return LLMError(
            f"API budget/credits exhausted for '{model}'.",
            original=error,
        )

    if isinstance(error, ContextWindowExceededError):
        return LLMError(
            f"Context too large for '{model}'. "
            f"Delete older messages or switch to a model with a larger context window.",
            original=error,
        )

    if isinstance(error, BadRequestError):
        return LLMError(
            f"Model '{model}' rejected the request: {_extract_error_message(error)}",
            original=error,
        )

    if isinstance(error, APIConnectionError):
        return LLMError(
            f"Cannot connect to {provider} API. Check your internet connection.",
            original=error,
        )

    if isinstance(error, ServiceUnavailableError):
        return LLMError(
            f"The {provider} API is temporarily unavailable. Try again in a moment.",
            original=error,
        )

    if isinstance(error, APIError):
        if any(kw in str(error).lower() for kw in _CREDIT_KEYWORDS):
            return LLMError(
                f"Credits exhausted for '{model}'. {_extract_error_message(error)}",
                original=error,
            )
        return LLMError(
            f"API error from {provider}: {_extract_error_message(error)}",
            original=error,
        )

    return LLMError(f"LLM error ({type(error).__name__}): {error}", original=error)


def _attachment_part(attachment: Attachment) -> dict[str, Any] | None:
    """Map an attachment to a chat content part, if the provider can take it inline."""
    if attachment.base64_data and attachment.mime_type.startswith("image/"):
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{attachment.mime_type};base64,{attachment.base64_data}"},
        }
    if attachment.uri:
        return {"type": "text", "text": f"[Attached file: {attachment.name} ({attachment.uri})]"}
    return None


def _content(text: str, attachments: list[Attachment]) -> str | list[dict[str, Any]]:
    parts = [p for p in (_attachment_part(a) for a in attachments) if p is not None]
    if not parts:
        return text
    return [{"type": "text", "text": text}, *parts]


def to_chat_messages(history: list[Message]) -> list[dict[str, Any]]:
    """Map session history to chat-completion messages. ERROR turns are not sent."""
    result: list[dict[str, Any]] = []
    for msg in history:
        if msg.role == "error":
            continue
        role = "user" if msg.role == "user" else "assistant"
        result.append({"role": role, "content": _content(msg.content, msg.attachments)})
    return result


def flip_roles(history: list[Message]) -> list[dict[str, Any]]:
    """
    History with user and model turns swapped.

    Presenting the user's turns as the assistant's biases the model toward
    writing the next user message.
    """
    result: list[dict[str, Any]] = []
    for msg in history:
        if msg.role == "error":
            continue
        role = "assistant" if msg.role == "user" else "user"
        result.append({"role": role, "content": msg.content})
    return result


def _grounding_from(response: ModelResponse) -> dict[str, Any] | None:
    metadata = getattr(response, "vertex_ai_grounding_metadata", None)
    if not metadata:
        return None
    if isinstance(metadata, list):
        return metadata[0] if isinstance(metadata[0], dict) else {"entries": metadata}
    return metadata if isinstance(metadata, dict) else None


class CompletionClient:
    """
    Completion service over LiteLLM.

    Supports any provider that LiteLLM supports. Safety settings and Google
    search grounding are only forwarded to Gemini-family providers.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        retry_backoff: float = 2.0,
        fallback_models: list[str] | None = None,
        context_cache: ContextCache | None = None,
    ):
        """
        Initialize the completion client.

        Args:
            max_retries: Maximum number of retries on transient errors
            retry_delay: Initial delay between retries (seconds)
            retry_backoff: Exponential backoff multiplier
            fallback_models: Models tried in order when the primary exhausts retries
            context_cache: Cache of prepared history prefixes
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.fallback_models = fallback_models or []
        self.context_cache = context_cache or ContextCache()

    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        **kwargs: Any,
    ) -> ModelResponse:
        """
        Send a chat completion request with automatic retry and model failover.

        Non-transient errors (auth, model not found, bad request) raise
        immediately without failover.

        Raises:
            LLMError: When every model failed
        """
        models = [model] + [m for m in self.fallback_models if m != model]

        last_error: Exception | None = None
        for i, candidate in enumerate(models):
            if i > 0:
                logger.warning("Falling back to model: %s", candidate)

            result, error = await self._try_model(candidate, messages, kwargs)
            if result is not None:
                return result
            last_error = error

        raise _friendly_llm_error(model, last_error)

    async def _try_model(
        self,
        model: str,
        messages: list[dict[str, Any]],
        extra: dict[str, Any],
    ) -> tuple[ModelResponse | None, Exception | None]:
        """
        Try a single model with retries.

        Returns:
            (response, None) on success, or (None, last_error) on transient failure.
        """
        kwargs: dict[str, Any] = {"model": model, "messages": messages, **extra}
        if _provider(model) not in _GEMINI_PROVIDERS:
            kwargs.pop("safety_settings", None)
            kwargs.pop("tools", None)

        last_error: Exception | None = None
        delay = self.retry_delay

        for attempt in range(self.max_retries + 1):
            try:
                return await acompletion(**kwargs), None
            except (
                AuthenticationError,
                NotFoundError,
                BudgetExceededError,
                BadRequestError,
                ContextWindowExceededError,
            ) as e:
                raise _friendly_llm_error(model, e) from e
            except (RateLimitError, ServiceUnavailableError, APIConnectionError, APIError) as e:
                if not isinstance(e, (RateLimitError, ServiceUnavailableError)) and any(
                    kw in str(e).lower() for kw in _CREDIT_KEYWORDS
                ):
                    raise _friendly_llm_error(model, e) from e
                last_error = e

            if attempt < self.max_retries:
                logger.warning(
                    "LLM call failed (attempt %d/%d, model %s): %s. Retrying in %.1fs...",
                    attempt + 1,
                    self.max_retries + 1,
                    model,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= self.retry_backoff

        return None, last_error

    def _request_kwargs(self, settings: GenerationSettings) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"temperature": settings.temperature}
        if settings.max_tokens is not None:
            kwargs["max_tokens"] = settings.max_tokens
        if settings.safety_settings:
            kwargs["safety_settings"] = [s.model_dump() for s in settings.safety_settings]
        tools: list[dict[str, Any]] = []
        if settings.use_google_search:
            tools.append({"googleSearch": {}})
        if settings.url_context:
            tools.append({"urlContext": {}})
        if tools:
            kwargs["tools"] = tools
        return kwargs

    def _system_instruction(
        self,
        settings: GenerationSettings,
        override: SettingsOverride | None,
        roster: list[AICharacter] | None,
    ) -> str | None:
        instruction = settings.system_instruction
        if override and override.character_id and roster:
            others = [c.name for c in roster if c.id != override.character_id]
            if others:
                note = "Other characters in this conversation: " + ", ".join(others) + "."
                instruction = f"{instruction}\n\n{note}" if instruction else note
        return instruction

    def _prepared_prefix(
        self,
        session_id: str,
        model: str,
        settings: GenerationSettings,
        override: SettingsOverride | None,
        history: list[Message],
        roster: list[AICharacter] | None,
    ) -> list[dict[str, Any]]:
        """System instruction plus history, served from the context cache when unchanged."""
        character_id = override.character_id if override else None
        fingerprint = settings_fingerprint(settings, character_id)
        signature = history_signature(history)

        cached = self.context_cache.get(session_id, model, fingerprint, signature)
        if cached is not None:
            logger.debug("Using cached context for %s (%s)", session_id, fingerprint)
            return cached

        messages: list[dict[str, Any]] = []
        instruction = self._system_instruction(settings, override, roster)
        if instruction:
            messages.append({"role": "system", "content": instruction})
        messages.extend(to_chat_messages(history))

        self.context_cache.put(session_id, model, fingerprint, signature, messages)
        return messages

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
    ) -> None:
        """
        Run one full-response completion and report through the callbacks.

        A response without any choices produces neither success nor error,
        only completion.
        """
        effective = settings_override.apply(settings) if settings_override else settings
        label = (settings_override.log_label if settings_override else None) or "[Chat]"

        try:
            cancellation_token.raise_if_cancelled()
            messages = self._prepared_prefix(
                session_id, model, effective, settings_override, history, persona_roster
            )
            text = prompt.text
            if effective.url_context:
                text = text + "\n\nReference URLs:\n" + "\n".join(effective.url_context)
            messages.append({"role": "user", "content": _content(text, prompt.attachments)})

            logger.debug("%s %s: %d messages to %s", label, session_id, len(messages), model)
            response = await cancellation_token.run(
                self.chat(model, messages, **self._request_kwargs(effective))
            )
            cancellation_token.raise_if_cancelled()

            if not response.choices:
                logger.warning("%s %s: response contained no choices", label, session_id)
            else:
                content = response.choices[0].message.content or ""
                await on_success(
                    FullResponse(text=content, grounding_metadata=_grounding_from(response))
                )
        except GenerationCancelled as e:
            await on_error(str(e), True)
        except LLMError as e:
            logger.debug("%s %s failed: %s", label, session_id, e)
            await on_error(str(e), False)
        finally:
            await on_complete()

    async def mimic_user_request(
        self,
        model: str,
        role_flipped_history: list[dict[str, Any]],
        persona_instruction: str,
        settings: GenerationSettings,
        cancellation_token: CancellationToken,
        overrides: SettingsOverride | None = None,
    ) -> str:
        """
        Generate the next user-side message.

        Raises:
            GenerationCancelled: If the token fired first
            LLMError: If the call failed
        """
        effective = overrides.apply(settings) if overrides else settings
        label = (overrides.log_label if overrides else None) or "[Mimic]"

        messages: list[dict[str, Any]] = [{"role": "system", "content": persona_instruction}]
        messages.extend(role_flipped_history)
        if not role_flipped_history or role_flipped_history[-1]["role"] != "user":
            messages.append({"role": "user", "content": "Continue."})

        cancellation_token.raise_if_cancelled()
        logger.debug("%s %d messages to %s", label, len(messages), model)
        response = await cancellation_token.run(
            self.chat(model, messages, **self._request_kwargs(effective))
        )
        cancellation_token.raise_if_cancelled()

        if not response.choices:
            raise LLMError(f"Empty response from '{model}'.")
        return response.choices[0].message.content or ""
