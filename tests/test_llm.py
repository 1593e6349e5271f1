"""
Tests for the LiteLLM completion client.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from litellm.exceptions import AuthenticationError, NotFoundError, RateLimitError

from convoctl.core.cancellation import CancellationToken
from convoctl.core.context_cache import ContextCache
from convoctl.core.interfaces import UserInput
from convoctl.core.llm import CompletionClient, LLMError, flip_roles, to_chat_messages
from convoctl.models.session import AICharacter, Attachment, Message
from convoctl.models.settings import (
    GenerationSettings,
    SettingsOverride,
    permissive_safety_settings,
)


def make_response(text="Hello!"):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    response.vertex_ai_grounding_metadata = None
    return response


class Recorder:
    """Collects completion callbacks in call order."""

    def __init__(self):
        self.events = []

    async def on_success(self, response):
        self.events.append(("success", response.text))

    async def on_error(self, message, is_cancellation):
        self.events.append(("error", message, is_cancellation))

    async def on_complete(self):
        self.events.append(("complete",))


async def request(client, recorder, token=None, model="gemini/gemini-2.5-flash", **kwargs):
    await client.completion_request(
        kwargs.pop("session_id", "s1"),
        kwargs.pop("prompt", UserInput(text="Hi")),
        model,
        kwargs.pop("settings", GenerationSettings()),
        kwargs.pop("history", []),
        recorder.on_success,
        recorder.on_error,
        recorder.on_complete,
        token or CancellationToken(),
        **kwargs,
    )


class TestChatRetry:
    """Tests for retry and fallback in CompletionClient.chat."""

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_success_no_retry(self, mock_acompletion):
        mock_acompletion.return_value = make_response()

        client = CompletionClient(max_retries=3, retry_delay=0.01)
        result = await client.chat("gemini/gemini-2.5-flash", [{"role": "user", "content": "x"}])

        assert result is mock_acompletion.return_value
        assert mock_acompletion.call_count == 1

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_retry_on_rate_limit(self, mock_acompletion):
        """Should retry on RateLimitError."""
        response = make_response()
        mock_acompletion.side_effect = [
            RateLimitError("Rate limited", "model", "provider"),
            RateLimitError("Rate limited", "model", "provider"),
            response,
        ]

        client = CompletionClient(max_retries=3, retry_delay=0.01)
        result = await client.chat("gemini/gemini-2.5-flash", [])

        assert result is response
        assert mock_acompletion.call_count == 3

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_raises_after_max_retries(self, mock_acompletion):
        mock_acompletion.side_effect = RateLimitError("Rate limited", "model", "provider")

        client = CompletionClient(max_retries=2, retry_delay=0.01)

        with pytest.raises(LLMError, match="Rate limit exceeded"):
            await client.chat("gemini/gemini-2.5-flash", [])

        # 1 initial + 2 retries = 3 attempts
        assert mock_acompletion.call_count == 3

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_no_retry_on_auth_error(self, mock_acompletion):
        mock_acompletion.side_effect = AuthenticationError("bad key", "openai", "gpt-4o")

        client = CompletionClient(max_retries=3, retry_delay=0.01)

        with pytest.raises(LLMError, match="OPENAI_API_KEY"):
            await client.chat("openai/gpt-4o", [])

        assert mock_acompletion.call_count == 1

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_not_found_has_guidance(self, mock_acompletion):
        mock_acompletion.side_effect = NotFoundError("no such model", "gemini", "gemini-9")

        client = CompletionClient(max_retries=0)

        with pytest.raises(LLMError, match="not found"):
            await client.chat("gemini/gemini-9", [])

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_fallback_model(self, mock_acompletion):
        """The fallback model is tried once the primary exhausts its retries."""
        response = make_response()
        mock_acompletion.side_effect = [
            RateLimitError("Rate limited", "model", "provider"),
            response,
        ]

        client = CompletionClient(
            max_retries=0, retry_delay=0.01, fallback_models=["openai/gpt-4o-mini"]
        )
        result = await client.chat("gemini/gemini-2.5-flash", [])

        assert result is response
        models = [call.kwargs["model"] for call in mock_acompletion.call_args_list]
        assert models == ["gemini/gemini-2.5-flash", "openai/gpt-4o-mini"]

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_gemini_only_kwargs_stripped(self, mock_acompletion):
        mock_acompletion.return_value = make_response()
        client = CompletionClient()

        await client.chat("openai/gpt-4o", [], safety_settings=[{}], tools=[{}], temperature=0.5)
        await client.chat("gemini/gemini-2.5-flash", [], safety_settings=[{}], tools=[{}])

        openai_kwargs = mock_acompletion.call_args_list[0].kwargs
        gemini_kwargs = mock_acompletion.call_args_list[1].kwargs
        assert "safety_settings" not in openai_kwargs
        assert "tools" not in openai_kwargs
        assert openai_kwargs["temperature"] == 0.5
        assert gemini_kwargs["safety_settings"] == [{}]
        assert gemini_kwargs["tools"] == [{}]


class TestCompletionRequest:
    """Tests for the callback-based completion request."""

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_success_callbacks(self, mock_acompletion):
        mock_acompletion.return_value = make_response("Hello!")
        recorder = Recorder()

        await request(CompletionClient(), recorder)

        assert recorder.events == [("success", "Hello!"), ("complete",)]

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_error_callbacks(self, mock_acompletion):
        mock_acompletion.side_effect = AuthenticationError("bad key", "gemini", "gemini")
        recorder = Recorder()

        await request(CompletionClient(), recorder)

        kind, message, is_cancellation = recorder.events[0]
        assert kind == "error"
        assert "GEMINI_API_KEY" in message
        assert is_cancellation is False
        assert recorder.events[-1] == ("complete",)

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_no_choices_only_completes(self, mock_acompletion):
        response = make_response()
        response.choices = []
        mock_acompletion.return_value = response
        recorder = Recorder()

        await request(CompletionClient(), recorder)

        assert recorder.events == [("complete",)]

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_cancelled_before_start(self, mock_acompletion):
        token = CancellationToken()
        token.cancel()
        recorder = Recorder()

        await request(CompletionClient(), recorder, token=token)

        assert recorder.events == [("error", "Request cancelled by user", True), ("complete",)]
        mock_acompletion.assert_not_called()

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_messages_sent(self, mock_acompletion):
        """System instruction, history and prompt are sent in order; ERROR turns are skipped."""
        mock_acompletion.return_value = make_response()
        history = [
            Message(role="user", content="Hi"),
            Message(role="error", content="Response failed: boom"),
            Message(role="model", content="Hello"),
        ]
        settings = GenerationSettings(
            system_instruction="Be brief.", url_context=["https://example.com"]
        )

        await request(
            CompletionClient(),
            Recorder(),
            prompt=UserInput(text="Summarize"),
            settings=settings,
            history=history,
        )

        kwargs = mock_acompletion.call_args.kwargs
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "Summarize\n\nReference URLs:\nhttps://example.com"},
        ]
        assert kwargs["tools"] == [{"urlContext": {}}]

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_persona_override(self, mock_acompletion):
        """A persona call uses the persona's instruction and names the other characters."""
        mock_acompletion.return_value = make_response()
        roster = [
            AICharacter(id="bard", name="Bard", system_instruction="Rhyme."),
            AICharacter(id="sage", name="Sage", system_instruction="Advise."),
        ]

        await request(
            CompletionClient(),
            Recorder(),
            settings_override=SettingsOverride(system_instruction="Rhyme.", character_id="bard"),
            persona_roster=roster,
        )

        system = mock_acompletion.call_args.kwargs["messages"][0]
        assert system["role"] == "system"
        assert system["content"].startswith("Rhyme.")
        assert "Sage" in system["content"]
        assert "Bard" not in system["content"]

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_context_cache_reused(self, mock_acompletion):
        mock_acompletion.return_value = make_response()
        cache = ContextCache()
        history = [Message(id="u0", role="user", content="Hi")]

        await request(CompletionClient(context_cache=cache), Recorder(), history=history)

        assert len(cache) == 1


class TestMimicRequest:
    """Tests for the user-mimic request."""

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_mimic_messages(self, mock_acompletion):
        mock_acompletion.return_value = make_response("What else?")
        overrides = SettingsOverride(safety_settings=permissive_safety_settings())

        text = await CompletionClient().mimic_user_request(
            "gemini/gemini-2.5-flash",
            [{"role": "assistant", "content": "Hi"}],
            "Act like the user.",
            GenerationSettings(),
            CancellationToken(),
            overrides=overrides,
        )

        kwargs = mock_acompletion.call_args.kwargs
        assert text == "What else?"
        assert kwargs["messages"][0] == {"role": "system", "content": "Act like the user."}
        assert kwargs["messages"][-1] == {"role": "user", "content": "Continue."}
        assert {s["threshold"] for s in kwargs["safety_settings"]} == {"BLOCK_NONE"}

    @pytest.mark.asyncio
    @patch("convoctl.core.llm.acompletion", new_callable=AsyncMock)
    async def test_empty_response_raises(self, mock_acompletion):
        response = make_response()
        response.choices = []
        mock_acompletion.return_value = response

        with pytest.raises(LLMError):
            await CompletionClient().mimic_user_request(
                "gemini/gemini-2.5-flash", [], "Act", GenerationSettings(), CancellationToken()
            )


class TestMessageMapping:
    """Tests for mapping session history to chat messages."""

    def test_flip_roles(self):
        history = [
            Message(role="user", content="Hi"),
            Message(role="model", content="Hello"),
            Message(role="error", content="boom"),
        ]

        assert flip_roles(history) == [
            {"role": "assistant", "content": "Hi"},
            {"role": "user", "content": "Hello"},
        ]

    def test_image_attachment(self):
        attachment = Attachment(name="a.png", mime_type="image/png", base64_data="aGk=")

        messages = to_chat_messages([Message(role="user", content="Look", attachments=[attachment])])

        content = messages[0]["content"]
        assert content[0] == {"type": "text", "text": "Look"}
        assert content[1]["image_url"]["url"] == "data:image/png;base64,aGk="

    def test_uri_attachment(self):
        attachment = Attachment(name="doc.pdf", mime_type="application/pdf", uri="gs://b/doc.pdf")

        messages = to_chat_messages([Message(role="user", content="Read", attachments=[attachment])])

        assert "gs://b/doc.pdf" in messages[0]["content"][1]["text"]
