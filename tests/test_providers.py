"""
Unit tests for the provider adapter layer.
Tests adapter creation, request shaping, reply handling, SDK error mapping,
the factory and the token tracker.
"""

import logging
import os
from unittest.mock import MagicMock, Mock, patch

import anthropic
import openai
import pytest
import requests
from google.api_core import exceptions as google_exceptions

from core.errors import (
    ConfigurationError,
    ContextOverflowError,
    ModelNotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimit,
    ProviderTimeout,
)
from providers import (
    ClaudeAdapter,
    GeminiAdapter,
    GrokAdapter,
    OpenAIAdapter,
    ProviderKind,
    ProviderSpec,
    ReplayAdapter,
    TokenUsageTracker,
    build_providers,
    create_adapter,
    list_kinds,
)
from providers.base import is_context_overflow
from providers.claude_provider import JSON_INSTRUCTION, image_block

# Patch targets point to the module where each SDK is used
_OPENAI_PATCH = 'providers.openai_provider.OpenAI'
_ANTHROPIC_PATCH = 'providers.claude_provider.anthropic.Anthropic'
_GENAI_CONFIGURE_PATCH = 'providers.gemini_provider.genai.configure'
_GENAI_MODEL_PATCH = 'providers.gemini_provider.genai.GenerativeModel'


def _status_error(cls, status, message="error"):
    return cls(message, response=Mock(status_code=status, headers={}), body=None)


def _openai_reply(content='{"items": []}', finish_reason="stop", model="gpt-4o"):
    choice = Mock()
    choice.message.content = content
    choice.finish_reason = finish_reason
    response = Mock(choices=[choice], model=model)
    response.usage = Mock(prompt_tokens=10, completion_tokens=20)
    return response


# ── ProviderKind ─────────────────────────────────────────────────────

class TestProviderKind:

    def test_parse_values(self):
        assert ProviderKind.parse("openai") is ProviderKind.OPENAI
        assert ProviderKind.parse(" Anthropic ") is ProviderKind.ANTHROPIC

    def test_parse_aliases(self):
        assert ProviderKind.parse("claude") is ProviderKind.ANTHROPIC
        assert ProviderKind.parse("gemini") is ProviderKind.GOOGLE
        assert ProviderKind.parse("grok") is ProviderKind.XAI

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            ProviderKind.parse("mistral")

    def test_context_overflow_detection(self):
        assert is_context_overflow(Exception("This model's maximum context length is 128000"))
        assert not is_context_overflow(Exception("invalid image"))


# ── OpenAI ───────────────────────────────────────────────────────────

class TestOpenAIAdapter:

    @patch(_OPENAI_PATCH)
    def test_init_with_api_key(self, mock_openai):
        adapter = OpenAIAdapter("gpt-4o", api_key="test-key")
        assert adapter.model_id == "gpt-4o"
        assert adapter.provider_id == "gpt-4o"
        assert adapter.context_window == 128_000
        mock_openai.assert_called_once_with(api_key="test-key", max_retries=0)

    @patch.dict(os.environ, {'OPENAI_API_KEY': ''}, clear=True)
    def test_missing_api_key_raises_error(self):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            OpenAIAdapter("gpt-4o")

    @patch(_OPENAI_PATCH)
    def test_call_json_mode_and_images(self, mock_openai):
        client = Mock()
        client.chat.completions.create.return_value = _openai_reply()
        mock_openai.return_value = client

        adapter = OpenAIAdapter("gpt-4o", provider_id="openai-main", api_key="k")
        reply = adapter.call("sys", "user", images=["https://plans/p1.png"], max_tokens=1000, temperature=0.1)

        assert reply.content == '{"items": []}'
        assert reply.tokens_used == 30
        assert reply.input_tokens == 10
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["max_tokens"] == 1000
        assert kwargs["temperature"] == 0.1
        user = kwargs["messages"][1]["content"]
        assert user[0] == {"type": "text", "text": "user"}
        assert user[1]["image_url"]["url"] == "https://plans/p1.png"

    @patch(_OPENAI_PATCH)
    def test_no_temperature_for_reasoning_models(self, mock_openai):
        client = Mock()
        client.chat.completions.create.return_value = _openai_reply(model="o3")
        mock_openai.return_value = client

        OpenAIAdapter("o3", api_key="k").call("sys", "user", max_tokens=500)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert "temperature" not in kwargs
        assert kwargs["max_completion_tokens"] == 500

    @patch(_OPENAI_PATCH)
    def test_vision_disabled_sends_text_only(self, mock_openai):
        client = Mock()
        client.chat.completions.create.return_value = _openai_reply()
        mock_openai.return_value = client

        OpenAIAdapter("gpt-4o", api_key="k", supports_vision=False).call("s", "u", images=["x.png"])
        assert client.chat.completions.create.call_args.kwargs["messages"][1]["content"] == "u"

    @pytest.mark.parametrize("exc, expected", [
        (_status_error(openai.RateLimitError, 429), ProviderRateLimit),
        (_status_error(openai.AuthenticationError, 401), ProviderAuthError),
        (_status_error(openai.NotFoundError, 404), ModelNotFoundError),
        (_status_error(openai.BadRequestError, 400, "context_length_exceeded"), ContextOverflowError),
        (openai.APITimeoutError(request=Mock()), ProviderTimeout),
        (RuntimeError("boom"), ProviderError),
    ])
    @patch(_OPENAI_PATCH)
    def test_error_mapping(self, mock_openai, exc, expected):
        client = Mock()
        client.chat.completions.create.side_effect = exc
        mock_openai.return_value = client

        with pytest.raises(expected) as info:
            OpenAIAdapter("gpt-4o", api_key="k").call("s", "u")
        assert info.value.provider == "gpt-4o"
        assert info.value.cause is exc

    @patch(_OPENAI_PATCH)
    def test_connection_error_is_retryable(self, mock_openai):
        client = Mock()
        client.chat.completions.create.side_effect = openai.APIConnectionError(request=Mock())
        mock_openai.return_value = client

        with pytest.raises(ProviderError) as info:
            OpenAIAdapter("gpt-4o", api_key="k").call("s", "u")
        assert info.value.retryable is True


# ── Grok ─────────────────────────────────────────────────────────────

class TestGrokAdapter:

    @patch(_OPENAI_PATCH)
    def test_uses_xai_endpoint(self, mock_openai):
        adapter = GrokAdapter("grok-4", api_key="xai-key")
        assert adapter.kind is ProviderKind.XAI
        assert adapter.context_window == 256_000
        mock_openai.assert_called_once_with(api_key="xai-key", max_retries=0,
                                            base_url="https://api.x.ai/v1")

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="XAI_API_KEY"):
            GrokAdapter("grok-4")


# ── Claude ───────────────────────────────────────────────────────────

def _claude_stream(chunks, stop_reason="end_turn"):
    stream = MagicMock()
    stream.__enter__.return_value = stream
    stream.text_stream = iter(chunks)
    stream.get_final_message.return_value = Mock(
        stop_reason=stop_reason, model="claude-3-haiku-20240307",
        usage=Mock(input_tokens=5, output_tokens=7),
    )
    return stream


class TestClaudeAdapter:

    def test_image_block_url(self):
        assert image_block("https://plans/p1.png") == {
            "type": "image", "source": {"type": "url", "url": "https://plans/p1.png"},
        }

    def test_image_block_data_url(self):
        block = image_block("data:image/jpeg;base64,AAAA")
        assert block["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "AAAA"}

    @patch.dict(os.environ, {'CLAUDE_API_KEY': 'alt-key'}, clear=True)
    @patch(_ANTHROPIC_PATCH)
    def test_alternate_env_key(self, mock_anthropic):
        assert ClaudeAdapter("claude-3-haiku-20240307").api_key == "alt-key"

    @patch(_ANTHROPIC_PATCH)
    def test_streamed_call(self, mock_anthropic):
        client = Mock()
        client.messages.stream.return_value = _claude_stream(['{"items"', ': []}'])
        mock_anthropic.return_value = client

        adapter = ClaudeAdapter("claude-3-haiku-20240307", api_key="k")
        reply = adapter.call("Be precise.", "user", images=["https://plans/p1.png"])

        assert reply.content == '{"items": []}'
        assert reply.tokens_used == 12
        assert reply.finish_reason == "end_turn"
        kwargs = client.messages.stream.call_args.kwargs
        assert kwargs["system"] == "Be precise." + JSON_INSTRUCTION
        content = kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[-1] == {"type": "text", "text": "user"}

    @pytest.mark.parametrize("exc, expected", [
        (_status_error(anthropic.RateLimitError, 429), ProviderRateLimit),
        (_status_error(anthropic.AuthenticationError, 401), ProviderAuthError),
        (_status_error(anthropic.NotFoundError, 404), ModelNotFoundError),
        (_status_error(anthropic.BadRequestError, 400, "prompt is too long"), ContextOverflowError),
        (anthropic.APITimeoutError(request=Mock()), ProviderTimeout),
    ])
    @patch(_ANTHROPIC_PATCH)
    def test_error_mapping(self, mock_anthropic, exc, expected):
        client = Mock()
        client.messages.stream.side_effect = exc
        mock_anthropic.return_value = client

        with pytest.raises(expected):
            ClaudeAdapter("claude-3-haiku-20240307", api_key="k").call("s", "u")


# ── Gemini ───────────────────────────────────────────────────────────

class _BlockedResponse:
    usage_metadata = None
    candidates = []

    @property
    def text(self):
        raise ValueError("response was blocked")


class TestGeminiAdapter:

    @patch(_GENAI_CONFIGURE_PATCH)
    def test_init(self, mock_configure):
        adapter = GeminiAdapter("gemini-1.5-pro", api_key="g-key")
        mock_configure.assert_called_once_with(api_key="g-key")
        assert adapter.context_window == 2_000_000

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="GOOGLE_GEMINI_API_KEY"):
            GeminiAdapter("gemini-1.5-flash")

    @patch(_GENAI_MODEL_PATCH)
    @patch(_GENAI_CONFIGURE_PATCH)
    def test_call_with_data_url_image(self, mock_configure, mock_model_cls):
        response = Mock(text='{"items": []}')
        response.usage_metadata = Mock(prompt_token_count=3, candidates_token_count=4)
        response.candidates = [Mock(finish_reason="STOP")]
        mock_model_cls.return_value.generate_content.return_value = response

        adapter = GeminiAdapter("gemini-1.5-flash", api_key="k")
        reply = adapter.call("sys", "user", images=["data:image/png;base64,aGVsbG8="])

        assert reply.content == '{"items": []}'
        assert reply.tokens_used == 7
        parts = mock_model_cls.return_value.generate_content.call_args.args[0]
        assert parts[0] == "user"
        assert parts[1] == {"mime_type": "image/png", "data": b"hello"}
        assert mock_model_cls.call_args.kwargs["system_instruction"] == "sys"

    @patch('providers.gemini_provider.requests.get')
    @patch(_GENAI_CONFIGURE_PATCH)
    def test_unfetchable_image_skipped(self, mock_configure, mock_get):
        mock_get.side_effect = requests.ConnectionError("unreachable")
        adapter = GeminiAdapter("gemini-1.5-flash", api_key="k")
        assert adapter._image_part("https://plans/p1.png") is None

    @patch(_GENAI_MODEL_PATCH)
    @patch(_GENAI_CONFIGURE_PATCH)
    def test_blocked_reply_is_empty(self, mock_configure, mock_model_cls):
        mock_model_cls.return_value.generate_content.return_value = _BlockedResponse()

        reply = GeminiAdapter("gemini-1.5-flash", api_key="k").call("s", "u")
        assert reply.content == ""

    @pytest.mark.parametrize("exc, expected", [
        (google_exceptions.ResourceExhausted("quota"), ProviderRateLimit),
        (google_exceptions.PermissionDenied("denied"), ProviderAuthError),
        (google_exceptions.NotFound("no model"), ModelNotFoundError),
        (google_exceptions.DeadlineExceeded("slow"), ProviderTimeout),
        (google_exceptions.InvalidArgument("input token count exceeds"), ContextOverflowError),
    ])
    @patch(_GENAI_MODEL_PATCH)
    @patch(_GENAI_CONFIGURE_PATCH)
    def test_error_mapping(self, mock_configure, mock_model_cls, exc, expected):
        mock_model_cls.return_value.generate_content.side_effect = exc
        with pytest.raises(expected):
            GeminiAdapter("gemini-1.5-flash", api_key="k").call("s", "u")


# ── Replay ───────────────────────────────────────────────────────────

class TestReplayAdapter:

    def test_replays_recording_verbatim(self, tmp_path):
        (tmp_path / "claude.json").write_text('```json\n{"items": []}\n```')
        reply = ReplayAdapter("recorded", provider_id="claude", replay_dir=tmp_path).call("s", "u")
        assert reply.content == '```json\n{"items": []}\n```'
        assert reply.finish_reason == "replay"

    def test_inline_content(self):
        assert ReplayAdapter("m", content='{"items": []}').call("s", "u").content == '{"items": []}'

    def test_missing_recording(self, tmp_path):
        with pytest.raises(ProviderError, match="No recording"):
            ReplayAdapter("m", provider_id="gpt-4o", replay_dir=tmp_path).call("s", "u")


# ── Factory ──────────────────────────────────────────────────────────

class TestFactory:

    def test_spec_from_dict(self):
        spec = ProviderSpec.from_dict({"kind": "claude", "model": "claude-3-haiku-20240307",
                                       "id": "claude-fast", "temperature_hint": 0.1})
        assert spec.kind is ProviderKind.ANTHROPIC
        assert spec.identity == "claude-fast"
        assert spec.options == {"temperature_hint": 0.1}

    def test_spec_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="not supported"):
            ProviderSpec.from_dict({"kind": "mistral", "model": "large"})

    def test_spec_requires_model(self):
        with pytest.raises(ConfigurationError):
            ProviderSpec.from_dict({"kind": "openai"})

    @patch(_OPENAI_PATCH)
    def test_build_preserves_order(self, mock_openai):
        adapters = build_providers([
            {"kind": "replay", "model": "b", "content": "{}"},
            ProviderSpec(ProviderKind.OPENAI, "gpt-4o", options={"api_key": "k"}),
            {"kind": "replay", "model": "a", "content": "{}"},
        ])
        assert [a.provider_id for a in adapters] == ["b", "gpt-4o", "a"]

    def test_disabled_skipped(self):
        adapters = build_providers([
            {"kind": "replay", "model": "a", "content": "{}"},
            {"kind": "replay", "model": "b", "enabled": False},
        ])
        assert [a.provider_id for a in adapters] == ["a"]

    @patch.dict(os.environ, {"ENABLE_OPENAI": "false"})
    def test_env_flag_disables_vendor(self):
        adapters = build_providers([
            {"kind": "openai", "model": "gpt-4o"},
            {"kind": "replay", "model": "a", "content": "{}"},
        ])
        assert [a.provider_id for a in adapters] == ["a"]

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            build_providers([
                {"kind": "replay", "model": "a", "content": "{}"},
                {"kind": "replay", "model": "a", "content": "{}"},
            ])

    def test_nothing_enabled(self):
        with pytest.raises(ConfigurationError, match="No providers"):
            build_providers([{"kind": "replay", "model": "a", "enabled": False}])

    def test_replay_dir_keeps_identity(self, tmp_path):
        spec = ProviderSpec(ProviderKind.GOOGLE, "gemini-1.5-flash", provider_id="gemini")
        adapter = create_adapter(spec, replay_dir=tmp_path)
        assert isinstance(adapter, ReplayAdapter)
        assert adapter.provider_id == "gemini"
        assert adapter.context_window == 1_000_000

    def test_list_kinds(self):
        assert set(list_kinds()) >= {"openai", "anthropic", "google", "xai", "replay"}


# ── Token tracker ────────────────────────────────────────────────────

class TestTokenUsageTracker:

    def test_per_provider_totals(self):
        tracker = TokenUsageTracker()
        tracker.add_usage("gpt-4o", 100, 50)
        tracker.add_usage("gpt-4o", 10, 5)
        tracker.add_usage("claude", 7, 3)
        summary = tracker.get_summary()
        assert summary["total_tokens"] == 175
        assert summary["call_count"] == 3
        assert summary["by_provider"]["gpt-4o"] == {"input": 110, "output": 55, "calls": 2}
        assert tracker.tokens_for("claude") == 10
        assert tracker.tokens_for("gemini") == 0

    def test_reset(self):
        tracker = TokenUsageTracker()
        tracker.add_usage("a", 1, 1)
        tracker.reset()
        assert tracker.get_summary()["total_tokens"] == 0

    def test_log_summary(self, caplog):
        caplog.set_level(logging.INFO, logger="providers.tracker")
        tracker = TokenUsageTracker()
        tracker.add_usage("gpt-4o", 1000, 500)
        tracker.log_summary()
        assert "TOKEN USAGE SUMMARY" in caplog.text
        assert "gpt-4o" in caplog.text
