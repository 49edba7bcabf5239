"""
OpenAI Provider Adapter

Supports GPT-4o, GPT-4.1, GPT-5 and reasoning models (o1, o3) through the
Chat Completions API, with image URLs passed as ``image_url`` content parts.
Also the base for xAI Grok, which serves an OpenAI-compatible endpoint.
"""

import os
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from core.errors import (
    ConfigurationError,
    ContextOverflowError,
    ModelNotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimit,
    ProviderTimeout,
)
from .base import (
    AdapterReply,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ProviderAdapter,
    ProviderKind,
    is_context_overflow,
)

_logger = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    """
    OpenAI adapter.

    Features:
    - Native JSON mode (response_format=json_object)
    - Vision via image_url parts (URLs are passed through, never downloaded)
    - SDK retries disabled; the dispatcher owns deadlines
    """

    kind = ProviderKind.OPENAI
    DEFAULT_CONTEXT_WINDOW = 128_000
    API_KEY_ENV = "OPENAI_API_KEY"
    BASE_URL: Optional[str] = None

    # Models that don't support temperature parameter
    NO_TEMP_MODELS = ['o1', 'o1-mini', 'o3', 'o3-mini', 'gpt-5', 'gpt-5-mini']

    # Models that use max_completion_tokens instead of max_tokens
    COMPLETION_TOKENS_MODELS = ['o1', 'o1-mini', 'o3', 'o3-mini', 'gpt-5', 'gpt-5-mini']

    CONTEXT_WINDOWS = {
        'gpt-4o': 128_000,
        'gpt-4o-mini': 128_000,
        'gpt-4.1': 1_047_576,
        'gpt-5': 400_000,
        'o3': 200_000,
    }

    def __init__(self, model: str, provider_id: Optional[str] = None,
                 api_key: Optional[str] = None, **kwargs):
        kwargs.setdefault("context_window", self.CONTEXT_WINDOWS.get(model))
        super().__init__(model, provider_id=provider_id, api_key=api_key, **kwargs)
        client_args: Dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
        if self.BASE_URL:
            client_args["base_url"] = self.BASE_URL
        self.client = OpenAI(**client_args)

    def _get_api_key_from_env(self) -> str:
        api_key = os.environ.get(self.API_KEY_ENV)
        if not api_key:
            raise ConfigurationError(
                f"{self.API_KEY_ENV} environment variable not set",
                provider=self.provider_id, stage="config",
            )
        return api_key

    def _build_messages(self, system_prompt: str, user_prompt: str,
                        images: Optional[List[str]]) -> List[Dict[str, Any]]:
        if images and self.supports_vision:
            user_content: Any = [{"type": "text", "text": user_prompt}]
            for url in images:
                user_content.append({"type": "image_url", "image_url": {"url": url}})
        else:
            user_content = user_prompt
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]

    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[List[str]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AdapterReply:
        """Generate a completion using the Chat Completions API."""
        params: Dict[str, Any] = {
            "model": self.model_id,
            "messages": self._build_messages(system_prompt, user_prompt, images),
            "response_format": {"type": "json_object"},
        }
        if self.model_id not in self.NO_TEMP_MODELS:
            params["temperature"] = temperature
        if self.model_id in self.COMPLETION_TOKENS_MODELS:
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens

        try:
            response = self.client.chat.completions.create(**params)
        except Exception as e:
            raise self._map_error(e)

        content = ""
        finish_reason = None
        if response.choices:
            choice = response.choices[0]
            content = choice.message.content or ""
            finish_reason = choice.finish_reason

        input_tokens = output_tokens = 0
        if getattr(response, 'usage', None):
            input_tokens = response.usage.prompt_tokens or 0
            output_tokens = response.usage.completion_tokens or 0

        if finish_reason == 'length':
            _logger.warning(
                f"{self.provider_id} response was truncated (max_tokens reached). "
                f"Used {output_tokens} tokens."
            )

        return AdapterReply(
            content=content,
            finish_reason=finish_reason,
            tokens_used=input_tokens + output_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=getattr(response, 'model', self.model_id),
        )

    def _map_error(self, exc: Exception) -> ProviderError:
        """Translate an openai SDK exception into the provider error taxonomy."""
        pid = self.provider_id
        vendor = self.kind.value
        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeout(f"{vendor} request timed out: {exc}", provider=pid, cause=exc)
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return ProviderAuthError(f"{vendor} rejected credentials: {exc}", provider=pid, cause=exc)
        if isinstance(exc, openai.RateLimitError):
            return ProviderRateLimit(f"{vendor} rate limit: {exc}", provider=pid, cause=exc)
        if isinstance(exc, openai.NotFoundError):
            return ModelNotFoundError(f"{vendor} model '{self.model_id}' not found: {exc}",
                                      provider=pid, cause=exc)
        if isinstance(exc, openai.BadRequestError) and is_context_overflow(exc):
            return ContextOverflowError(f"{vendor} context window exceeded: {exc}",
                                        provider=pid, cause=exc)
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(f"{vendor} connection failed: {exc}", provider=pid,
                                 cause=exc, retryable=True)
        return self._generic_error(exc)
