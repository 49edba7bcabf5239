"""
Anthropic Claude Provider Adapter

Supports Claude 3, 3.5, 3.7, 4 and 4.5 models.
Uses streaming to avoid the SDK's long-request timeout on large plan sets.
"""

import os
import logging
from typing import Any, Dict, List, Optional

import anthropic

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

JSON_INSTRUCTION = "\n\nYou must respond with valid JSON only. No markdown, no explanation, just the JSON object."


def image_block(url: str) -> Dict[str, Any]:
    """Build a Claude image content block from an http(s) or data: URL."""
    if url.startswith("data:") and ";base64," in url:
        header, data = url.split(",", 1)
        media_type = header[5:].split(";", 1)[0] or "image/png"
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }
    return {"type": "image", "source": {"type": "url", "url": url}}


class ClaudeAdapter(ProviderAdapter):
    """
    Anthropic Claude adapter.

    Features:
    - JSON output via system prompt instruction
    - 200K context window
    - Vision support (Claude 3+)
    """

    kind = ProviderKind.ANTHROPIC
    DEFAULT_CONTEXT_WINDOW = 200_000

    def __init__(self, model: str, provider_id: Optional[str] = None,
                 api_key: Optional[str] = None, **kwargs):
        super().__init__(model, provider_id=provider_id, api_key=api_key, **kwargs)
        self.client = anthropic.Anthropic(api_key=self.api_key, max_retries=0)

    def _get_api_key_from_env(self) -> str:
        # Check common environment variable names
        api_key = os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("CLAUDE_API_KEY")
        if not api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY or CLAUDE_API_KEY environment variable not set",
                provider=self.provider_id, stage="config",
            )
        return api_key

    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[List[str]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AdapterReply:
        """Generate a completion using the Messages API (streamed)."""
        if images and self.supports_vision:
            user_content: Any = [image_block(url) for url in images]
            user_content.append({"type": "text", "text": user_prompt})
        else:
            user_content = user_prompt

        params = {
            "model": self.model_id,
            "system": (system_prompt + JSON_INSTRUCTION) if system_prompt else JSON_INSTRUCTION.strip(),
            "messages": [{"role": "user", "content": user_content}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        content = ""
        input_tokens = 0
        output_tokens = 0
        stop_reason = None
        model_used = self.model_id

        try:
            with self.client.messages.stream(**params) as stream:
                for text in stream.text_stream:
                    content += text

                final_message = stream.get_final_message()
                if final_message:
                    stop_reason = final_message.stop_reason
                    model_used = final_message.model
                    if final_message.usage:
                        input_tokens = final_message.usage.input_tokens
                        output_tokens = final_message.usage.output_tokens
        except Exception as e:
            raise self._map_error(e)

        if stop_reason == 'max_tokens':
            _logger.warning(
                f"Claude response was truncated (max_tokens reached). "
                f"Used {output_tokens} tokens."
            )
        if not content:
            _logger.warning(f"Claude returned empty content. Stop reason: {stop_reason}")

        return AdapterReply(
            content=content,
            finish_reason=stop_reason,
            tokens_used=input_tokens + output_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model_used,
        )

    def _map_error(self, exc: Exception) -> ProviderError:
        """Translate an anthropic SDK exception into the provider error taxonomy."""
        pid = self.provider_id
        if isinstance(exc, anthropic.APITimeoutError):
            return ProviderTimeout(f"anthropic request timed out: {exc}", provider=pid, cause=exc)
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return ProviderAuthError(f"anthropic rejected credentials: {exc}", provider=pid, cause=exc)
        if isinstance(exc, anthropic.RateLimitError):
            return ProviderRateLimit(f"anthropic rate limit: {exc}", provider=pid, cause=exc)
        if isinstance(exc, anthropic.NotFoundError):
            return ModelNotFoundError(f"anthropic model '{self.model_id}' not found: {exc}",
                                      provider=pid, cause=exc)
        if isinstance(exc, anthropic.BadRequestError) and is_context_overflow(exc):
            return ContextOverflowError(f"anthropic context window exceeded: {exc}",
                                        provider=pid, cause=exc)
        if isinstance(exc, anthropic.APIConnectionError):
            return ProviderError(f"anthropic connection failed: {exc}", provider=pid,
                                 cause=exc, retryable=True)
        return self._generic_error(exc)
