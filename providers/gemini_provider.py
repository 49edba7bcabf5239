"""
Google Gemini Provider Adapter

Supports Gemini 1.5, 2.0 and 2.5 models through Google AI Studio
(google-generativeai SDK). Image URLs are fetched with requests and sent as
inline parts, since the SDK does not accept remote URLs.
"""

import base64
import os
import logging
from typing import Any, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import HarmBlockThreshold, HarmCategory
import requests

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
)

_logger = logging.getLogger(__name__)

IMAGE_FETCH_TIMEOUT_S = 20


class GeminiAdapter(ProviderAdapter):
    """
    Google Gemini adapter.

    Features:
    - Native JSON mode (response_mime_type)
    - 1M token context window
    - Vision via inline image parts
    """

    kind = ProviderKind.GOOGLE
    DEFAULT_CONTEXT_WINDOW = 1_000_000

    CONTEXT_WINDOWS = {
        'gemini-1.5-flash': 1_000_000,
        'gemini-1.5-pro': 2_000_000,
        'gemini-2.0-flash': 1_000_000,
        'gemini-2.5-pro': 1_000_000,
        'gemini-2.5-flash': 1_000_000,
    }

    # Plan sheets trip no real safety categories; keep filters from blanking replies
    SAFETY_SETTINGS = {
        HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_NONE,
        HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_NONE,
        HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_NONE,
        HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_NONE,
    }

    def __init__(self, model: str, provider_id: Optional[str] = None,
                 api_key: Optional[str] = None, **kwargs):
        kwargs.setdefault("context_window", self.CONTEXT_WINDOWS.get(model))
        super().__init__(model, provider_id=provider_id, api_key=api_key, **kwargs)
        genai.configure(api_key=self.api_key)

    def _get_api_key_from_env(self) -> str:
        api_key = os.environ.get("GOOGLE_GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        if not api_key:
            raise ConfigurationError(
                "GOOGLE_GEMINI_API_KEY or GOOGLE_API_KEY environment variable not set",
                provider=self.provider_id, stage="config",
            )
        return api_key

    def _image_part(self, url: str) -> Optional[Dict[str, Any]]:
        """Inline image part from a data: or http(s) URL; None if it cannot be fetched."""
        if url.startswith("data:") and ";base64," in url:
            header, data = url.split(",", 1)
            return {
                "mime_type": header[5:].split(";", 1)[0] or "image/png",
                "data": base64.b64decode(data),
            }
        try:
            resp = requests.get(url, timeout=IMAGE_FETCH_TIMEOUT_S)
            resp.raise_for_status()
        except requests.RequestException as e:
            _logger.warning(f"Skipping image for {self.provider_id}, fetch failed: {e}")
            return None
        mime_type = resp.headers.get("Content-Type", "image/png").split(";", 1)[0]
        return {"mime_type": mime_type, "data": resp.content}

    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[List[str]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AdapterReply:
        """Generate a completion using Google AI Studio."""
        generation_config = genai.types.GenerationConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json",
        )
        model = genai.GenerativeModel(
            self.model_id,
            system_instruction=system_prompt or None,
            generation_config=generation_config,
            safety_settings=self.SAFETY_SETTINGS,
        )

        parts: List[Any] = [user_prompt]
        if images and self.supports_vision:
            for url in images:
                part = self._image_part(url)
                if part:
                    parts.append(part)

        try:
            response = model.generate_content(parts)
        except Exception as e:
            raise self._map_error(e)

        # response.text raises when the candidate was blocked or empty
        try:
            content = response.text
        except ValueError as e:
            _logger.warning(f"Gemini returned no text for {self.provider_id}: {e}")
            content = ""

        input_tokens = output_tokens = 0
        if getattr(response, 'usage_metadata', None):
            input_tokens = response.usage_metadata.prompt_token_count or 0
            output_tokens = response.usage_metadata.candidates_token_count or 0

        finish_reason = None
        if getattr(response, 'candidates', None):
            finish_reason = str(response.candidates[0].finish_reason)

        return AdapterReply(
            content=content,
            finish_reason=finish_reason,
            tokens_used=input_tokens + output_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model_id,
        )

    def _map_error(self, exc: Exception) -> ProviderError:
        """Translate a google.api_core exception into the provider error taxonomy."""
        pid = self.provider_id
        if isinstance(exc, google_exceptions.DeadlineExceeded):
            return ProviderTimeout(f"google request timed out: {exc}", provider=pid, cause=exc)
        if isinstance(exc, (google_exceptions.PermissionDenied, google_exceptions.Unauthenticated)):
            return ProviderAuthError(f"google rejected credentials: {exc}", provider=pid, cause=exc)
        if isinstance(exc, google_exceptions.ResourceExhausted):
            return ProviderRateLimit(f"google quota exhausted: {exc}", provider=pid, cause=exc)
        if isinstance(exc, google_exceptions.NotFound):
            return ModelNotFoundError(f"google model '{self.model_id}' not found: {exc}",
                                      provider=pid, cause=exc)
        if isinstance(exc, google_exceptions.InvalidArgument) and "token" in str(exc).lower():
            return ContextOverflowError(f"google context window exceeded: {exc}",
                                        provider=pid, cause=exc)
        return self._generic_error(exc)
