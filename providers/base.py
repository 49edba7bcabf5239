"""
Provider Adapter Base Classes

Defines the adapter contract every analysis provider satisfies: a closed set
of tagged variants (``ProviderKind``) exposing identity, capabilities and a
single blocking ``call``. Adapters own all network I/O; the consensus core
only sees ``AdapterReply`` values or typed ``ProviderError`` exceptions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
import asyncio
import logging

from core.errors import (
    ContextOverflowError,
    ProviderError,
)

_logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.2

# Substrings vendors use when a prompt does not fit the model's window
_CONTEXT_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "prompt is too long",
    "too many tokens",
    "exceeds the context window",
)


class ProviderKind(Enum):
    """Closed set of provider variants."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    XAI = "xai"
    REPLAY = "replay"

    @classmethod
    def parse(cls, value: Any) -> "ProviderKind":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        aliases = {"claude": "anthropic", "gemini": "google", "grok": "xai"}
        return cls(aliases.get(text, text))


@dataclass
class AdapterReply:
    """Standardized reply from any provider adapter."""
    content: str
    finish_reason: Optional[str] = None
    tokens_used: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None


def is_context_overflow(exc: Exception) -> bool:
    """True if a vendor error message describes a context-window overflow."""
    text = str(exc).lower()
    return any(marker in text for marker in _CONTEXT_OVERFLOW_MARKERS)


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters."""

    kind: ProviderKind = ProviderKind.REPLAY
    DEFAULT_CONTEXT_WINDOW = 128_000
    VISION = True

    def __init__(
        self,
        model: str,
        provider_id: Optional[str] = None,
        api_key: Optional[str] = None,
        supports_vision: Optional[bool] = None,
        context_window: Optional[int] = None,
    ):
        """
        Initialize adapter.

        Args:
            model: Model identifier (e.g., "gpt-4o", "claude-3-haiku-20240307")
            provider_id: Stable identity used throughout a run (defaults to model)
            api_key: API key (if None, reads from environment)
            supports_vision: Override the variant's vision capability
            context_window: Override the variant's context window (tokens)
        """
        self.model_id = model
        self.provider_id = provider_id or model
        self.supports_vision = self.VISION if supports_vision is None else supports_vision
        self.context_window = context_window or self.DEFAULT_CONTEXT_WINDOW
        self.api_key = api_key or self._get_api_key_from_env()

    @abstractmethod
    def _get_api_key_from_env(self) -> Optional[str]:
        """Get API key from environment variable."""
        pass

    @abstractmethod
    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[List[str]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AdapterReply:
        """
        Run one analysis call.

        Args:
            system_prompt: Caller-supplied system prompt
            user_prompt: Normalized user prompt built from the plan input
            images: Image URLs (http(s) or data: URLs); ignored without vision
            max_tokens: Output token ceiling
            temperature: Sampling temperature

        Returns:
            AdapterReply with content and usage

        Raises:
            ProviderError: One of the typed subclasses for vendor failures
        """
        pass

    async def acall(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[List[str]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AdapterReply:
        """Async version of :meth:`call`.

        Runs :meth:`call` in a thread via :func:`asyncio.to_thread`.
        """
        return await asyncio.to_thread(
            self.call, system_prompt, user_prompt, images, max_tokens, temperature,
        )

    def describe(self) -> Dict[str, Any]:
        """Identity and capabilities, for reports and logs."""
        return {
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "kind": self.kind.value,
            "supports_vision": self.supports_vision,
            "context_window": self.context_window,
        }

    def _generic_error(self, exc: Exception) -> ProviderError:
        """Fallback mapping for vendor errors with no more specific type."""
        if is_context_overflow(exc):
            return ContextOverflowError(
                f"{self.kind.value} prompt exceeded context window for '{self.model_id}': {exc}",
                provider=self.provider_id, cause=exc,
            )
        return ProviderError(
            f"{self.kind.value} call failed for model '{self.model_id}': {exc}",
            provider=self.provider_id, cause=exc,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(provider_id='{self.provider_id}', model='{self.model_id}')"
