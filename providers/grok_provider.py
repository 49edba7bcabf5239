"""
xAI Grok Provider Adapter

Grok serves an OpenAI-compatible Chat Completions endpoint, so this adapter
reuses the openai SDK pointed at api.x.ai.
"""

from .base import ProviderKind
from .openai_provider import OpenAIAdapter


class GrokAdapter(OpenAIAdapter):
    """xAI Grok adapter (grok-4, grok-3, grok-2-vision)."""

    kind = ProviderKind.XAI
    API_KEY_ENV = "XAI_API_KEY"
    BASE_URL = "https://api.x.ai/v1"
    DEFAULT_CONTEXT_WINDOW = 256_000

    NO_TEMP_MODELS = []
    COMPLETION_TOKENS_MODELS = []

    CONTEXT_WINDOWS = {
        'grok-4': 256_000,
        'grok-3': 131_072,
        'grok-2-vision': 32_768,
    }
