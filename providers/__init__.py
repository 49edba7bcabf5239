"""
Provider Adapter Package

Provides a unified adapter interface over the analysis providers
(OpenAI, Anthropic Claude, Google Gemini, xAI Grok) plus an offline replay
adapter.

Usage:
    from providers import ProviderSpec, ProviderKind, build_providers

    adapters = build_providers([
        ProviderSpec(ProviderKind.OPENAI, "gpt-4o"),
        ProviderSpec(ProviderKind.ANTHROPIC, "claude-3-haiku-20240307"),
    ])
    reply = adapters[0].call(system_prompt, user_prompt, images=urls)
"""

from .base import AdapterReply, ProviderAdapter, ProviderKind
from .tracker import TokenUsageTracker
from .openai_provider import OpenAIAdapter
from .claude_provider import ClaudeAdapter
from .gemini_provider import GeminiAdapter
from .grok_provider import GrokAdapter
from .replay_provider import ReplayAdapter
from .factory import ProviderSpec, build_providers, create_adapter, list_kinds

__all__ = [
    # Base classes
    "AdapterReply",
    "ProviderAdapter",
    "ProviderKind",
    # Tracker
    "TokenUsageTracker",
    # Adapters
    "OpenAIAdapter",
    "ClaudeAdapter",
    "GeminiAdapter",
    "GrokAdapter",
    "ReplayAdapter",
    # Factory
    "ProviderSpec",
    "build_providers",
    "create_adapter",
    "list_kinds",
]
