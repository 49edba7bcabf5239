"""
Provider Adapter Factory

Builds adapters from an explicitly ordered list of provider specs. The order
of the list is the canonical dispatch order used for every tie-break in a
consensus run; providers are never inferred from model names.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from core.errors import ConfigurationError
from .base import ProviderAdapter, ProviderKind
from .claude_provider import ClaudeAdapter
from .gemini_provider import GeminiAdapter
from .grok_provider import GrokAdapter
from .openai_provider import OpenAIAdapter
from .replay_provider import ReplayAdapter

logger = logging.getLogger(__name__)

_ADAPTERS: Dict[ProviderKind, Type[ProviderAdapter]] = {
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.ANTHROPIC: ClaudeAdapter,
    ProviderKind.GOOGLE: GeminiAdapter,
    ProviderKind.XAI: GrokAdapter,
    ProviderKind.REPLAY: ReplayAdapter,
}

# ENABLE_<VENDOR>=false switches a vendor off without editing the config file
_ENABLE_FLAGS = {
    ProviderKind.OPENAI: "ENABLE_OPENAI",
    ProviderKind.ANTHROPIC: "ENABLE_ANTHROPIC",
    ProviderKind.GOOGLE: "ENABLE_GOOGLE",
    ProviderKind.XAI: "ENABLE_XAI",
}


@dataclass
class ProviderSpec:
    """One entry of the ordered provider list."""
    kind: ProviderKind
    model: str
    provider_id: Optional[str] = None
    enabled: bool = True
    supports_vision: Optional[bool] = None
    context_window: Optional[int] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.provider_id or self.model

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderSpec":
        if "kind" not in data or "model" not in data:
            raise ConfigurationError(
                f"Provider spec needs 'kind' and 'model': {data}", stage="config",
            )
        try:
            kind = ProviderKind.parse(data["kind"])
        except ValueError as e:
            supported = ', '.join(k.value for k in ProviderKind)
            raise ConfigurationError(
                f"Provider kind '{data['kind']}' not supported. Supported kinds: {supported}",
                stage="config", cause=e,
            )
        known = {"kind", "model", "id", "provider_id", "enabled", "supports_vision", "context_window"}
        return cls(
            kind=kind,
            model=str(data["model"]),
            provider_id=data.get("provider_id") or data.get("id"),
            enabled=bool(data.get("enabled", True)),
            supports_vision=data.get("supports_vision"),
            context_window=data.get("context_window"),
            options={k: v for k, v in data.items() if k not in known},
        )


def _env_enabled(kind: ProviderKind) -> bool:
    flag = _ENABLE_FLAGS.get(kind)
    if not flag:
        return True
    return os.environ.get(flag, "true").strip().lower() not in ("false", "0", "no", "off")


def _context_window_for(spec: ProviderSpec) -> Optional[int]:
    if spec.context_window:
        return spec.context_window
    adapter_cls = _ADAPTERS[spec.kind]
    windows = getattr(adapter_cls, "CONTEXT_WINDOWS", {})
    return windows.get(spec.model, adapter_cls.DEFAULT_CONTEXT_WINDOW)


def create_adapter(spec: ProviderSpec, replay_dir: Optional[Union[str, Path]] = None) -> ProviderAdapter:
    """
    Create one adapter.

    Args:
        spec: Provider spec
        replay_dir: If set, every provider is replayed from this directory
            while keeping its identity and capabilities.

    Returns:
        ProviderAdapter instance
    """
    if replay_dir is not None or spec.kind is ProviderKind.REPLAY:
        return ReplayAdapter(
            spec.model,
            provider_id=spec.identity,
            replay_dir=replay_dir or spec.options.get("replay_dir"),
            content=spec.options.get("content"),
            supports_vision=spec.supports_vision,
            context_window=_context_window_for(spec),
        )
    adapter_cls = _ADAPTERS[spec.kind]
    return adapter_cls(
        spec.model,
        provider_id=spec.identity,
        api_key=spec.options.get("api_key"),
        supports_vision=spec.supports_vision,
        context_window=spec.context_window,
    )


def build_providers(
    specs: Sequence[Union[ProviderSpec, Dict[str, Any]]],
    replay_dir: Optional[Union[str, Path]] = None,
) -> List[ProviderAdapter]:
    """
    Instantiate adapters for every enabled spec, preserving list order.

    Raises:
        ConfigurationError: Unknown kind, duplicate provider id, missing API key,
            or no provider left enabled.
    """
    adapters: List[ProviderAdapter] = []
    seen = set()
    for raw in specs:
        spec = raw if isinstance(raw, ProviderSpec) else ProviderSpec.from_dict(raw)
        if not spec.enabled or not _env_enabled(spec.kind):
            logger.info(f"Provider {spec.identity} disabled, skipping")
            continue
        if spec.identity in seen:
            raise ConfigurationError(
                f"Duplicate provider id '{spec.identity}'", provider=spec.identity, stage="config",
            )
        seen.add(spec.identity)
        adapters.append(create_adapter(spec, replay_dir=replay_dir))

    if not adapters:
        raise ConfigurationError("No providers enabled", stage="config")

    logger.info(f"Built {len(adapters)} provider(s): {', '.join(a.provider_id for a in adapters)}")
    return adapters


def list_kinds() -> List[str]:
    """Get list of supported provider kinds."""
    return [k.value for k in _ADAPTERS]
