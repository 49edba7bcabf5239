"""
Replay Provider Adapter

Replays recorded provider output from disk so a consensus run can be
reproduced offline. Recordings are looked up as ``<provider_id>.json`` or
``<provider_id>.txt`` in the replay directory and returned verbatim, so
malformed recordings exercise the repair path exactly as the live reply did.
"""

import logging
import time
from pathlib import Path
from typing import List, Optional, Union

from core.errors import ProviderError
from .base import (
    AdapterReply,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ProviderAdapter,
    ProviderKind,
)

_logger = logging.getLogger(__name__)

RECORDING_SUFFIXES = (".json", ".txt")


class ReplayAdapter(ProviderAdapter):
    """Adapter that returns a recorded reply instead of calling a vendor."""

    kind = ProviderKind.REPLAY

    def __init__(
        self,
        model: str,
        provider_id: Optional[str] = None,
        replay_dir: Optional[Union[str, Path]] = None,
        content: Optional[str] = None,
        delay_s: float = 0.0,
        **kwargs,
    ):
        super().__init__(model, provider_id=provider_id, **kwargs)
        self.replay_dir = Path(replay_dir) if replay_dir else None
        self._content = content
        self.delay_s = delay_s

    def _get_api_key_from_env(self) -> Optional[str]:
        return None

    def recording_path(self) -> Optional[Path]:
        if self.replay_dir is None:
            return None
        for suffix in RECORDING_SUFFIXES:
            path = self.replay_dir / f"{self.provider_id}{suffix}"
            if path.exists():
                return path
        return None

    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[List[str]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AdapterReply:
        if self.delay_s:
            time.sleep(self.delay_s)

        content = self._content
        if content is None:
            path = self.recording_path()
            if path is None:
                raise ProviderError(
                    f"No recording for '{self.provider_id}' in {self.replay_dir}",
                    provider=self.provider_id,
                )
            content = path.read_text(encoding="utf-8")
            _logger.debug(f"Replaying {path} for {self.provider_id}")

        return AdapterReply(content=content, finish_reason="replay", model=self.model_id)
