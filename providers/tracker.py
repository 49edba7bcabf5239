"""
Token Usage Tracker

Thread-safe tracking of token usage per provider within one dispatch.
A fresh tracker is created for every run; nothing is shared between runs.
"""

import logging
import threading
from typing import Any, Dict

logger = logging.getLogger(__name__)


class TokenUsageTracker:
    """
    Tracks token usage across the provider calls of one dispatch.

    Thread-safe: provider calls run concurrently in a ThreadPoolExecutor and
    report here from their worker threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        """Reset all counters."""
        with self._lock:
            self.total_input_tokens = 0
            self.total_output_tokens = 0
            self.call_count = 0
            self.calls_by_provider: Dict[str, Dict[str, int]] = {}

    def add_usage(self, provider_id: str, input_tokens: int, output_tokens: int):
        """
        Add usage from a provider call.

        Args:
            provider_id: Provider the call was made to
            input_tokens: Number of input tokens
            output_tokens: Number of output tokens
        """
        with self._lock:
            self.total_input_tokens += input_tokens
            self.total_output_tokens += output_tokens
            self.call_count += 1

            if provider_id not in self.calls_by_provider:
                self.calls_by_provider[provider_id] = {"input": 0, "output": 0, "calls": 0}
            self.calls_by_provider[provider_id]["input"] += input_tokens
            self.calls_by_provider[provider_id]["output"] += output_tokens
            self.calls_by_provider[provider_id]["calls"] += 1

    def tokens_for(self, provider_id: str) -> int:
        """Total tokens recorded for one provider."""
        with self._lock:
            data = self.calls_by_provider.get(provider_id)
            return (data["input"] + data["output"]) if data else 0

    def get_summary(self) -> Dict[str, Any]:
        """Get usage summary (thread-safe)."""
        with self._lock:
            return {
                "total_input_tokens": self.total_input_tokens,
                "total_output_tokens": self.total_output_tokens,
                "total_tokens": self.total_input_tokens + self.total_output_tokens,
                "call_count": self.call_count,
                "by_provider": {k: dict(v) for k, v in self.calls_by_provider.items()},
            }

    def log_summary(self):
        """Log a formatted per-provider summary (thread-safe)."""
        summary = self.get_summary()
        lines = [
            "",
            "=" * 70,
            "TOKEN USAGE SUMMARY",
            "=" * 70,
            f"Total Provider Calls: {summary['call_count']}",
            "",
            "By Provider:",
            "-" * 70,
        ]
        for provider_id, data in summary["by_provider"].items():
            lines.append(f"  {provider_id:40} {data['input']:>8,} in / {data['output']:>7,} out")
        lines += [
            "-" * 70,
            f"Total Tokens:        {summary['total_tokens']:>12,}",
            "=" * 70,
        ]
        logger.info("\n".join(lines))
