"""
Dispatcher

Sends the same normalized plan input to every enabled provider at once and
collects what comes back. Each call runs in its own worker with its own
deadline; a call that misses it is recorded as a ``ProviderTimeout`` and
abandoned without affecting the others. There is no first-N short-circuit:
the dispatch returns only after every call has settled or timed out.

Usage:
    from consensus.dispatcher import Dispatcher

    outcome = Dispatcher(providers, config).dispatch(inputs, system_prompt, "takeoff")
    for response in outcome.responses:
        print(response.provider_id, response.latency_ms)
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from core.engine_config import EngineConfig, default_engine_config
from core.errors import ConfigurationError, ProviderError
from core.logging_config import ProviderLoggerAdapter
from providers.base import ProviderAdapter
from providers.tracker import TokenUsageTracker
from .schema import NormalizedInput, ProviderFailure, ProviderResponse, TaskType

logger = logging.getLogger(__name__)

MAX_PROMPT_SHEETS = 10
MAX_PROMPT_CHUNKS = 3
CHUNK_PREVIEW_CHARS = 200


# =============================================================================
# Prompt and timeout
# =============================================================================

def build_user_prompt(inputs: NormalizedInput) -> str:
    """Plain-text digest of the normalized input shared by every provider."""
    meta = inputs.project_meta
    lines = [
        "Analyze this construction plan with the following normalized inputs:",
        "",
        "PROJECT METADATA:",
        f"- Project Name: {meta.get('project_name') or 'N/A'}",
        f"- Location: {meta.get('project_location') or meta.get('location') or 'N/A'}",
        f"- Total Pages: {meta.get('total_pages', 'N/A')}",
        "",
        f"SHEET INDEX ({len(inputs.sheet_index)} sheets):",
    ]
    for sheet in inputs.sheet_index[:MAX_PROMPT_SHEETS]:
        lines.append(f"- {sheet.sheet_id}: {sheet.title} ({sheet.discipline}, {sheet.sheet_type})")
    if len(inputs.sheet_index) > MAX_PROMPT_SHEETS:
        lines.append(f"- ... and {len(inputs.sheet_index) - MAX_PROMPT_SHEETS} more sheets")
    lines.append("")

    lines.append(f"CHUNKS ({len(inputs.chunks)} total):")
    for chunk in inputs.chunks[:MAX_PROMPT_CHUNKS]:
        lines.append(f"Chunk {chunk.chunk_index}: Pages {chunk.page_start}-{chunk.page_end}")
        lines.append(f"Sheets: {', '.join(chunk.sheet_ids)}")
        lines.append(f"Text preview: {chunk.text[:CHUNK_PREVIEW_CHARS]}...")
        lines.append("")
    if len(inputs.chunks) > MAX_PROMPT_CHUNKS:
        lines.append(f"... and {len(inputs.chunks) - MAX_PROMPT_CHUNKS} more chunks")
        lines.append("")

    lines += [
        "INSTRUCTIONS:",
        "- Extract all takeoff items with precise quantities",
        "- Include quality analysis with completeness, consistency, and risk flags",
        "- Provide bounding boxes and citations (sheet/page/callout) for all items",
        "- Be thorough and accurate - this will be cross-checked with other models",
    ]
    return "\n".join(lines) + "\n"


def collect_images(inputs: NormalizedInput, max_chunks: int = 5) -> List[str]:
    """Image references of the first ``max_chunks`` chunks, in chunk order."""
    images: List[str] = []
    for chunk in inputs.chunks[:max_chunks]:
        images.extend(chunk.image_urls)
    return images


def compute_timeout(inputs: NormalizedInput, config: Optional[EngineConfig] = None) -> float:
    """Per-call deadline in seconds, growing with the number of chunks."""
    config = config or default_engine_config()
    return min(
        config.timeout_ceiling_s,
        config.timeout_base_s + config.timeout_per_chunk_s * len(inputs.chunks),
    )


# =============================================================================
# Dispatch
# =============================================================================

@dataclass
class DispatchOutcome:
    """Successes in dispatch order plus every failure."""
    responses: List[ProviderResponse] = field(default_factory=list)
    failures: List[ProviderFailure] = field(default_factory=list)
    timeout_s: float = 0.0
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return [r.provider_id for r in self.responses]


@dataclass
class _CallResult:
    response: Optional[ProviderResponse] = None
    failure: Optional[ProviderFailure] = None


class Dispatcher:
    """
    Concurrent fan-out of one analysis request to all providers.

    Args:
        providers: Adapters in canonical dispatch order (ids must be unique)
        config: Engine configuration (timeouts, workers, task parameters)
    """

    def __init__(self, providers: Sequence[ProviderAdapter], config: Optional[EngineConfig] = None):
        ids = [p.provider_id for p in providers]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"Duplicate provider ids: {ids}", stage="dispatch")
        self.providers = list(providers)
        self.config = config or default_engine_config()

    def _prepare(self, inputs: NormalizedInput, task_type: Union[str, TaskType]):
        user_prompt = build_user_prompt(inputs)
        images = collect_images(inputs, self.config.max_image_chunks)
        params = self.config.task_params(task_type)
        return user_prompt, images, params

    def _invoke(self, adapter: ProviderAdapter, system_prompt: str, user_prompt: str,
                images: List[str], params, tracker: TokenUsageTracker) -> _CallResult:
        """Run one provider call; never raises."""
        log = ProviderLoggerAdapter(logger, {"provider": adapter.provider_id, "stage": "dispatch"})
        started = time.monotonic()
        try:
            reply = adapter.call(
                system_prompt,
                user_prompt,
                images=images if adapter.supports_vision else None,
                max_tokens=params.max_tokens,
                temperature=params.temperature,
            )
        except ProviderError as e:
            elapsed = int((time.monotonic() - started) * 1000)
            log.warning(f"{adapter.provider_id} failed: {type(e).__name__}: {e}")
            return _CallResult(failure=ProviderFailure(
                provider_id=adapter.provider_id,
                error_type=type(e).__name__,
                message=str(e),
                retryable=e.retryable,
                latency_ms=elapsed,
            ))
        except Exception as e:
            elapsed = int((time.monotonic() - started) * 1000)
            log.error(f"{adapter.provider_id} raised unexpected {type(e).__name__}: {e}")
            return _CallResult(failure=ProviderFailure(
                provider_id=adapter.provider_id,
                error_type=type(e).__name__,
                message=str(e),
                latency_ms=elapsed,
            ))

        elapsed = int((time.monotonic() - started) * 1000)
        tracker.add_usage(adapter.provider_id, reply.input_tokens, reply.output_tokens)

        if not reply.content or not reply.content.strip():
            log.warning(f"{adapter.provider_id} returned empty content (finish_reason={reply.finish_reason})")
            return _CallResult(failure=ProviderFailure(
                provider_id=adapter.provider_id,
                error_type="EmptyResponse",
                message=f"Empty content (finish_reason={reply.finish_reason})",
                latency_ms=elapsed,
            ))

        log.info(f"{adapter.provider_id} responded in {elapsed}ms ({reply.tokens_used} tokens)")
        return _CallResult(response=ProviderResponse(
            provider_id=adapter.provider_id,
            model_id=reply.model or adapter.model_id,
            raw_text=reply.content,
            latency_ms=elapsed,
            finish_reason=reply.finish_reason,
            tokens_used=reply.tokens_used,
        ))

    @staticmethod
    def _timed_out(adapter: ProviderAdapter, timeout_s: float) -> _CallResult:
        logger.warning(
            f"{adapter.provider_id} exceeded its {timeout_s:.0f}s deadline, abandoning call",
            extra={"provider": adapter.provider_id, "stage": "dispatch"},
        )
        return _CallResult(failure=ProviderFailure(
            provider_id=adapter.provider_id,
            error_type="ProviderTimeout",
            message=f"No response within {timeout_s:.0f}s",
            retryable=True,
            latency_ms=int(timeout_s * 1000),
        ))

    def _bounded(self, adapter: ProviderAdapter, system_prompt: str, user_prompt: str,
                 images: List[str], params, tracker: TokenUsageTracker, timeout_s: float) -> _CallResult:
        """Run one provider call on its own clock, which starts when a dispatch worker picks it up."""
        call = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"call-{adapter.provider_id}")
        future = call.submit(self._invoke, adapter, system_prompt, user_prompt, images, params, tracker)
        try:
            return future.result(timeout=timeout_s)
        except FutureTimeout:
            return self._timed_out(adapter, timeout_s)
        finally:
            # Abandoned calls keep their thread until the SDK returns; the worker is freed now
            call.shutdown(wait=False)

    def _collect(self, results: List[_CallResult], timeout_s: float,
                 tracker: TokenUsageTracker) -> DispatchOutcome:
        outcome = DispatchOutcome(timeout_s=timeout_s)
        for result in results:
            if result.response is not None:
                outcome.responses.append(result.response)
            else:
                outcome.failures.append(result.failure)
        outcome.usage = tracker.get_summary()
        logger.info(
            f"Dispatch complete: {len(outcome.responses)}/{len(self.providers)} provider(s) succeeded"
            + (f", failed: {[f.provider_id for f in outcome.failures]}" if outcome.failures else "")
        )
        return outcome

    def dispatch(self, inputs: NormalizedInput, system_prompt: str,
                 task_type: Union[str, TaskType] = TaskType.TAKEOFF) -> DispatchOutcome:
        """
        Call every provider concurrently and wait for all of them to settle.

        At most ``max_workers`` calls are in flight; a call waiting for a free
        worker has not started its timeout yet.

        Returns:
            DispatchOutcome with successes in dispatch order and all failures
        """
        user_prompt, images, params = self._prepare(inputs, task_type)
        timeout_s = compute_timeout(inputs, self.config)
        tracker = TokenUsageTracker()
        if not self.providers:
            return self._collect([], timeout_s, tracker)

        logger.info(
            f"Dispatching to {len(self.providers)} provider(s) "
            f"({', '.join(p.provider_id for p in self.providers)}), timeout {timeout_s:.0f}s"
        )

        workers = max(1, min(self.config.max_workers, len(self.providers)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as executor:
            futures = [
                executor.submit(self._bounded, adapter, system_prompt, user_prompt,
                                images, params, tracker, timeout_s)
                for adapter in self.providers
            ]
            results = [future.result() for future in futures]

        return self._collect(results, timeout_s, tracker)

    async def adispatch(self, inputs: NormalizedInput, system_prompt: str,
                        task_type: Union[str, TaskType] = TaskType.TAKEOFF) -> DispatchOutcome:
        """Async version of :meth:`dispatch`: one task per provider, joined with gather."""
        user_prompt, images, params = self._prepare(inputs, task_type)
        timeout_s = compute_timeout(inputs, self.config)
        tracker = TokenUsageTracker()
        slots = asyncio.Semaphore(max(1, self.config.max_workers))

        async def run_one(adapter: ProviderAdapter) -> _CallResult:
            async with slots:
                return await asyncio.to_thread(self._bounded, adapter, system_prompt, user_prompt,
                                               images, params, tracker, timeout_s)

        results = await asyncio.gather(*(run_one(p) for p in self.providers))
        return self._collect(list(results), timeout_s, tracker)
