"""
Consensus Orchestrator

Runs the full pipeline for one plan input:

    dispatch -> align -> detect disagreements -> build rationales
             -> adjudicate -> fuse -> recommend -> report

Zero successful providers is the only hard failure (``InsufficientProviders``).
A single success degrades to single-source mode. Everything after dispatch
is pure and single-threaded.

Usage:
    from consensus.orchestrator import orchestrate
    from providers import build_providers, ProviderSpec

    providers = build_providers([ProviderSpec("openai", "gpt-4o"),
                                 ProviderSpec("anthropic", "claude-3-haiku-20240307")])
    result = orchestrate(inputs, system_prompt, "takeoff", providers)
    print(result.final_json.metadata.confidence_overall)
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

from core.engine_config import EngineConfig, default_engine_config
from core.errors import InsufficientProviders
from providers.base import ProviderAdapter
from .adjudicator import AdjudicationOutcome, adjudicate_all
from .aligner import align_all
from .disagreement import detect_disagreements
from .dispatcher import DispatchOutcome, Dispatcher
from .fusion import fuse, fuse_single_source
from .matching import group_items
from .rationale import build_all_rationales
from .recommendation import EngineRecommendation, PerformanceModel, recommend
from .report import ConsensusReport, build_consensus_report
from .schema import FinalReconciledTakeoff, NormalizedInput, TaskType

logger = logging.getLogger(__name__)

InputLike = Union[NormalizedInput, Dict[str, Any]]


@dataclass
class OrchestratorResult:
    """Everything one run produces."""
    consensus_report: ConsensusReport
    final_json: FinalReconciledTakeoff
    engine_recommendation: EngineRecommendation
    performance_model: PerformanceModel
    usage: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consensus_report": self.consensus_report.to_dict(),
            "final_json": self.final_json.to_dict(),
            "engine_recommendation": self.engine_recommendation.to_dict(),
            "performance_model": self.performance_model.to_dict(),
            "usage": dict(self.usage or {}),
        }


class ConsensusOrchestrator:
    """
    Multi-provider consensus over one dispatch per run.

    Args:
        providers: Adapters in canonical dispatch order
        config: Engine configuration; built-in defaults when omitted
    """

    def __init__(self, providers: Sequence[ProviderAdapter], config: Optional[EngineConfig] = None):
        self.config = config or default_engine_config()
        self.providers = list(providers)
        self.dispatcher = Dispatcher(self.providers, self.config)

    def run(self, inputs: InputLike, system_prompt: str,
            task_type: Union[str, TaskType] = TaskType.TAKEOFF,
            performance_model: Optional[PerformanceModel] = None) -> OrchestratorResult:
        inputs = _as_input(inputs)
        started = time.monotonic()
        outcome = self.dispatcher.dispatch(inputs, system_prompt, task_type)
        return self._reconcile(inputs, outcome, started, performance_model)

    async def arun(self, inputs: InputLike, system_prompt: str,
                   task_type: Union[str, TaskType] = TaskType.TAKEOFF,
                   performance_model: Optional[PerformanceModel] = None) -> OrchestratorResult:
        inputs = _as_input(inputs)
        started = time.monotonic()
        outcome = await self.dispatcher.adispatch(inputs, system_prompt, task_type)
        return self._reconcile(inputs, outcome, started, performance_model)

    def _reconcile(self, inputs: NormalizedInput, outcome: DispatchOutcome, started: float,
                   performance_model: Optional[PerformanceModel]) -> OrchestratorResult:
        config = self.config
        if not outcome.responses:
            logger.error(f"All {len(self.providers)} provider(s) failed")
            raise InsufficientProviders(
                f"No provider succeeded ({len(outcome.failures)} failed)",
                failures=outcome.failures,
            )

        aligned = align_all(outcome.responses, config)

        if len(aligned) == 1:
            adjudication = AdjudicationOutcome()
            final = fuse_single_source(
                aligned[0], config, outcome.failures, _elapsed_ms(started),
            )
        else:
            index = group_items(aligned, config)
            disagreements = detect_disagreements(index, config)
            pairs = build_all_rationales(disagreements, index, inputs)
            adjudication = adjudicate_all(pairs, config)
            final = fuse(
                aligned, index, [d for d, _ in pairs], adjudication, config,
                outcome.failures, _elapsed_ms(started),
            )

        recommendation, model = recommend(
            aligned,
            adjudication,
            outcome.failures,
            {p.provider_id: p.context_window for p in self.providers},
            config,
            performance_model,
        )

        by_provider = (outcome.usage or {}).get("by_provider", {})
        tokens = {pid: d.get("input", 0) + d.get("output", 0) for pid, d in by_provider.items()}
        report = build_consensus_report(
            final, aligned, adjudication, outcome.responses, outcome.failures,
            recommendation, tokens,
        )
        for line in report.summary:
            logger.info(f"  {line}")

        return OrchestratorResult(
            consensus_report=report,
            final_json=final,
            engine_recommendation=recommendation,
            performance_model=model,
            usage=outcome.usage,
        )


def _as_input(inputs: InputLike) -> NormalizedInput:
    if isinstance(inputs, NormalizedInput):
        return inputs
    return NormalizedInput.from_dict(inputs)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def orchestrate(
    inputs: InputLike,
    system_prompt: str,
    task_type: Union[str, TaskType],
    providers: Sequence[ProviderAdapter],
    config: Optional[EngineConfig] = None,
    performance_model: Optional[PerformanceModel] = None,
) -> OrchestratorResult:
    """
    Run multi-provider consensus on one normalized plan input.

    Args:
        inputs: NormalizedInput (or its dict form)
        system_prompt: Caller-supplied system prompt sent to every provider
        task_type: takeoff, quality, bid_analysis, code_compliance or cost_estimation
        providers: Adapters in canonical dispatch order
        config: Engine configuration
        performance_model: Prior provider history (returned updated, never mutated)

    Returns:
        OrchestratorResult

    Raises:
        InsufficientProviders: No provider produced a response
    """
    return ConsensusOrchestrator(providers, config).run(
        inputs, system_prompt, task_type, performance_model,
    )


async def aorchestrate(
    inputs: InputLike,
    system_prompt: str,
    task_type: Union[str, TaskType],
    providers: Sequence[ProviderAdapter],
    config: Optional[EngineConfig] = None,
    performance_model: Optional[PerformanceModel] = None,
) -> OrchestratorResult:
    """Async version of :func:`orchestrate`."""
    return await ConsensusOrchestrator(providers, config).arun(
        inputs, system_prompt, task_type, performance_model,
    )
