"""
Recommendation Module

Scores every provider of a run (accuracy in adjudication, strength of the
evidence behind its wins, structural consistency of its payload, error
rate) and recommends a single provider or, when nobody clearly leads, a
hybrid. Provider history lives in an immutable PerformanceModel that is
threaded through runs: ``recommend`` returns a new model and never touches
the one it was given.

Usage:
    from consensus.recommendation import PerformanceModel, recommend

    rec, model = recommend(aligned, adjudication, failures, context_windows,
                           config, PerformanceModel())
"""

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from core.engine_config import EngineConfig, default_engine_config
from .adjudicator import AdjudicationOutcome
from .schema import AlignedResponse, ProviderFailure

logger = logging.getLogger(__name__)

# Composite weights
ACCURACY_WEIGHT = 0.4
EVIDENCE_WEIGHT = 0.3
CONSISTENCY_WEIGHT = 0.2
RELIABILITY_WEIGHT = 0.1

NEUTRAL_SCORE = 0.5
PAYLOAD_REPAIR_PENALTY = 0.1
DOMINANT_WIN_SHARE = 0.6

# Scores kept per provider
MAX_HISTORY = 50


# =============================================================================
# Performance history
# =============================================================================

@dataclass(frozen=True)
class PerformanceModel:
    """Composite scores of past runs, per provider. Immutable."""
    history: Tuple[Tuple[str, Tuple[float, ...]], ...] = ()
    runs: int = 0

    def scores_for(self, provider_id: str) -> Tuple[float, ...]:
        for pid, scores in self.history:
            if pid == provider_id:
                return scores
        return ()

    def historical_mean(self, provider_id: str) -> Optional[float]:
        scores = self.scores_for(provider_id)
        if not scores:
            return None
        return sum(scores) / len(scores)

    def with_run(self, scores: Mapping[str, float]) -> "PerformanceModel":
        """New model with one more run recorded."""
        merged: Dict[str, Tuple[float, ...]] = dict(self.history)
        for pid, score in scores.items():
            merged[pid] = (merged.get(pid, ()) + (round(score, 4),))[-MAX_HISTORY:]
        return PerformanceModel(
            history=tuple(sorted(merged.items())),
            runs=self.runs + 1,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "history": {pid: list(scores) for pid, scores in self.history},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceModel":
        history = data.get("history") or {}
        return cls(
            history=tuple(sorted(
                (str(pid), tuple(float(s) for s in scores))
                for pid, scores in history.items()
            )),
            runs=int(data.get("runs", 0)),
        )

    @classmethod
    def load(cls, path: Path) -> "PerformanceModel":
        """Read a saved model; a missing file yields an empty model."""
        path = Path(path)
        if not path.exists():
            return cls()
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def save(self, path: Path) -> None:
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)


# =============================================================================
# Recommendation types
# =============================================================================

@dataclass(frozen=True)
class ProviderMetrics:
    accuracy: float
    evidence_strength: float
    consistency: float
    error_rate: float
    items_found: int = 0
    wins: int = 0
    adjudications: int = 0
    composite: float = 0.0
    score: float = 0.0  # composite blended with history

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accuracy": self.accuracy,
            "evidence_strength": self.evidence_strength,
            "consistency": self.consistency,
            "error_rate": self.error_rate,
            "items_found": self.items_found,
            "wins": self.wins,
            "adjudications": self.adjudications,
            "composite": self.composite,
            "score": self.score,
        }


@dataclass(frozen=True)
class HybridRecommendation:
    primary_provider: str
    secondary_providers: List[str]
    use_case: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_provider": self.primary_provider,
            "secondary_providers": list(self.secondary_providers),
            "use_case": self.use_case,
        }


@dataclass(frozen=True)
class EngineRecommendation:
    recommended_provider: Optional[str]
    reasoning: str
    confidence: float
    recommendation_details: str
    recommended_hybrid: Optional[HybridRecommendation] = None
    performance_metrics: Dict[str, ProviderMetrics] = field(default_factory=dict)
    long_context_suitable: bool = False
    long_context_providers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommended_provider": self.recommended_provider,
            "recommended_hybrid": self.recommended_hybrid.to_dict() if self.recommended_hybrid else None,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "performance_metrics": {pid: m.to_dict() for pid, m in self.performance_metrics.items()},
            "long_context_suitable": self.long_context_suitable,
            "long_context_providers": list(self.long_context_providers),
            "recommendation_details": self.recommendation_details,
        }


# =============================================================================
# Scoring
# =============================================================================

def composite_score(accuracy: float, evidence: float, consistency: float, error_rate: float) -> float:
    return round(
        ACCURACY_WEIGHT * accuracy
        + EVIDENCE_WEIGHT * evidence
        + CONSISTENCY_WEIGHT * consistency
        + RELIABILITY_WEIGHT * (1.0 - error_rate),
        4,
    )


def _blend(composite: float, provider_id: str, prior: PerformanceModel, config: EngineConfig) -> float:
    past = prior.historical_mean(provider_id)
    if past is None:
        return composite
    w = config.history_weight
    return round((1.0 - w) * composite + w * past, 4)


def provider_metrics(response: AlignedResponse, adjudication: AdjudicationOutcome) -> ProviderMetrics:
    """Metrics for a provider that returned a response."""
    pid = response.provider_id
    involved = [r for r in adjudication.resolved if pid in r.disagreement.providers]
    won = [r for r in involved if r.winner_provider == pid]

    accuracy = len(won) / max(len(adjudication.resolved), 1)

    winning_evidence = [
        rat.evidence_score
        for r in won for rat in r.all_rationales if rat.provider_id == pid
    ]
    evidence = sum(winning_evidence) / len(winning_evidence) if winning_evidence else NEUTRAL_SCORE

    repaired_share = response.repaired_items / max(len(response.items), 1)
    consistency = max(
        NEUTRAL_SCORE,
        1.0 - 0.5 * repaired_share - (PAYLOAD_REPAIR_PENALTY if response.payload_repaired else 0.0),
    )
    error_rate = min(1.0, repaired_share)

    return ProviderMetrics(
        accuracy=round(accuracy, 4),
        evidence_strength=round(evidence, 4),
        consistency=round(consistency, 4),
        error_rate=round(error_rate, 4),
        items_found=len(response.items),
        wins=len(won),
        adjudications=len(involved),
        composite=composite_score(accuracy, evidence, consistency, error_rate),
    )


def failed_metrics() -> ProviderMetrics:
    return ProviderMetrics(
        accuracy=0.0,
        evidence_strength=0.0,
        consistency=0.0,
        error_rate=1.0,
        composite=composite_score(0.0, 0.0, 0.0, 1.0),
    )


# =============================================================================
# Recommendation
# =============================================================================

def recommend(
    aligned: Sequence[AlignedResponse],
    adjudication: AdjudicationOutcome,
    failures: Sequence[ProviderFailure] = (),
    context_windows: Optional[Mapping[str, int]] = None,
    config: Optional[EngineConfig] = None,
    performance_model: Optional[PerformanceModel] = None,
) -> Tuple[EngineRecommendation, PerformanceModel]:
    """
    Recommend a provider (or hybrid) for future runs.

    Args:
        aligned: Aligned responses in dispatch order
        adjudication: Outcome of the adjudicator
        failures: Providers that failed at dispatch
        context_windows: provider_id -> context window in tokens
        config: Engine configuration
        performance_model: Prior history; not modified

    Returns:
        (EngineRecommendation, new PerformanceModel)
    """
    config = config or default_engine_config()
    prior = performance_model or PerformanceModel()
    context_windows = context_windows or {}

    metrics: Dict[str, ProviderMetrics] = {}
    for response in aligned:
        m = provider_metrics(response, adjudication)
        metrics[response.provider_id] = _with_score(m, response.provider_id, prior, config)
    for failure in failures:
        if failure.provider_id not in metrics:
            metrics[failure.provider_id] = _with_score(failed_metrics(), failure.provider_id, prior, config)

    updated = prior.with_run({pid: m.composite for pid, m in metrics.items()})

    succeeded = [a.provider_id for a in aligned]
    best: Optional[str] = None
    best_score = -1.0
    for pid in succeeded:
        if metrics[pid].score > best_score:
            best, best_score = pid, metrics[pid].score

    total_adjudications = len(adjudication.resolved)
    hybrid = None
    recommended = None

    if best is not None and best_score > config.recommendation_threshold:
        m = metrics[best]
        recommended = best
        reasoning = (
            f"{best} performed best with {m.accuracy:.0%} win rate in adjudications, "
            f"{m.evidence_strength:.0%} evidence strength, and {m.items_found} items found. "
        )
        if total_adjudications and m.wins >= total_adjudications * DOMINANT_WIN_SHARE:
            reasoning += "This provider consistently outperformed others and should be used as primary."
            confidence = 0.85
        else:
            reasoning += "Consider using this provider as primary with others for cross-checking."
            confidence = 0.75
    else:
        reasoning = (
            "All providers performed similarly. Recommend using hybrid approach "
            "with multiple providers for maximum accuracy."
        )
        confidence = 0.6
        if best is not None:
            ranked = sorted(
                (pid for pid in succeeded if pid != best),
                key=lambda pid: -metrics[pid].score,
            )
            hybrid = HybridRecommendation(
                primary_provider=best,
                secondary_providers=ranked,
                use_case="Cross-check quantities and categories across providers",
            )

    details = (
        f"Based on {total_adjudications} adjudications across {len(metrics)} providers. "
        f"Best provider: {best or 'hybrid'} with score {max(best_score, 0.0):.0%}."
    )

    total_items = sum(len(a.items) for a in aligned)
    long_context = total_items > config.long_context_items
    long_context_providers: List[str] = []
    if long_context:
        long_context_providers = sorted(
            succeeded, key=lambda pid: -int(context_windows.get(pid, 0) or 0)
        )
        details += (
            " Large project detected - consider using long-context models for better coherence"
            f" ({', '.join(long_context_providers)})."
        )

    rec = EngineRecommendation(
        recommended_provider=recommended,
        recommended_hybrid=hybrid,
        reasoning=reasoning,
        confidence=confidence,
        performance_metrics=metrics,
        long_context_suitable=long_context,
        long_context_providers=long_context_providers,
        recommendation_details=details,
    )
    logger.info(
        f"Recommendation: {recommended or 'hybrid'} (confidence {confidence:.0%}, "
        f"best score {max(best_score, 0.0):.2f})"
    )
    return rec, updated


def _with_score(m: ProviderMetrics, pid: str, prior: PerformanceModel,
                config: EngineConfig) -> ProviderMetrics:
    return dataclasses.replace(m, score=_blend(m.composite, pid, prior, config))
