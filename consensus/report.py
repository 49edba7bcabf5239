"""
Consensus report: the human-facing summary of a run.

Summarizes who took part, how many items and disagreements there were, how
confident the reconciled items are, and how each provider performed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .adjudicator import AdjudicationOutcome
from .recommendation import EngineRecommendation
from .schema import AlignedResponse, FinalReconciledTakeoff, ProviderFailure, ProviderResponse

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6


@dataclass
class ProviderReport:
    items_found: int = 0
    average_confidence: float = 0.0
    evidence_strength: float = 0.0
    error_rate: float = 0.0
    wins: int = 0
    latency_ms: int = 0
    tokens_used: int = 0
    failed: bool = False
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items_found": self.items_found,
            "average_confidence": self.average_confidence,
            "evidence_strength": self.evidence_strength,
            "error_rate": self.error_rate,
            "wins": self.wins,
            "latency_ms": self.latency_ms,
            "tokens_used": self.tokens_used,
            "failed": self.failed,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
        }


@dataclass
class ConsensusReport:
    summary: List[str] = field(default_factory=list)
    providers_used: List[str] = field(default_factory=list)
    failed_providers: List[str] = field(default_factory=list)
    disagreements_count: int = 0
    resolved_count: int = 0
    unresolved_count: int = 0
    high_confidence_items: int = 0
    medium_confidence_items: int = 0
    low_confidence_items: int = 0
    model_performance: Dict[str, ProviderReport] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": list(self.summary),
            "providers_used": list(self.providers_used),
            "failed_providers": list(self.failed_providers),
            "disagreements_count": self.disagreements_count,
            "resolved_count": self.resolved_count,
            "unresolved_count": self.unresolved_count,
            "high_confidence_items": self.high_confidence_items,
            "medium_confidence_items": self.medium_confidence_items,
            "low_confidence_items": self.low_confidence_items,
            "model_performance": {pid: p.to_dict() for pid, p in self.model_performance.items()},
        }


def _observations(response: AlignedResponse, wins: int, adjudications: int) -> Dict[str, List[str]]:
    strengths, weaknesses = [], []
    if adjudications and wins / adjudications >= 0.6:
        strengths.append(f"Won {wins} of {adjudications} adjudications")
    if response.schema_valid and not response.repair_applied:
        strengths.append("Returned schema-valid output without repair")
    if response.payload_repaired and not response.partial_extraction:
        weaknesses.append("Payload needed JSON repair")
    if response.partial_extraction:
        weaknesses.append("Only partial extraction was possible")
    if response.repaired_items:
        weaknesses.append(f"{response.repaired_items} item(s) needed field repair")
    if not response.items:
        weaknesses.append("No takeoff items reported")
    return {"strengths": strengths, "weaknesses": weaknesses}


def build_consensus_report(
    final: FinalReconciledTakeoff,
    aligned: Sequence[AlignedResponse],
    adjudication: AdjudicationOutcome,
    responses: Sequence[ProviderResponse] = (),
    failures: Sequence[ProviderFailure] = (),
    recommendation: Optional[EngineRecommendation] = None,
    tokens: Optional[Mapping[str, int]] = None,
) -> ConsensusReport:
    tokens = tokens or {}
    latency = {r.provider_id: r.latency_ms for r in responses}
    metrics = recommendation.performance_metrics if recommendation else {}
    meta = final.metadata

    total_items = sum(len(a.items) for a in aligned)
    summary = [
        f"{len(aligned)} providers analyzed {total_items} total items",
        f"{meta.total_disagreements} disagreements detected",
        f"{meta.resolved_disagreements} disagreements resolved through adjudication",
        (
            f"{meta.unresolved_disagreements} disagreements remain unresolved"
            if meta.unresolved_disagreements else "All disagreements resolved"
        ),
    ]
    if failures:
        summary.append(
            f"{len(failures)} provider(s) failed: "
            + ", ".join(f"{f.provider_id} ({f.error_type})" for f in failures)
        )
    if meta.single_source:
        summary.append("Single-source result: items were not cross-checked by another provider")

    report = ConsensusReport(
        summary=summary,
        providers_used=list(meta.providers_used),
        failed_providers=list(meta.failed_providers),
        disagreements_count=meta.total_disagreements,
        resolved_count=meta.resolved_disagreements,
        unresolved_count=meta.unresolved_disagreements,
    )

    for item in final.items:
        if item.confidence >= HIGH_CONFIDENCE:
            report.high_confidence_items += 1
        elif item.confidence >= MEDIUM_CONFIDENCE:
            report.medium_confidence_items += 1
        else:
            report.low_confidence_items += 1

    for response in aligned:
        pid = response.provider_id
        wins = sum(1 for r in adjudication.resolved if r.winner_provider == pid)
        adjudications = sum(1 for r in adjudication.resolved if pid in r.disagreement.providers)
        stated = [i.confidence for i in response.items if i.confidence is not None]
        m = metrics.get(pid)
        report.model_performance[pid] = ProviderReport(
            items_found=len(response.items),
            average_confidence=round(sum(stated) / len(stated), 4) if stated else 0.0,
            evidence_strength=m.evidence_strength if m else 0.0,
            error_rate=m.error_rate if m else 0.0,
            wins=wins,
            latency_ms=latency.get(pid, 0),
            tokens_used=int(tokens.get(pid, 0)),
            **_observations(response, wins, adjudications),
        )

    for failure in failures:
        report.model_performance[failure.provider_id] = ProviderReport(
            error_rate=1.0,
            latency_ms=failure.latency_ms,
            tokens_used=int(tokens.get(failure.provider_id, 0)),
            failed=True,
            weaknesses=[f"{failure.error_type}: {failure.message}"],
        )

    return report
