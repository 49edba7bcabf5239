"""
Adjudicator

Picks a winner for every disagreement from the rationales of its
contributing providers. Score = evidence_weight * evidence +
consistency_weight * consistency; the highest score wins and ties go to the
provider dispatched first.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from core.engine_config import EngineConfig, default_engine_config
from core.errors import AdjudicationIncomplete
from .schema import AdjudicationResult, Disagreement, ModelRationale

logger = logging.getLogger(__name__)


@dataclass
class AdjudicationOutcome:
    resolved: List[AdjudicationResult] = field(default_factory=list)
    unresolved: List[Disagreement] = field(default_factory=list)


def rationale_score(rationale: ModelRationale, config: Optional[EngineConfig] = None) -> float:
    config = config or default_engine_config()
    return round(
        rationale.evidence_score * config.evidence_weight
        + rationale.consistency_score * config.consistency_weight,
        4,
    )


def adjudicate(disagreement: Disagreement, rationales: Sequence[ModelRationale],
               config: Optional[EngineConfig] = None) -> AdjudicationResult:
    """
    Adjudicate one disagreement.

    Raises:
        AdjudicationIncomplete: No rationale from any contributing provider.
    """
    config = config or default_engine_config()
    by_provider = {r.provider_id: r for r in rationales if r.provider_id in disagreement.providers}
    if not by_provider:
        raise AdjudicationIncomplete(
            f"No rationale for {disagreement.type.value} disagreement on '{disagreement.item_key}'",
            item_key=disagreement.item_key,
        )

    # Walk in dispatch order with a strict comparison so ties keep the earlier provider
    winner: Optional[ModelRationale] = None
    best = -1.0
    for pid in disagreement.providers:
        r = by_provider.get(pid)
        if r is None:
            continue
        s = rationale_score(r, config)
        if s > best:
            winner, best = r, s

    return AdjudicationResult(
        disagreement=disagreement,
        winner_provider=winner.provider_id,
        winner_value=disagreement.values.get(winner.provider_id),
        confidence=best,
        reasoning=winner.rationale,
        evidence_summary=(
            f"Winner: {winner.provider_id} (evidence: {winner.evidence_score:.0%}, "
            f"consistency: {winner.consistency_score:.0%})"
        ),
        all_rationales=list(rationales),
    )


def adjudicate_all(pairs: Sequence[Tuple[Disagreement, List[ModelRationale]]],
                   config: Optional[EngineConfig] = None) -> AdjudicationOutcome:
    """Adjudicate every disagreement; those without a valid rationale stay unresolved."""
    config = config or default_engine_config()
    outcome = AdjudicationOutcome()
    for disagreement, rationales in pairs:
        try:
            outcome.resolved.append(adjudicate(disagreement, rationales, config))
        except AdjudicationIncomplete as e:
            logger.warning(f"Leaving disagreement unresolved: {e}", extra={"stage": "adjudicate"})
            outcome.unresolved.append(disagreement)

    wins = {}
    for result in outcome.resolved:
        wins[result.winner_provider] = wins.get(result.winner_provider, 0) + 1
    logger.info(
        f"Adjudicated {len(outcome.resolved)}/{len(pairs)} disagreement(s)"
        + (f", wins: {wins}" if wins else "")
    )
    return outcome
