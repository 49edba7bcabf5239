"""
Fusion Engine

Merges the aligned responses of all successful providers into one
FinalReconciledTakeoff. Items are visited in dispatch order; the first
occurrence of a key becomes the reconciled entry (with adjudicated values
substituted where a disagreement was resolved; a resolved unit brings its
winner's quantity along) and later undisputed occurrences are folded in by
running mean when within tolerance.

The most complete quality analysis wins, first in dispatch order on ties.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.constants import CONSENSUS_MARKER, UNRESOLVED_MARKER
from core.engine_config import EngineConfig, default_engine_config
from .adjudicator import AdjudicationOutcome
from .disagreement import exceeds_tolerance, relative_spread, tolerance_for_units
from .matching import ItemIndex, item_key
from .schema import (
    AdjudicationResult,
    AlignedResponse,
    AuditTrail,
    Completeness,
    Consistency,
    Disagreement,
    DisagreementType,
    FinalReconciledTakeoff,
    FusionPolicy,
    ProviderFailure,
    QualityAnalysis,
    ReconciledItem,
    TakeoffItem,
    TakeoffMetadata,
)

logger = logging.getLogger(__name__)

UNRESOLVED_CONFIDENCE = 0.5

# Item field each disagreement type disputes
_DISPUTED_FIELD = {
    DisagreementType.QUANTITY: "quantity",
    DisagreementType.CATEGORY: "category",
    DisagreementType.UNIT: "unit",
    DisagreementType.COST: "unit_cost",
    DisagreementType.NAME: "name",
    DisagreementType.LOCATION: "location",
}


def placeholder_quality_analysis() -> QualityAnalysis:
    """Conservative stand-in when no provider supplied a quality analysis."""
    return QualityAnalysis(
        completeness=Completeness(
            overall_score=0.0,
            notes="No quality analysis supplied by any provider",
        ),
        consistency=Consistency(notes="Not assessed"),
        risk_flags=[],
        audit_trail=AuditTrail(),
    )


def merge_quality_analysis(aligned: List[AlignedResponse]) -> QualityAnalysis:
    """Highest composite score wins; strict comparison keeps the earliest provider on ties."""
    best: Optional[QualityAnalysis] = None
    best_score = -1.0
    for response in aligned:
        qa = response.quality_analysis
        if qa is None:
            continue
        score = qa.composite_score()
        if score > best_score:
            best, best_score = qa, score
    return best if best is not None else placeholder_quality_analysis()


@dataclass
class _Entry:
    reconciled: ReconciledItem
    merged: int = 1


def _item_confidence(item: TakeoffItem, config: EngineConfig) -> float:
    return item.confidence if item.confidence is not None else config.default_item_confidence


def _disputed_entry(item: TakeoffItem, key: str, pid: str,
                    key_disagreements: List[Disagreement],
                    key_resolved: List[AdjudicationResult],
                    by_provider: Dict[str, TakeoffItem],
                    config: EngineConfig) -> ReconciledItem:
    picked_from: Dict[str, str] = {}
    for result in key_resolved:
        field_name = _DISPUTED_FIELD[result.disagreement.type]
        item = dataclasses.replace(item, **{field_name: result.winner_value})
        picked_from[field_name] = result.winner_provider

    # A quantity is only meaningful in the unit it was measured in
    conflicts: List[str] = []
    unit_winner = picked_from.get("unit")
    if unit_winner in by_provider:
        quantity_winner = picked_from.get("quantity")
        if quantity_winner not in (None, unit_winner):
            conflicts.append(
                f"Quantity adjudicated to {quantity_winner} but taken from {unit_winner} with its unit"
            )
        item = dataclasses.replace(item, quantity=by_provider[unit_winner].quantity)

    # A key carries at most one disagreement per type
    resolved_types = {r.disagreement.type for r in key_resolved}
    unresolved = [d for d in key_disagreements if d.type not in resolved_types]
    conflicts.extend(f"Disagreement on {d.type.value}: {d.description}" for d in unresolved)

    confidences = [r.confidence for r in key_resolved]
    if unresolved:
        confidences.append(UNRESOLVED_CONFIDENCE)
    confidence = min(confidences)

    return ReconciledItem(
        item=item,
        item_key=key,
        adjudicated_by=key_resolved[0].winner_provider if key_resolved else UNRESOLVED_MARKER,
        confidence=confidence,
        risk_flag=confidence < config.risk_threshold,
        disagreements=list(key_disagreements),
        unresolved_conflicts=conflicts,
        sources=[pid],
    )


def _fold_in(entry: _Entry, item: TakeoffItem, config: EngineConfig) -> bool:
    """Running-mean merge of an undisputed later occurrence; False when out of tolerance."""
    existing = entry.reconciled.item
    if item.unit is not existing.unit:
        return False
    tolerance = tolerance_for_units((existing.unit, item.unit), config)
    if exceeds_tolerance(relative_spread((existing.quantity, item.quantity)), tolerance):
        return False
    n = entry.merged
    entry.reconciled.item = dataclasses.replace(
        existing, quantity=(existing.quantity * n + item.quantity) / (n + 1),
    )
    entry.merged = n + 1
    entry.reconciled.confidence = max(entry.reconciled.confidence, _item_confidence(item, config))
    entry.reconciled.risk_flag = entry.reconciled.confidence < config.risk_threshold
    return True


def _metadata(items: List[ReconciledItem], aligned: List[AlignedResponse],
              disagreements: List[Disagreement], resolved: int, unresolved: int,
              failures: List[ProviderFailure], policy: FusionPolicy,
              config: EngineConfig, processing_time_ms: int) -> TakeoffMetadata:
    if items:
        overall = sum(i.confidence for i in items) / len(items)
    else:
        overall = config.default_item_confidence
    return TakeoffMetadata(
        confidence_overall=round(overall, 4),
        total_items=len(items),
        total_disagreements=len(disagreements),
        resolved_disagreements=resolved,
        unresolved_disagreements=unresolved,
        providers_used=[a.provider_id for a in aligned],
        failed_providers=[f.provider_id for f in failures],
        consensus_count=len(aligned),
        single_source=len(aligned) < 2,
        fusion_policy=policy.value,
        processing_time_ms=processing_time_ms,
    )


def fuse(
    aligned: List[AlignedResponse],
    index: ItemIndex,
    disagreements: List[Disagreement],
    adjudication: AdjudicationOutcome,
    config: Optional[EngineConfig] = None,
    failures: Optional[List[ProviderFailure]] = None,
    processing_time_ms: int = 0,
) -> FinalReconciledTakeoff:
    """
    Fuse multi-provider results.

    Args:
        aligned: Aligned responses in dispatch order
        index: Item grouping produced by :func:`consensus.matching.group_items`
        disagreements: Disagreements (with evidence strength) in detection order
        adjudication: Resolved and unresolved disagreements
        config: Engine configuration (tolerances, fusion policy)
        failures: Providers that failed at dispatch
        processing_time_ms: Elapsed time recorded in the metadata

    Returns:
        FinalReconciledTakeoff
    """
    config = config or default_engine_config()
    failures = failures or []
    policy = FusionPolicy(config.fusion_policy)

    disputes: Dict[str, List[Disagreement]] = {}
    for d in disagreements:
        disputes.setdefault(d.item_key, []).append(d)
    resolved_by_key: Dict[str, List[AdjudicationResult]] = {}
    for r in adjudication.resolved:
        resolved_by_key.setdefault(r.disagreement.item_key, []).append(r)

    entries: Dict[str, _Entry] = {}
    for response in aligned:
        pid = response.provider_id
        for i, item in enumerate(response.items):
            key = index.key_for(pid, i) or item_key(item)
            entry = entries.get(key)

            if entry is None:
                key_disagreements = disputes.get(key, [])
                if key_disagreements:
                    group = index.groups.get(key)
                    reconciled = _disputed_entry(item, key, pid, key_disagreements,
                                                 resolved_by_key.get(key, []),
                                                 group.first_by_provider() if group else {pid: item},
                                                 config)
                else:
                    confidence = _item_confidence(item, config)
                    reconciled = ReconciledItem(
                        item=item,
                        item_key=key,
                        adjudicated_by=CONSENSUS_MARKER,
                        confidence=confidence,
                        risk_flag=confidence < config.risk_threshold,
                        sources=[pid],
                    )
                entries[key] = _Entry(reconciled)
                continue

            if pid not in entry.reconciled.sources:
                entry.reconciled.sources.append(pid)
            if key not in disputes and not _fold_in(entry, item, config):
                logger.debug(f"Kept first-seen quantity for '{key}', {pid} is out of tolerance")

    items = [e.reconciled for e in entries.values()]

    if policy is FusionPolicy.AGREEMENT_THRESHOLD and aligned:
        before = len(items)
        items = [
            it for it in items
            if len(it.sources) / len(aligned) >= config.agreement_threshold
        ]
        if before != len(items):
            logger.info(
                f"Agreement threshold {config.agreement_threshold:.0%} dropped {before - len(items)} item(s)"
            )

    final = FinalReconciledTakeoff(
        metadata=_metadata(items, aligned, disagreements, len(adjudication.resolved),
                           len(adjudication.unresolved), failures, policy, config,
                           processing_time_ms),
        items=items,
        quality_analysis=merge_quality_analysis(aligned),
        resolved=list(adjudication.resolved),
        unresolved=list(adjudication.unresolved),
    )
    logger.info(
        f"Fused {len(items)} item(s) from {len(aligned)} provider(s); "
        f"{final.metadata.resolved_disagreements} resolved, "
        f"{final.metadata.unresolved_disagreements} unresolved"
    )
    return final


def fuse_single_source(
    aligned: AlignedResponse,
    config: Optional[EngineConfig] = None,
    failures: Optional[List[ProviderFailure]] = None,
    processing_time_ms: int = 0,
) -> FinalReconciledTakeoff:
    """Degraded mode: every item of the sole provider, tagged with that provider."""
    config = config or default_engine_config()
    failures = failures or []
    pid = aligned.provider_id

    items = []
    for item in aligned.items:
        confidence = _item_confidence(item, config)
        items.append(ReconciledItem(
            item=item,
            item_key=item_key(item),
            adjudicated_by=pid,
            confidence=confidence,
            risk_flag=confidence < config.risk_threshold,
            sources=[pid],
        ))

    logger.warning(f"Single-source result from {pid}: no cross-provider verification")
    return FinalReconciledTakeoff(
        metadata=_metadata(items, [aligned], [], 0, 0, failures,
                           FusionPolicy(config.fusion_policy), config, processing_time_ms),
        items=items,
        quality_analysis=aligned.quality_analysis or placeholder_quality_analysis(),
    )
