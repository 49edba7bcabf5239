"""
Plan Consensus Package

Cross-checks construction takeoffs produced by several analysis providers:
aligns every reply to a strict schema, detects where providers disagree,
adjudicates each disagreement on the evidence behind it, and fuses the
results into one reconciled takeoff with a provider recommendation.

Usage:
    from consensus import orchestrate

    result = orchestrate(inputs, system_prompt, "takeoff", providers)
    print(result.to_dict()["final_json"]["metadata"])
"""

from .schema import (
    AdjudicationResult,
    AlignedResponse,
    BoundingBox,
    Category,
    Chunk,
    Citation,
    Disagreement,
    DisagreementType,
    FinalReconciledTakeoff,
    FusionPolicy,
    ModelRationale,
    NormalizedInput,
    ProviderFailure,
    ProviderResponse,
    QualityAnalysis,
    QualityIssue,
    ReconciledItem,
    Severity,
    SheetRef,
    TakeoffItem,
    TakeoffMetadata,
    TaskType,
    Unit,
)
from .repair import RepairOutcome, extract_partial_payload, parse_with_repair
from .aligner import align_all, align_response
from .matching import ItemIndex, group_items, item_key, items_match, similarity
from .disagreement import detect_disagreements
from .rationale import build_all_rationales, build_rationales
from .adjudicator import AdjudicationOutcome, adjudicate, adjudicate_all
from .fusion import fuse, fuse_single_source
from .recommendation import EngineRecommendation, PerformanceModel, recommend
from .report import ConsensusReport, build_consensus_report
from .dispatcher import DispatchOutcome, Dispatcher, build_user_prompt, compute_timeout
from .orchestrator import ConsensusOrchestrator, OrchestratorResult, aorchestrate, orchestrate

__all__ = [
    # Data model
    "AdjudicationResult",
    "AlignedResponse",
    "BoundingBox",
    "Category",
    "Chunk",
    "Citation",
    "Disagreement",
    "DisagreementType",
    "FinalReconciledTakeoff",
    "FusionPolicy",
    "ModelRationale",
    "NormalizedInput",
    "ProviderFailure",
    "ProviderResponse",
    "QualityAnalysis",
    "QualityIssue",
    "ReconciledItem",
    "Severity",
    "SheetRef",
    "TakeoffItem",
    "TakeoffMetadata",
    "TaskType",
    "Unit",
    # Stages
    "RepairOutcome",
    "parse_with_repair",
    "extract_partial_payload",
    "align_response",
    "align_all",
    "ItemIndex",
    "group_items",
    "item_key",
    "items_match",
    "similarity",
    "detect_disagreements",
    "build_rationales",
    "build_all_rationales",
    "AdjudicationOutcome",
    "adjudicate",
    "adjudicate_all",
    "fuse",
    "fuse_single_source",
    "EngineRecommendation",
    "PerformanceModel",
    "recommend",
    "ConsensusReport",
    "build_consensus_report",
    "DispatchOutcome",
    "Dispatcher",
    "build_user_prompt",
    "compute_timeout",
    # Entry points
    "ConsensusOrchestrator",
    "OrchestratorResult",
    "orchestrate",
    "aorchestrate",
]
