"""
Consensus data model.

Every entity that flows between pipeline stages: the normalized plan input,
raw and aligned provider responses, takeoff items and quality issues,
disagreements, rationales, adjudications and the reconciled takeoff.

Values that later stages must not alter (responses, items, disagreements,
rationales, adjudications) are frozen dataclasses; stages derive new values
with ``dataclasses.replace``. Every entity serializes with ``to_dict()`` to
snake_case JSON keys.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Enumerations
# =============================================================================

class Unit(Enum):
    LF = "LF"   # linear feet
    SF = "SF"   # square feet
    CF = "CF"   # cubic feet
    CY = "CY"   # cubic yards
    EA = "EA"   # each
    SQ = "SQ"   # roofing square


class Category(Enum):
    STRUCTURAL = "structural"
    EXTERIOR = "exterior"
    INTERIOR = "interior"
    MEP = "mep"
    FINISHES = "finishes"
    OTHER = "other"


class Severity(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class DisagreementType(Enum):
    QUANTITY = "quantity"
    CATEGORY = "category"
    UNIT = "unit"
    LOCATION = "location"
    NAME = "name"
    COST = "cost"


class FusionPolicy(Enum):
    """How items reported by only some providers are treated during fusion."""
    UNION = "union"
    AGREEMENT_THRESHOLD = "agreement_threshold"


class TaskType(Enum):
    TAKEOFF = "takeoff"
    QUALITY = "quality"
    BID_ANALYSIS = "bid_analysis"
    CODE_COMPLIANCE = "code_compliance"
    COST_ESTIMATION = "cost_estimation"


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


# =============================================================================
# Normalized input
# =============================================================================

@dataclass(frozen=True)
class SheetRef:
    sheet_id: str
    title: str = ""
    discipline: str = ""
    sheet_type: str = ""
    page_no: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SheetRef":
        return cls(
            sheet_id=str(data.get("sheet_id", "")),
            title=str(data.get("title") or ""),
            discipline=str(data.get("discipline") or ""),
            sheet_type=str(data.get("sheet_type") or ""),
            page_no=data.get("page_no"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "sheet_id": self.sheet_id,
            "title": self.title,
            "discipline": self.discipline,
            "sheet_type": self.sheet_type,
            "page_no": self.page_no,
        })


@dataclass(frozen=True)
class Chunk:
    chunk_index: int
    page_start: int = 0
    page_end: int = 0
    text: str = ""
    image_urls: List[str] = field(default_factory=list)
    sheet_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Accepts the flat form or the ingestion form (page_range / content / sheet_index_subset)."""
        page_range = data.get("page_range") or {}
        content = data.get("content") or {}
        sheet_ids = data.get("sheet_ids")
        if sheet_ids is None:
            sheet_ids = [s.get("sheet_id", "") for s in data.get("sheet_index_subset") or []]
        return cls(
            chunk_index=int(data.get("chunk_index", 0)),
            page_start=int(data.get("page_start", page_range.get("start", 0)) or 0),
            page_end=int(data.get("page_end", page_range.get("end", 0)) or 0),
            text=str(data.get("text", content.get("text", "")) or ""),
            image_urls=list(data.get("image_urls", content.get("image_urls")) or []),
            sheet_ids=list(sheet_ids),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "page_start": self.page_start,
            "page_end": self.page_end,
            "text": self.text,
            "image_urls": list(self.image_urls),
            "sheet_ids": list(self.sheet_ids),
        }


@dataclass(frozen=True)
class NormalizedInput:
    """Ingested plan set: project metadata, sheet index and model-ready chunks."""
    project_meta: Dict[str, Any] = field(default_factory=dict)
    sheet_index: List[SheetRef] = field(default_factory=list)
    chunks: List[Chunk] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedInput":
        return cls(
            project_meta=dict(data.get("project_meta") or {}),
            sheet_index=[SheetRef.from_dict(s) for s in data.get("sheet_index") or []],
            chunks=[Chunk.from_dict(c) for c in data.get("chunks") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_meta": dict(self.project_meta),
            "sheet_index": [s.to_dict() for s in self.sheet_index],
            "chunks": [c.to_dict() for c in self.chunks],
        }


# =============================================================================
# Provider output
# =============================================================================

@dataclass(frozen=True)
class ProviderResponse:
    """One provider's raw reply (or failure) from dispatch."""
    provider_id: str
    model_id: str
    raw_text: str = ""
    latency_ms: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    finish_reason: Optional[str] = None
    tokens_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "error_type": self.error_type,
            "finish_reason": self.finish_reason,
            "tokens_used": self.tokens_used,
        })


@dataclass(frozen=True)
class ProviderFailure:
    """A provider that produced no usable response."""
    provider_id: str
    error_type: str
    message: str
    retryable: bool = False
    latency_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "error_type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
            "latency_ms": self.latency_ms,
        }


@dataclass(frozen=True)
class BoundingBox:
    page: int
    x: float
    y: float
    width: float = 0.0
    height: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"page": self.page, "x": self.x, "y": self.y,
                "width": self.width, "height": self.height}


@dataclass(frozen=True)
class TakeoffItem:
    name: str
    quantity: float
    unit: Unit
    category: Category
    description: str = ""
    unit_cost: float = 0.0
    location: str = ""
    subcategory: str = ""
    cost_code: str = ""
    cost_code_description: str = ""
    notes: str = ""
    dimensions: str = ""
    bounding_box: Optional[BoundingBox] = None
    confidence: Optional[float] = None
    partially_extracted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit.value,
            "unit_cost": self.unit_cost,
            "location": self.location,
            "category": self.category.value,
            "subcategory": self.subcategory,
            "cost_code": self.cost_code,
            "cost_code_description": self.cost_code_description,
            "notes": self.notes,
            "dimensions": self.dimensions,
        }
        if self.bounding_box is not None:
            d["bounding_box"] = self.bounding_box.to_dict()
        if self.confidence is not None:
            d["confidence"] = self.confidence
        if self.partially_extracted:
            d["partially_extracted"] = True
        return d


@dataclass(frozen=True)
class QualityIssue:
    severity: Severity
    description: str
    category: str = ""
    location: str = ""
    impact: str = ""
    recommendation: str = ""
    page_number: Optional[int] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "severity": self.severity.value,
            "category": self.category,
            "description": self.description,
            "location": self.location,
            "impact": self.impact,
            "recommendation": self.recommendation,
            "page_number": self.page_number,
            "confidence": self.confidence,
        })


# =============================================================================
# Quality analysis
# =============================================================================

@dataclass
class Completeness:
    overall_score: float = 0.0
    missing_sheets: List[str] = field(default_factory=list)
    missing_dimensions: List[str] = field(default_factory=list)
    missing_details: List[str] = field(default_factory=list)
    incomplete_sections: List[str] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "missing_sheets": list(self.missing_sheets),
            "missing_dimensions": list(self.missing_dimensions),
            "missing_details": list(self.missing_details),
            "incomplete_sections": list(self.incomplete_sections),
            "notes": self.notes,
        }


@dataclass
class Consistency:
    scale_mismatches: List[str] = field(default_factory=list)
    unit_conflicts: List[str] = field(default_factory=list)
    dimension_contradictions: List[str] = field(default_factory=list)
    schedule_vs_elevation_conflicts: List[str] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scale_mismatches": list(self.scale_mismatches),
            "unit_conflicts": list(self.unit_conflicts),
            "dimension_contradictions": list(self.dimension_contradictions),
            "schedule_vs_elevation_conflicts": list(self.schedule_vs_elevation_conflicts),
            "notes": self.notes,
        }


@dataclass
class RiskFlag:
    level: str = "medium"
    category: str = ""
    description: str = ""
    location: str = ""
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "category": self.category,
            "description": self.description,
            "location": self.location,
            "recommendation": self.recommendation,
        }


@dataclass
class AuditTrail:
    pages_analyzed: List[int] = field(default_factory=list)
    chunks_processed: int = 0
    coverage_percentage: float = 0.0
    assumptions_made: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages_analyzed": list(self.pages_analyzed),
            "chunks_processed": self.chunks_processed,
            "coverage_percentage": self.coverage_percentage,
            "assumptions_made": [dict(a) for a in self.assumptions_made],
        }


@dataclass
class QualityAnalysis:
    completeness: Completeness = field(default_factory=Completeness)
    consistency: Consistency = field(default_factory=Consistency)
    risk_flags: List[RiskFlag] = field(default_factory=list)
    audit_trail: AuditTrail = field(default_factory=AuditTrail)

    def composite_score(self) -> float:
        """Ranking used when several providers supplied a quality analysis."""
        return (
            self.completeness.overall_score
            + self.audit_trail.coverage_percentage / 100.0
            + min(len(self.risk_flags), 10) / 10.0
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completeness": self.completeness.to_dict(),
            "consistency": self.consistency.to_dict(),
            "risk_flags": [r.to_dict() for r in self.risk_flags],
            "audit_trail": self.audit_trail.to_dict(),
        }


# =============================================================================
# Alignment
# =============================================================================

@dataclass(frozen=True)
class AlignedResponse:
    """A provider's output forced into the strict item/issue schema."""
    provider_id: str
    items: List[TakeoffItem] = field(default_factory=list)
    issues: List[QualityIssue] = field(default_factory=list)
    quality_analysis: Optional[QualityAnalysis] = None
    schema_valid: bool = True
    repair_applied: bool = False
    repaired_items: int = 0
    payload_repaired: bool = False
    partial_extraction: bool = False
    validation_errors: List[str] = field(default_factory=list)
    repair_notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "items": [i.to_dict() for i in self.items],
            "issues": [i.to_dict() for i in self.issues],
            "quality_analysis": self.quality_analysis.to_dict() if self.quality_analysis else None,
            "schema_valid": self.schema_valid,
            "repair_applied": self.repair_applied,
            "repaired_items": self.repaired_items,
            "payload_repaired": self.payload_repaired,
            "partial_extraction": self.partial_extraction,
            "validation_errors": list(self.validation_errors),
            "repair_notes": list(self.repair_notes),
        }


# =============================================================================
# Disagreement and adjudication
# =============================================================================

def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass(frozen=True)
class Disagreement:
    """A dimension on which providers reporting the same item diverge."""
    type: DisagreementType
    item_key: str
    description: str
    providers: List[str]
    values: Dict[str, Any]
    tolerance_violated: bool = False
    evidence_strength: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "item_key": self.item_key,
            "description": self.description,
            "providers": list(self.providers),
            "values": {k: _plain(v) for k, v in self.values.items()},
            "tolerance_violated": self.tolerance_violated,
            "evidence_strength": dict(self.evidence_strength),
        }


@dataclass(frozen=True)
class Citation:
    sheet_id: Optional[str] = None
    page_number: Optional[int] = None
    callout: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "sheet_id": self.sheet_id,
            "page_number": self.page_number,
            "callout": self.callout,
            "detail": self.detail,
        })


@dataclass(frozen=True)
class ModelRationale:
    """Why one provider reported the value it did for a disputed item."""
    provider_id: str
    item_key: str
    value: Any
    rationale: str
    citations: List[Citation] = field(default_factory=list)
    evidence_score: float = 0.5
    consistency_score: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "item_key": self.item_key,
            "value": _plain(self.value),
            "rationale": self.rationale,
            "citations": [c.to_dict() for c in self.citations],
            "evidence_score": self.evidence_score,
            "consistency_score": self.consistency_score,
        }


@dataclass(frozen=True)
class AdjudicationResult:
    disagreement: Disagreement
    winner_provider: str
    winner_value: Any
    confidence: float
    reasoning: str
    evidence_summary: str
    all_rationales: List[ModelRationale] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "winner_provider": self.winner_provider,
            "winner_value": _plain(self.winner_value),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "evidence_summary": self.evidence_summary,
            "all_rationales": [r.to_dict() for r in self.all_rationales],
        }


# =============================================================================
# Reconciled output
# =============================================================================

@dataclass
class ReconciledItem:
    item: TakeoffItem
    item_key: str
    adjudicated_by: str
    confidence: float
    risk_flag: bool = False
    disagreements: List[Disagreement] = field(default_factory=list)
    unresolved_conflicts: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = self.item.to_dict()
        d.update({
            "item_key": self.item_key,
            "adjudicated_by": self.adjudicated_by,
            "confidence": self.confidence,
            "risk_flag": self.risk_flag,
            "disagreements": [dis.to_dict() for dis in self.disagreements],
            "unresolved_conflicts": list(self.unresolved_conflicts),
            "sources": list(self.sources),
        })
        return d


@dataclass
class TakeoffMetadata:
    confidence_overall: float = 0.0
    total_items: int = 0
    total_disagreements: int = 0
    resolved_disagreements: int = 0
    unresolved_disagreements: int = 0
    providers_used: List[str] = field(default_factory=list)
    failed_providers: List[str] = field(default_factory=list)
    consensus_count: int = 0
    single_source: bool = False
    fusion_policy: str = FusionPolicy.UNION.value
    processing_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence_overall": self.confidence_overall,
            "total_items": self.total_items,
            "total_disagreements": self.total_disagreements,
            "resolved_disagreements": self.resolved_disagreements,
            "unresolved_disagreements": self.unresolved_disagreements,
            "providers_used": list(self.providers_used),
            "failed_providers": list(self.failed_providers),
            "consensus_count": self.consensus_count,
            "single_source": self.single_source,
            "fusion_policy": self.fusion_policy,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class FinalReconciledTakeoff:
    metadata: TakeoffMetadata
    items: List[ReconciledItem] = field(default_factory=list)
    quality_analysis: QualityAnalysis = field(default_factory=QualityAnalysis)
    resolved: List[AdjudicationResult] = field(default_factory=list)
    unresolved: List[Disagreement] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "items": [i.to_dict() for i in self.items],
            "quality_analysis": self.quality_analysis.to_dict(),
            "conflicts": {
                "resolved": [
                    {"disagreement": r.disagreement.to_dict(), "resolution": r.to_dict()}
                    for r in self.resolved
                ],
                "unresolved": [d.to_dict() for d in self.unresolved],
            },
        }
