"""
Schema Aligner

Turns each provider's raw reply into an AlignedResponse with strictly typed
takeoff items, quality issues and an optional quality analysis. Parsing goes
through the ordered repair passes; when those are exhausted the aligner falls
back to partial extraction. Alignment never fails: the worst case is an
empty, ``schema_valid=False`` response.

Usage:
    from consensus.aligner import align_response

    aligned = align_response(provider_response, config)
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from core.constants import PARTIAL_CONFIDENCE_CAP
from core.engine_config import EngineConfig, default_engine_config
from core.errors import SchemaInvalid
from core.logging_config import ProviderLoggerAdapter
from .repair import extract_partial_payload, parse_with_repair
from .schema import (
    AlignedResponse,
    AuditTrail,
    BoundingBox,
    Category,
    Completeness,
    Consistency,
    ProviderResponse,
    QualityAnalysis,
    QualityIssue,
    RiskFlag,
    Severity,
    TakeoffItem,
    Unit,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Alias tables
# =============================================================================

UNIT_ALIASES = {
    "LF": Unit.LF, "LIN FT": Unit.LF, "LINEAR FT": Unit.LF, "LINEAR FEET": Unit.LF,
    "LINEAR FOOT": Unit.LF, "FT": Unit.LF, "FEET": Unit.LF, "FOOT": Unit.LF,
    "SF": Unit.SF, "SQ FT": Unit.SF, "SQFT": Unit.SF, "SQUARE FEET": Unit.SF,
    "SQUARE FOOT": Unit.SF, "FT2": Unit.SF,
    "CF": Unit.CF, "CU FT": Unit.CF, "CUFT": Unit.CF, "CUBIC FEET": Unit.CF, "FT3": Unit.CF,
    "CY": Unit.CY, "CU YD": Unit.CY, "CUYD": Unit.CY, "CUBIC YARDS": Unit.CY,
    "CUBIC YARD": Unit.CY, "YD3": Unit.CY,
    "EA": Unit.EA, "EACH": Unit.EA, "UNIT": Unit.EA, "UNITS": Unit.EA, "PC": Unit.EA,
    "PCS": Unit.EA, "COUNT": Unit.EA, "NO": Unit.EA,
    "SQ": Unit.SQ, "SQUARE": Unit.SQ, "SQUARES": Unit.SQ, "ROOFING SQUARES": Unit.SQ,
}

CATEGORY_ALIASES = {
    "structural": Category.STRUCTURAL, "structure": Category.STRUCTURAL,
    "concrete": Category.STRUCTURAL, "foundation": Category.STRUCTURAL,
    "framing": Category.STRUCTURAL, "steel": Category.STRUCTURAL,
    "masonry": Category.STRUCTURAL,
    "exterior": Category.EXTERIOR, "envelope": Category.EXTERIOR, "roof": Category.EXTERIOR,
    "roofing": Category.EXTERIOR, "siding": Category.EXTERIOR, "facade": Category.EXTERIOR,
    "interior": Category.INTERIOR, "drywall": Category.INTERIOR,
    "partitions": Category.INTERIOR, "doors": Category.INTERIOR,
    "mep": Category.MEP, "mechanical": Category.MEP, "electrical": Category.MEP,
    "plumbing": Category.MEP, "hvac": Category.MEP, "fire protection": Category.MEP,
    "finishes": Category.FINISHES, "finish": Category.FINISHES, "paint": Category.FINISHES,
    "painting": Category.FINISHES, "flooring": Category.FINISHES, "ceilings": Category.FINISHES,
    "other": Category.OTHER, "misc": Category.OTHER, "miscellaneous": Category.OTHER,
}

SEVERITY_ALIASES = {
    "critical": Severity.CRITICAL, "high": Severity.CRITICAL, "severe": Severity.CRITICAL,
    "error": Severity.CRITICAL,
    "warning": Severity.WARNING, "warn": Severity.WARNING, "medium": Severity.WARNING,
    "moderate": Severity.WARNING,
    "info": Severity.INFO, "low": Severity.INFO, "minor": Severity.INFO, "note": Severity.INFO,
}

# camelCase / vendor spellings -> canonical snake_case
KEY_ALIASES = {
    "unitCost": "unit_cost", "unit_price": "unit_cost", "unitPrice": "unit_cost",
    "costCode": "cost_code", "costCodeDescription": "cost_code_description",
    "boundingBox": "bounding_box", "bbox": "bounding_box",
    "item_name": "name", "itemName": "name", "item": "name",
    "qty": "quantity", "subCategory": "subcategory",
    "pageNumber": "page_number", "page": "page_number",
    "qualityAnalysis": "quality_analysis", "takeoffItems": "items",
    "takeoff_items": "items", "takeoff": "items",
    "qualityIssues": "issues", "quality_issues": "issues",
}

_NUMBER = re.compile(r'-?\d+(?:\.\d+)?')


# =============================================================================
# Coercion helpers
# =============================================================================

def canonical_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Rename alias keys; a canonical key already present wins over its alias."""
    out = {}
    for key, value in data.items():
        canonical = KEY_ALIASES.get(key, key)
        if canonical in out and canonical != key:
            continue
        out[canonical] = value
    return out


def to_number(value: Any) -> Optional[float]:
    """Parse 12, "12", "1,200", "12 LF", "$4.50"; None when no number is present."""
    number = None
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        m = _NUMBER.search(value.replace(',', ''))
        if m:
            number = float(m.group(0))
    # Non-finite values (NaN, Infinity) count as missing
    if number is None or not math.isfinite(number):
        return None
    return number


def parse_unit(value: Any) -> Optional[Unit]:
    if value is None:
        return None
    key = re.sub(r'\s+', ' ', str(value).upper().replace('.', ' ')).strip()
    return UNIT_ALIASES.get(key) or UNIT_ALIASES.get(key.replace(' ', ''))


def parse_category(value: Any) -> Optional[Category]:
    if value is None:
        return None
    key = re.sub(r'[\s_]+', ' ', str(value).lower()).strip()
    return CATEGORY_ALIASES.get(key)


def parse_severity(value: Any) -> Optional[Severity]:
    if value is None:
        return None
    return SEVERITY_ALIASES.get(str(value).strip().lower())


def parse_confidence(value: Any) -> Optional[float]:
    """0..1, percentages (85 -> 0.85) scaled down, anything else clamped."""
    number = to_number(value)
    if number is None:
        return None
    if 1.0 < number <= 100.0:
        number = number / 100.0
    return min(1.0, max(0.0, number))


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    return str(value).strip()


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [_text(v) for v in value if v is not None]
    return [_text(value)]


def parse_bounding_box(value: Any) -> Optional[BoundingBox]:
    if not isinstance(value, dict):
        return None
    data = canonical_keys(value)
    x, y = to_number(data.get("x")), to_number(data.get("y"))
    if x is None or y is None:
        return None
    page = to_number(data.get("page_number"))
    return BoundingBox(
        page=int(page) if page is not None else 0,
        x=x,
        y=y,
        width=to_number(data.get("width")) or 0.0,
        height=to_number(data.get("height")) or 0.0,
    )


# =============================================================================
# Entity coercion
# =============================================================================

def coerce_item(raw: Dict[str, Any], index: int, partial: bool = False,
                confidence_cap: float = PARTIAL_CONFIDENCE_CAP) -> Tuple[Optional[TakeoffItem], List[str]]:
    """
    Build a TakeoffItem from a loosely shaped dict.

    Args:
        raw: Provider item dict
        index: 1-based position, used for the default name
        partial: Item was salvaged by partial extraction

    Returns:
        (item, fixes) where fixes names every field that was defaulted or
        coerced. item is None for objects carrying no item data at all.
    """
    data = canonical_keys(raw)
    if not any(data.get(k) not in (None, "") for k in ("name", "description", "quantity")):
        return None, []

    fixes: List[str] = []

    name = _text(data.get("name"))
    if not name:
        name = f"Item {index}"
        fixes.append("name")

    quantity = to_number(data.get("quantity"))
    if quantity is None:
        quantity = 0.0
        fixes.append("quantity")
    else:
        if not isinstance(data.get("quantity"), (int, float)):
            fixes.append("quantity")
        if quantity < 0:
            quantity = 0.0
            fixes.append("quantity<0")

    unit = parse_unit(data.get("unit"))
    if unit is None:
        unit = Unit.EA
        fixes.append("unit")
    elif data.get("unit") != unit.value:
        fixes.append("unit")

    category = parse_category(data.get("category"))
    if category is None:
        category = Category.OTHER
        fixes.append("category")
    elif data.get("category") != category.value:
        fixes.append("category")

    unit_cost = to_number(data.get("unit_cost"))
    if unit_cost is None or unit_cost < 0:
        if data.get("unit_cost") not in (None, ""):
            fixes.append("unit_cost")
        unit_cost = 0.0

    confidence = parse_confidence(data.get("confidence"))
    if data.get("confidence") is not None and confidence != data.get("confidence"):
        fixes.append("confidence")
    if partial:
        confidence = min(confidence if confidence is not None else confidence_cap, confidence_cap)

    bounding_box = parse_bounding_box(data.get("bounding_box"))
    if data.get("bounding_box") is not None and bounding_box is None:
        fixes.append("bounding_box")

    item = TakeoffItem(
        name=name,
        quantity=quantity,
        unit=unit,
        category=category,
        description=_text(data.get("description")),
        unit_cost=unit_cost,
        location=_text(data.get("location")),
        subcategory=_text(data.get("subcategory")),
        cost_code=_text(data.get("cost_code")),
        cost_code_description=_text(data.get("cost_code_description")),
        notes=_text(data.get("notes")),
        dimensions=_text(data.get("dimensions")),
        bounding_box=bounding_box,
        confidence=confidence,
        partially_extracted=partial,
    )
    return item, fixes


def coerce_issue(raw: Dict[str, Any]) -> Tuple[Optional[QualityIssue], List[str]]:
    data = canonical_keys(raw)
    description = _text(data.get("description"))
    if not description:
        return None, []
    fixes: List[str] = []
    severity = parse_severity(data.get("severity"))
    if severity is None:
        severity = Severity.INFO
        fixes.append("severity")
    page = to_number(data.get("page_number"))
    return QualityIssue(
        severity=severity,
        description=description,
        category=_text(data.get("category")),
        location=_text(data.get("location")),
        impact=_text(data.get("impact")),
        recommendation=_text(data.get("recommendation")),
        page_number=int(page) if page is not None else None,
        confidence=parse_confidence(data.get("confidence")),
    ), fixes


def coerce_quality_analysis(raw: Any) -> Optional[QualityAnalysis]:
    if not isinstance(raw, dict):
        return None
    comp = raw.get("completeness") if isinstance(raw.get("completeness"), dict) else {}
    cons = raw.get("consistency") if isinstance(raw.get("consistency"), dict) else {}
    audit = raw.get("audit_trail") or raw.get("auditTrail") or {}
    if not isinstance(audit, dict):
        audit = {}

    risk_flags = []
    for flag in _list(raw.get("risk_flags") or raw.get("riskFlags")):
        if isinstance(flag, dict):
            risk_flags.append(RiskFlag(
                level=_text(flag.get("level")).lower() or "medium",
                category=_text(flag.get("category")),
                description=_text(flag.get("description")),
                location=_text(flag.get("location")),
                recommendation=_text(flag.get("recommendation")),
            ))

    pages = [int(p) for p in (to_number(v) for v in _list(audit.get("pages_analyzed"))) if p is not None]
    assumptions = [
        {k: _text(v) for k, v in a.items()}
        for a in _list(audit.get("assumptions_made")) if isinstance(a, dict)
    ]

    return QualityAnalysis(
        completeness=Completeness(
            overall_score=parse_confidence(comp.get("overall_score")) or 0.0,
            missing_sheets=_str_list(comp.get("missing_sheets")),
            missing_dimensions=_str_list(comp.get("missing_dimensions")),
            missing_details=_str_list(comp.get("missing_details")),
            incomplete_sections=_str_list(comp.get("incomplete_sections")),
            notes=_text(comp.get("notes")),
        ),
        consistency=Consistency(
            scale_mismatches=_str_list(cons.get("scale_mismatches")),
            unit_conflicts=_str_list(cons.get("unit_conflicts")),
            dimension_contradictions=_str_list(cons.get("dimension_contradictions")),
            schedule_vs_elevation_conflicts=_str_list(cons.get("schedule_vs_elevation_conflicts")),
            notes=_text(cons.get("notes")),
        ),
        risk_flags=risk_flags,
        audit_trail=AuditTrail(
            pages_analyzed=pages,
            chunks_processed=int(to_number(audit.get("chunks_processed")) or 0),
            coverage_percentage=min(100.0, max(0.0, to_number(audit.get("coverage_percentage")) or 0.0)),
            assumptions_made=assumptions,
        ),
    )


# =============================================================================
# Alignment
# =============================================================================

def _split_payload(parsed: Any) -> Tuple[Any, Any, Any, List[str]]:
    """(items, issues, quality_analysis, errors) from a parsed payload."""
    if isinstance(parsed, list):
        return parsed, [], None, []
    data = canonical_keys(parsed)
    errors = []
    items = data.get("items")
    if items is None:
        errors.append("missing items array")
        items = []
    elif not isinstance(items, list):
        errors.append(f"items is {type(items).__name__}, expected array")
        items = []
    issues = data.get("issues")
    if not isinstance(issues, list):
        issues = []
    return items, issues, data.get("quality_analysis"), errors


def align_response(response: ProviderResponse, config: Optional[EngineConfig] = None) -> AlignedResponse:
    """
    Align one provider response to the strict schema.

    Args:
        response: Successful ProviderResponse from dispatch
        config: Engine configuration (repair budget, partial extraction limits)

    Returns:
        AlignedResponse (never raises)
    """
    config = config or default_engine_config()
    log = ProviderLoggerAdapter(logger, {"provider": response.provider_id, "stage": "align"})

    repair_notes: List[str] = []
    validation_errors: List[str] = []
    partial = False
    payload_repaired = False

    try:
        outcome = parse_with_repair(response.raw_text, budget=config.repair_budget)
        raw_items, raw_issues, raw_qa, errors = _split_payload(outcome.parsed)
        validation_errors.extend(errors)
        if outcome.changed:
            payload_repaired = True
            repair_notes.append(f"repair passes: {outcome.reason}")
    except SchemaInvalid as e:
        log.warning(f"Payload unparseable after repair, falling back to partial extraction: {e}")
        validation_errors.append(str(e))
        validation_errors.extend(e.reasons)
        salvaged = extract_partial_payload(response.raw_text, max_items=config.max_partial_items)
        raw_items, raw_issues, raw_qa = salvaged.items, salvaged.issues, salvaged.quality_analysis
        repair_notes.extend(salvaged.notes)
        partial = True

    items: List[TakeoffItem] = []
    repaired_items = 0
    for raw in raw_items:
        if not isinstance(raw, dict):
            validation_errors.append(f"skipped non-object item: {str(raw)[:40]}")
            continue
        item, fixes = coerce_item(raw, len(items) + 1, partial=partial,
                                  confidence_cap=config.partial_confidence_cap)
        if item is None:
            continue
        if fixes:
            repaired_items += 1
            log.debug(f"Item '{item.name}' coerced: {', '.join(fixes)}")
        items.append(item)

    issues: List[QualityIssue] = []
    for raw in raw_issues:
        if isinstance(raw, dict):
            issue, _fixes = coerce_issue(raw)
            if issue is not None:
                issues.append(issue)

    if repaired_items:
        repair_notes.append(f"{repaired_items} item(s) had defaulted or coerced fields")

    aligned = AlignedResponse(
        provider_id=response.provider_id,
        items=items,
        issues=issues,
        quality_analysis=coerce_quality_analysis(raw_qa),
        schema_valid=not partial and not validation_errors,
        repair_applied=payload_repaired or partial or repaired_items > 0,
        repaired_items=repaired_items,
        payload_repaired=payload_repaired or partial,
        partial_extraction=partial,
        validation_errors=validation_errors,
        repair_notes=repair_notes,
    )
    log.info(
        f"Aligned {len(items)} items, {len(issues)} issues"
        f"{' (repaired)' if aligned.repair_applied else ''}"
        f"{' (partial)' if partial else ''}"
    )
    return aligned


def align_all(responses: List[ProviderResponse], config: Optional[EngineConfig] = None) -> List[AlignedResponse]:
    """Align every successful response, preserving dispatch order."""
    return [align_response(r, config) for r in responses if r.succeeded]
