"""
Rationale Builder

For every disagreement, explains each contributing provider's position:
which citations back it (bounding box, sheet index entries named in the
location, sheet ids or page references in the text), how strong that
evidence is, and whether the item is internally consistent. The returned
Disagreement is a new value with ``evidence_strength`` filled in; the
TakeoffItems themselves are never touched.
"""

import dataclasses
import logging
import re
from typing import List, Optional, Tuple

from .matching import ItemIndex
from .schema import (
    Category,
    Citation,
    Disagreement,
    ModelRationale,
    NormalizedInput,
    TakeoffItem,
    Unit,
)

logger = logging.getLogger(__name__)

BASE_EVIDENCE = 0.5
CITATION_BONUS = 0.2
BBOX_BONUS = 0.1
DIMENSIONS_BONUS = 0.1
NOTES_BONUS = 0.1
NOTES_MIN_CHARS = 20

IMPLAUSIBLE_UNIT_PENALTY = 0.1
# Structural and exterior work is measured by length, area or volume, not counted
_COUNT_IMPLAUSIBLE = {Category.STRUCTURAL, Category.EXTERIOR}

_PAGE_REF = re.compile(r'\b(?:page|pg|p\.)\s*(\d{1,4})\b', re.IGNORECASE)


def _sheet_citations(item: TakeoffItem, inputs: NormalizedInput) -> List[Citation]:
    citations: List[Citation] = []
    location = item.location.lower()
    text = f"{item.description} {item.notes}"

    for sheet in inputs.sheet_index:
        sid = sheet.sheet_id.lower()
        title = sheet.title.lower()
        if location and ((sid and sid in location) or (title and title in location)):
            citations.append(Citation(sheet_id=sheet.sheet_id, page_number=sheet.page_no))
        elif sid and re.search(rf'(?<![\w-]){re.escape(sheet.sheet_id)}(?![\w-])', text, re.IGNORECASE):
            citations.append(Citation(sheet_id=sheet.sheet_id, page_number=sheet.page_no,
                                      detail="referenced in item text"))

    for m in _PAGE_REF.finditer(text):
        page = int(m.group(1))
        if not any(c.page_number == page for c in citations):
            citations.append(Citation(page_number=page, detail=m.group(0)))
    return citations


def collect_citations(item: TakeoffItem, inputs: NormalizedInput) -> List[Citation]:
    """Citations for an item, bounding box first."""
    citations: List[Citation] = []
    if item.bounding_box is not None:
        bbox = item.bounding_box
        citations.append(Citation(
            page_number=bbox.page,
            callout=f"bbox({bbox.x:.2f},{bbox.y:.2f})",
        ))
    citations.extend(_sheet_citations(item, inputs))
    return citations


def evidence_score(item: TakeoffItem, citations: List[Citation]) -> float:
    score = BASE_EVIDENCE
    if citations:
        score += CITATION_BONUS
    if item.bounding_box is not None:
        score += BBOX_BONUS
    if item.dimensions:
        score += DIMENSIONS_BONUS
    if len(item.notes) > NOTES_MIN_CHARS:
        score += NOTES_BONUS
    return round(min(score, 1.0), 4)


def consistency_score(item: TakeoffItem) -> float:
    score = 1.0
    if item.unit is Unit.EA and item.category in _COUNT_IMPLAUSIBLE:
        score -= IMPLAUSIBLE_UNIT_PENALTY
    return round(max(score, 0.0), 4)


def _describe_citation(c: Citation) -> str:
    if c.sheet_id:
        return c.sheet_id
    return f"page {c.page_number}"


def build_rationale(item: TakeoffItem, provider_id: str, item_key: str,
                    value, inputs: NormalizedInput) -> ModelRationale:
    """Explain one provider's position on a disputed item."""
    citations = collect_citations(item, inputs)
    evidence = evidence_score(item, citations)
    consistency = consistency_score(item)

    text = f'{provider_id} identified "{item.name}" with quantity {item.quantity:g} {item.unit.value}. '
    if citations:
        text += f"Referenced {len(citations)} source(s): {', '.join(_describe_citation(c) for c in citations)}. "
    if item.dimensions:
        text += f"Based on dimensions: {item.dimensions}. "
    if item.notes:
        text += f"Notes: {item.notes[:100]}. "
    text += f"Evidence strength: {evidence:.0%}, Consistency: {consistency:.0%}."

    return ModelRationale(
        provider_id=provider_id,
        item_key=item_key,
        value=value,
        rationale=text,
        citations=citations,
        evidence_score=evidence,
        consistency_score=consistency,
    )


def build_rationales(disagreement: Disagreement, index: ItemIndex,
                     inputs: NormalizedInput) -> Tuple[Disagreement, List[ModelRationale]]:
    """
    Rationales for every contributing provider, in the disagreement's provider order.

    Returns:
        (new Disagreement with evidence_strength filled, rationales)
    """
    group = index.groups.get(disagreement.item_key)
    items = group.first_by_provider() if group else {}

    rationales: List[ModelRationale] = []
    for pid in disagreement.providers:
        item: Optional[TakeoffItem] = items.get(pid)
        if item is None:
            continue
        rationales.append(build_rationale(
            item, pid, disagreement.item_key, disagreement.values.get(pid), inputs,
        ))

    enriched = dataclasses.replace(
        disagreement,
        evidence_strength={r.provider_id: r.evidence_score for r in rationales},
    )
    return enriched, rationales


def build_all_rationales(disagreements: List[Disagreement], index: ItemIndex,
                         inputs: NormalizedInput) -> List[Tuple[Disagreement, List[ModelRationale]]]:
    built = [build_rationales(d, index, inputs) for d in disagreements]
    logger.debug(f"Built rationales for {len(built)} disagreement(s)")
    return built
