"""
Tests for consensus.rationale and consensus.adjudicator.

Validates:
- Citations from bounding boxes, sheet index and page references
- Evidence and consistency scoring
- Disagreements are enriched without touching items
- Winner selection by score, ties to the first-dispatched provider
- Disagreements without rationales stay unresolved
"""

import pytest

from core.errors import AdjudicationIncomplete
from consensus.adjudicator import adjudicate, adjudicate_all, rationale_score
from consensus.disagreement import detect_disagreements
from consensus.matching import group_items
from consensus.rationale import (
    build_all_rationales,
    build_rationale,
    collect_citations,
    consistency_score,
    evidence_score,
)
from consensus.schema import (
    AlignedResponse,
    BoundingBox,
    Category,
    Disagreement,
    DisagreementType,
    ModelRationale,
    Unit,
)


def _pipeline(aligned, inputs):
    index = group_items(aligned)
    pairs = build_all_rationales(detect_disagreements(index), index, inputs)
    return pairs, adjudicate_all(pairs)


def _rationale(pid, evidence=0.5, consistency=1.0):
    return ModelRationale(provider_id=pid, item_key="drywall|interior|", value=None,
                          rationale=f"{pid} says so", evidence_score=evidence,
                          consistency_score=consistency)


def _disagreement(providers=("x", "y")):
    return Disagreement(
        type=DisagreementType.QUANTITY,
        item_key="drywall|interior|",
        description="Quantity mismatch",
        providers=list(providers),
        values={p: 500 + 20 * i for i, p in enumerate(providers)},
        tolerance_violated=True,
    )


# ── Citations and scoring ────────────────────────────────────────────

class TestCitations:

    def test_location_names_sheet(self, make_item, sample_input):
        citations = collect_citations(make_item(location="A-101 east wing"), sample_input)
        assert [(c.sheet_id, c.page_number) for c in citations] == [("A-101", 3)]

    def test_location_names_sheet_title(self, make_item, sample_input):
        citations = collect_citations(make_item(location="Foundation plan, grid B"), sample_input)
        assert [c.sheet_id for c in citations] == ["S-201"]

    def test_sheet_and_page_in_notes(self, make_item, sample_input):
        item = make_item(notes="Per S-201 footing schedule, page 7. Also see p. 9")
        citations = collect_citations(item, sample_input)
        assert citations[0].sheet_id == "S-201"
        assert citations[0].detail == "referenced in item text"
        assert [c.page_number for c in citations] == [7, 9]

    def test_bounding_box_first(self, make_item, sample_input):
        item = make_item(location="A-101", bounding_box=BoundingBox(page=3, x=0.25, y=0.5))
        citations = collect_citations(item, sample_input)
        assert citations[0].callout == "bbox(0.25,0.50)"
        assert citations[0].page_number == 3

    def test_no_evidence(self, make_item, sample_input):
        assert collect_citations(make_item(), sample_input) == []


class TestScores:

    def test_base_evidence(self, make_item):
        assert evidence_score(make_item(), []) == 0.5

    def test_full_evidence_capped(self, make_item, sample_input):
        item = make_item(location="A-101", dimensions="20' x 25'",
                         bounding_box=BoundingBox(page=3, x=0.1, y=0.1),
                         notes="Measured along gridlines 1-4 on first floor")
        assert evidence_score(item, collect_citations(item, sample_input)) == 1.0

    def test_counting_structural_work_is_inconsistent(self, make_item):
        assert consistency_score(make_item(unit=Unit.EA, category=Category.STRUCTURAL)) == 0.9
        assert consistency_score(make_item(unit=Unit.EA, category=Category.INTERIOR)) == 1.0

    def test_rationale_text(self, make_item, sample_input):
        r = build_rationale(make_item(dimensions="20' x 25'"), "claude", "drywall|interior|",
                            500.0, sample_input)
        assert r.rationale.startswith('claude identified "Drywall" with quantity 500 SF.')
        assert "Based on dimensions: 20' x 25'." in r.rationale
        assert r.rationale.endswith("Evidence strength: 60%, Consistency: 100%.")

    def test_rationale_score(self):
        assert rationale_score(_rationale("x", 0.5, 1.0)) == pytest.approx(0.7)
        assert rationale_score(_rationale("x", 1.0, 0.9)) == pytest.approx(0.96)


# ── Adjudication ─────────────────────────────────────────────────────

class TestAdjudicate:

    def test_higher_score_wins(self):
        result = adjudicate(_disagreement(), [_rationale("x", 0.5), _rationale("y", 0.7)])
        assert result.winner_provider == "y"
        assert result.winner_value == 520
        assert result.confidence == pytest.approx(0.82)
        assert result.reasoning == "y says so"
        assert result.evidence_summary == "Winner: y (evidence: 70%, consistency: 100%)"

    def test_tie_goes_to_first_dispatched(self):
        result = adjudicate(_disagreement(("y", "x")), [_rationale("x"), _rationale("y")])
        assert result.winner_provider == "y"

    def test_winner_is_a_contributor(self):
        outsider = _rationale("z", evidence=1.0)
        result = adjudicate(_disagreement(), [outsider, _rationale("x"), _rationale("y")])
        assert result.winner_provider in ("x", "y")
        assert len(result.all_rationales) == 3

    def test_no_rationale_raises(self):
        with pytest.raises(AdjudicationIncomplete) as info:
            adjudicate(_disagreement(), [_rationale("z")])
        assert info.value.item_key == "drywall|interior|"

    def test_adjudicate_all_keeps_unresolved(self):
        outcome = adjudicate_all([
            (_disagreement(), [_rationale("x"), _rationale("y", 0.9)]),
            (_disagreement(("a", "b")), []),
        ])
        assert [r.winner_provider for r in outcome.resolved] == ["y"]
        assert len(outcome.unresolved) == 1
        assert outcome.unresolved[0].providers == ["a", "b"]


class TestEvidenceDecides:
    """The better-evidenced provider wins regardless of dispatch order."""

    @pytest.mark.parametrize("order", [("x", "y"), ("y", "x")])
    def test_drywall_winner(self, make_item, sample_input, order):
        items = {
            "x": make_item(category=Category.FINISHES, quantity=500),
            "y": make_item(category=Category.FINISHES, quantity=520, dimensions="2 walls x 26' x 10'"),
        }
        aligned = [AlignedResponse(pid, items=[items[pid]]) for pid in order]
        pairs, outcome = _pipeline(aligned, sample_input)

        enriched, rationales = pairs[0]
        assert enriched.evidence_strength == {"x": 0.5, "y": 0.6}
        assert [r.provider_id for r in rationales] == list(order)
        assert [r.winner_provider for r in outcome.resolved] == ["y"]
        assert outcome.resolved[0].winner_value == 520
        assert outcome.resolved[0].disagreement is enriched

    def test_items_untouched(self, make_item, sample_input):
        x_item = make_item(quantity=500)
        aligned = [AlignedResponse("x", items=[x_item]),
                   AlignedResponse("y", items=[make_item(quantity=520)])]
        _pipeline(aligned, sample_input)
        assert aligned[0].items[0] is x_item
        assert x_item.quantity == 500
