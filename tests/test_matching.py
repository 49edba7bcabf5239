"""
Tests for consensus.matching: item keys, similarity and cross-provider grouping.
"""

from dataclasses import replace

import pytest

from core.engine_config import default_engine_config
from consensus.disagreement import detect_disagreements
from consensus.matching import (
    group_items,
    item_key,
    items_match,
    levenshtein,
    normalize_text,
    similarity,
)
from consensus.schema import AlignedResponse, Category, Unit


class TestNormalization:

    def test_normalize_text(self):
        assert normalize_text('5/8" Gyp. Board') == "58 gyp board"
        assert normalize_text("  2-HR   Wall ") == "2-hr wall"
        assert normalize_text(None) == ""

    def test_item_key(self, make_item):
        assert item_key(make_item()) == "drywall|interior|"
        assert item_key(make_item(name="Drywall, Type X", location="Level 2")) == \
            "drywall type x|interior|level 2"


class TestSimilarity:

    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    def test_similarity(self):
        assert similarity("Drywall", "Dry wall") == pytest.approx(7 / 8)
        assert similarity("Drywall", "DRYWALL.") == 1.0
        assert similarity("", "") == 1.0
        assert similarity("Drywall", "") == 0.0

    def test_items_match_requires_category(self, make_item):
        assert not items_match(make_item(), make_item(category=Category.FINISHES))

    def test_category_check_can_be_disabled(self, make_item, config):
        relaxed = replace(config, require_same_category=False)
        assert items_match(make_item(), make_item(category=Category.FINISHES), relaxed)

    def test_items_match_by_description(self, make_item):
        a = make_item(name="GWB", description="5/8 type X gypsum board")
        b = make_item(name="Gypsum wallboard", description="5/8 type X gypsum board")
        assert items_match(a, b)

    def test_locations_must_agree_when_both_given(self, make_item):
        assert not items_match(make_item(location="Level 1"), make_item(location="Roof"))
        assert items_match(make_item(location="Level 1"), make_item())


class TestGroupItems:

    def test_same_item_across_providers(self, make_item):
        aligned = [
            AlignedResponse("x", items=[make_item(quantity=500)]),
            AlignedResponse("y", items=[make_item(name="Dry wall", quantity=520)]),
        ]
        index = group_items(aligned)
        assert list(index.groups) == ["drywall|interior|"]
        group = index.groups["drywall|interior|"]
        assert group.providers == ["x", "y"]
        assert index.key_for("y", 0) == "drywall|interior|"
        assert len(index.shared_groups()) == 1

    def test_first_seen_order(self, make_item):
        aligned = [
            AlignedResponse("x", items=[make_item(name="Footing", unit=Unit.CY,
                                                  category=Category.STRUCTURAL)]),
            AlignedResponse("y", items=[make_item(), make_item(name="Footing", unit=Unit.CY,
                                                               category=Category.STRUCTURAL)]),
        ]
        index = group_items(aligned)
        assert list(index.groups) == ["footing|structural|", "drywall|interior|"]
        assert [g.key for g in index.shared_groups()] == ["footing|structural|"]

    def test_same_provider_duplicate_is_extra_occurrence(self, make_item):
        aligned = [
            AlignedResponse("x", items=[make_item(quantity=500), make_item(quantity=40)]),
            AlignedResponse("y", items=[make_item(quantity=510)]),
        ]
        index = group_items(aligned)
        group = index.groups["drywall|interior|"]
        assert len(group.occurrences) == 3
        assert group.providers == ["x", "y"]
        assert group.first_by_provider()["x"].quantity == 500
        assert index.key_for("x", 1) == "drywall|interior|"

    def test_different_categories_stay_apart(self, make_item):
        aligned = [
            AlignedResponse("x", items=[make_item()]),
            AlignedResponse("y", items=[make_item(category=Category.FINISHES)]),
        ]
        index = group_items(aligned)
        assert len(index.groups) == 2
        assert index.shared_groups() == []

    def test_listing_order_does_not_cross_pair(self, make_item):
        type_x = make_item(name="Drywall Type X", quantity=100)
        type_y = make_item(name="Drywall Type Y", quantity=300)
        aligned = [
            AlignedResponse("a", items=[type_x, type_y]),
            AlignedResponse("b", items=[type_y, type_x]),
        ]
        index = group_items(aligned)
        assert list(index.groups) == ["drywall type x|interior|", "drywall type y|interior|"]
        for group in index.groups.values():
            assert {occ.item.name for occ in group.occurrences} == {group.representative.name}
        assert index.key_for("b", 0) == "drywall type y|interior|"
        assert detect_disagreements(index) == []

    def test_fuzzy_item_joins_most_similar_group(self, make_item):
        aligned = [
            AlignedResponse("a", items=[make_item(name="Gypsum board"),
                                        make_item(name="Gypsum board ceiling")]),
            AlignedResponse("b", items=[make_item(name="Gypsum boards ceiling")]),
        ]
        index = group_items(aligned, replace(default_engine_config(), name_similarity=0.5))
        assert index.key_for("b", 0) == "gypsum board ceiling|interior|"
