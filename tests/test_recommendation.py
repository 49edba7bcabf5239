"""
Tests for consensus.recommendation: provider scoring and the performance model.

Validates:
- Per-provider metrics (accuracy as wins over all adjudications, evidence, consistency)
- Single-provider recommendation with 0.85 / 0.75 confidence
- Hybrid recommendation when nobody clears the threshold
- Failed providers score zero
- PerformanceModel is never mutated and persists to JSON
- Long-context note for large projects
"""

from dataclasses import replace

import pytest

from consensus.adjudicator import AdjudicationOutcome
from consensus.recommendation import (
    MAX_HISTORY,
    PerformanceModel,
    composite_score,
    failed_metrics,
    provider_metrics,
    recommend,
)
from consensus.schema import (
    AdjudicationResult,
    AlignedResponse,
    Disagreement,
    DisagreementType,
    ModelRationale,
    ProviderFailure,
)


def _result(winner, providers, evidence=0.6, key="drywall|interior|"):
    disagreement = Disagreement(
        type=DisagreementType.QUANTITY, item_key=key, description="Quantity mismatch",
        providers=list(providers), values={p: 500 for p in providers}, tolerance_violated=True,
    )
    rationales = [
        ModelRationale(provider_id=p, item_key=key, value=500, rationale="",
                       evidence_score=evidence if p == winner else 0.5)
        for p in providers
    ]
    return AdjudicationResult(
        disagreement=disagreement, winner_provider=winner, winner_value=500,
        confidence=0.76, reasoning="", evidence_summary="", all_rationales=rationales,
    )


def _aligned(pid, make_item, n=1, **kwargs):
    return AlignedResponse(pid, items=[make_item() for _ in range(n)], **kwargs)


# ── Metrics ──────────────────────────────────────────────────────────

class TestProviderMetrics:

    def test_winner(self, make_item):
        outcome = AdjudicationOutcome(resolved=[_result("x", ["x", "y"])])
        m = provider_metrics(_aligned("x", make_item), outcome)
        assert (m.accuracy, m.evidence_strength, m.consistency, m.error_rate) == (1.0, 0.6, 1.0, 0.0)
        assert (m.wins, m.adjudications, m.items_found) == (1, 1, 1)
        assert m.composite == pytest.approx(0.88)

    def test_loser_gets_neutral_evidence(self, make_item):
        outcome = AdjudicationOutcome(resolved=[_result("x", ["x", "y"])])
        m = provider_metrics(_aligned("y", make_item), outcome)
        assert m.accuracy == 0.0
        assert m.evidence_strength == 0.5
        assert m.composite == pytest.approx(0.45)

    def test_accuracy_over_all_adjudications(self, make_item):
        outcome = AdjudicationOutcome(resolved=[
            _result("x", ["x", "y"]),
            _result("y", ["y", "z"], key="door|interior|"),
        ])
        x = provider_metrics(_aligned("x", make_item), outcome)
        assert (x.accuracy, x.wins, x.adjudications) == (0.5, 1, 1)
        assert provider_metrics(_aligned("y", make_item), outcome).accuracy == 0.5
        assert provider_metrics(_aligned("z", make_item), outcome).accuracy == 0.0

    def test_no_adjudications_scores_zero_accuracy(self, make_item):
        m = provider_metrics(_aligned("x", make_item), AdjudicationOutcome())
        assert m.accuracy == 0.0
        assert m.evidence_strength == 0.5
        assert m.composite == pytest.approx(0.45)

    def test_repairs_lower_consistency(self, make_item):
        response = _aligned("x", make_item, n=2, repaired_items=1, payload_repaired=True)
        m = provider_metrics(response, AdjudicationOutcome())
        assert m.consistency == pytest.approx(0.65)
        assert m.error_rate == 0.5

    def test_failed_metrics(self):
        m = failed_metrics()
        assert m.error_rate == 1.0
        assert m.composite == 0.0

    def test_composite_weights(self):
        assert composite_score(1.0, 1.0, 1.0, 0.0) == 1.0
        assert composite_score(0.0, 0.0, 0.0, 0.0) == pytest.approx(0.1)


# ── Recommendation ───────────────────────────────────────────────────

class TestRecommend:

    def test_dominant_provider(self, make_item):
        outcome = AdjudicationOutcome(resolved=[_result("x", ["x", "y"])])
        rec, _ = recommend([_aligned("x", make_item), _aligned("y", make_item)], outcome)
        assert rec.recommended_provider == "x"
        assert rec.recommended_hybrid is None
        assert rec.confidence == 0.85
        assert rec.reasoning.startswith("x performed best with 100% win rate in adjudications, 60% evidence")
        assert "consistently outperformed" in rec.reasoning
        assert rec.recommendation_details == (
            "Based on 1 adjudications across 2 providers. Best provider: x with score 88%."
        )

    def test_leader_without_dominant_share(self, make_item):
        outcome = AdjudicationOutcome(resolved=[
            _result("x", ["x", "y"], evidence=0.9),
            _result("x", ["x", "z"], evidence=0.9, key="slab|structural|"),
            _result("y", ["y", "z"], evidence=0.5, key="door|interior|"),
            _result("z", ["y", "z"], evidence=0.5, key="window|interior|"),
        ])
        aligned = [_aligned(p, make_item) for p in ("x", "y", "z")]
        rec, _ = recommend(aligned, outcome)
        assert rec.recommended_provider == "x"
        assert rec.performance_metrics["x"].composite == pytest.approx(0.77)
        assert rec.confidence == 0.75
        assert rec.reasoning.startswith("x performed best with 50% win rate")
        assert "cross-checking" in rec.reasoning

    def test_hybrid_when_nobody_leads(self, make_item):
        rec, _ = recommend([_aligned("x", make_item), _aligned("y", make_item)], AdjudicationOutcome())
        assert rec.recommended_provider is None
        assert rec.confidence == 0.6
        assert rec.recommended_hybrid.primary_provider == "x"
        assert rec.recommended_hybrid.secondary_providers == ["y"]
        assert "hybrid approach" in rec.reasoning

    def test_failed_provider_listed_but_never_recommended(self, make_item):
        failures = [ProviderFailure("grok", "ProviderTimeout", "No response within 60s", True)]
        outcome = AdjudicationOutcome(resolved=[_result("x", ["x", "y"])])
        rec, model = recommend([_aligned("x", make_item), _aligned("y", make_item)], outcome, failures)
        assert rec.performance_metrics["grok"].composite == 0.0
        assert rec.recommended_provider == "x"
        assert model.scores_for("grok") == (0.0,)

    def test_to_dict(self, make_item):
        rec, _ = recommend([_aligned("x", make_item)], AdjudicationOutcome())
        d = rec.to_dict()
        assert set(d) >= {"recommended_provider", "recommended_hybrid", "reasoning", "confidence",
                          "performance_metrics", "long_context_suitable", "recommendation_details"}
        assert d["performance_metrics"]["x"]["composite"] == pytest.approx(0.45)

    def test_long_context_note(self, make_item, config):
        small_limit = replace(config, long_context_items=1)
        rec, _ = recommend(
            [_aligned("x", make_item), _aligned("y", make_item)], AdjudicationOutcome(),
            context_windows={"x": 128_000, "y": 2_000_000}, config=small_limit,
        )
        assert rec.long_context_suitable is True
        assert rec.long_context_providers == ["y", "x"]
        assert "Large project detected" in rec.recommendation_details

    def test_no_long_context_for_small_projects(self, make_item):
        rec, _ = recommend([_aligned("x", make_item)], AdjudicationOutcome())
        assert rec.long_context_suitable is False
        assert rec.long_context_providers == []


# ── Performance model ────────────────────────────────────────────────

class TestPerformanceModel:

    def test_prior_model_untouched(self, make_item):
        prior = PerformanceModel().with_run({"x": 0.9})
        outcome = AdjudicationOutcome(resolved=[_result("x", ["x", "y"])])
        _, updated = recommend([_aligned("x", make_item), _aligned("y", make_item)], outcome,
                               performance_model=prior)
        assert prior.runs == 1
        assert prior.scores_for("x") == (0.9,)
        assert updated.runs == 2
        assert updated.scores_for("x") == (0.9, 0.88)
        assert updated.scores_for("y") == (0.45,)

    def test_history_blends_score(self, make_item):
        prior = PerformanceModel().with_run({"x": 0.2})
        outcome = AdjudicationOutcome(resolved=[_result("x", ["x", "y"])])
        rec, _ = recommend([_aligned("x", make_item), _aligned("y", make_item)], outcome,
                           performance_model=prior)
        assert rec.performance_metrics["x"].composite == pytest.approx(0.88)
        assert rec.performance_metrics["x"].score == pytest.approx(0.54)
        assert rec.recommended_provider is None
        assert rec.recommended_hybrid.primary_provider == "x"

    def test_historical_mean(self):
        model = PerformanceModel().with_run({"x": 0.6}).with_run({"x": 0.8})
        assert model.historical_mean("x") == pytest.approx(0.7)
        assert model.historical_mean("y") is None

    def test_history_bounded(self):
        model = PerformanceModel()
        for i in range(MAX_HISTORY + 5):
            model = model.with_run({"x": i / 100})
        assert len(model.scores_for("x")) == MAX_HISTORY
        assert model.scores_for("x")[-1] == pytest.approx((MAX_HISTORY + 4) / 100)

    def test_round_trip_file(self, tmp_path):
        model = PerformanceModel().with_run({"x": 0.88, "y": 0.45})
        path = tmp_path / "performance.json"
        model.save(path)
        assert PerformanceModel.load(path) == model

    def test_missing_file_is_empty(self, tmp_path):
        assert PerformanceModel.load(tmp_path / "none.json") == PerformanceModel()
