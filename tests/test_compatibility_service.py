"""Unit tests for CompatibilityService — weighted questionnaire scoring."""
import pytest

from app.models.analytics import CompatibilitySnapshot
from app.services.compatibility_service import (
    DIMENSION_QUESTIONS,
    CompatibilityService,
    round2,
)


@pytest.fixture
def service():
    return CompatibilityService()


class TestDimensionScoring:
    """Exact matches earn 1, differing answers 0.5, unanswered are skipped."""

    def test_identical_answers_score_one(self, service, full_answers):
        result = service.calculate_compatibility_score(full_answers, dict(full_answers))
        assert result.compatible is True
        assert result.overall == 1.0
        assert all(score == 1.0 for score in result.breakdown.values())
        assert result.compatibility_score == 100

    def test_all_answers_differ_score_half(self, service):
        a = {q: "x" for qs in DIMENSION_QUESTIONS.values() for q in qs}
        b = {q: "y" for qs in DIMENSION_QUESTIONS.values() for q in qs}
        result = service.calculate_compatibility_score(a, b)
        assert result.overall == 0.5
        assert result.status == "ok"

    def test_empty_maps_are_neutral_not_degraded(self, service):
        result = service.calculate_compatibility_score({}, {})
        assert result.overall == 0.5
        assert result.status == "ok"
        assert set(result.breakdown) == set(DIMENSION_QUESTIONS)

    def test_none_treated_as_empty(self, service):
        result = service.calculate_compatibility_score(None, None)
        assert result.compatible is True
        assert result.overall == 0.5

    def test_weighted_mix(self, service):
        """values match fully (0.30), everything else neutral: 0.30 + 0.70*0.5."""
        values = {q: "same" for q in DIMENSION_QUESTIONS["values"]}
        result = service.calculate_compatibility_score(values, dict(values))
        assert result.breakdown["values"] == 1.0
        assert result.breakdown["lifestyle"] == 0.5
        assert result.overall == 0.65

    def test_question_answered_by_one_side_is_skipped(self, service):
        a = {"lifestyle_travel": "often", "lifestyle_activity": "active"}
        b = {"lifestyle_travel": "often"}
        result = service.calculate_compatibility_score(a, b)
        assert result.breakdown["lifestyle"] == 1.0

    def test_round2_half_up(self):
        assert round2(0.125) == 0.13
        assert round2(0.335) == 0.34


class TestDealBreakers:
    """Conflicting children/marriage answers short-circuit to incompatible."""

    def test_children_conflict(self, service):
        result = service.calculate_compatibility_score(
            {"values_children": "I want children"},
            {"values_children": "I don't want children"},
        )
        assert result.compatible is False
        assert result.overall == 0.0
        assert result.reason == "children_preferences"
        assert all(v == 0.0 for v in result.breakdown.values())

    def test_marriage_conflict_either_order(self, service):
        result = service.calculate_compatibility_score(
            {"values_marriage": "I don't want to get married"},
            {"values_marriage": "I want to get married"},
        )
        assert result.compatible is False
        assert result.reason == "marriage_preferences"

    def test_missing_answer_is_not_a_deal_breaker(self, service):
        result = service.calculate_compatibility_score(
            {"values_children": "I want children"}, {}
        )
        assert result.compatible is True


class TestDegradedResults:
    """Malformed input never raises; it yields a flagged neutral result."""

    def test_non_mapping_input(self, service):
        result = service.calculate_compatibility_score(["not", "a", "map"], {})
        assert result.status == "degraded"
        assert result.is_degraded
        assert result.overall == 0.5
        assert "TypeError" in result.degraded_reason

    def test_degraded_is_distinguishable_from_neutral(self, service):
        neutral = service.calculate_compatibility_score({}, {})
        degraded = service.calculate_compatibility_score("bad", {})
        assert neutral.overall == degraded.overall
        assert neutral.status != degraded.status


class TestMatchingPoints:

    def test_points_ordered_by_weight(self, service, full_answers):
        result = service.calculate_compatibility_score(full_answers, full_answers)
        points = service.build_matching_points(result)
        assert [p["category"] for p in points] == [
            "Core Values", "Lifestyle", "Emotional Connection", "Love Language", "Attraction",
        ]
        assert all(p["score"] == 100 for p in points)
        assert points[0]["description"] == "Strong alignment in core values"


class TestAnalyzeForUser:

    @pytest.mark.asyncio
    async def test_snapshot_sorted_and_stored(self, service, db_session, make_user, full_answers):
        user = await make_user()
        twin = await make_user(gender="FEMALE")
        different = await make_user(
            gender="FEMALE",
            questionnaire_answers={q: "other" for qs in DIMENSION_QUESTIONS.values() for q in qs},
        )
        await make_user(gender="FEMALE", questionnaire_completed=False)

        results = await service.analyze_compatibility_for_user(user.id, db_session)

        assert [r["userId"] for r in results] == [str(twin.id), str(different.id)]
        assert results[0]["score"] >= results[1]["score"]

        snapshot = await db_session.get(CompatibilitySnapshot, user.id)
        assert snapshot is not None
        assert len(snapshot.matches) == 2

    @pytest.mark.asyncio
    async def test_unknown_user_returns_none(self, service, db_session):
        import uuid

        assert await service.analyze_compatibility_for_user(uuid.uuid4(), db_session) is None
