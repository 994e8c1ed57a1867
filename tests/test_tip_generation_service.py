"""Tests for TipGenerationService parsing and fallback behaviour."""
import json
from unittest.mock import AsyncMock, patch

import pytest

from app.services.tip_generation_service import (
    FALLBACK_QUICK_TIPS,
    QUICK_TIP_COUNT,
    TipGenerationService,
    fallback_tip,
)
from app.services.tip_service import TIP_CATEGORIES


@pytest.fixture
def generator():
    return TipGenerationService()


@pytest.fixture
def tip_json():
    return json.dumps({
        "title": "  Slow down and listen  ",
        "shortDescription": "Listening is attractive.",
        "mainContent": "Give your date your full attention.",
        "whyThisMatters": "People remember how you made them feel.",
        "quickTips": ["Put the phone away", "Ask follow-ups", "Nod", "Summarise", "Smile", "Sixth"],
        "didYouKnow": "Most people overestimate how much they listen.",
        "weeklyChallenge": "Ask three follow-up questions on your next date.",
    })


class TestParseTipResponse:

    def test_maps_fields_to_columns(self, tip_json):
        tip = TipGenerationService.parse_tip_response(tip_json, "date_ideas")
        assert tip["title"] == "Slow down and listen"
        assert tip["main_content"] == "Give your date your full attention."
        assert tip["weekly_challenge"].startswith("Ask three")
        assert tip["category"] == "date_ideas"
        assert len(tip["quick_tips"]) == QUICK_TIP_COUNT

    def test_malformed_json_is_repaired(self):
        text = '{"title": "Be curious", "mainContent": "Ask questions", "quickTips": ["a", "b",]'
        tip = TipGenerationService.parse_tip_response(text, "self_improvement")
        assert tip["title"] == "Be curious"
        assert tip["quick_tips"] == ["a", "b"]

    def test_missing_main_content(self):
        text = json.dumps({"title": "Only a title"})
        assert TipGenerationService.parse_tip_response(text, "date_ideas") is None

    def test_non_object_response(self):
        assert TipGenerationService.parse_tip_response("[1, 2, 3]", "date_ideas") is None


class TestGenerateTip:
    """``generate_tip`` never raises; failures produce the static tip."""

    @pytest.mark.asyncio
    async def test_success(self, generator, tip_json):
        with patch.object(generator, "_call_gemini_with_retry", AsyncMock(return_value=tip_json)):
            tip = await generator.generate_tip("date_ideas")

        assert tip["ai_fallback"] is False
        assert tip["title"] == "Slow down and listen"
        assert tip["category"] == "date_ideas"

    @pytest.mark.asyncio
    async def test_api_failure_uses_fallback(self, generator):
        failing = AsyncMock(side_effect=RuntimeError("503 Service Unavailable"))
        with patch.object(generator, "_call_gemini_with_retry", failing):
            tip = await generator.generate_tip("relationship_advice")

        assert tip["ai_fallback"] is True
        assert tip["title"] == "Weekly Dating Tip"
        assert tip["quick_tips"] == FALLBACK_QUICK_TIPS
        assert tip["category"] == "relationship_advice"

    @pytest.mark.asyncio
    async def test_incomplete_response_uses_fallback(self, generator):
        with patch.object(
            generator, "_call_gemini_with_retry", AsyncMock(return_value='{"title": "x"}')
        ):
            tip = await generator.generate_tip("date_ideas")
        assert tip["ai_fallback"] is True

    @pytest.mark.asyncio
    async def test_unknown_category_picks_a_known_one(self, generator, tip_json):
        with patch.object(generator, "_call_gemini_with_retry", AsyncMock(return_value=tip_json)):
            tip = await generator.generate_tip("astrology")
        assert tip["category"] in TIP_CATEGORIES

    def test_prompt_names_category(self):
        prompt = TipGenerationService.build_prompt("date_ideas")
        assert "Category: Date Ideas." in prompt
        assert f"exactly {QUICK_TIP_COUNT}" in prompt

    def test_fallback_tip_is_a_fresh_copy(self):
        tip = fallback_tip("date_ideas")
        tip["quick_tips"].append("extra")
        assert len(FALLBACK_QUICK_TIPS) == 5
