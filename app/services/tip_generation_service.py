"""
Vettly — Weekly tip generation with Gemini

Asks Gemini for one structured dating tip in a given category.  The
response is constrained with a JSON schema, so parsing is a single
``json.loads`` with json-repair as the safety net; anything that still
fails validation is replaced with a static fallback tip.  ``generate_tip``
never raises.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from typing import Any

import google.generativeai as genai
import structlog
from json_repair import repair_json
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import get_settings
from app.services.explanation_service import is_retryable_api_error
from app.services.tip_service import TIP_CATEGORIES, category_display_name

logger = structlog.get_logger("vettly.tip_generation_service")

QUICK_TIP_COUNT = 5

TIP_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "shortDescription": {"type": "STRING"},
        "mainContent": {"type": "STRING"},
        "whyThisMatters": {"type": "STRING"},
        "quickTips": {"type": "ARRAY", "items": {"type": "STRING"}},
        "didYouKnow": {"type": "STRING"},
        "weeklyChallenge": {"type": "STRING"},
    },
    "required": [
        "title",
        "shortDescription",
        "mainContent",
        "whyThisMatters",
        "quickTips",
        "didYouKnow",
        "weeklyChallenge",
    ],
}

# response key -> WeeklyTip column
_FIELD_MAP = {
    "title": "title",
    "shortDescription": "short_description",
    "mainContent": "main_content",
    "whyThisMatters": "why_this_matters",
    "didYouKnow": "did_you_know",
    "weeklyChallenge": "weekly_challenge",
}

FALLBACK_QUICK_TIPS = [
    "Be authentic",
    "Use recent photos",
    "Ask open-ended questions",
    "Listen actively",
    "Be respectful",
]

_SYSTEM_INSTRUCTION = (
    "You are an expert dating coach and relationship advisor for single people "
    "using a professional matchmaking service. Members are matched by "
    "professional matchmakers and meet in person without chatting on the app "
    "first. Give practical, positive and inclusive advice for preparing for and "
    "succeeding on in-person dates. Use clear, direct language. Do not use any "
    "kind of dash; use periods, commas or parentheses instead."
)

_CATEGORY_FOCUS: dict[str, str] = {
    "profile_improvement": (
        "Focus on helping members present themselves honestly and warmly to "
        "their matchmaker, including photos, profile answers and what to share."
    ),
    "conversation_starters": (
        "Focus on starting and keeping an in-person conversation going on a first "
        "date with someone selected by a matchmaker, with example questions and topics."
    ),
    "date_ideas": (
        "Focus on creative, memorable date ideas for different stages of dating, "
        "across interests, budgets and settings."
    ),
    "relationship_advice": (
        "Focus on building healthy relationships, communication skills, attachment "
        "styles or common early relationship challenges."
    ),
    "matchmaking_insights": (
        "Focus on how professional matchmaking works, what makes a compatible match "
        "and how members can make the most of matchmaker arranged dates."
    ),
    "self_improvement": (
        "Focus on personal growth that makes someone a better partner, such as "
        "emotional intelligence, active listening or confidence."
    ),
}


def random_category() -> str:
    return random.choice(list(TIP_CATEGORIES))


def fallback_tip(category: str) -> dict[str, Any]:
    """Static tip used when generation or parsing fails."""
    return {
        "title": "Weekly Dating Tip",
        "short_description": "A helpful tip to improve your dating experience.",
        "main_content": (
            "We had some trouble generating a custom tip this week. "
            "Please check back next week for a new tip!"
        ),
        "why_this_matters": None,
        "quick_tips": list(FALLBACK_QUICK_TIPS),
        "did_you_know": None,
        "weekly_challenge": None,
        "category": category,
    }


class TipGenerationService:
    """Generates weekly tips; used by the admin route and the weekly job."""

    def __init__(self) -> None:
        settings = get_settings()
        genai.configure(api_key=settings.GEMINI_API_KEY)

        self._model_name: str = settings.GEMINI_MODEL_PRIMARY
        self._timeout_seconds: float = settings.LLM_TIMEOUT_SECONDS
        self._max_attempts: int = settings.LLM_MAX_ATTEMPTS
        self._generation_config = genai.GenerationConfig(
            max_output_tokens=1024,
            temperature=0.7,
            response_mime_type="application/json",
            response_schema=TIP_RESPONSE_SCHEMA,
        )

    @staticmethod
    def build_prompt(category: str) -> str:
        focus = _CATEGORY_FOCUS.get(category, "")
        return f"""Generate a weekly dating tip for members of a matchmaking service.

Fill every field of the response:
- title: a catchy, engaging title
- shortDescription: a one or two sentence summary
- mainContent: two or three paragraphs explaining the tip
- whyThisMatters: one paragraph on why the advice is important
- quickTips: exactly {QUICK_TIP_COUNT} short, actionable tips
- didYouKnow: an interesting fact or statistic about dating
- weeklyChallenge: one simple action to take this week

Write for single members looking for a partner, not for couples.

Category: {category_display_name(category)}.
{focus}"""

    async def generate_tip(self, category: str | None = None) -> dict[str, Any]:
        """Generate one tip.

        Parameters
        ----------
        category:
            One of ``TIP_CATEGORIES``; a random category is used when
            omitted or unknown.

        Returns
        -------
        dict
            Keyword arguments for ``TipService.create_tip`` plus an
            ``ai_fallback`` flag telling callers the static tip was used.
        """
        if category not in TIP_CATEGORIES:
            category = random_category()

        start = time.monotonic()
        log = logger.bind(category=category, model=self._model_name)
        log.info("tip_generation_start")

        try:
            text = await asyncio.wait_for(
                self._call_gemini_with_retry(self.build_prompt(category)),
                timeout=self._timeout_seconds,
            )
            tip = self.parse_tip_response(text, category)
        except asyncio.TimeoutError:
            log.error("tip_generation_timeout", timeout=self._timeout_seconds)
            tip = None
        except Exception as exc:
            log.error("tip_generation_failed", error=str(exc), error_class=type(exc).__name__)
            tip = None

        used_fallback = tip is None
        if used_fallback:
            tip = fallback_tip(category)

        log.info(
            "tip_generation_complete",
            used_fallback=used_fallback,
            elapsed_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return {**tip, "ai_fallback": used_fallback}

    @staticmethod
    def parse_tip_response(text: str, category: str) -> dict[str, Any] | None:
        """Validate a JSON tip; ``None`` when required content is missing."""
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            data = repair_json(text or "", return_objects=True)
        if not isinstance(data, dict):
            return None

        tip: dict[str, Any] = {"category": category}
        for source, target in _FIELD_MAP.items():
            value = data.get(source)
            tip[target] = value.strip() if isinstance(value, str) and value.strip() else None

        raw_tips = data.get("quickTips")
        quick_tips = (
            [str(t).strip() for t in raw_tips if str(t).strip()]
            if isinstance(raw_tips, list)
            else []
        )
        tip["quick_tips"] = quick_tips[:QUICK_TIP_COUNT]

        if not tip["title"] or not tip["main_content"]:
            logger.warning("tip_response_incomplete", keys=sorted(data))
            return None
        return tip

    async def _call_gemini_with_retry(self, prompt: str) -> str:
        model = genai.GenerativeModel(self._model_name, system_instruction=_SYSTEM_INSTRUCTION)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(is_retryable_api_error),
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                reraise=True,
            ):
                with attempt:
                    response = await model.generate_content_async(
                        prompt,
                        generation_config=self._generation_config,
                    )
                    text = response.text
                    if not text or not text.strip():
                        raise ValueError("Gemini returned empty text for tip generation")
                    return text
        except RetryError as retry_err:
            raise retry_err.last_attempt.exception() from retry_err
