"""
Vettly — ExplanationService: LLM-written "why you match" points

Builds a single prompt from two member profile summaries and the pair's
matching points, asks Gemini for two arrays of exactly five
``{header, explanation}`` points (one addressed to member 1, one to
member 2), and turns whatever comes back into two clean five-point lists.

Parsing is layered so that downstream consumers never handle ``None``:

1. Multi-strategy JSON parse (direct, code fence, brace extraction,
   json-repair) and point validation; short lists are padded.
2. A lone ``"explanation"`` field (JSON key or regex) becomes the first
   point, followed by generic points.
3. Otherwise the hard-coded five-point fallback is returned for both.

The service is stateless: callers persist the JSON-encoded point lists on
the match record.  ``generate`` never raises.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import google.generativeai as genai
import structlog
from google.generativeai.types import HarmBlockThreshold, HarmCategory
from json_repair import repair_json
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import get_settings
from app.models.user import User

logger = structlog.get_logger("vettly.explanation_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

POINTS_PER_MEMBER = 5

FALLBACK_POINTS: list[dict[str, str]] = [
    {
        "header": "Values Alignment",
        "explanation": "You both prioritize honesty and loyalty, creating a foundation of trust.",
    },
    {
        "header": "Communication Styles",
        "explanation": "Your communication approaches complement each other, balancing directness with thoughtful listening.",
    },
    {
        "header": "Shared Interests",
        "explanation": "Your mutual interests provide natural opportunities for quality time together.",
    },
    {
        "header": "Life Goals",
        "explanation": "Your ambitions and plans for the future align well, creating a balanced partnership.",
    },
    {
        "header": "Complementary Traits",
        "explanation": "Your personalities balance each other nicely, bringing out the best in both of you.",
    },
]

FALLBACK_SENTENCE = (
    "You and this match have complementary personalities and shared interests "
    "that our matchmakers believe could make for a great connection."
)

SINGLE_EXPLANATION_HEADER = "Why You're Compatible"

_EXPLANATION_FIELD_RE = re.compile(r'"explanation"\s*:\s*"([^"]*)"')

CRITICAL_QUESTIONNAIRE_FIELDS: list[str] = [
    "lifestyle_profession",
    "lifestyle_smoking",
    "lifestyle_alcohol",
    "lifestyle_hobbiesTypes",
    "attraction_height",
    "relationships_children",
    "personal_maritalStatus",
    "personal_age",
    "personal_dob",
    "personal_educationLevel",
    "personal_religion",
    "values_familyImportance",
]

ROOT_PROFILE_FIELDS: list[str] = [
    "first_name",
    "last_name",
    "has_children",
    "marital_status",
    "dob",
    "location",
    "state",
    "suburb",
]

_SYSTEM_INSTRUCTION = (
    "You are an expert matchmaker with years of experience helping people "
    "find meaningful relationships. You write personalised, gender-specific "
    "explanations of why two people would be a great match."
)


def is_retryable_api_error(exc: BaseException) -> bool:
    """Return True if the exception signals a retryable Gemini API error.

    Retries on HTTP 429 (rate limit) and 500/503 (server-side transient).
    The google-generativeai SDK wraps these in several exception types, so
    both the type name and the message are inspected.
    """
    exc_str = str(exc).lower()
    exc_type = type(exc).__name__.lower()

    if "429" in exc_str or "resource_exhausted" in exc_str:
        return True
    if "500" in exc_str or "503" in exc_str or "internal" in exc_str:
        return True
    if "resourceexhausted" in exc_type or "serviceunavailable" in exc_type:
        return True

    return False


def _fallback_points() -> list[dict[str, str]]:
    return [dict(p) for p in FALLBACK_POINTS]


@dataclass
class ExplanationResult:
    member1_points: list[dict[str, str]]
    member2_points: list[dict[str, str]]
    source: str  # llm / partial / single_explanation / fallback
    metrics: dict[str, Any] = field(default_factory=dict)
    error_type: str | None = None

    @property
    def used_fallback(self) -> bool:
        return self.source == "fallback"

    def member1_json(self) -> str:
        return json.dumps(self.member1_points)

    def member2_json(self) -> str:
        return json.dumps(self.member2_points)


class ExplanationService:
    """Generates gendered five-point match explanations with Gemini."""

    def __init__(self) -> None:
        settings = get_settings()

        genai.configure(api_key=settings.GEMINI_API_KEY)

        self._model_chain: list[str] = [
            settings.GEMINI_MODEL_PRIMARY,
            settings.GEMINI_MODEL_FALLBACK,
        ]
        self._timeout_seconds: float = settings.LLM_TIMEOUT_SECONDS
        self._max_attempts: int = settings.LLM_MAX_ATTEMPTS

        # Profiles mention relationships and habits; default filters are too
        # aggressive for that content.
        self._safety_settings = {
            HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
        }

        self._generation_config = genai.GenerationConfig(
            max_output_tokens=1024,
            temperature=0.7,
            response_mime_type="application/json",
        )

        logger.info(
            "explanation_service_initialised",
            model_chain=self._model_chain,
            timeout_seconds=self._timeout_seconds,
        )

    # ══════════════════════════════════════════════════════════════════
    # Profile helpers
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def calculate_age(user: User, today: date | None = None) -> int | None:
        """Age from ``DD.MM.YYYY`` dob, else ``personal_age``, else ``age``."""
        today = today or date.today()
        answers = user.questionnaire_answers or {}
        dob = user.dob or answers.get("personal_dob")

        if isinstance(dob, str):
            parts = dob.split(".")
            if len(parts) == 3:
                try:
                    day, month, year = (int(p) for p in parts)
                    born = date(year, month, day)
                except ValueError:
                    born = None
                if born is not None:
                    age = today.year - born.year
                    if (today.month, today.day) < (born.month, born.day):
                        age -= 1
                    return age

        fallback = answers.get("personal_age") or user.age
        try:
            return int(fallback) if fallback else None
        except (TypeError, ValueError):
            return None

    @classmethod
    def extract_profile_summary(cls, user: User) -> dict[str, Any]:
        """Derive the subset of profile fields the prompt is built from."""
        answers = user.questionnaire_answers or {}
        return {
            "first_name": user.first_name,
            "gender": user.gender,
            "age": cls.calculate_age(user),
            "profession": answers.get("lifestyle_profession") or "Not specified",
            "hobbies": answers.get("lifestyle_hobbiesTypes") or [],
            "values": answers.get("values_important") or [],
            "smoking": answers.get("lifestyle_smoking") or "Not specified",
            "drinking": answers.get("lifestyle_alcohol") or "Not specified",
            "children": user.has_children,
            "relationship_goals": answers.get("relationships_lookingFor") or "Not specified",
            "communication_style": answers.get("communication_style") or "Not specified",
            "personality_traits": answers.get("personality_traits") or [],
        }

    @staticmethod
    def _member_completeness(user: User) -> float:
        answers = user.questionnaire_answers or {}
        critical = sum(1 for f in CRITICAL_QUESTIONNAIRE_FIELDS if answers.get(f))
        root = sum(1 for f in ROOT_PROFILE_FIELDS if getattr(user, f, None))
        return (
            (critical / len(CRITICAL_QUESTIONNAIRE_FIELDS)) * 0.7
            + (root / len(ROOT_PROFILE_FIELDS)) * 0.3
        ) * 100

    @classmethod
    def calculate_data_quality_score(cls, user1: User, user2: User) -> int:
        """Average profile completeness of both members, 0-100.

        Critical questionnaire fields carry 70% of each member's score and
        root profile fields the remaining 30%.
        """
        total = cls._member_completeness(user1) + cls._member_completeness(user2)
        return int(round(total / 2))

    # ══════════════════════════════════════════════════════════════════
    # Public API
    # ══════════════════════════════════════════════════════════════════

    async def generate(
        self,
        profile1: dict[str, Any],
        profile2: dict[str, Any],
        matching_points: list[dict] | None = None,
        compatibility_score: int | None = None,
    ) -> ExplanationResult:
        """Generate explanation points for both members of a match.

        Parameters
        ----------
        profile1, profile2:
            Summaries from ``extract_profile_summary``.  ``profile1`` is
            addressed as the male member and ``profile2`` as the female
            member.
        matching_points:
            ``{category, description, score}`` dicts for the pair.
        compatibility_score:
            Overall 0-100 score.  Used for logging only; it is never put in
            front of the model so it cannot leak into member-facing text.

        Returns
        -------
        ExplanationResult
            Always two five-point lists.  Errors are logged and converted
            into the fallback.
        """
        start = time.monotonic()
        log = logger.bind(
            member1=profile1.get("first_name"),
            member2=profile2.get("first_name"),
            compatibility_score=compatibility_score,
        )
        log.info("explanation_generation_start")

        model_used = "none"
        tokens_used = 0
        error_type: str | None = None

        try:
            prompt = self._build_prompt(profile1, profile2, matching_points or [])
            text, model_used, tokens_used = await asyncio.wait_for(
                self._call_model_chain(prompt),
                timeout=self._timeout_seconds,
            )
            member1, member2, source = self.parse_explanation_response(text)
        except asyncio.TimeoutError:
            error_type = "timeout"
            log.error("explanation_generation_timeout", timeout=self._timeout_seconds)
            member1, member2, source = _fallback_points(), _fallback_points(), "fallback"
        except Exception as exc:
            error_type = "llm_api_error"
            log.error(
                "explanation_generation_failed",
                error=str(exc),
                error_class=type(exc).__name__,
            )
            member1, member2, source = _fallback_points(), _fallback_points(), "fallback"

        elapsed_ms = round((time.monotonic() - start) * 1000, 2)
        if source == "fallback" and error_type is None:
            error_type = "parse_error"

        log.info(
            "explanation_generation_complete",
            source=source,
            model=model_used,
            tokens_used=tokens_used,
            elapsed_ms=elapsed_ms,
        )

        return ExplanationResult(
            member1_points=member1,
            member2_points=member2,
            source=source,
            error_type=error_type,
            metrics={
                "tokens_used": tokens_used,
                "generation_time_ms": elapsed_ms,
                "model": model_used,
                "used_fallback": source == "fallback",
                "source": source,
            },
        )

    async def generate_for_users(
        self,
        user1: User,
        user2: User,
        matching_points: list[dict] | None = None,
        compatibility_score: int | None = None,
    ) -> ExplanationResult:
        return await self.generate(
            self.extract_profile_summary(user1),
            self.extract_profile_summary(user2),
            matching_points,
            compatibility_score,
        )

    # ══════════════════════════════════════════════════════════════════
    # Response parsing
    # ══════════════════════════════════════════════════════════════════

    def parse_explanation_response(
        self, text: str | None
    ) -> tuple[list[dict[str, str]], list[dict[str, str]], str]:
        """Convert raw model output into two five-point lists.

        Returns
        -------
        tuple
            ``(member1_points, member2_points, source)`` where ``source`` is
            ``llm``, ``partial``, ``single_explanation`` or ``fallback``.
        """
        parsed: dict | None
        try:
            parsed = self._parse_json_response(text or "")
        except ValueError:
            parsed = None

        if parsed is not None:
            member1 = self._validate_points(self._coerce_points(parsed.get("member1Explanation")))
            member2 = self._validate_points(self._coerce_points(parsed.get("member2Explanation")))
            if member1 or member2:
                complete = (
                    len(member1) == POINTS_PER_MEMBER
                    and len(member2) == POINTS_PER_MEMBER
                )
                if not complete:
                    logger.warning(
                        "explanation_points_padded",
                        member1_count=len(member1),
                        member2_count=len(member2),
                    )
                return (
                    self._pad_points(member1),
                    self._pad_points(member2),
                    "llm" if complete else "partial",
                )

            single = parsed.get("explanation")
            if isinstance(single, str) and single.strip():
                return self._single_explanation_points(single), \
                    self._single_explanation_points(single), "single_explanation"

        match = _EXPLANATION_FIELD_RE.search(text or "")
        if match and match.group(1).strip():
            single = match.group(1)
            return self._single_explanation_points(single), \
                self._single_explanation_points(single), "single_explanation"

        logger.warning("explanation_parse_fallback", preview=(text or "")[:120])
        return _fallback_points(), _fallback_points(), "fallback"

    @staticmethod
    def _coerce_points(value: Any) -> list:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except (json.JSONDecodeError, TypeError):
                return []
            return decoded if isinstance(decoded, list) else []
        return []

    @staticmethod
    def _validate_points(points: list) -> list[dict[str, str]]:
        valid: list[dict[str, str]] = []
        for point in points:
            if not isinstance(point, dict):
                continue
            header, explanation = point.get("header"), point.get("explanation")
            if not isinstance(header, str) or not isinstance(explanation, str):
                continue
            if not header.strip() or not explanation.strip():
                continue
            valid.append({"header": header.strip(), "explanation": explanation.strip()})
        return valid[:POINTS_PER_MEMBER]

    @staticmethod
    def _pad_points(points: list[dict[str, str]]) -> list[dict[str, str]]:
        padded = list(points)
        headers = {p["header"] for p in padded}
        for fallback in FALLBACK_POINTS:
            if len(padded) >= POINTS_PER_MEMBER:
                break
            if fallback["header"] not in headers:
                padded.append(dict(fallback))
        return padded

    @staticmethod
    def _single_explanation_points(text: str) -> list[dict[str, str]]:
        first = {"header": SINGLE_EXPLANATION_HEADER, "explanation": text.strip()}
        return [first] + _fallback_points()[: POINTS_PER_MEMBER - 1]

    def _parse_json_response(self, text: str) -> dict:
        """Parse a JSON object out of model text.

        Pipeline:
        1. Direct ``json.loads`` on the raw text
        2. Markdown code-fence extraction
        3. First ``{`` to last ``}`` extraction
        4. ``json_repair`` on the text, then on the brace-extracted candidate

        Raises
        ------
        ValueError
            If no strategy yields a JSON object.
        """
        if not text or not text.strip():
            raise ValueError("Empty response text, cannot parse JSON")

        cleaned = text.strip()

        # Strategy 1: Direct parse
        try:
            result = json.loads(cleaned)
            if isinstance(result, dict):
                return result
        except (json.JSONDecodeError, TypeError):
            pass

        # Strategy 2: Markdown code-fence extraction
        md_match = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", cleaned, re.DOTALL)
        if md_match:
            try:
                result = json.loads(md_match.group(1).strip())
                if isinstance(result, dict):
                    return result
            except (json.JSONDecodeError, TypeError):
                pass

        # Strategy 3: Prefix/suffix removal
        first_brace = cleaned.find("{")
        last_brace = cleaned.rfind("}")
        candidate = None
        if first_brace >= 0 and last_brace > first_brace:
            candidate = cleaned[first_brace : last_brace + 1]
            try:
                result = json.loads(candidate)
                if isinstance(result, dict):
                    return result
            except (json.JSONDecodeError, TypeError):
                pass

        # Strategy 4: json_repair (best-effort), only when there is an object
        # to repair; plain prose must fall through to the regex path.
        if candidate is not None:
            for source in (candidate, cleaned):
                try:
                    result = json.loads(repair_json(source))
                except Exception as exc:
                    logger.debug("json_repair_failed", error=str(exc))
                    continue
                if isinstance(result, dict) and result:
                    logger.info("json_parsed_via_json_repair", original_preview=cleaned[:80])
                    return result

        raise ValueError(
            f"Failed to parse JSON from model response. Preview: {cleaned[:200]}"
        )

    # ══════════════════════════════════════════════════════════════════
    # Prompt construction
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def _format_list(value: Any) -> str:
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value) if value else "Not specified"
        return str(value) if value else "Not specified"

    def _format_profile(self, profile: dict[str, Any]) -> str:
        return "\n".join([
            f"- Name: {profile.get('first_name') or 'Unknown'}",
            f"- Age: {profile.get('age') or 'Unknown'}",
            f"- Profession: {profile.get('profession')}",
            f"- Hobbies: {self._format_list(profile.get('hobbies'))}",
            f"- Values: {self._format_list(profile.get('values'))}",
            f"- Smoking: {profile.get('smoking')}",
            f"- Drinking: {profile.get('drinking')}",
            f"- Has children: {profile.get('children') or 'Not specified'}",
            f"- Relationship goals: {profile.get('relationship_goals')}",
            f"- Communication style: {profile.get('communication_style')}",
            f"- Personality traits: {self._format_list(profile.get('personality_traits'))}",
        ])

    def _build_prompt(
        self,
        profile1: dict[str, Any],
        profile2: dict[str, Any],
        matching_points: list[dict],
    ) -> str:
        points_block = "\n".join(
            f"- {p.get('category')}: {p.get('description')}" for p in matching_points
        ) or "- No matching points available"

        return f"""{_SYSTEM_INSTRUCTION}

You are writing for Vettly, a matchmaker-curated dating service.

MEMBER 1 PROFILE (MALE):
{self._format_profile(profile1)}

MEMBER 2 PROFILE (FEMALE):
{self._format_profile(profile2)}

AREAS WHERE THEY ALIGN:
{points_block}

Write two separate explanations:
1. For Member 1 (he/him): why Member 2 is a great match for him.
2. For Member 2 (she/her): why Member 1 is a great match for her.

Requirements:
- EXACTLY {POINTS_PER_MEMBER} distinct points for each member.
- Each point has a header of 3-7 words and an explanation of 20-50 words.
- Be specific to these two people; use their first names where available.
- Each point covers a different aspect of compatibility.
- Never mention any numeric score or percentage.

Respond with JSON only, in exactly this shape:
{{
  "member1Explanation": [{{"header": "...", "explanation": "..."}}],
  "member2Explanation": [{{"header": "...", "explanation": "..."}}]
}}"""

    # ══════════════════════════════════════════════════════════════════
    # Gemini calls
    # ══════════════════════════════════════════════════════════════════

    async def _call_model_chain(self, prompt: str) -> tuple[str, str, int]:
        """Try each model in the chain; return ``(text, model, tokens)``."""
        last_exception: Exception | None = None
        for model_name in self._model_chain:
            try:
                text, tokens = await self._call_gemini_with_retry(model_name, prompt)
                return text, model_name, tokens
            except Exception as exc:
                last_exception = exc
                logger.warning(
                    "explanation_model_failed",
                    failed_model=model_name,
                    error=str(exc),
                )
        raise RuntimeError(f"All models in chain exhausted. Last error: {last_exception}")

    async def _call_gemini_with_retry(
        self,
        model_name: str,
        prompt: str,
    ) -> tuple[str, int]:
        """Call one Gemini model with tenacity retry on transient errors.

        Returns
        -------
        tuple
            ``(text, total_token_count)``.
        """
        model = genai.GenerativeModel(model_name)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(is_retryable_api_error),
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                reraise=True,
            ):
                with attempt:
                    logger.debug(
                        "gemini_call_attempt",
                        model=model_name,
                        attempt_number=attempt.retry_state.attempt_number,
                    )
                    response = await model.generate_content_async(
                        prompt,
                        safety_settings=self._safety_settings,
                        generation_config=self._generation_config,
                    )

                    if not response.candidates:
                        raise ValueError(
                            f"Gemini returned no candidates for model {model_name}. "
                            f"Prompt feedback: {response.prompt_feedback}"
                        )

                    text = response.text
                    if not text or not text.strip():
                        raise ValueError(f"Gemini returned empty text for model {model_name}")

                    usage = getattr(response, "usage_metadata", None)
                    tokens = int(getattr(usage, "total_token_count", 0) or 0)
                    return text, tokens

        except RetryError as retry_err:
            logger.error(
                "gemini_retry_exhausted",
                model=model_name,
                attempts=self._max_attempts,
                last_error=str(retry_err.last_attempt.exception()),
            )
            raise retry_err.last_attempt.exception() from retry_err
