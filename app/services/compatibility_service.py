"""
Vettly — Questionnaire compatibility scorer.

Scores two flat questionnaire answer maps across five weighted dimensions:

  overall = 0.30·values + 0.25·lifestyle + 0.20·emotional
          + 0.15·loveLanguage + 0.10·attraction

Per question answered by both members, an exact match earns 1 and any other
answer earns 0.5.  A dimension with no commonly answered questions scores a
neutral 0.5.  Deal-breaker pairs (children, marriage) short-circuit to an
incompatible result with ``overall = 0``.

The scorer never raises: malformed input produces a *degraded* result with
neutral scores and a ``degraded_reason`` so that callers (and the batch job)
can tell it apart from a genuine 0.5.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.models.analytics import CompatibilitySnapshot
from app.models.user import User

logger = structlog.get_logger("vettly.compatibility_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

DIMENSION_QUESTIONS: dict[str, list[str]] = {
    "values": [
        "values_religion", "values_politics", "values_family",
        "values_career", "values_education",
    ],
    "lifestyle": [
        "lifestyle_activity", "lifestyle_socializing", "lifestyle_travel",
        "lifestyle_spending", "lifestyle_cleanliness",
    ],
    "emotional": [
        "emotional_communication", "emotional_conflict", "emotional_support",
        "emotional_independence", "emotional_expression",
    ],
    "loveLanguage": [
        "love_physical", "love_gifts", "love_service",
        "love_quality", "love_affirmation",
    ],
    "attraction": [
        "attraction_physical", "attraction_intellectual", "attraction_emotional",
    ],
}

# (question key, positive answer, negative answer, reason code)
DEAL_BREAKERS: list[tuple[str, str, str, str]] = [
    ("values_children", "I want children", "I don't want children", "children_preferences"),
    ("values_marriage", "I want to get married", "I don't want to get married", "marriage_preferences"),
]

NEUTRAL_SCORE = 0.5

_DIMENSION_LABELS: dict[str, str] = {
    "values": "Core Values",
    "lifestyle": "Lifestyle",
    "emotional": "Emotional Connection",
    "loveLanguage": "Love Language",
    "attraction": "Attraction",
}


def round2(value: float) -> float:
    """Round half-up to two decimals on the exact binary value."""
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass
class CompatibilityResult:
    """Outcome of scoring one pair.

    ``status`` is ``"ok"`` for a genuine score and ``"degraded"`` when the
    neutral default was substituted because the input could not be scored.
    """

    compatible: bool
    overall: float
    breakdown: dict[str, float]
    reason: str | None = None
    status: str = "ok"
    degraded_reason: str | None = None

    @property
    def is_degraded(self) -> bool:
        return self.status == "degraded"

    @property
    def compatibility_score(self) -> int:
        """Overall score on the 0-100 scale stored on match records."""
        return int(round2(self.overall * 100))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CompatibilityService:
    """Weighted questionnaire scorer plus the per-user batch analysis."""

    def __init__(self, weights: Mapping[str, float] | None = None) -> None:
        settings = get_settings()
        self.weights: dict[str, float] = dict(weights or settings.DIMENSION_WEIGHTS)

        logger.info("compatibility_service_initialised", weights=self.weights)

    # ── Public API ────────────────────────────────────────────────────────

    def calculate_compatibility_score(
        self,
        answers1: Mapping[str, Any] | None,
        answers2: Mapping[str, Any] | None,
    ) -> CompatibilityResult:
        """Score two questionnaire answer maps.

        Parameters
        ----------
        answers1, answers2:
            Flat ``{question_key: answer}`` maps.  ``None`` is treated as an
            empty map.

        Returns
        -------
        CompatibilityResult
            Never raises; see the module docstring for the degraded case.
        """
        try:
            answers1 = {} if answers1 is None else answers1
            answers2 = {} if answers2 is None else answers2
            if not isinstance(answers1, Mapping) or not isinstance(answers2, Mapping):
                raise TypeError(
                    f"answer maps must be mappings, got "
                    f"{type(answers1).__name__} and {type(answers2).__name__}"
                )

            reason = self._check_deal_breakers(answers1, answers2)
            if reason is not None:
                return CompatibilityResult(
                    compatible=False,
                    overall=0.0,
                    breakdown={name: 0.0 for name in DIMENSION_QUESTIONS},
                    reason=reason,
                )

            raw: dict[str, float] = {
                name: self._dimension_score(answers1, answers2, questions)
                for name, questions in DIMENSION_QUESTIONS.items()
            }
            overall = sum(raw[name] * self.weights[name] for name in DIMENSION_QUESTIONS)

            return CompatibilityResult(
                compatible=True,
                overall=round2(overall),
                breakdown={name: round2(score) for name, score in raw.items()},
            )
        except Exception as exc:
            logger.error(
                "compatibility_score_degraded",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return CompatibilityResult(
                compatible=True,
                overall=NEUTRAL_SCORE,
                breakdown={name: NEUTRAL_SCORE for name in DIMENSION_QUESTIONS},
                status="degraded",
                degraded_reason=f"{type(exc).__name__}: {exc}",
            )

    def score_users(self, user1: User, user2: User) -> CompatibilityResult:
        return self.calculate_compatibility_score(
            user1.questionnaire_answers, user2.questionnaire_answers
        )

    def build_matching_points(self, result: CompatibilityResult) -> list[dict]:
        """Turn a result's breakdown into display-ready matching points.

        Returns
        -------
        list[dict]
            One ``{category, description, score}`` per dimension, ordered by
            weight, with ``score`` on the 0-100 scale.
        """
        points: list[dict] = []
        ordered = sorted(DIMENSION_QUESTIONS, key=lambda n: self.weights[n], reverse=True)
        for name in ordered:
            score = result.breakdown.get(name, NEUTRAL_SCORE)
            label = _DIMENSION_LABELS[name]
            points.append({
                "category": label,
                "description": self._describe(label, score),
                "score": int(round2(score * 100)),
            })
        return points

    async def analyze_compatibility_for_user(
        self,
        user_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> list[dict] | None:
        """Score ``user_id`` against every user with a completed questionnaire.

        Results are sorted by score (highest first) and stored as the user's
        ``CompatibilitySnapshot``.  Returns ``None`` when the user does not
        exist.
        """
        log = logger.bind(user_id=str(user_id))

        user = await db_session.get(User, user_id)
        if user is None:
            log.warning("analyze_compatibility_user_not_found")
            return None

        stmt = (
            select(User)
            .where(User.questionnaire_completed.is_(True))
            .where(User.id != user_id)
        )
        candidates = (await db_session.execute(stmt)).scalars().all()
        log.info("analyze_compatibility_start", candidate_count=len(candidates))

        results: list[dict] = []
        degraded = 0
        for candidate in candidates:
            score = self.score_users(user, candidate)
            degraded += int(score.is_degraded)
            results.append({
                "userId": str(candidate.id),
                "compatible": score.compatible,
                "score": score.overall,
                "breakdown": score.breakdown,
                "reason": score.reason,
                "degraded": score.is_degraded,
            })

        results.sort(key=lambda r: r["score"], reverse=True)

        snapshot = await db_session.get(CompatibilitySnapshot, user_id)
        if snapshot is None:
            snapshot = CompatibilitySnapshot(user_id=user_id, matches=results)
            db_session.add(snapshot)
        else:
            snapshot.matches = results
            snapshot.last_updated = utcnow()
        await db_session.flush()

        log.info(
            "analyze_compatibility_complete",
            result_count=len(results),
            degraded_count=degraded,
        )
        return results

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _check_deal_breakers(
        answers1: Mapping[str, Any], answers2: Mapping[str, Any]
    ) -> str | None:
        for key, positive, negative, reason in DEAL_BREAKERS:
            a, b = answers1.get(key), answers2.get(key)
            if not a or not b:
                continue
            if (a, b) in ((positive, negative), (negative, positive)):
                return reason
        return None

    @staticmethod
    def _dimension_score(
        answers1: Mapping[str, Any],
        answers2: Mapping[str, Any],
        questions: list[str],
    ) -> float:
        total = 0
        matched = 0.0
        for question in questions:
            a, b = answers1.get(question), answers2.get(question)
            if not a or not b:
                continue
            total += 1
            matched += 1.0 if a == b else 0.5
        if total == 0:
            return NEUTRAL_SCORE
        return matched / total

    @staticmethod
    def _describe(label: str, score: float) -> str:
        if score >= 0.8:
            return f"Strong alignment in {label.lower()}"
        if score >= 0.6:
            return f"Good compatibility in {label.lower()}"
        return f"Room to discover each other's {label.lower()}"
