"""
Vettly — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.user import User
from app.models.match import Match, MatchStage, MatchTransition
from app.models.notification import (
    MatchApprovalNotification,
    MatchmakerNotification,
    MemberNotification,
)
from app.models.analytics import (
    CompatibilitySnapshot,
    DeclineAnalytics,
    DeclineMonthlyCount,
    ExplanationDailyUsage,
    ExplanationEvent,
    ExplanationUsageCount,
)
from app.models.tip import ActiveTipPointer, TipView, WeeklyTip

__all__ = [
    "User",
    "Match",
    "MatchStage",
    "MatchTransition",
    "MemberNotification",
    "MatchmakerNotification",
    "MatchApprovalNotification",
    "DeclineAnalytics",
    "DeclineMonthlyCount",
    "ExplanationEvent",
    "ExplanationDailyUsage",
    "ExplanationUsageCount",
    "CompatibilitySnapshot",
    "WeeklyTip",
    "ActiveTipPointer",
    "TipView",
]
