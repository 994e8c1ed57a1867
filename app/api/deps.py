"""
Vettly — Service providers and error translation for the routers

Services are process-wide singletons, created on first use.  Routes take
them through ``Depends`` so tests can swap them with
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.cache import get_redis
from app.services.compatibility_service import CompatibilityService
from app.services.decline_analytics_service import DeclineAnalyticsService
from app.services.explanation_monitoring_service import ExplanationMonitoringService
from app.services.match_approval_service import MatchApprovalService, MatchWorkflowError
from app.services.notification_service import NotificationService
from app.services.payment_service import PaymentService
from app.services.tip_generation_service import TipGenerationService
from app.services.tip_service import TipService

# ── Service singletons ────────────────────────────────────────────────────────

_compatibility_service: CompatibilityService | None = None
_approval_service: MatchApprovalService | None = None
_notification_service: NotificationService | None = None
_monitoring_service: ExplanationMonitoringService | None = None
_decline_analytics_service: DeclineAnalyticsService | None = None
_tip_service: TipService | None = None
_tip_generation_service: TipGenerationService | None = None
_payment_service: PaymentService | None = None


def get_compatibility_service() -> CompatibilityService:
    global _compatibility_service
    if _compatibility_service is None:
        _compatibility_service = CompatibilityService()
    return _compatibility_service


def get_notification_service() -> NotificationService:
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service


def get_monitoring_service() -> ExplanationMonitoringService:
    global _monitoring_service
    if _monitoring_service is None:
        _monitoring_service = ExplanationMonitoringService()
    return _monitoring_service


def get_decline_analytics_service() -> DeclineAnalyticsService:
    global _decline_analytics_service
    if _decline_analytics_service is None:
        _decline_analytics_service = DeclineAnalyticsService()
    return _decline_analytics_service


def get_approval_service() -> MatchApprovalService:
    global _approval_service
    if _approval_service is None:
        _approval_service = MatchApprovalService(
            compatibility_service=get_compatibility_service(),
            notification_service=get_notification_service(),
            decline_analytics_service=get_decline_analytics_service(),
            monitoring_service=get_monitoring_service(),
        )
    return _approval_service


def get_tip_service() -> TipService:
    global _tip_service
    if _tip_service is None:
        _tip_service = TipService(redis=get_redis())
    return _tip_service


def get_tip_generation_service() -> TipGenerationService:
    global _tip_generation_service
    if _tip_generation_service is None:
        _tip_generation_service = TipGenerationService()
    return _tip_generation_service


def get_payment_service() -> PaymentService:
    global _payment_service
    if _payment_service is None:
        _payment_service = PaymentService(approval_service=get_approval_service())
    return _payment_service


# ── Error translation ─────────────────────────────────────────────────────────

def error_response(status_code: int, error: str, details: Any = None) -> JSONResponse:
    """``{error, details}`` body used for request validation failures."""
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "details": details or {}},
    )


async def workflow_error_handler(request: Request, exc: MatchWorkflowError) -> JSONResponse:
    """Registered on the app; maps every workflow error to its HTTP status."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.message, "details": exc.details},
    )
