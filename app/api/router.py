"""
Vettly — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import analytics, matching, notifications, payments, tips, users

router = APIRouter()

router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(matching.router, prefix="/matches", tags=["Matches"])
router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
router.include_router(tips.router, prefix="/tips", tags=["Weekly Tips"])
router.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])
router.include_router(payments.router, prefix="/payments", tags=["Payments"])
