"""
Vettly — Payments API

Stripe webhook receiver.  Card handling lives with Stripe; the service only
consumes the payment-completed signal for a match.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_payment_service
from app.database import get_db
from app.services.payment_service import InvalidWebhookError, PaymentService

logger = structlog.get_logger("vettly.api.payments")

router = APIRouter()


@router.post(
    "/webhook",
    summary="Stripe webhook",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """Verify the event signature and apply payment completion.

    The raw body is passed through untouched; signature verification
    fails on any re-serialized payload.
    """
    payload = await request.body()
    try:
        return await payments.handle_webhook(db, payload, stripe_signature)
    except InvalidWebhookError as exc:
        logger.warning("stripe_webhook_rejected", reason=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
