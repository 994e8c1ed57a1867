"""
Vettly — Stripe webhook handling

Verifies webhook signatures and turns successful checkout events for a
match into ``MatchApprovalService.complete_payment``.  Stripe redelivers
events, and ``complete_payment`` is a no-op for a match that is already
paid, so replays are safe.  Events for a match that cannot take a payment
(unknown, declined or expired) are acknowledged and logged, since an error
response only makes Stripe send them again.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.services.match_approval_service import (
    InvalidTransitionError,
    MatchApprovalService,
    MatchNotFoundError,
)

logger = structlog.get_logger("vettly.payment_service")

PAYMENT_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")


class InvalidWebhookError(ValueError):
    pass


class PaymentService:

    def __init__(self, approval_service: MatchApprovalService | None = None) -> None:
        settings = get_settings()
        stripe.api_key = settings.STRIPE_API_KEY
        self._webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        self._approvals = approval_service or MatchApprovalService()

    def verify_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the event body."""
        if not signature:
            raise InvalidWebhookError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as exc:
            raise InvalidWebhookError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhookError("Invalid signature") from exc
        return json.loads(payload)

    async def handle_webhook(
        self,
        db_session: AsyncSession,
        payload: bytes,
        signature: str | None,
    ) -> dict[str, Any]:
        event = self.verify_event(payload, signature)
        event_type = event.get("type")
        log = logger.bind(event_id=event.get("id"), event_type=event_type)

        if event_type not in PAYMENT_EVENTS:
            log.info("stripe_event_ignored")
            return {"received": True, "handled": False}

        obj = event.get("data", {}).get("object", {})
        metadata = obj.get("metadata") or {}
        raw_match_id = metadata.get("match_id")
        if not raw_match_id:
            log.info("stripe_event_without_match")
            return {"received": True, "handled": False}

        try:
            match_id = uuid.UUID(str(raw_match_id))
        except ValueError as exc:
            raise InvalidWebhookError(f"Invalid match_id {raw_match_id!r}") from exc

        method_types = obj.get("payment_method_types") or []
        try:
            match = await self._approvals.complete_payment(
                db_session,
                match_id,
                payment_method=method_types[0] if method_types else None,
                membership_plan=metadata.get("membership_plan"),
            )
        except (MatchNotFoundError, InvalidTransitionError) as exc:
            log.warning(
                "stripe_payment_not_applicable",
                match_id=str(match_id),
                reason=exc.message,
                error=type(exc).__name__,
            )
            return {"received": True, "handled": False, "matchId": str(match_id)}

        log.info("stripe_payment_applied", match_id=str(match.id), stage=match.stage)
        return {"received": True, "handled": True, "matchId": str(match.id)}
