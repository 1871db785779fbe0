"""
Stripe Webhook Route

The signature is verified before anything else. Once it is, the delivery is
always acknowledged with ``{"received": true}``: content problems are handled
(and logged) inside the reconciler, and answering Stripe with an error would
only schedule a redelivery of the same event.
"""

import logging

import stripe
from fastapi import APIRouter, Header, Request

from fluxstudio.routes.helpers.executor import run_sync
from fluxstudio.services.billing_reconciler import billing_event_reconciler
from fluxstudio.services.payments import get_stripe_service
from fluxstudio.utils.exceptions import APIExceptions
from fluxstudio.utils.security_validators import sanitize_for_logging
from fluxstudio.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Stripe Webhooks"])


@router.post("/stripe-webhook", status_code=200)
async def stripe_webhook(
    request: Request, stripe_signature: str | None = Header(None, alias="stripe-signature")
):
    payload = await request.body()

    try:
        service = get_stripe_service()
    except ValueError as e:
        logger.error(f"Webhook received but Stripe is not configured: {e}")
        raise APIExceptions.service_unavailable("Billing is not configured") from e

    try:
        event = service.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Rejected Stripe webhook: {sanitize_for_logging(str(e))}")
        raise APIExceptions.bad_request("Invalid webhook signature") from e

    event_type = event.get("type", "unknown")
    try:
        result = await run_sync(billing_event_reconciler.process_event, event)
        logger.info(
            f"Webhook {event.get('id')} ({event_type}) processed: {result.outcome}"
            + (f", failed steps: {result.failed_steps}" if result.failed_steps else "")
        )
    except Exception as e:
        logger.error(f"Unexpected error processing webhook {event_type}: {e}", exc_info=True)
        capture_payment_error(e, operation="webhook_processing", details={"event_type": event_type})

    return {"received": True}
