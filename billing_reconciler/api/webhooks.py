"""Payment processor webhook endpoint.

Implements:
- POST /webhooks/stripe - Verify, decode and reconcile one Stripe event
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from billing_reconciler.errors import WebhookVerificationError
from billing_reconciler.logging_config import bind_context, get_logger
from billing_reconciler.models import ErrorResponse, WebhookResponse, decode_event
from billing_reconciler.services.reconciliation_engine import ReconciliationEngine

logger = get_logger(__name__)
router = APIRouter(tags=["Webhooks"], prefix="/webhooks")


def get_engine(request: Request) -> ReconciliationEngine:
    """Engine built by the application lifespan."""
    return request.app.state.engine


@router.post(
    "/stripe",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Receive Stripe event",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine),
) -> JSONResponse:
    """Reconcile one Stripe lifecycle event into stored subscription state.

    The raw body is verified against the Stripe-Signature header before
    anything is decoded.

    Returns:
        200 with a WebhookResponse when the event was handled (including no-ops),
        400 with a WebhookResponse when handling failed,
        400 with an ErrorResponse when the delivery could not be verified
    """
    payload = await request.body()

    try:
        raw_event = engine.gateway.construct_event(payload, stripe_signature)
        event = decode_event(raw_event)
    except WebhookVerificationError as e:
        logger.warning("webhook_rejected", error=str(e), body_bytes=len(payload))
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="invalid_webhook", message=str(e)).model_dump(),
        )

    bind_context(event_id=event.event_id, event_type=event.event_type)
    logger.info("webhook_received")

    result = await run_in_threadpool(engine.process, event)

    response = WebhookResponse(
        processed=result.success,
        action=result.action,
        event_type=event.event_type,
        event_id=event.event_id,
        user_id=result.user_id,
        plan_type=result.plan_type,
        billing_period_accurate=result.billing_period_accurate,
        actual_duration_days=result.actual_duration_days,
        error=result.error,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=200 if result.success else 400,
        content=response.model_dump(mode="json", exclude_none=True),
    )
