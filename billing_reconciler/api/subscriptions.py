"""Read API over stored subscriptions.

Implements:
- GET /subscriptions/stats - Aggregate counts
- GET /subscriptions/{user_id} - Stored subscription record
- GET /subscriptions/{user_id}/access - Access decision and plan features
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from billing_reconciler.logging_config import get_logger
from billing_reconciler.models import AccessResponse, StatsResponse, SubscriptionRecord
from billing_reconciler.repositories.subscription_store import (
    SubscriptionNotFoundError,
    SubscriptionStore,
)
from billing_reconciler.services.access_policy import evaluate_access

logger = get_logger(__name__)
router = APIRouter(tags=["Subscriptions"], prefix="/subscriptions")


def get_store(request: Request) -> SubscriptionStore:
    return request.app.state.store


@router.get("/stats", response_model=StatsResponse, summary="Subscription statistics")
async def subscription_stats(store: SubscriptionStore = Depends(get_store)) -> StatsResponse:
    """Counts of stored subscriptions by status and plan."""
    return StatsResponse(**store.get_statistics())


@router.get(
    "/{user_id}",
    response_model=SubscriptionRecord,
    summary="Get user subscription",
)
async def get_subscription(
    user_id: str, store: SubscriptionStore = Depends(get_store)
) -> SubscriptionRecord:
    """Return the stored subscription of a user.

    Raises:
        404: User has no subscription
    """
    try:
        return store.get_by_user(user_id)
    except SubscriptionNotFoundError as e:
        logger.info("subscription_lookup_not_found", user_id=user_id)
        raise HTTPException(
            status_code=404,
            detail={"error": "subscription_not_found", "message": str(e)},
        )


@router.get(
    "/{user_id}/access",
    response_model=AccessResponse,
    summary="Check user access",
)
async def check_access(user_id: str, store: SubscriptionStore = Depends(get_store)) -> AccessResponse:
    """Whether the user currently has access, and what their plan unlocks."""
    access = evaluate_access(user_id, store.find_by_user(user_id))
    logger.debug(
        "access_checked",
        user_id=user_id,
        has_access=access.has_access,
        plan_type=access.plan_type.value,
        days_remaining=access.days_remaining,
    )
    return access
