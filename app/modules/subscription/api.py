import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from app.core.dependencies import get_current_user_id, get_subscription_service
from app.modules.subscription.service import SubscriptionLifecycleService
from app.schemas.reconciliation_schema import PendingCheckSummary, ReconciliationResult
from app.schemas.subscription_schema import (
    AvailablePlanChanges,
    CancelResult,
    CancelSubscriptionRequest,
    DowngradeResult,
    EligibilityResult,
    PaymentRequestCreate,
    PaymentRequestResult,
    PlanChangeRequest,
    SubscriptionHistoryEntry,
    SubscriptionStatusResult,
    UpgradeResult,
)
from app.tasks.subscription_tasks import schedule_payment_poll

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get("/eligibility", response_model=EligibilityResult)
async def check_eligibility(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.validate_eligibility(user_id)


@router.post("/payment-request", response_model=PaymentRequestResult)
async def create_payment_request(
    request: PaymentRequestCreate,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    result = await service.create_payment_request(
        user_id, request.plan_id, success_url=request.success_url, failure_url=request.failure_url
    )
    if result.success and result.subscription:
        try:
            schedule_payment_poll(result.subscription.id)
        except Exception as e:
            # the client can still drive reconciliation through check-status
            logger.warning("Could not queue payment poll for subscription %s: %s", result.subscription.id, e)
    return result


@router.get("/current", response_model=SubscriptionStatusResult)
async def get_current_subscription(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.get_current_subscription(user_id)


@router.get("/history", response_model=List[SubscriptionHistoryEntry])
async def get_subscription_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.get_subscription_history(user_id, limit=limit)


@router.post("/check-pending", response_model=PendingCheckSummary)
async def check_pending_subscriptions(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    """Reconcile every pending subscription of the caller against PayPlus."""
    return await service.check_user_pending_subscriptions(user_id)


@router.post("/{subscription_id}/cancel", response_model=CancelResult)
async def cancel_subscription(
    subscription_id: int,
    request: CancelSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.cancel_subscription(
        user_id, subscription_id, immediate=request.immediate, reason=request.reason
    )


@router.post("/{subscription_id}/upgrade", response_model=UpgradeResult)
async def upgrade_subscription(
    subscription_id: int,
    request: PlanChangeRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.upgrade_subscription(
        user_id, subscription_id, request.new_plan_id, request.payment_method_id
    )


@router.post("/{subscription_id}/downgrade", response_model=DowngradeResult)
async def downgrade_subscription(
    subscription_id: int,
    request: PlanChangeRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.downgrade_subscription(user_id, subscription_id, request.new_plan_id)


@router.delete("/{subscription_id}/pending-downgrade", response_model=CancelResult)
async def cancel_pending_downgrade(
    subscription_id: int,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.cancel_pending_downgrade(user_id, subscription_id)


@router.get("/{subscription_id}/available-changes", response_model=AvailablePlanChanges)
async def get_available_plan_changes(
    subscription_id: int,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.get_available_plan_changes(user_id, subscription_id)


@router.post("/{subscription_id}/check-status", response_model=ReconciliationResult)
async def check_payment_status(
    subscription_id: int,
    attempt_number: int = Query(1, ge=1),
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionLifecycleService = Depends(get_subscription_service),
):
    return await service.check_payment_status(user_id, subscription_id, attempt_number)
