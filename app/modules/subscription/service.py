import logging
from datetime import datetime
from typing import Callable, List, Optional

from app.core.exceptions import ExternalGatewayError, NotFoundError, SubscriptionError, ValidationError
from app.core.uow import UnitOfWork
from app.modules.subscription.payment_status_service import PaymentStatusReconciler
from app.modules.subscription.plan_change_service import PlanChangeOrchestrator, failure_message
from app.repository.ports import PaymentGatewayClient, SubscriptionRepository
from app.schemas.gateway_schema import SUCCESS_STATUS_CODE, GatewayTransaction
from app.schemas.plan_change_schema import (
    PENDING_PLAN_CHANGE_KEY,
    SCHEDULED_CANCELLATION_KEY,
    ScheduledCancellation,
    with_metadata,
)
from app.schemas.reconciliation_schema import PaymentFailed, PendingCheckSummary, ReconciliationResult
from app.schemas.subscription_schema import (
    AvailablePlanChanges,
    CancelResult,
    DowngradeResult,
    EligibilityResult,
    ExpiredSubscriptions,
    PaymentRequestResult,
    Subscription as SubscriptionSchema,
    SubscriptionHistoryEntry,
    SubscriptionStatusResult,
    UpgradeResult,
)
from app.schemas.transaction_schema import ActivationRequest
from app.utils import messages
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

BLOCKING_STATUSES = ("active", "pending")


class SubscriptionLifecycleService:
    """Entry point used by the router and the background tasks."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: PaymentGatewayClient,
        uow: UnitOfWork,
        plan_changes: PlanChangeOrchestrator,
        reconciler: PaymentStatusReconciler,
        clock: Callable[[], datetime] = utcnow,
        currency: str = "ILS",
    ):
        self.repository = repository
        self.gateway = gateway
        self.uow = uow
        self.plan_changes = plan_changes
        self.reconciler = reconciler
        self.clock = clock
        self.currency = currency

    async def _eligibility(self, db, user_id: str) -> EligibilityResult:
        existing = await self.repository.find_user_subscription_by_status(db, user_id, BLOCKING_STATUSES)
        if existing:
            return EligibilityResult(
                success=False,
                error=f"User already has a {existing.status} subscription",
                message=messages.ALREADY_SUBSCRIBED,
                existing_subscription_id=existing.id,
                existing_status=existing.status,
            )
        return EligibilityResult(success=True, message=messages.ELIGIBLE)

    async def validate_eligibility(self, user_id: str) -> EligibilityResult:
        async with self.uow() as db:
            return await self._eligibility(db, user_id)

    async def create_payment_request(
        self,
        user_id: str,
        plan_id: int,
        success_url: Optional[str] = None,
        failure_url: Optional[str] = None,
    ) -> PaymentRequestResult:
        """
        Persist a pending subscription with its payment transaction, then open
        a PayPlus payment page for it. The gateway call runs after the first
        commit so no database transaction is held open across the network.
        """
        async with self.uow() as db:
            eligibility = await self._eligibility(db, user_id)
            if not eligibility.success:
                return PaymentRequestResult(success=False, error=eligibility.error, message=eligibility.message)

            plan = await self.repository.get_plan(db, plan_id)
            if not plan or not plan.is_active:
                return PaymentRequestResult(
                    success=False,
                    error=f"Subscription plan {plan_id} not found or inactive",
                    message=messages.PLAN_NOT_AVAILABLE,
                )

            subscription = await self.repository.create_subscription(
                db,
                plan,
                user_id=user_id,
                status="pending",
                billing_price=plan.price,
                original_price=plan.price,
                metadata_json={},
            )
            transaction = await self.repository.create_transaction(
                db,
                user_id=user_id,
                subscription_id=subscription.id,
                transaction_type="subscription_payment",
                payment_method="payplus",
                amount=plan.price,
                currency=self.currency,
                payment_status="pending",
            )

        try:
            page = await self.gateway.create_payment_page(
                plan.price,
                self.currency,
                plan.name,
                user_id,
                more_info={
                    "subscription_id": subscription.id,
                    "subscription_plan_id": plan.id,
                    "billing_period": plan.billing_period,
                },
                success_url=success_url,
                failure_url=failure_url,
                billing_period=plan.billing_period,
            )
        except ExternalGatewayError as e:
            logger.error("Payment page creation failed for subscription %s: %s", subscription.id, e.detail)
            async with self.uow() as db:
                transaction = await self.repository.get_page_transaction(db, subscription.id)
                now = self.clock()
                transaction.transition_to("failed", now)
                await self.repository.update_transaction(
                    db,
                    transaction,
                    payment_status=transaction.payment_status,
                    status_last_checked_at=transaction.status_last_checked_at,
                    failure_reason=e.detail,
                )
                subscription = await self.repository.get_subscription_for_update(db, subscription.id)
                await self.repository.update_subscription(
                    db,
                    subscription,
                    status="cancelled",
                    cancelled_at=now,
                    end_date=now,
                    cancellation_reason="payment_page_failed",
                )
            return PaymentRequestResult(
                success=False,
                error=e.detail,
                message=messages.PAYMENT_PAGE_FAILED,
                subscription=SubscriptionSchema.model_validate(subscription),
                transaction_id=transaction.id,
            )

        async with self.uow() as db:
            transaction = await self.repository.get_page_transaction(db, subscription.id)
            await self.repository.update_transaction(
                db,
                transaction,
                payment_page_request_uid=page.page_request_uid,
                payment_page_link=page.payment_page_link,
            )
        logger.info("Payment page created for subscription %s (user %s)", subscription.id, user_id)
        return PaymentRequestResult(
            success=True,
            message=messages.PAYMENT_PAGE_CREATED,
            subscription=SubscriptionSchema.model_validate(subscription),
            transaction_id=transaction.id,
            page_request_uid=page.page_request_uid,
            payment_page_link=page.payment_page_link,
        )

    async def activate_subscription(self, subscription_id: int, transaction_data: ActivationRequest) -> ReconciliationResult:
        if transaction_data.status_code != SUCCESS_STATUS_CODE:
            error = f"Cannot activate with unsuccessful status code {transaction_data.status_code}"
            logger.warning("Activation of subscription %s rejected: %s", subscription_id, error)
            return ReconciliationResult(
                success=False,
                error=error,
                subscription_id=subscription_id,
                outcome=PaymentFailed(
                    reason=error,
                    transaction_uid=transaction_data.transaction_uid,
                    status_code=transaction_data.status_code,
                ),
                message=messages.ACTIVATION_REJECTED,
            )
        transaction = GatewayTransaction(
            uuid=transaction_data.transaction_uid,
            status_code=transaction_data.status_code,
            approval_number=transaction_data.approval_number,
            amount=transaction_data.amount,
            recurring_uid=transaction_data.recurring_uid,
        )
        return await self.reconciler.activate_subscription(subscription_id, transaction)

    async def cancel_subscription(
        self,
        user_id: str,
        subscription_id: int,
        immediate: bool = True,
        reason: str = "user_cancelled",
    ) -> CancelResult:
        """
        Stop billing at the gateway first; local state changes only when that
        succeeds. End-of-cycle cancellation keeps the subscription active until
        its next billing date.
        """
        try:
            async with self.uow() as db:
                subscription = await self.repository.get_subscription_for_update(db, subscription_id, user_id)
                if not subscription:
                    raise NotFoundError("Subscription not found or does not belong to user")
                if subscription.status not in BLOCKING_STATUSES:
                    raise ValidationError(f"Cannot cancel a {subscription.status} subscription")
                if subscription.status != "active" or not subscription.next_billing_date:
                    immediate = True

                if subscription.payplus_subscription_uid:
                    result = await self.gateway.cancel_recurring(
                        subscription.payplus_subscription_uid, immediate=immediate, reason=reason
                    )
                    if not result.success:
                        raise ExternalGatewayError(
                            f"PayPlus cancellation failed: {result.error}", user_message=messages.CANCEL_FAILED
                        )

                now = self.clock()
                metadata = with_metadata(subscription.metadata_json, **{PENDING_PLAN_CHANGE_KEY: None})
                if immediate:
                    values = dict(status="cancelled", end_date=now)
                    message = messages.CANCELLED_IMMEDIATELY
                else:
                    metadata = with_metadata(
                        metadata,
                        **{
                            SCHEDULED_CANCELLATION_KEY: ScheduledCancellation(
                                cancelled_at=now, will_expire_at=subscription.next_billing_date, reason=reason
                            )
                        },
                    )
                    values = dict(end_date=subscription.next_billing_date)
                    message = messages.CANCELLED_END_OF_CYCLE.format(
                        date=messages.format_date(subscription.next_billing_date)
                    )

                subscription = await self.repository.update_subscription(
                    db,
                    subscription,
                    cancelled_at=now,
                    cancellation_reason=reason,
                    metadata_json=metadata,
                    **values,
                )
                await self.repository.append_history(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    subscription_plan_id=subscription.subscription_plan_id,
                    action_type="cancelled",
                    purchased_price=subscription.billing_price,
                    payplus_subscription_uid=subscription.payplus_subscription_uid,
                    notes=f"Cancelled ({'immediate' if immediate else 'end of cycle'}): {reason}",
                    metadata_json={"immediate": immediate, "reason": reason},
                )
        except SubscriptionError as e:
            logger.warning("Cancellation of subscription %s rejected: %s", subscription_id, e.detail)
            return CancelResult(success=False, error=e.detail, message=failure_message(e))

        logger.info("Subscription %s cancelled by user %s (immediate=%s)", subscription_id, user_id, immediate)
        return CancelResult(success=True, subscription=SubscriptionSchema.model_validate(subscription), message=message)

    async def get_current_subscription(self, user_id: str) -> SubscriptionStatusResult:
        async with self.uow() as db:
            subscription = await self.repository.find_user_subscription_by_status(db, user_id, ("active",))
            if subscription is None:
                subscription = await self.repository.find_user_subscription_by_status(db, user_id, ("pending",))
            if subscription is None:
                return SubscriptionStatusResult(success=False, message=messages.SUBSCRIPTION_NOT_FOUND)
            return SubscriptionStatusResult(success=True, subscription=SubscriptionSchema.model_validate(subscription))

    async def get_subscription_history(self, user_id: str, limit: int = 50) -> List[SubscriptionHistoryEntry]:
        async with self.uow() as db:
            entries = await self.repository.list_history(db, user_id, limit)
            return [SubscriptionHistoryEntry.model_validate(entry) for entry in entries]

    async def expire_due_subscriptions(self, now: Optional[datetime] = None) -> ExpiredSubscriptions:
        """Expire active subscriptions whose end-of-cycle cancellation date has passed."""
        now = now or self.clock()
        result = ExpiredSubscriptions()
        async with self.uow() as db:
            for due in await self.repository.list_due_scheduled_cancellations(db, now):
                subscription = await self.repository.get_subscription_for_update(db, due.id)
                if subscription.status != "active":
                    continue
                await self.repository.update_subscription(db, subscription, status="expired", end_date=now)
                await self.repository.append_history(
                    db,
                    user_id=subscription.user_id,
                    subscription_id=subscription.id,
                    subscription_plan_id=subscription.subscription_plan_id,
                    action_type="expired",
                    purchased_price=subscription.billing_price,
                    payplus_subscription_uid=subscription.payplus_subscription_uid,
                    notes="Scheduled cancellation reached its end date",
                )
                result.expired += 1
                result.subscription_ids.append(subscription.id)
        if result.expired:
            logger.info("Expired %s subscriptions with scheduled cancellation", result.expired)
        return result

    # delegates

    async def upgrade_subscription(
        self, user_id: str, subscription_id: int, new_plan_id: int, payment_method_id: Optional[int] = None
    ) -> UpgradeResult:
        return await self.plan_changes.upgrade_subscription(user_id, subscription_id, new_plan_id, payment_method_id)

    async def downgrade_subscription(self, user_id: str, subscription_id: int, new_plan_id: int) -> DowngradeResult:
        return await self.plan_changes.downgrade_subscription(user_id, subscription_id, new_plan_id)

    async def cancel_pending_downgrade(self, user_id: str, subscription_id: int) -> CancelResult:
        return await self.plan_changes.cancel_pending_downgrade(user_id, subscription_id)

    async def get_available_plan_changes(self, user_id: str, subscription_id: int) -> AvailablePlanChanges:
        return await self.plan_changes.get_available_plan_changes(user_id, subscription_id)

    async def check_payment_status(
        self, user_id: str, subscription_id: int, attempt_number: int = 1
    ) -> ReconciliationResult:
        async with self.uow() as db:
            if not await self.repository.get_subscription(db, subscription_id, user_id):
                raise NotFoundError("Subscription not found or does not belong to user")
        return await self.reconciler.check_and_handle_subscription_payment_page_status(subscription_id, attempt_number)

    async def check_user_pending_subscriptions(self, user_id: str, attempt_number: int = 1) -> PendingCheckSummary:
        return await self.reconciler.check_user_pending_subscriptions(user_id, attempt_number)
