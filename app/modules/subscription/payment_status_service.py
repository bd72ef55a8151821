"""
Polling-based reconciliation of local subscriptions against PayPlus.

The gateway's webhooks are not reliable, so pending subscriptions are
resolved by asking PayPlus what happened to their payment page (stage 1) and,
when that gives no answer or the subscription is already running, what the
recurring-charge history says (stage 2).
"""
import logging
from datetime import datetime
from typing import Callable, Optional, Union

from app.core.exceptions import ExternalGatewayError, GatewayPayloadError, NotFoundError
from app.core.uow import UnitOfWork
from app.modules.subscription.proration import calculate_next_billing_date
from app.repository.ports import PaymentGatewayClient, SubscriptionRepository
from app.schemas.gateway_schema import GatewayTransaction
from app.schemas.plan_change_schema import (
    LAST_PLAN_CHANGE_KEY,
    PENDING_PLAN_CHANGE_KEY,
    AppliedDowngrade,
    DowngradeChange,
    parse_plan_change,
    with_metadata,
)
from app.schemas.reconciliation_schema import (
    Abandoned,
    CheckError,
    PaymentCompleted,
    PaymentFailed,
    PendingCheckSummary,
    PendingProcessing,
    PollingDisabled,
    ReconciliationResult,
)
from app.utils import messages
from app.utils.helpers import mask_uid, utcnow

logger = logging.getLogger(__name__)

POLL_DELAYS = (5, 10, 15, 20, 30, 60)

Outcome = Union[PendingProcessing, Abandoned, PaymentCompleted, PaymentFailed, CheckError, PollingDisabled]

ACTION_MESSAGES = {
    "activated": messages.SUBSCRIPTION_ACTIVATED,
    "renewed": messages.SUBSCRIPTION_RENEWED,
    "cancelled": messages.SUBSCRIPTION_CANCELLED_UNPAID,
    "expired": messages.SUBSCRIPTION_EXPIRED,
    "retry_later": messages.PAYMENT_STILL_PROCESSING,
    "already_processed": messages.ALREADY_PROCESSED,
}


def next_poll_delay(attempt_number: int) -> int:
    """Seconds to wait before poll attempt ``attempt_number``: 5, 10, 15, 20, 30, then 60."""
    index = max(attempt_number, 1) - 1
    return POLL_DELAYS[min(index, len(POLL_DELAYS) - 1)]


class PaymentStatusReconciler:
    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: PaymentGatewayClient,
        uow: UnitOfWork,
        polling_enabled: Callable[[], bool] = lambda: True,
        max_attempts: int = 6,
        batch_limit: int = 10,
        clock: Callable[[], datetime] = utcnow,
        currency: str = "ILS",
    ):
        self.repository = repository
        self.gateway = gateway
        self.uow = uow
        self.polling_enabled = polling_enabled
        self.max_attempts = max_attempts
        self.batch_limit = batch_limit
        self.clock = clock
        self.currency = currency

    # stage 1: payment page lookup

    async def check_payment_page_status(
        self, page_request_uid: str, attempt_number: int = 1, max_attempts: Optional[int] = None
    ) -> Outcome:
        max_attempts = max_attempts or self.max_attempts
        if not self.polling_enabled():
            return PollingDisabled(attempt_number=attempt_number, max_attempts=max_attempts)
        return await self._page_stage(page_request_uid, attempt_number, max_attempts)

    async def _page_stage(self, page_request_uid: str, attempt_number: int, max_attempts: int) -> Outcome:
        common = dict(attempt_number=attempt_number, max_attempts=max_attempts, source="page")
        try:
            history = await self.gateway.query_transaction_history(page_request_uid)
        except GatewayPayloadError as e:
            logger.error("Malformed PayPlus history for page %s: %s", mask_uid(page_request_uid), e.detail)
            return CheckError(page_status="error", error=e.detail, **common)
        except ExternalGatewayError as e:
            logger.warning("PayPlus history lookup failed for page %s: %s", mask_uid(page_request_uid), e.detail)
            return CheckError(page_status="unknown", error=e.detail, **common)

        match = history.find_by_page_request(page_request_uid)
        if match is None:
            if attempt_number < max_attempts:
                return PendingProcessing(
                    reason=f"No transaction yet for page request (attempt {attempt_number}/{max_attempts})",
                    **common,
                )
            return Abandoned(
                reason="No transaction found for page request after all attempts. Payment page was not used.",
                **common,
            )

        logger.info("Page %s matched transaction %s (status %s)",
                    mask_uid(page_request_uid), mask_uid(match.uuid), match.status_code)
        if match.is_successful:
            return PaymentCompleted(
                reason="Subscription payment completed successfully",
                transaction_uid=match.uuid,
                transaction=match,
                status_code=match.status_code,
                **common,
            )
        return PaymentFailed(
            reason=f"Subscription payment failed with status code: {match.status_code}",
            transaction_uid=match.uuid,
            status_code=match.status_code,
            **common,
        )

    # stage 2: recurring charge history

    async def check_subscription_renewal_status(
        self, subscription, attempt_number: int = 1, max_attempts: Optional[int] = None
    ) -> Outcome:
        max_attempts = max_attempts or self.max_attempts
        if not self.polling_enabled():
            return PollingDisabled(attempt_number=attempt_number, max_attempts=max_attempts)
        async with self.uow() as db:
            return await self._renewal_stage(db, subscription, attempt_number, max_attempts)

    async def _renewal_stage(self, db, subscription, attempt_number: int, max_attempts: int) -> Outcome:
        common = dict(attempt_number=attempt_number, max_attempts=max_attempts, source="recurring")
        recurring_uid = subscription.payplus_subscription_uid
        try:
            history = await self.gateway.query_recurring_charges(recurring_uid)
        except GatewayPayloadError as e:
            logger.error("Malformed PayPlus recurring history for %s: %s", mask_uid(recurring_uid), e.detail)
            return CheckError(page_status="error", error=e.detail, **common)
        except ExternalGatewayError as e:
            logger.warning("PayPlus recurring lookup failed for %s: %s", mask_uid(recurring_uid), e.detail)
            return CheckError(page_status="unknown", error=e.detail, **common)

        charge = history.latest()
        if charge is None:
            if attempt_number < max_attempts:
                return PendingProcessing(reason="No recurring charges yet", **common)
            return Abandoned(reason="No recurring charges found after all attempts", **common)

        already_recorded = False
        if charge.transaction_uid:
            now = self.clock()
            _, created = await self.repository.record_gateway_transaction(
                db,
                payplus_transaction_uid=charge.transaction_uid,
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                transaction_type="subscription_renewal",
                payment_method="payplus_recurring",
                amount=charge.amount if charge.amount is not None else subscription.billing_price,
                currency=self.currency,
                payment_status="completed" if charge.is_successful else "failed",
                failure_reason=None if charge.is_successful else f"PayPlus status code {charge.status_code}",
                provider_response=charge.model_dump(mode="json"),
                status_last_checked_at=now,
                completed_at=now if charge.is_successful else None,
            )
            already_recorded = not created
            if created:
                logger.info("Recorded renewal charge #%s (%s) for subscription %s",
                            charge.charge_number, mask_uid(charge.transaction_uid), subscription.id)

        if charge.is_successful:
            return PaymentCompleted(
                reason=f"Recurring charge #{charge.charge_number} completed",
                transaction_uid=charge.transaction_uid or "",
                status_code=charge.status_code,
                renewal=True,
                already_recorded=already_recorded,
                **common,
            )
        return PaymentFailed(
            reason=f"Recurring charge #{charge.charge_number} failed with status code: {charge.status_code}",
            transaction_uid=charge.transaction_uid,
            status_code=charge.status_code,
            renewal=True,
            already_recorded=already_recorded,
            **common,
        )

    # driver

    async def check_and_handle_subscription_payment_page_status(
        self, subscription_id: int, attempt_number: int = 1, max_attempts: Optional[int] = None
    ) -> ReconciliationResult:
        max_attempts = max_attempts or self.max_attempts
        if not self.polling_enabled():
            return ReconciliationResult(
                subscription_id=subscription_id,
                outcome=PollingDisabled(attempt_number=attempt_number, max_attempts=max_attempts),
                message=messages.POLLING_DISABLED,
            )
        return await self._reconcile(subscription_id, attempt_number, max_attempts)

    async def _reconcile(self, subscription_id: int, attempt_number: int, max_attempts: int) -> ReconciliationResult:
        async with self.uow() as db:
            subscription = await self.repository.get_subscription(db, subscription_id)
            if not subscription:
                raise NotFoundError(f"Subscription {subscription_id} not found")

            outcome = None
            if subscription.status == "pending":
                page_transaction = await self.repository.get_page_transaction(db, subscription.id)
                if page_transaction and page_transaction.payment_page_request_uid:
                    outcome = await self._page_stage(
                        page_transaction.payment_page_request_uid, attempt_number, max_attempts
                    )

            needs_fallback = outcome is None or isinstance(outcome, (Abandoned, CheckError))
            if needs_fallback and subscription.payplus_subscription_uid:
                outcome = await self._renewal_stage(db, subscription, attempt_number, max_attempts)

            if outcome is None:
                outcome = CheckError(
                    page_status="error",
                    error="Subscription has neither a payment page request nor a recurring uid",
                    attempt_number=attempt_number,
                    max_attempts=max_attempts,
                    source="none",
                )
            return await self._dispatch(db, subscription.id, outcome)

    async def _dispatch(self, db, subscription_id: int, outcome: Outcome) -> ReconciliationResult:
        """Apply an outcome under the row lock. A status already moved by another poll is left alone."""
        subscription = await self.repository.get_subscription_for_update(db, subscription_id)
        status = subscription.status
        now = self.clock()
        action = "none"

        if outcome.should_retry_later:
            action = "retry_later"
        elif outcome.should_activate_subscription:
            if status == "pending":
                await self._activate(db, subscription, outcome, now)
                action = "activated"
            elif status == "active" and outcome.renewal and outcome.transaction_uid and not outcome.already_recorded:
                await self._renew(db, subscription, outcome, now)
                action = "renewed"
            else:
                action = "already_processed"
        elif outcome.should_cancel_subscription:
            if status == "pending":
                reason = "payment_failed" if isinstance(outcome, PaymentFailed) else "payplus_page_abandoned"
                await self._cancel_unpaid(db, subscription, outcome, reason, now)
                action = "cancelled"
            elif status == "active" and isinstance(outcome, PaymentFailed) and outcome.renewal:
                if outcome.attempt_number >= outcome.max_attempts:
                    await self._expire(db, subscription, outcome, now)
                    action = "expired"
                else:
                    action = "retry_later"
            else:
                action = "already_processed"

        if action not in ("none", "retry_later", "already_processed"):
            logger.info("Subscription %s %s (%s)", subscription_id, action, outcome.page_status)
        return ReconciliationResult(
            subscription_id=subscription_id,
            outcome=outcome,
            action_taken=action,
            subscription_status=subscription.status,
            message=ACTION_MESSAGES.get(action, messages.STATUS_CHECK_FAILED),
        )

    # state changes

    async def _activate(self, db, subscription, outcome: PaymentCompleted, now: datetime) -> None:
        plan = subscription.plan
        gateway_transaction = outcome.transaction
        page_transaction = await self.repository.get_page_transaction(db, subscription.id)
        if page_transaction and page_transaction.payment_status == "pending":
            page_transaction.transition_to("completed", now)
            values = {"payment_status": page_transaction.payment_status,
                      "status_last_checked_at": page_transaction.status_last_checked_at,
                      "completed_at": page_transaction.completed_at}
            if outcome.source == "page" and not page_transaction.payplus_transaction_uid:
                values["payplus_transaction_uid"] = outcome.transaction_uid
            if gateway_transaction is not None:
                values["provider_response"] = gateway_transaction.model_dump(mode="json")
            await self.repository.update_transaction(db, page_transaction, **values)

        values = {
            "status": "active",
            "start_date": now,
            "next_billing_date": calculate_next_billing_date(now, plan.billing_period),
        }
        recurring_uid = gateway_transaction.recurring_uid if gateway_transaction else None
        if recurring_uid and not subscription.payplus_subscription_uid:
            values["payplus_subscription_uid"] = recurring_uid
        await self.repository.update_subscription(db, subscription, **values)
        await self.repository.append_history(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            subscription_plan_id=subscription.subscription_plan_id,
            action_type="started",
            purchased_price=subscription.billing_price,
            payplus_subscription_uid=subscription.payplus_subscription_uid,
            notes="Subscription activated after confirmed payment",
            metadata_json={"transaction_uid": outcome.transaction_uid, "source": outcome.source},
        )

    async def _renew(self, db, subscription, outcome: PaymentCompleted, now: datetime) -> None:
        plan = subscription.plan
        previous_plan_id = None
        cycle_from = subscription.next_billing_date or now
        values = {"next_billing_date": calculate_next_billing_date(cycle_from, plan.billing_period)}

        metadata = subscription.metadata_json or {}
        pending = parse_plan_change(metadata.get(PENDING_PLAN_CHANGE_KEY))
        if isinstance(pending, DowngradeChange) and pending.effective_date <= now:
            new_plan = await self.repository.get_plan(db, pending.to_plan_id)
            if new_plan is None:
                logger.error("Pending downgrade of subscription %s targets missing plan %s",
                             subscription.id, pending.to_plan_id)
            else:
                previous_plan_id = plan.id
                values.update(
                    subscription_plan_id=new_plan.id,
                    plan=new_plan,
                    billing_price=pending.new_recurring_amount,
                    original_price=new_plan.price,
                    metadata_json=with_metadata(
                        metadata,
                        **{
                            PENDING_PLAN_CHANGE_KEY: None,
                            LAST_PLAN_CHANGE_KEY: AppliedDowngrade(**pending.model_dump(), applied_at=now),
                        },
                    ),
                )
                logger.info("Applied scheduled downgrade of subscription %s to plan %s",
                            subscription.id, new_plan.id)

        subscription = await self.repository.update_subscription(db, subscription, **values)
        await self.repository.append_history(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            subscription_plan_id=subscription.subscription_plan_id,
            previous_plan_id=previous_plan_id,
            action_type="renewed",
            purchased_price=subscription.billing_price,
            payplus_subscription_uid=subscription.payplus_subscription_uid,
            notes=f"Renewed until {subscription.next_billing_date.isoformat()}",
            metadata_json={"transaction_uid": outcome.transaction_uid},
        )

    async def _cancel_unpaid(self, db, subscription, outcome: Outcome, reason: str, now: datetime) -> None:
        page_transaction = await self.repository.get_page_transaction(db, subscription.id)
        if page_transaction and page_transaction.payment_status == "pending":
            target = "failed" if reason == "payment_failed" else "cancelled"
            page_transaction.transition_to(target, now)
            await self.repository.update_transaction(
                db,
                page_transaction,
                payment_status=page_transaction.payment_status,
                status_last_checked_at=page_transaction.status_last_checked_at,
                failure_reason=outcome.reason,
            )

        await self.repository.update_subscription(
            db,
            subscription,
            status="cancelled",
            cancelled_at=now,
            end_date=now,
            cancellation_reason=reason,
            metadata_json=with_metadata(subscription.metadata_json, **{PENDING_PLAN_CHANGE_KEY: None}),
        )
        await self.repository.append_history(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            subscription_plan_id=subscription.subscription_plan_id,
            action_type="failed" if reason == "payment_failed" else "cancelled",
            purchased_price=subscription.billing_price,
            payplus_subscription_uid=subscription.payplus_subscription_uid,
            notes=outcome.reason,
            metadata_json={"reason": reason, "status_code": getattr(outcome, "status_code", None)},
        )

    async def _expire(self, db, subscription, outcome: PaymentFailed, now: datetime) -> None:
        await self.repository.update_subscription(
            db,
            subscription,
            status="expired",
            end_date=now,
            cancellation_reason="renewal_payment_failed",
            metadata_json=with_metadata(subscription.metadata_json, **{PENDING_PLAN_CHANGE_KEY: None}),
        )
        await self.repository.append_history(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            subscription_plan_id=subscription.subscription_plan_id,
            action_type="expired",
            purchased_price=subscription.billing_price,
            payplus_subscription_uid=subscription.payplus_subscription_uid,
            notes=outcome.reason,
            metadata_json={"transaction_uid": outcome.transaction_uid, "status_code": outcome.status_code},
        )

    # explicit success callback

    async def activate_subscription(self, subscription_id: int, transaction: GatewayTransaction) -> ReconciliationResult:
        """Activate a subscription from payment data delivered by a callback instead of a poll."""
        outcome = PaymentCompleted(
            reason="Payment confirmed by callback",
            transaction_uid=transaction.uuid,
            transaction=transaction,
            status_code=transaction.status_code or "000",
        )
        async with self.uow() as db:
            if not await self.repository.get_subscription(db, subscription_id):
                raise NotFoundError(f"Subscription {subscription_id} not found")
            return await self._dispatch(db, subscription_id, outcome)

    # batch entry point

    async def check_user_pending_subscriptions(
        self, user_id: str, attempt_number: int = 1, max_attempts: Optional[int] = None
    ) -> PendingCheckSummary:
        max_attempts = max_attempts or self.max_attempts
        if not self.polling_enabled():
            return PendingCheckSummary(user_id=user_id, enabled=False)

        async with self.uow() as db:
            pending = await self.repository.list_user_subscriptions(
                db, user_id, status="pending", limit=self.batch_limit
            )
            candidates = []
            for subscription in pending:
                page_transaction = await self.repository.get_page_transaction(db, subscription.id)
                candidates.append((subscription.id, bool(page_transaction and page_transaction.payment_page_request_uid)))

        summary = PendingCheckSummary(user_id=user_id, total_pending=len(candidates))
        for subscription_id, has_page in candidates:
            if not has_page:
                summary.skipped += 1
                continue
            try:
                result = await self._reconcile(subscription_id, attempt_number, max_attempts)
            except Exception as e:
                logger.exception("Reconciliation of subscription %s failed", subscription_id)
                summary.errors += 1
                summary.error_details.append({"subscription_id": subscription_id, "error": str(e)})
                continue

            summary.results.append(result)
            if result.action_taken == "activated":
                summary.activated += 1
            elif result.action_taken == "cancelled":
                summary.cancelled += 1
            elif result.action_taken == "retry_later":
                summary.retry_later += 1
            elif isinstance(result.outcome, CheckError):
                summary.errors += 1
        return summary
