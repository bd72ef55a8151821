import logging
from datetime import datetime
from typing import Callable, Optional

from app.core.exceptions import (
    ConsistencyError,
    ExternalGatewayError,
    NotFoundError,
    SubscriptionError,
    ValidationError,
)
from app.core.uow import UnitOfWork
from app.modules.subscription import proration
from app.repository.ports import PaymentGatewayClient, SubscriptionRepository
from app.schemas.plan_change_schema import (
    CANCELLED_PLAN_CHANGES_KEY,
    LAST_PLAN_CHANGE_KEY,
    PENDING_PLAN_CHANGE_KEY,
    CancelledPlanChange,
    DowngradeChange,
    UpgradeChange,
    cancelled_plan_changes,
    parse_plan_change,
    with_metadata,
)
from app.schemas.plan_schema import PlanPublic
from app.schemas.subscription_schema import (
    AvailablePlanChanges,
    CancelResult,
    DowngradeResult,
    PlanChangePreview,
    Subscription as SubscriptionSchema,
    UpgradeResult,
)
from app.utils import messages
from app.utils.helpers import mask_uid, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGES = {
    NotFoundError: messages.SUBSCRIPTION_NOT_FOUND,
    ValidationError: messages.PLAN_CHANGE_NOT_ALLOWED,
    ExternalGatewayError: messages.GATEWAY_UPDATE_FAILED,
}


def failure_message(error: SubscriptionError) -> str:
    if error.user_message:
        return error.user_message
    for error_type, message in DEFAULT_FAILURE_MESSAGES.items():
        if isinstance(error, error_type):
            return message
    return messages.PLAN_CHANGE_NOT_ALLOWED


class PlanChangeOrchestrator:
    """
    Write path for mid-cycle plan changes.

    Each operation runs in one unit of work with the subscription row locked.
    Gateway calls happen inside that transaction, so a failing gateway step
    rolls back every local write made before it.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: PaymentGatewayClient,
        uow: UnitOfWork,
        clock: Callable[[], datetime] = utcnow,
        currency: str = "ILS",
    ):
        self.repository = repository
        self.gateway = gateway
        self.uow = uow
        self.clock = clock
        self.currency = currency

    async def _load_locked(self, db, user_id: str, subscription_id: int):
        subscription = await self.repository.get_subscription_for_update(db, subscription_id, user_id)
        if not subscription:
            raise NotFoundError("Subscription not found or does not belong to user")
        return subscription

    async def _load_target_plan(self, db, new_plan_id: int):
        new_plan = await self.repository.get_plan(db, new_plan_id)
        if not new_plan:
            raise NotFoundError(
                f"Target subscription plan {new_plan_id} not found", user_message=messages.PLAN_NOT_AVAILABLE
            )
        return new_plan

    async def _resolve_payment_method(self, db, user_id: str, payment_method_id: Optional[int]):
        if payment_method_id is not None:
            payment_method = await self.repository.get_payment_method(db, payment_method_id, user_id)
            if not payment_method:
                raise NotFoundError(
                    "Payment method not found or does not belong to user",
                    user_message=messages.PAYMENT_METHOD_NOT_FOUND,
                )
            return payment_method
        payment_method = await self.repository.get_default_payment_method(db, user_id)
        if not payment_method:
            raise NotFoundError(
                "No payment method found. Please add a payment method first.",
                user_message=messages.PAYMENT_METHOD_NOT_FOUND,
            )
        return payment_method

    @staticmethod
    def _validate(subscription, new_plan, expected: str, now: datetime) -> None:
        validation = proration.validate_plan_change(subscription, new_plan, now=now)
        if not validation.valid:
            raise ValidationError(f"Validation failed: {', '.join(validation.errors)}")
        if validation.change_type != expected:
            other = "downgrade_subscription" if expected == "upgrade" else "upgrade_subscription"
            raise ValidationError(f"This is not an {expected}. Use {other} instead.")

    async def upgrade_subscription(
        self,
        user_id: str,
        subscription_id: int,
        new_plan_id: int,
        payment_method_id: Optional[int] = None,
    ) -> UpgradeResult:
        """
        Switch to a more expensive plan now and charge the prorated difference
        to a stored payment token.
        """
        logger.info("Upgrade requested: user=%s subscription=%s plan=%s", user_id, subscription_id, new_plan_id)
        try:
            async with self.uow() as db:
                subscription = await self._load_locked(db, user_id, subscription_id)
                new_plan = await self._load_target_plan(db, new_plan_id)
                current_plan = subscription.plan
                now = self.clock()

                self._validate(subscription, new_plan, "upgrade", now)
                calculation = proration.calculate_upgrade_proration(subscription, new_plan, now=now)
                payment_method = await self._resolve_payment_method(db, user_id, payment_method_id)

                charge = await self.gateway.charge_token(
                    payment_method.payplus_token,
                    calculation.prorated_amount,
                    self.currency,
                    f"שדרוג מנוי: {current_plan.name} → {new_plan.name} ({calculation.remaining_days} ימים)",
                    {
                        "subscription_id": subscription.id,
                        "upgrade_from": current_plan.id,
                        "upgrade_to": new_plan.id,
                        "proration_days": calculation.remaining_days,
                        "charge_type": "proration_upgrade",
                    },
                )
                if not charge.success:
                    raise ExternalGatewayError(
                        f"Proration charge failed: {charge.error}", user_message=messages.CHARGE_FAILED
                    )
                logger.info(
                    "Proration charge %s taken for subscription %s: %s",
                    mask_uid(charge.transaction_id), subscription.id, calculation.prorated_amount,
                )

                await self.repository.create_transaction(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    transaction_type="proration_upgrade",
                    payment_method="payplus_token",
                    amount=calculation.prorated_amount,
                    currency=self.currency,
                    payment_status="completed",
                    payplus_transaction_uid=charge.transaction_id,
                    provider_response=charge.raw,
                    status_last_checked_at=now,
                    completed_at=now,
                )

                update = await self.gateway.update_recurring_amount(
                    subscription.payplus_subscription_uid, new_plan.price, "upgrade"
                )
                if not update.success:
                    raise ConsistencyError(
                        f"PayPlus update failed after proration charge: {update.error}",
                        charge_transaction_id=charge.transaction_id,
                    )

                change = UpgradeChange(
                    from_plan_id=current_plan.id,
                    to_plan_id=new_plan.id,
                    proration_charged=calculation.prorated_amount,
                    proration_transaction_id=charge.transaction_id,
                    changed_at=now,
                )
                subscription = await self.repository.update_subscription(
                    db,
                    subscription,
                    subscription_plan_id=new_plan.id,
                    plan=new_plan,
                    billing_price=new_plan.price,
                    original_price=new_plan.price,
                    metadata_json=with_metadata(
                        subscription.metadata_json,
                        **{LAST_PLAN_CHANGE_KEY: change, PENDING_PLAN_CHANGE_KEY: None},
                    ),
                )
                await self.repository.append_history(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    subscription_plan_id=new_plan.id,
                    previous_plan_id=current_plan.id,
                    action_type="upgraded",
                    purchased_price=new_plan.price,
                    payplus_subscription_uid=subscription.payplus_subscription_uid,
                    notes=f"Upgraded from {current_plan.name} to {new_plan.name}",
                    metadata_json={
                        "proration": calculation.model_dump(mode="json"),
                        "charge_transaction_id": charge.transaction_id,
                    },
                )
        except ConsistencyError as e:
            logger.critical(
                "MANUAL REVIEW REQUIRED: subscription %s user %s charged (charge %s) but recurring amount "
                "was not updated: %s",
                subscription_id, user_id, e.charge_transaction_id, e.detail,
            )
            return UpgradeResult(
                success=False,
                error=e.detail,
                message=messages.MANUAL_REVIEW_REQUIRED,
                charge_transaction_id=e.charge_transaction_id,
                requires_manual_review=True,
            )
        except SubscriptionError as e:
            logger.warning("Upgrade of subscription %s rejected: %s", subscription_id, e.detail)
            return UpgradeResult(success=False, error=e.detail, message=failure_message(e))

        return UpgradeResult(
            success=True,
            subscription=SubscriptionSchema.model_validate(subscription),
            proration=calculation,
            charge_transaction_id=charge.transaction_id,
            message=messages.UPGRADE_SUCCESS.format(
                plan=new_plan.name, amount=messages.format_amount(calculation.prorated_amount)
            ),
        )

    async def downgrade_subscription(self, user_id: str, subscription_id: int, new_plan_id: int) -> DowngradeResult:
        """Schedule a cheaper plan for the next billing date. Nothing is charged."""
        logger.info("Downgrade requested: user=%s subscription=%s plan=%s", user_id, subscription_id, new_plan_id)
        try:
            async with self.uow() as db:
                subscription = await self._load_locked(db, user_id, subscription_id)
                new_plan = await self._load_target_plan(db, new_plan_id)
                current_plan = subscription.plan
                now = self.clock()

                self._validate(subscription, new_plan, "downgrade", now)
                scheduling = proration.calculate_downgrade_scheduling(subscription, new_plan, now=now)

                update = await self.gateway.update_recurring_amount(
                    subscription.payplus_subscription_uid, new_plan.price, "downgrade"
                )
                if not update.success:
                    raise ExternalGatewayError(f"PayPlus update failed: {update.error}")

                change = DowngradeChange(
                    from_plan_id=current_plan.id,
                    to_plan_id=new_plan.id,
                    effective_date=scheduling.effective_date,
                    scheduled_at=now,
                    new_recurring_amount=new_plan.price,
                )
                subscription = await self.repository.update_subscription(
                    db,
                    subscription,
                    metadata_json=with_metadata(subscription.metadata_json, **{PENDING_PLAN_CHANGE_KEY: change}),
                )
                await self.repository.append_history(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    subscription_plan_id=new_plan.id,
                    previous_plan_id=current_plan.id,
                    action_type="downgraded",
                    purchased_price=new_plan.price,
                    payplus_subscription_uid=subscription.payplus_subscription_uid,
                    notes=f"Downgrade to {new_plan.name} scheduled for {scheduling.effective_date.isoformat()}",
                    metadata_json={"pending_plan_change": change.model_dump(mode="json")},
                )
        except SubscriptionError as e:
            logger.warning("Downgrade of subscription %s rejected: %s", subscription_id, e.detail)
            return DowngradeResult(success=False, error=e.detail, message=failure_message(e))

        return DowngradeResult(
            success=True,
            subscription=SubscriptionSchema.model_validate(subscription),
            scheduling=scheduling,
            message=messages.DOWNGRADE_SCHEDULED.format(
                plan=new_plan.name,
                date=messages.format_date(scheduling.effective_date),
                current_plan=current_plan.name,
            ),
        )

    async def cancel_pending_downgrade(self, user_id: str, subscription_id: int) -> CancelResult:
        """Drop a scheduled downgrade and restore the current plan's recurring amount."""
        try:
            async with self.uow() as db:
                subscription = await self._load_locked(db, user_id, subscription_id)
                current_plan = subscription.plan
                metadata = subscription.metadata_json or {}
                pending = parse_plan_change(metadata.get(PENDING_PLAN_CHANGE_KEY))
                if pending is None:
                    raise ValidationError("No pending plan change found", user_message=messages.NO_PENDING_DOWNGRADE)
                if not isinstance(pending, DowngradeChange):
                    raise ValidationError("Pending change is not a downgrade", user_message=messages.NO_PENDING_DOWNGRADE)
                if not subscription.payplus_subscription_uid:
                    raise ValidationError("Subscription missing PayPlus UID")

                update = await self.gateway.update_recurring_amount(
                    subscription.payplus_subscription_uid, current_plan.price, "cancel_downgrade"
                )
                if not update.success:
                    raise ExternalGatewayError(f"PayPlus update failed: {update.error}")

                now = self.clock()
                cancelled = cancelled_plan_changes(metadata)
                cancelled.append(CancelledPlanChange(**pending.model_dump(), cancelled_at=now))
                subscription = await self.repository.update_subscription(
                    db,
                    subscription,
                    metadata_json=with_metadata(
                        metadata, **{PENDING_PLAN_CHANGE_KEY: None, CANCELLED_PLAN_CHANGES_KEY: cancelled}
                    ),
                )
                await self.repository.append_history(
                    db,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    subscription_plan_id=current_plan.id,
                    previous_plan_id=pending.to_plan_id,
                    action_type="downgrade_cancelled",
                    purchased_price=subscription.billing_price,
                    payplus_subscription_uid=subscription.payplus_subscription_uid,
                    notes=f"Cancelled pending downgrade. Keeping {current_plan.name}.",
                    metadata_json={"cancelled_downgrade": pending.model_dump(mode="json")},
                )
        except SubscriptionError as e:
            logger.warning("Cancelling pending downgrade of %s rejected: %s", subscription_id, e.detail)
            return CancelResult(success=False, error=e.detail, message=failure_message(e))

        return CancelResult(
            success=True,
            subscription=SubscriptionSchema.model_validate(subscription),
            message=messages.DOWNGRADE_CANCELLED.format(plan=current_plan.name),
        )

    async def get_available_plan_changes(self, user_id: str, subscription_id: int) -> AvailablePlanChanges:
        async with self.uow() as db:
            subscription = await self.repository.get_subscription(db, subscription_id, user_id)
            if not subscription:
                return AvailablePlanChanges(
                    success=False,
                    error="Subscription not found or does not belong to user",
                    message=messages.SUBSCRIPTION_NOT_FOUND,
                )
            current_plan = subscription.plan
            plans = await self.repository.list_active_plans(db, current_plan.billing_period)

        now = self.clock()
        current_price = subscription.billing_price
        upgrades, downgrades = [], []
        for plan in plans:
            if plan.id == subscription.subscription_plan_id:
                continue
            if plan.price > current_price:
                upgrades.append(
                    PlanChangePreview(
                        plan=PlanPublic.model_validate(plan),
                        change_type="upgrade",
                        proration=self._preview(proration.calculate_upgrade_proration, subscription, plan, now),
                    )
                )
            elif plan.price < current_price:
                downgrades.append(
                    PlanChangePreview(
                        plan=PlanPublic.model_validate(plan),
                        change_type="downgrade",
                        scheduling=self._preview(proration.calculate_downgrade_scheduling, subscription, plan, now),
                    )
                )

        pending = (subscription.metadata_json or {}).get(PENDING_PLAN_CHANGE_KEY)
        return AvailablePlanChanges(
            success=True,
            current_plan=PlanPublic.model_validate(current_plan),
            upgrades=upgrades,
            downgrades=downgrades,
            pending_change=pending,
            can_upgrade=bool(upgrades) and not pending,
            can_downgrade=bool(downgrades) and not pending,
        )

    @staticmethod
    def _preview(calculate, subscription, plan, now):
        try:
            return calculate(subscription, plan, now=now)
        except ValidationError as e:
            logger.debug("No preview for plan %s: %s", plan.id, e.detail)
            return None
