"""
Proration and scheduling math for mid-cycle plan changes.

Every function here is pure: the caller passes the subscription, the plans
and, optionally, the reference time. Nothing touches the database or the
payment gateway.
"""
import math
from calendar import monthrange
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from app.core.exceptions import ValidationError
from app.schemas.plan_change_schema import PENDING_PLAN_CHANGE_KEY
from app.schemas.subscription_schema import (
    DowngradeScheduling,
    PlanChangeValidation,
    UpgradeProration,
)
from app.utils import messages
from app.utils.helpers import CENT, round2, to_decimal, utcnow

SECONDS_PER_DAY = 86400


def _add_months(value: datetime, months: int) -> datetime:
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _shift_period(value: datetime, billing_period: str, count: int) -> datetime:
    if billing_period == "daily":
        return value + timedelta(days=count)
    if billing_period == "yearly":
        return _add_months(value, 12 * count)
    return _add_months(value, count)


def calculate_next_billing_date(from_date: datetime, billing_period: str) -> datetime:
    """
    One billing period after from_date.
    Monthly dates that do not exist in the target month clamp to its last day;
    unknown periods are treated as monthly.
    """
    return _shift_period(from_date, billing_period, 1)


def _ceil_days(seconds: float) -> int:
    return int(math.ceil(seconds / SECONDS_PER_DAY))


def _resolve_current_plan(subscription, current_plan):
    plan = current_plan if current_plan is not None else getattr(subscription, "plan", None)
    if plan is None:
        raise ValidationError(f"Current subscription plan {subscription.subscription_plan_id} not found")
    return plan


def _check_change_preconditions(subscription, new_plan, current_plan, now: datetime) -> float:
    if subscription.status != "active":
        raise ValidationError(
            f"Cannot change plan of a non-active subscription (status: {subscription.status})"
        )
    if not subscription.next_billing_date:
        raise ValidationError("Subscription missing next_billing_date")
    if current_plan.billing_period != new_plan.billing_period:
        raise ValidationError(
            f"Billing period mismatch: current ({current_plan.billing_period}) vs new ({new_plan.billing_period})"
        )
    remaining_seconds = (subscription.next_billing_date - now).total_seconds()
    if remaining_seconds <= 0:
        raise ValidationError("Subscription billing cycle has already ended")
    return remaining_seconds


def calculate_upgrade_proration(
    subscription,
    new_plan,
    *,
    current_plan=None,
    now: Optional[datetime] = None,
) -> UpgradeProration:
    """
    Amount to charge now for switching to a more expensive plan mid-cycle.

    The price difference is charged for the share of the cycle that is left:
    ``round2((new_price - billing_price) * remaining_ratio)`` with the ratio
    clamped to (0, 1].
    """
    now = now or utcnow()
    current_plan = _resolve_current_plan(subscription, current_plan)
    remaining_seconds = _check_change_preconditions(subscription, new_plan, current_plan, now)

    current_price = to_decimal(subscription.billing_price)
    new_price = to_decimal(new_plan.price)
    price_difference = new_price - current_price
    if price_difference <= 0:
        raise ValidationError("New plan price must be higher than current plan price for upgrade")

    if subscription.start_date is None:
        total_seconds = 0.0
    else:
        total_seconds = (subscription.next_billing_date - subscription.start_date).total_seconds()
    if total_seconds <= 0:
        remaining_ratio = Decimal(1)
    else:
        remaining_ratio = min(Decimal(remaining_seconds) / Decimal(total_seconds), Decimal(1))

    # Never charge zero for a real upgrade, even in the last seconds of a cycle.
    prorated_amount = max(round2(price_difference * remaining_ratio), CENT)

    return UpgradeProration(
        current_plan_id=current_plan.id,
        current_plan_name=current_plan.name,
        current_price=current_price,
        new_plan_id=new_plan.id,
        new_plan_name=new_plan.name,
        new_price=new_price,
        price_difference=price_difference,
        remaining_days=_ceil_days(remaining_seconds),
        total_days=_ceil_days(max(total_seconds, remaining_seconds)),
        remaining_ratio=remaining_ratio,
        prorated_amount=prorated_amount,
        next_billing_date=subscription.next_billing_date,
    )


def calculate_downgrade_scheduling(
    subscription,
    new_plan,
    *,
    current_plan=None,
    now: Optional[datetime] = None,
) -> DowngradeScheduling:
    """A downgrade is never prorated: it takes effect exactly at next_billing_date."""
    now = now or utcnow()
    current_plan = _resolve_current_plan(subscription, current_plan)
    remaining_seconds = _check_change_preconditions(subscription, new_plan, current_plan, now)

    current_price = to_decimal(subscription.billing_price)
    new_price = to_decimal(new_plan.price)
    price_savings = current_price - new_price
    if price_savings <= 0:
        raise ValidationError("New plan price must be lower than current plan price for downgrade")

    return DowngradeScheduling(
        current_plan_id=current_plan.id,
        current_plan_name=current_plan.name,
        current_price=current_price,
        new_plan_id=new_plan.id,
        new_plan_name=new_plan.name,
        new_price=new_price,
        price_savings=price_savings,
        effective_date=subscription.next_billing_date,
        days_remaining=_ceil_days(remaining_seconds),
    )


def validate_plan_change(
    subscription,
    new_plan,
    *,
    current_plan=None,
    now: Optional[datetime] = None,
) -> PlanChangeValidation:
    now = now or utcnow()
    errors = []
    if current_plan is None:
        current_plan = getattr(subscription, "plan", None)

    if subscription.status != "active":
        errors.append(f"Subscription must be active (current status: {subscription.status})")
    if subscription.subscription_plan_id == new_plan.id:
        errors.append("Cannot change to the same subscription plan")
    if not new_plan.is_active:
        errors.append("Target subscription plan is not active")
    if current_plan is None:
        errors.append("Current subscription plan not found")
    elif current_plan.billing_period != new_plan.billing_period:
        errors.append(
            f"Billing period mismatch: current ({current_plan.billing_period}) vs new ({new_plan.billing_period})"
        )
    if (subscription.metadata_json or {}).get(PENDING_PLAN_CHANGE_KEY):
        errors.append("Subscription already has a pending plan change")
    if not subscription.next_billing_date:
        errors.append("Subscription missing next_billing_date")
    elif subscription.next_billing_date <= now:
        errors.append("Subscription billing cycle has already ended")
    if not subscription.payplus_subscription_uid:
        errors.append("Subscription missing PayPlus subscription UID")

    change_type = None
    if current_plan is not None:
        current_price = to_decimal(subscription.billing_price)
        new_price = to_decimal(new_plan.price)
        if new_price > current_price:
            change_type = "upgrade"
        elif new_price < current_price:
            change_type = "downgrade"
        else:
            errors.append("New plan price must be different from current plan price")

    return PlanChangeValidation(valid=not errors, errors=errors, change_type=change_type)


def get_proration_summary(proration: UpgradeProration) -> dict:
    return {
        "current_plan": proration.current_plan_name,
        "new_plan": proration.new_plan_name,
        "charge_now": proration.prorated_amount,
        "remaining_days": proration.remaining_days,
        "total_days": proration.total_days,
        "next_full_charge": proration.new_price,
        "next_billing_date": messages.format_date(proration.next_billing_date),
        "explanation": messages.PRORATION_EXPLANATION.format(
            amount=messages.format_amount(proration.prorated_amount),
            days=proration.remaining_days,
            next_amount=messages.format_amount(proration.new_price),
            date=messages.format_date(proration.next_billing_date),
        ),
    }
