from datetime import datetime
from decimal import Decimal

import pytest

from app.core.exceptions import ValidationError
from app.modules.subscription import proration
from tests.conftest import NOW


def test_upgrade_proration_charges_remaining_share_of_difference(make_subscription, plans):
    subscription = make_subscription()

    result = proration.calculate_upgrade_proration(subscription, plans["pro"], now=NOW)

    assert result.price_difference == Decimal("30.00")
    assert result.remaining_days == 10
    assert result.total_days == 30
    assert result.prorated_amount == Decimal("10.00")
    assert result.next_billing_date == datetime(2025, 6, 30)


def test_upgrade_proration_thirty_day_cycle_ending_in_march(make_subscription, plans):
    subscription = make_subscription(start_date=datetime(2026, 2, 1), next_billing_date=datetime(2026, 3, 3))

    result = proration.calculate_upgrade_proration(subscription, plans["pro"], now=datetime(2026, 2, 21))

    assert result.total_days == 30
    assert result.remaining_days == 10
    assert result.prorated_amount == Decimal("10.00")


def test_upgrade_proration_spans_from_start_date_after_renewals(make_subscription, plans):
    # 2025-03-30 .. 2025-06-30 is 92 days, 10 of them left.
    subscription = make_subscription(start_date=datetime(2025, 3, 30))

    result = proration.calculate_upgrade_proration(subscription, plans["pro"], now=NOW)

    assert result.total_days == 92
    assert result.remaining_days == 10
    assert result.prorated_amount == Decimal("3.26")


def test_upgrade_proration_never_charges_less_than_a_cent(make_subscription, plans):
    subscription = make_subscription()
    almost_over = datetime(2025, 6, 29, 23, 59, 59)

    result = proration.calculate_upgrade_proration(subscription, plans["pro"], now=almost_over)

    assert result.prorated_amount == Decimal("0.01")
    assert result.remaining_days == 1


def test_upgrade_proration_ratio_is_capped_at_one(make_subscription, plans):
    subscription = make_subscription(start_date=None)
    before_cycle = datetime(2025, 5, 1)

    result = proration.calculate_upgrade_proration(subscription, plans["pro"], now=before_cycle)

    assert result.remaining_ratio == Decimal(1)
    assert result.prorated_amount == Decimal("30.00")


def test_upgrade_proration_rejects_cheaper_plan(make_subscription, plans):
    subscription = make_subscription()
    with pytest.raises(ValidationError, match="higher"):
        proration.calculate_upgrade_proration(subscription, plans["lite"], now=NOW)


def test_upgrade_proration_rejects_ended_cycle(make_subscription, plans):
    subscription = make_subscription(next_billing_date=datetime(2025, 6, 1))
    with pytest.raises(ValidationError, match="already ended"):
        proration.calculate_upgrade_proration(subscription, plans["pro"], now=NOW)


def test_upgrade_proration_rejects_non_active_subscription(make_subscription, plans):
    subscription = make_subscription(status="pending")
    with pytest.raises(ValidationError, match="non-active"):
        proration.calculate_upgrade_proration(subscription, plans["pro"], now=NOW)


def test_downgrade_scheduling_takes_effect_at_next_billing_date(make_subscription, plans):
    subscription = make_subscription()

    result = proration.calculate_downgrade_scheduling(subscription, plans["lite"], now=NOW)

    assert result.price_savings == Decimal("20.00")
    assert result.effective_date == subscription.next_billing_date
    assert result.days_remaining == 10


def test_downgrade_scheduling_rejects_more_expensive_plan(make_subscription, plans):
    subscription = make_subscription()
    with pytest.raises(ValidationError, match="lower"):
        proration.calculate_downgrade_scheduling(subscription, plans["pro"], now=NOW)


def test_validate_plan_change_rejects_billing_period_mismatch(make_subscription, plans):
    subscription = make_subscription()

    result = proration.validate_plan_change(subscription, plans["yearly"], now=NOW)

    assert result.valid is False
    assert "Billing period mismatch: current (monthly) vs new (yearly)" in result.errors


def test_validate_plan_change_classifies_upgrade_and_downgrade(make_subscription, plans):
    subscription = make_subscription()

    assert proration.validate_plan_change(subscription, plans["pro"], now=NOW).change_type == "upgrade"
    assert proration.validate_plan_change(subscription, plans["lite"], now=NOW).change_type == "downgrade"


def test_validate_plan_change_collects_every_error(make_subscription, plans):
    subscription = make_subscription(
        status="cancelled",
        payplus_subscription_uid=None,
        metadata_json={"pending_plan_change": {"type": "downgrade"}},
    )

    result = proration.validate_plan_change(subscription, plans["basic"], now=NOW)

    assert result.valid is False
    assert "Subscription must be active (current status: cancelled)" in result.errors
    assert "Cannot change to the same subscription plan" in result.errors
    assert "Subscription already has a pending plan change" in result.errors
    assert "Subscription missing PayPlus subscription UID" in result.errors
    assert "New plan price must be different from current plan price" in result.errors


def test_validate_plan_change_rejects_inactive_target(make_subscription, plans):
    subscription = make_subscription()

    result = proration.validate_plan_change(subscription, plans["retired"], now=NOW)

    assert "Target subscription plan is not active" in result.errors


@pytest.mark.parametrize(
    "start, period, expected",
    [
        (datetime(2025, 1, 31), "monthly", datetime(2025, 2, 28)),
        (datetime(2024, 1, 31), "monthly", datetime(2024, 2, 29)),
        (datetime(2025, 12, 15), "monthly", datetime(2026, 1, 15)),
        (datetime(2024, 2, 29), "yearly", datetime(2025, 2, 28)),
        (datetime(2025, 6, 20, 8, 30), "daily", datetime(2025, 6, 21, 8, 30)),
    ],
)
def test_calculate_next_billing_date(start, period, expected):
    assert proration.calculate_next_billing_date(start, period) == expected


def test_proration_summary_explains_the_charge(make_subscription, plans):
    subscription = make_subscription()
    calculation = proration.calculate_upgrade_proration(subscription, plans["pro"], now=NOW)

    summary = proration.get_proration_summary(calculation)

    assert summary["charge_now"] == Decimal("10.00")
    assert summary["next_full_charge"] == Decimal("80.00")
    assert summary["next_billing_date"] == "30.06.2025"
    assert "₪10.00" in summary["explanation"]
