from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import inspect

from app.models import PaymentMethod, Subscription, SubscriptionHistory, SubscriptionPlan, Transaction
from app.modules.payment.payplus_service import PayPlusClient
from app.modules.subscription.payment_status_service import PaymentStatusReconciler
from app.modules.subscription.plan_change_service import PlanChangeOrchestrator
from app.modules.subscription.service import SubscriptionLifecycleService
from app.schemas.gateway_schema import (
    ChargeResult,
    GatewayUpdateResult,
    PaymentPage,
    RecurringChargeHistory,
    TransactionHistory,
)

NOW = datetime(2025, 6, 20)

MODELS = (SubscriptionPlan, Subscription, Transaction, SubscriptionHistory, PaymentMethod)


class InMemoryStore:
    """Rows of every table, kept as transient ORM objects."""

    def __init__(self):
        self.tables = {model: [] for model in MODELS}
        self._sequence = 0

    def add(self, obj):
        model = type(obj)
        for attr in inspect(model).column_attrs:
            column = attr.columns[0]
            if getattr(obj, attr.key) is None and column.default is not None and column.default.is_scalar:
                setattr(obj, attr.key, column.default.arg)
        self._sequence += 1
        if obj.id is None:
            obj.id = max((row.id for row in self.tables[model]), default=0) + 1
        if hasattr(obj, "created_at") and obj.created_at is None:
            obj.created_at = NOW - timedelta(days=365) + timedelta(seconds=self._sequence)
        self.tables[model].append(obj)
        return obj

    def rows(self, model):
        return list(self.tables[model])

    def snapshot(self):
        state = {}
        for model, rows in self.tables.items():
            keys = [attr.key for attr in inspect(model).column_attrs]
            if model is Subscription:
                keys.append("plan")
            state[model] = [(row, {key: getattr(row, key) for key in keys}) for row in rows]
        return state

    def restore(self, state):
        for model, rows in state.items():
            self.tables[model] = [row for row, _ in rows]
            for row, values in rows:
                for key, value in values.items():
                    setattr(row, key, value)


class FakeUnitOfWork:
    """Commits by keeping changes and rolls back by restoring the snapshot taken on entry."""

    def __init__(self, store: InMemoryStore):
        self.store = store
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def __call__(self):
        state = self.store.snapshot()
        try:
            yield self.store
            self.commits += 1
        except Exception:
            self.store.restore(state)
            self.rollbacks += 1
            raise


class FakeSubscriptionRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_plan(self, db, plan_id):
        return next((p for p in self.store.rows(SubscriptionPlan) if p.id == plan_id), None)

    async def list_active_plans(self, db, billing_period=None):
        plans = [
            p for p in self.store.rows(SubscriptionPlan)
            if p.is_active and (billing_period is None or p.billing_period == billing_period)
        ]
        return sorted(plans, key=lambda p: p.price)

    async def get_subscription(self, db, subscription_id, user_id=None):
        for subscription in self.store.rows(Subscription):
            if subscription.id == subscription_id and (user_id is None or subscription.user_id == user_id):
                return subscription
        return None

    async def get_subscription_for_update(self, db, subscription_id, user_id=None):
        return await self.get_subscription(db, subscription_id, user_id)

    async def list_user_subscriptions(self, db, user_id, status=None, limit=None):
        rows = [
            s for s in self.store.rows(Subscription)
            if s.user_id == user_id and (status is None or s.status == status)
        ]
        rows.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return rows[:limit] if limit else rows

    async def find_user_subscription_by_status(self, db, user_id, statuses):
        rows = [s for s in await self.list_user_subscriptions(db, user_id) if s.status in statuses]
        return rows[0] if rows else None

    async def list_due_scheduled_cancellations(self, db, now):
        return [
            s for s in self.store.rows(Subscription)
            if s.status == "active" and s.cancelled_at and s.end_date and s.end_date <= now
        ]

    async def create_subscription(self, db, plan, **values):
        return self.store.add(Subscription(plan=plan, subscription_plan_id=plan.id, **values))

    async def update_subscription(self, db, subscription, **values):
        for key, value in values.items():
            setattr(subscription, key, value)
        return subscription

    async def create_transaction(self, db, **values):
        uid = values.get("payplus_transaction_uid")
        if uid and await self.get_transaction_by_gateway_uid(db, uid):
            raise AssertionError(f"duplicate gateway uid {uid}")
        return self.store.add(Transaction(**values))

    async def update_transaction(self, db, transaction, **values):
        for key, value in values.items():
            setattr(transaction, key, value)
        return transaction

    async def get_page_transaction(self, db, subscription_id):
        rows = [
            t for t in self.store.rows(Transaction)
            if t.subscription_id == subscription_id and t.transaction_type == "subscription_payment"
        ]
        return max(rows, key=lambda t: t.id) if rows else None

    async def get_transaction_by_gateway_uid(self, db, transaction_uid):
        return next(
            (t for t in self.store.rows(Transaction) if t.payplus_transaction_uid == transaction_uid), None
        )

    async def record_gateway_transaction(self, db, **values):
        existing = await self.get_transaction_by_gateway_uid(db, values["payplus_transaction_uid"])
        if existing:
            return existing, False
        return self.store.add(Transaction(**values)), True

    async def get_payment_method(self, db, payment_method_id, user_id):
        return next(
            (
                m for m in self.store.rows(PaymentMethod)
                if m.id == payment_method_id and m.user_id == user_id and m.is_active
            ),
            None,
        )

    async def get_default_payment_method(self, db, user_id):
        methods = [m for m in self.store.rows(PaymentMethod) if m.user_id == user_id and m.is_active]
        methods.sort(key=lambda m: (m.is_default, m.created_at), reverse=True)
        return methods[0] if methods else None

    async def append_history(self, db, **values):
        return self.store.add(SubscriptionHistory(**values))

    async def list_history(self, db, user_id, limit=50):
        rows = [h for h in self.store.rows(SubscriptionHistory) if h.user_id == user_id]
        rows.sort(key=lambda h: (h.created_at, h.id), reverse=True)
        return rows[:limit]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def repository(store):
    return FakeSubscriptionRepository(store)


@pytest.fixture
def uow(store):
    return FakeUnitOfWork(store)


@pytest.fixture
def gateway():
    mock = AsyncMock(spec=PayPlusClient)
    mock.charge_token.return_value = ChargeResult(success=True, transaction_id="charge-uid-1", status="approved")
    mock.update_recurring_amount.return_value = GatewayUpdateResult(success=True)
    mock.cancel_recurring.return_value = GatewayUpdateResult(success=True)
    mock.create_payment_page.return_value = PaymentPage(
        page_request_uid="page-req-1", payment_page_link="https://payments.example/page-req-1"
    )
    mock.query_transaction_history.return_value = TransactionHistory()
    mock.query_recurring_charges.return_value = RecurringChargeHistory()
    return mock


@pytest.fixture
def plans(store):
    """Monthly plans at 30, 50 and 80, one yearly plan and one retired plan."""
    return {
        "lite": store.add(SubscriptionPlan(name="Lite", price=Decimal("30.00"), billing_period="monthly")),
        "basic": store.add(SubscriptionPlan(name="Basic", price=Decimal("50.00"), billing_period="monthly")),
        "pro": store.add(SubscriptionPlan(name="Pro", price=Decimal("80.00"), billing_period="monthly")),
        "yearly": store.add(SubscriptionPlan(name="Pro Yearly", price=Decimal("800.00"), billing_period="yearly")),
        "retired": store.add(
            SubscriptionPlan(name="Legacy", price=Decimal("120.00"), billing_period="monthly", is_active=False)
        ),
    }


@pytest.fixture
def make_subscription(store, plans):
    """Active subscription on Basic with 10 of 30 days left at NOW."""
    def _make(plan_key="basic", **overrides):
        plan = plans[plan_key]
        values = dict(
            user_id="user-1",
            status="active",
            billing_price=plan.price,
            original_price=plan.price,
            start_date=datetime(2025, 5, 31),
            next_billing_date=datetime(2025, 6, 30),
            payplus_subscription_uid="recurring-uid-1",
            metadata_json={},
        )
        values.update(overrides)
        return store.add(Subscription(plan=plan, subscription_plan_id=plan.id, **values))

    return _make


@pytest.fixture
def payment_method(store):
    return store.add(PaymentMethod(user_id="user-1", payplus_token="tok-1", card_last4="4242", is_default=True))


@pytest.fixture
def plan_changes(repository, gateway, uow):
    return PlanChangeOrchestrator(repository, gateway, uow, clock=lambda: NOW)


@pytest.fixture
def reconciler(repository, gateway, uow):
    return PaymentStatusReconciler(repository, gateway, uow, clock=lambda: NOW)


@pytest.fixture
def lifecycle(repository, gateway, uow, plan_changes, reconciler):
    return SubscriptionLifecycleService(repository, gateway, uow, plan_changes, reconciler, clock=lambda: NOW)
